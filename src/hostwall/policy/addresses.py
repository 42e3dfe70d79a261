"""Operator address validation.

Literals are classified as IPv4 or IPv6 before anything is compiled.
The permissive level only checks the shape of a literal: '999.1.1.1'
passes, and IPv6 zero compression gets no special handling. The strict
level accepts only addresses the kernel would accept.
"""

import ipaddress
import re

from hostwall.core.config import AddressStrictness
from hostwall.core.exceptions import InvalidAddress
from hostwall.policy.model import AddressFamily, IPAddress


IPV4_SHAPE = re.compile(r"[0-9]{1,3}(\.[0-9]{1,3}){3}")
IPV6_SHAPE = re.compile(r"([0-9a-fA-F]{0,4}:){1,7}[0-9a-fA-F]{0,4}")


def _strict_match(literal: str, family: AddressFamily) -> bool:
    parser = ipaddress.IPv4Address if family is AddressFamily.V4 else ipaddress.IPv6Address
    try:
        parser(literal)
    except ValueError:
        return False
    return True


def validate_ip(
    literal: str,
    family: AddressFamily,
    strictness: AddressStrictness = AddressStrictness.PERMISSIVE,
) -> bool:
    """Check whether a literal is an address of the given family.

    Args:
        literal: Address as typed by the operator
        family: Family to check against
        strictness: Shape check only, or full parse

    Returns:
        True if the literal is accepted for that family
    """
    if strictness is AddressStrictness.STRICT:
        return _strict_match(literal, family)

    pattern = IPV4_SHAPE if family is AddressFamily.V4 else IPV6_SHAPE
    return pattern.fullmatch(literal) is not None


def classify_address(
    literal: str,
    strictness: AddressStrictness = AddressStrictness.PERMISSIVE,
) -> IPAddress:
    """Tag a literal with its family, trying IPv4 first.

    Raises:
        InvalidAddress: If the literal matches neither family
    """
    for family in (AddressFamily.V4, AddressFamily.V6):
        if validate_ip(literal, family, strictness):
            return IPAddress(literal, family)

    hint = None
    if strictness is AddressStrictness.STRICT:
        hint = "Strict checking is enabled: octets must be 0-255 and IPv6 must parse"
    raise InvalidAddress(literal, hint=hint)


def parse_address_list(
    text: str,
    strictness: AddressStrictness = AddressStrictness.PERMISSIVE,
) -> tuple[IPAddress, ...]:
    """Parse a whitespace-separated address list, preserving order.

    Fails on the first invalid literal.

    Raises:
        InvalidAddress: If any literal matches neither family
    """
    return tuple(classify_address(literal, strictness) for literal in text.split())
