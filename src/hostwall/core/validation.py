"""Input validation utilities.

Provides validation for:
- Port numbers
- Hostnames (used to derive rule file names)
- Remote log targets
- Paths (with traversal prevention)

All validators return the validated value or raise ValidationError.
"""

import ipaddress
import re

from hostwall.core.exceptions import ValidationError


MIN_PORT = 0
MAX_PORT = 65535

# RFC 1123 label: letters, digits, hyphens, no leading/trailing hyphen
HOSTNAME_LABEL_PATTERN = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")
MAX_HOSTNAME_LENGTH = 253


def validate_port(value: int) -> int:
    """Validate a port number.

    Args:
        value: Port number to validate

    Returns:
        The validated port number

    Raises:
        ValidationError: If port is out of valid range
    """
    if not 1 <= value <= MAX_PORT:
        raise ValidationError(
            f"Invalid port number: {value}",
            hint=f"Port must be between 1 and {MAX_PORT}",
        )
    return value


def validate_hostname(value: str) -> str:
    """Validate a hostname used to name rule files.

    Args:
        value: Hostname as entered by the operator

    Returns:
        The validated hostname, stripped of surrounding whitespace and
        any trailing dot

    Raises:
        ValidationError: If the hostname is empty or malformed
    """
    value = value.strip().rstrip(".")

    if not value:
        raise ValidationError(
            "Hostname cannot be empty",
            hint="Enter the system hostname, e.g. web-01",
        )

    if len(value) > MAX_HOSTNAME_LENGTH:
        raise ValidationError(
            f"Hostname exceeds maximum length ({len(value)} > {MAX_HOSTNAME_LENGTH})",
            hint="Use the short hostname instead of the FQDN",
        )

    for label in value.split("."):
        if not HOSTNAME_LABEL_PATTERN.match(label):
            raise ValidationError(
                f"Invalid hostname: '{value}'",
                hint="Use letters, digits and hyphens only (e.g. web-01)",
                details=[f"Offending label: '{label}'"],
            )

    return value


def validate_log_target(value: str) -> str:
    """Validate a remote syslog target (hostname or IP address).

    Args:
        value: Target host

    Returns:
        The validated target

    Raises:
        ValidationError: If the target is not a hostname or IP address
    """
    value = value.strip()
    try:
        ipaddress.ip_address(value)
        return value
    except ValueError:
        pass

    try:
        return validate_hostname(value)
    except ValidationError as e:
        raise ValidationError(
            f"Invalid syslog server: '{value}'",
            hint="Use a hostname or IP address without scheme or port",
        ) from e


def validate_path(
    value: str,
    must_be_absolute: bool = True,
) -> str:
    """Validate a file path with traversal prevention.

    Args:
        value: Path to validate
        must_be_absolute: Require absolute path

    Returns:
        The validated path

    Raises:
        ValidationError: If validation fails
    """
    dangerous_patterns = [
        "..",           # Parent directory traversal
        "$",            # Variable expansion
        "`",            # Command substitution
        "|",            # Pipe
        ";",            # Command separator
        "&",            # Background/AND
        "\n",           # Newline injection
        "\r",           # Carriage return
        "\x00",         # Null byte
        " ",            # Unquoted in generated shell scripts
    ]

    for pattern in dangerous_patterns:
        if pattern in value:
            raise ValidationError(
                f"Path contains dangerous pattern: {repr(pattern)}",
                hint="Use a simple path without special characters",
            )

    if must_be_absolute and not value.startswith("/"):
        raise ValidationError(
            f"Path must be absolute: {value}",
            hint=f"Use /{value}",
        )

    return value
