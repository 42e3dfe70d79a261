"""Policy compiler.

Turns validated operator input and the firewall configuration into one
ordered, default-deny policy per address family. Compilation reads no
host state and cannot fail for validated input.
"""

from dataclasses import dataclass

from hostwall.core.config import FirewallConfig
from hostwall.policy.model import (
    Action,
    AddressFamily,
    Chain,
    ConnState,
    IPAddress,
    Policy,
    PortSet,
    Protocol,
    RecentMatch,
    RecentMode,
    Rule,
)


@dataclass(frozen=True)
class PolicyInputs:
    """Validated operator input."""
    team_addresses: tuple[IPAddress, ...] = ()
    dc_addresses: tuple[IPAddress, ...] = ()
    in_domain: bool = False


def _dc_ports(config: FirewallConfig, family: AddressFamily, protocol: Protocol) -> PortSet:
    ports = config.dc_ports
    text = {
        (AddressFamily.V4, Protocol.TCP): ports.v4_tcp,
        (AddressFamily.V4, Protocol.UDP): ports.v4_udp,
        (AddressFamily.V6, Protocol.TCP): ports.v6_tcp,
        (AddressFamily.V6, Protocol.UDP): ports.v6_udp,
    }[(family, protocol)]
    return PortSet.parse(text)


def _baseline_rules(config: FirewallConfig, family: AddressFamily) -> list[Rule]:
    """Invalid-state drop, loopback, ICMP echo and established traffic."""
    icmp = family.icmp_protocol
    return [
        Rule(Chain.INPUT, Action.DROP, states=(ConnState.INVALID,)),
        Rule(Chain.OUTPUT, Action.DROP, states=(ConnState.INVALID,)),
        Rule(Chain.INPUT, Action.ACCEPT, in_interface="lo"),
        Rule(Chain.OUTPUT, Action.ACCEPT, out_interface="lo"),
        Rule(
            Chain.INPUT, Action.ACCEPT,
            protocol=icmp, icmp_type="echo-request", limit=config.icmp_rate,
        ),
        Rule(Chain.OUTPUT, Action.ACCEPT, protocol=icmp, icmp_type="echo-reply"),
        Rule(Chain.INPUT, Action.ACCEPT, states=(ConnState.ESTABLISHED, ConnState.RELATED)),
        Rule(Chain.OUTPUT, Action.ACCEPT, states=(ConnState.ESTABLISHED, ConnState.RELATED)),
    ]


def _ssh_rules(config: FirewallConfig, address: IPAddress) -> list[Rule]:
    """Record, rate-check and accept SSH from one team address."""
    ssh = PortSet.single(config.ssh_port)
    limit = config.ssh_rate_limit.to_rate_limit()
    record = RecentMatch(config.recent_name, RecentMode.SET)
    check = RecentMatch(
        config.recent_name, RecentMode.RCHECK,
        seconds=limit.window, hitcount=limit.hitcount,
    )
    return [
        Rule(Chain.INPUT, None, protocol=Protocol.TCP, source=address, ports=ssh, recent=record),
        Rule(Chain.INPUT, Action.DROP, protocol=Protocol.TCP, source=address, ports=ssh, recent=check),
        Rule(Chain.INPUT, Action.ACCEPT, protocol=Protocol.TCP, source=address, ports=ssh),
    ]


def _dc_rules(config: FirewallConfig, address: IPAddress) -> list[Rule]:
    """Mirrored INPUT/OUTPUT accepts for one domain controller."""
    rules = []
    for protocol in (Protocol.TCP, Protocol.UDP):
        ports = _dc_ports(config, address.family, protocol)
        rules.append(Rule(Chain.INPUT, Action.ACCEPT, protocol=protocol, source=address, ports=ports))
        rules.append(Rule(Chain.OUTPUT, Action.ACCEPT, protocol=protocol, destination=address, ports=ports))
    return rules


def _log_rules(config: FirewallConfig, family: AddressFamily) -> list[Rule]:
    suffix = family.log_suffix
    return [
        Rule(
            Chain.INPUT, Action.LOG,
            log_prefix=f"{config.log_prefix}_DROP_IN{suffix}: ",
            log_level=config.log_level,
        ),
        Rule(
            Chain.OUTPUT, Action.LOG,
            log_prefix=f"{config.log_prefix}_DROP_OUT{suffix}: ",
            log_level=config.log_level,
        ),
    ]


def compile_policy(
    config: FirewallConfig,
    family: AddressFamily,
    inputs: PolicyInputs,
) -> Policy:
    """Compile the policy for one address family.

    Only addresses of `family` contribute rules.
    """
    rules = _baseline_rules(config, family)

    for address in inputs.team_addresses:
        if address.family is family:
            rules.extend(_ssh_rules(config, address))

    if inputs.in_domain:
        for address in inputs.dc_addresses:
            if address.family is family:
                rules.extend(_dc_rules(config, address))

    rules.extend(_log_rules(config, family))
    return Policy(family=family, rules=tuple(rules))


def compile_policies(
    config: FirewallConfig,
    inputs: PolicyInputs,
) -> dict[AddressFamily, Policy]:
    """Compile both families, IPv4 first."""
    return {
        family: compile_policy(config, family, inputs)
        for family in (AddressFamily.V4, AddressFamily.V6)
    }
