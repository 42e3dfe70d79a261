"""Firewall policy model.

Immutable, family-scoped representation of a filter-table policy:
- Address families, chains, actions and chain policies
- Port sets (single ports and inclusive ranges)
- Rate limits for the recent match
- Rules and their iptables argument vectors
- Policies and their iptables-restore text form
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from hostwall.core.exceptions import ValidationError
from hostwall.core.validation import MAX_PORT, MIN_PORT


# The multiport match accepts at most 15 port slots; a range takes two
MULTIPORT_MAX_SLOTS = 15

# Default ip_pkt_list_tot of xt_recent: hits remembered per source
MAX_RECENT_HITS = 20


class AddressFamily(str, Enum):
    """IP address family. Selects the control binaries and ICMP flavour."""
    V4 = "ipv4"
    V6 = "ipv6"

    @property
    def label(self) -> str:
        return "IPv4" if self is AddressFamily.V4 else "IPv6"

    @property
    def binary(self) -> str:
        return "iptables" if self is AddressFamily.V4 else "ip6tables"

    @property
    def save_binary(self) -> str:
        return f"{self.binary}-save"

    @property
    def restore_binary(self) -> str:
        return f"{self.binary}-restore"

    @property
    def icmp_protocol(self) -> "Protocol":
        return Protocol.ICMP if self is AddressFamily.V4 else Protocol.ICMPV6

    @property
    def artifact_suffix(self) -> str:
        """Suffix appended to the rule file name."""
        return "" if self is AddressFamily.V4 else ".v6"

    @property
    def log_suffix(self) -> str:
        """Suffix that tells IPv6 LOG prefixes apart from IPv4 ones."""
        return "" if self is AddressFamily.V4 else "6"


class Protocol(str, Enum):
    """Network protocol."""
    TCP = "tcp"
    UDP = "udp"
    ICMP = "icmp"
    ICMPV6 = "icmpv6"

    @property
    def has_ports(self) -> bool:
        return self in (Protocol.TCP, Protocol.UDP)

    @property
    def is_icmp(self) -> bool:
        return self in (Protocol.ICMP, Protocol.ICMPV6)


class Chain(str, Enum):
    """Built-in filter table chain."""
    INPUT = "INPUT"
    FORWARD = "FORWARD"
    OUTPUT = "OUTPUT"


BUILTIN_CHAINS: tuple[Chain, ...] = (Chain.INPUT, Chain.FORWARD, Chain.OUTPUT)


class Action(str, Enum):
    """Rule target."""
    ACCEPT = "ACCEPT"
    DROP = "DROP"
    REJECT = "REJECT"
    LOG = "LOG"


class ChainPolicy(str, Enum):
    """Default policy of a built-in chain."""
    DROP = "DROP"
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"


class ConnState(str, Enum):
    """Connection-tracking state."""
    NEW = "NEW"
    ESTABLISHED = "ESTABLISHED"
    RELATED = "RELATED"
    INVALID = "INVALID"


@dataclass(frozen=True)
class PortRange:
    """A single port (low == high) or an inclusive port range."""
    low: int
    high: int

    def __post_init__(self) -> None:
        for port in (self.low, self.high):
            if not MIN_PORT <= port <= MAX_PORT:
                raise ValidationError(
                    f"Invalid port number: {port}",
                    hint=f"Port must be between {MIN_PORT} and {MAX_PORT}",
                )
        if self.low > self.high:
            raise ValidationError(
                f"Invalid port range: {self.low}:{self.high}",
                hint="The first port of a range must not exceed the second",
            )

    @classmethod
    def parse(cls, token: str) -> "PortRange":
        """Parse '22' or '49152:65535'."""
        token = token.strip()
        parts = token.split(":")
        if len(parts) > 2 or not all(p.isdigit() for p in parts):
            raise ValidationError(
                f"Invalid port token: '{token}'",
                hint="Use a port number (22) or an inclusive range (49152:65535)",
            )
        low = int(parts[0])
        high = int(parts[-1])
        return cls(low, high)

    @property
    def is_single(self) -> bool:
        return self.low == self.high

    @property
    def slots(self) -> int:
        """Number of multiport slots this token occupies."""
        return 1 if self.is_single else 2

    def __contains__(self, port: int) -> bool:
        return self.low <= port <= self.high

    def __str__(self) -> str:
        if self.is_single:
            return str(self.low)
        return f"{self.low}:{self.high}"


@dataclass(frozen=True)
class PortSet:
    """Ordered, non-empty set of destination port tokens."""
    ranges: tuple[PortRange, ...]

    def __post_init__(self) -> None:
        if not self.ranges:
            raise ValidationError(
                "Port set cannot be empty",
                hint="Provide at least one port, e.g. 53,88,389",
            )
        if len(set(self.ranges)) != len(self.ranges):
            raise ValidationError(
                f"Port set contains duplicates: {self}",
                hint="List every port or range once",
            )
        slots = sum(r.slots for r in self.ranges)
        if slots > MULTIPORT_MAX_SLOTS:
            raise ValidationError(
                f"Port set too large for the multiport match: {self}",
                hint=f"Use at most {MULTIPORT_MAX_SLOTS} ports (a range counts as two)",
                details=[f"Slots used: {slots}"],
            )

    @classmethod
    def parse(cls, text: str) -> "PortSet":
        """Parse the comma-separated form, e.g. '53,88,49152:65535'."""
        tokens = [t.strip() for t in text.split(",")]
        if tokens == [""]:
            return cls(())
        if any(not t for t in tokens):
            raise ValidationError(
                f"Empty entry in port set: '{text}'",
                hint="Separate ports with single commas",
            )
        return cls(tuple(PortRange.parse(t) for t in tokens))

    @classmethod
    def single(cls, port: int) -> "PortSet":
        return cls((PortRange(port, port),))

    @property
    def is_single_port(self) -> bool:
        return len(self.ranges) == 1 and self.ranges[0].is_single

    def __contains__(self, port: int) -> bool:
        return any(port in r for r in self.ranges)

    def __iter__(self):
        return iter(self.ranges)

    def __str__(self) -> str:
        return ",".join(str(r) for r in self.ranges)

    def to_match_args(self) -> list[str]:
        """Destination-port match arguments."""
        if self.is_single_port:
            return ["--dport", str(self)]
        return ["-m", "multiport", "--dports", str(self)]


@dataclass(frozen=True)
class IPAddress:
    """An address literal that passed validation, tagged with its family."""
    literal: str
    family: AddressFamily

    def __str__(self) -> str:
        return self.literal


@dataclass(frozen=True)
class RateLimit:
    """At most `count` hits per `window` seconds."""
    count: int
    window: int

    def __post_init__(self) -> None:
        if self.count < 1:
            raise ValidationError(
                f"Rate limit count must be at least 1 (got {self.count})",
            )
        if self.count >= MAX_RECENT_HITS:
            raise ValidationError(
                f"Rate limit count must be below {MAX_RECENT_HITS} (got {self.count})",
                hint="The recent match only remembers "
                     f"{MAX_RECENT_HITS} hits per source by default",
            )
        if self.window <= 0:
            raise ValidationError(
                f"Rate limit window must be positive (got {self.window})",
            )

    @property
    def hitcount(self) -> int:
        """Hit count at which the check rule starts dropping."""
        return self.count + 1

    def __str__(self) -> str:
        return f"{self.count}/{self.window}s"


class RecentMode(str, Enum):
    """Operation performed by the recent match."""
    SET = "--set"
    RCHECK = "--rcheck"


@dataclass(frozen=True)
class RecentMatch:
    """A recent-match clause: record a hit or check the hit history."""
    name: str
    mode: RecentMode
    seconds: Optional[int] = None
    hitcount: Optional[int] = None

    def to_args(self) -> list[str]:
        args = ["-m", "recent", "--name", self.name, self.mode.value]
        if self.seconds is not None:
            args.extend(["--seconds", str(self.seconds)])
        if self.hitcount is not None:
            args.extend(["--hitcount", str(self.hitcount)])
        return args


@dataclass(frozen=True)
class Rule:
    """A single filter rule.

    A rule without an action does not terminate evaluation; it is used
    to record recent-match hits.
    """
    chain: Chain
    action: Optional[Action] = None
    protocol: Optional[Protocol] = None
    source: Optional[IPAddress] = None
    destination: Optional[IPAddress] = None
    in_interface: Optional[str] = None
    out_interface: Optional[str] = None
    ports: Optional[PortSet] = None
    states: tuple[ConnState, ...] = ()
    icmp_type: Optional[str] = None
    limit: Optional[str] = None
    recent: Optional[RecentMatch] = None
    log_prefix: Optional[str] = None
    log_level: Optional[int] = None

    def __post_init__(self) -> None:
        if self.ports is not None and (self.protocol is None or not self.protocol.has_ports):
            raise ValidationError("Port matches require the tcp or udp protocol")
        if self.icmp_type is not None and (self.protocol is None or not self.protocol.is_icmp):
            raise ValidationError("ICMP type matches require the icmp or icmpv6 protocol")
        has_log_options = self.log_prefix is not None or self.log_level is not None
        if has_log_options and self.action is not Action.LOG:
            raise ValidationError("Log prefix and level are only valid on LOG rules")

    @property
    def families(self) -> set[AddressFamily]:
        """Families implied by the rule's addresses and protocol."""
        found = {a.family for a in (self.source, self.destination) if a is not None}
        if self.protocol is Protocol.ICMP:
            found.add(AddressFamily.V4)
        elif self.protocol is Protocol.ICMPV6:
            found.add(AddressFamily.V6)
        return found

    def to_iptables_args(self) -> list[str]:
        """Convert rule to iptables match and target arguments (no chain)."""
        args: list[str] = []

        if self.in_interface:
            args.extend(["-i", self.in_interface])
        if self.out_interface:
            args.extend(["-o", self.out_interface])

        if self.protocol is not None:
            args.extend(["-p", self.protocol.value])

        if self.source is not None:
            args.extend(["-s", self.source.literal])
        if self.destination is not None:
            args.extend(["-d", self.destination.literal])

        if self.ports is not None:
            args.extend(self.ports.to_match_args())

        if self.icmp_type is not None:
            option = "--icmp-type" if self.protocol is Protocol.ICMP else "--icmpv6-type"
            args.extend([option, self.icmp_type])

        if self.states:
            args.extend([
                "-m", "conntrack", "--ctstate",
                ",".join(s.value for s in self.states),
            ])

        if self.limit is not None:
            args.extend(["-m", "limit", "--limit", self.limit])

        if self.recent is not None:
            args.extend(self.recent.to_args())

        if self.action is not None:
            args.extend(["-j", self.action.value])

        if self.log_prefix is not None:
            args.extend(["--log-prefix", self.log_prefix])
        if self.log_level is not None:
            args.extend(["--log-level", str(self.log_level)])

        return args

    def __str__(self) -> str:
        """Human-readable representation."""
        parts = [self.chain.value, self.action.value if self.action else "RECORD"]
        if self.protocol is not None:
            parts.append(self.protocol.value)
        if self.ports is not None:
            parts.append(f"port {self.ports}")
        if self.source is not None:
            parts.append(f"from {self.source}")
        if self.destination is not None:
            parts.append(f"to {self.destination}")
        if self.states:
            parts.append("state " + ",".join(s.value for s in self.states))
        return " ".join(parts)


DEFAULT_DENY: tuple[tuple[Chain, ChainPolicy], ...] = tuple(
    (chain, ChainPolicy.DROP) for chain in BUILTIN_CHAINS
)


def _quote(arg: str) -> str:
    """Quote an argument for iptables-restore input."""
    if arg and not any(c.isspace() or c == '"' for c in arg):
        return arg
    escaped = arg.replace('"', '\\"')
    return f'"{escaped}"'


@dataclass(frozen=True)
class Policy:
    """The complete filter-table policy for one address family."""
    family: AddressFamily
    rules: tuple[Rule, ...]
    defaults: tuple[tuple[Chain, ChainPolicy], ...] = DEFAULT_DENY

    def __post_init__(self) -> None:
        chains = [chain for chain, _ in self.defaults]
        if sorted(chains) != sorted(BUILTIN_CHAINS) or len(chains) != len(BUILTIN_CHAINS):
            raise ValidationError(
                "A policy must set a default for INPUT, FORWARD and OUTPUT exactly once",
            )
        for rule in self.rules:
            foreign = rule.families - {self.family}
            if foreign:
                raise ValidationError(
                    f"Rule for {', '.join(f.label for f in foreign)} in "
                    f"{self.family.label} policy: {rule}",
                )

    def default_for(self, chain: Chain) -> ChainPolicy:
        return dict(self.defaults)[chain]

    def builtin_policy(self, chain: Chain) -> ChainPolicy:
        """Policy handed to the kernel; REJECT is not a valid chain policy."""
        policy = self.default_for(chain)
        return ChainPolicy.DROP if policy is ChainPolicy.REJECT else policy

    def effective_rules(self) -> tuple[Rule, ...]:
        """Rules in apply order, including REJECT chain policy emulation."""
        trailing = tuple(
            Rule(chain=chain, action=Action.REJECT)
            for chain in BUILTIN_CHAINS
            if self.default_for(chain) is ChainPolicy.REJECT
        )
        return self.rules + trailing

    def rules_in(self, chain: Chain) -> tuple[Rule, ...]:
        return tuple(r for r in self.effective_rules() if r.chain is chain)

    def rule_counts(self) -> dict[Chain, int]:
        return {chain: len(self.rules_in(chain)) for chain in BUILTIN_CHAINS}

    def render(self) -> str:
        """Render the policy as iptables-restore input."""
        lines = [f"# {self.family.label} filter policy generated by hostwall", "*filter"]
        for chain in BUILTIN_CHAINS:
            lines.append(f":{chain.value} {self.builtin_policy(chain).value} [0:0]")
        for rule in self.effective_rules():
            args = " ".join(_quote(a) for a in rule.to_iptables_args())
            lines.append(f"-A {rule.chain.value} {args}")
        lines.append("COMMIT")
        return "\n".join(lines) + "\n"


@dataclass(frozen=True)
class RuleStoreArtifact:
    """A saved rule file for one family."""
    family: AddressFamily
    path: Path
