"""Iptables firewall service.

Applies compiled policies to the live packet filter with
flush-then-rebuild semantics and reads back the live ruleset:
- IPv4 (iptables) and IPv6 (ip6tables) through one interface
- Every change waits for the xtables lock (-w)
- Dry-run mode support
- Abort on the first rejected command, without rollback
"""

from pathlib import Path
from typing import Optional

from hostwall.core.context import ExecutionContext
from hostwall.core.exceptions import ApplyFailure, ExecutionError, PersistenceFailure
from hostwall.core.executor import CommandExecutor, CommandResult
from hostwall.policy.model import BUILTIN_CHAINS, AddressFamily, Chain, Policy


def count_rules(saved_text: str) -> dict[Chain, int]:
    """Count `-A` lines per built-in chain in the filter table of saved output."""
    counts = {chain: 0 for chain in BUILTIN_CHAINS}
    in_filter = False
    for line in saved_text.splitlines():
        line = line.strip()
        if line.startswith("*"):
            in_filter = line == "*filter"
        elif line == "COMMIT":
            in_filter = False
        elif in_filter and line.startswith("-A "):
            name = line.split()[1]
            for chain in BUILTIN_CHAINS:
                if chain.value == name:
                    counts[chain] += 1
    return counts


class IptablesService:
    """Safe interface to the live packet filter of each address family."""

    def __init__(self, ctx: ExecutionContext, executor: CommandExecutor) -> None:
        """Initialize iptables service.

        Args:
            ctx: Execution context
            executor: Command executor
        """
        self.ctx = ctx
        self.executor = executor

    def _run_iptables(
        self,
        family: AddressFamily,
        args: list[str],
        *,
        chain: Optional[Chain] = None,
    ) -> CommandResult:
        """Run an iptables/ip6tables command against the filter table.

        Raises:
            ApplyFailure: If the command is rejected
        """
        cmd = [family.binary, "-w", *args]
        try:
            return self.executor.run(cmd)
        except ExecutionError as e:
            raise ApplyFailure(
                f"{family.binary} rejected: {e.command or ' '.join(cmd)}",
                chain=chain.value if chain else None,
                rule=" ".join(args),
                hint="No rollback was attempted; fix the cause and re-run hostwall",
                details=e.details,
            ) from e

    def flush(self, family: AddressFamily) -> None:
        """Delete every rule and user chain in the filter table."""
        self.ctx.console.step(f"Flushing {family.label} filter table")
        self._run_iptables(family, ["-F"])
        self._run_iptables(family, ["-X"])

    def set_policies(self, policy: Policy) -> None:
        for chain in BUILTIN_CHAINS:
            self._run_iptables(
                policy.family,
                ["-P", chain.value, policy.builtin_policy(chain).value],
                chain=chain,
            )

    def apply(self, policy: Policy) -> int:
        """Replace the live ruleset of the policy's family.

        Flushes, sets the chain policies, then appends every rule in
        compiled order.

        Returns:
            Number of rules appended

        Raises:
            ApplyFailure: On the first rejected command
        """
        family = policy.family
        self.flush(family)
        self.set_policies(policy)

        rules = policy.effective_rules()
        self.ctx.console.step(f"Appending {len(rules)} {family.label} rules")
        for rule in rules:
            self.ctx.console.debug(f"{family.label}: {rule}")
            self._run_iptables(
                family,
                ["-A", rule.chain.value, *rule.to_iptables_args()],
                chain=rule.chain,
            )
        return len(rules)

    def save(self, family: AddressFamily) -> str:
        """Read the live ruleset in iptables-restore format.

        Raises:
            PersistenceFailure: If the save command fails
        """
        try:
            result = self.executor.run(
                [family.save_binary, "-t", "filter"],
                description=f"Reading live {family.label} rules",
                read_only=True,
            )
        except ExecutionError as e:
            raise PersistenceFailure(
                f"{family.save_binary} failed",
                details=e.details,
            ) from e
        return result.stdout

    def restore(self, family: AddressFamily, path: Path) -> None:
        """Load a saved rule file into the live packet filter.

        Raises:
            ApplyFailure: If the file is missing or rejected
        """
        try:
            content = Path(path).read_text()
        except OSError as e:
            raise ApplyFailure(
                f"Cannot read saved {family.label} rules: {path}",
                hint="Run 'hostwall run' to generate the rule files",
                details=[str(e)],
            ) from e

        try:
            self.executor.run(
                [family.restore_binary, "-w"],
                description=f"Restoring {family.label} rules from {path}",
                input_text=content,
            )
        except ExecutionError as e:
            raise ApplyFailure(
                f"{family.restore_binary} rejected {path}",
                details=e.details,
            ) from e
