"""Rule store: the saved per-family rule files replayed at boot."""

from pathlib import Path
from typing import Mapping

from hostwall.core.context import ExecutionContext
from hostwall.core.exceptions import PersistenceFailure
from hostwall.core.executor import CommandExecutor
from hostwall.core.validation import validate_hostname
from hostwall.policy.model import BUILTIN_CHAINS, AddressFamily, Policy, RuleStoreArtifact
from hostwall.services.iptables import IptablesService, count_rules


RULE_FILE_PERMS = 0o600


class RuleStore:
    """Write the live ruleset of each family to `<rules_dir>/<hostname>.rules[.v6]`."""

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        iptables: IptablesService,
        rules_dir: Path,
        hostname: str,
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.iptables = iptables
        self.rules_dir = Path(rules_dir)
        self.hostname = validate_hostname(hostname)

    def path_for(self, family: AddressFamily) -> Path:
        return self.rules_dir / f"{self.hostname}.rules{family.artifact_suffix}"

    def artifacts(self) -> list[RuleStoreArtifact]:
        return [
            RuleStoreArtifact(family, self.path_for(family))
            for family in (AddressFamily.V4, AddressFamily.V6)
        ]

    def check_drift(self, policy: Policy, saved_text: str) -> None:
        """Compare per-chain rule counts of the live ruleset with the policy.

        Raises:
            PersistenceFailure: If any built-in chain differs
        """
        live = count_rules(saved_text)
        expected = policy.rule_counts()
        mismatches = [
            f"{chain.value}: expected {expected[chain]} rules, live has {live[chain]}"
            for chain in BUILTIN_CHAINS
            if live[chain] != expected[chain]
        ]
        if mismatches:
            raise PersistenceFailure(
                f"Live {policy.family.label} ruleset does not match the applied policy",
                hint="Another process may have changed the firewall; re-run hostwall",
                details=mismatches,
            )

    def persist(self, policies: Mapping[AddressFamily, Policy]) -> list[RuleStoreArtifact]:
        """Save the just-applied ruleset of every family.

        Must run right after the policies were applied, in the same run.

        Raises:
            PersistenceFailure: On save failure, drift or write failure
        """
        artifacts = []
        for family, policy in policies.items():
            path = self.path_for(family)
            artifacts.append(RuleStoreArtifact(family, path))

            if self.ctx.dry_run:
                self.ctx.console.dry_run_msg(f"{family.save_binary} > {path}")
                continue

            saved = self.iptables.save(family)
            self.check_drift(policy, saved)
            try:
                self.executor.write_file(
                    path,
                    saved,
                    description=f"Writing {family.label} rules to {path}",
                    permissions=RULE_FILE_PERMS,
                )
            except OSError as e:
                raise PersistenceFailure(
                    f"Cannot write rule file: {path}",
                    details=[str(e)],
                ) from e
        return artifacts
