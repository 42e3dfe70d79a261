"""Persistence installer.

Makes the saved rule files survive a reboot:
- Stops and disables competing firewall managers, before the policy is
  applied, since stopping one resets the live filter
- Writes the replay script
- Registers a one-shot boot unit that runs the replay script

Every step is safe to repeat.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from hostwall.core.audit import AuditEventType, get_audit_logger
from hostwall.core.context import ExecutionContext
from hostwall.core.exceptions import PersistenceFailure, ServiceError
from hostwall.core.executor import CommandExecutor
from hostwall.policy.model import RuleStoreArtifact
from hostwall.services.boot import BootMechanism, BootUnit


RESTORE_SCRIPT_PERMS = 0o500


@dataclass
class PersistenceResult:
    """What the installer wrote."""
    restore_script: Path
    unit_path: Path


class PersistenceInstaller:
    """Install boot-time replay of the rule store."""

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        mechanism: BootMechanism,
        *,
        restore_script: Path,
        unit_name: str,
        conflicting_managers: Sequence[str] = ("firewalld", "ufw"),
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.mechanism = mechanism
        self.restore_script = Path(restore_script)
        self.unit_name = unit_name
        self.conflicting_managers = list(conflicting_managers)

    def boot_unit(self) -> BootUnit:
        return BootUnit(
            name=self.unit_name,
            description="Restore persistent firewall rules",
            command=str(self.restore_script),
        )

    def write_restore_script(self, artifacts: Sequence[RuleStoreArtifact]) -> None:
        content = self.mechanism.renderer.restore_script(artifacts)
        try:
            self.executor.write_file(
                self.restore_script,
                content,
                description=f"Writing replay script {self.restore_script}",
                permissions=RESTORE_SCRIPT_PERMS,
            )
        except OSError as e:
            raise PersistenceFailure(
                f"Cannot write replay script: {self.restore_script}",
                details=[str(e)],
            ) from e

    def disable_conflicting_managers(self) -> list[str]:
        """Stop and disable every enabled competing manager.

        Returns:
            Names of the managers that were disabled in this run
        """
        audit = get_audit_logger()
        disabled = []
        for manager in self.conflicting_managers:
            try:
                changed = self.mechanism.disable_conflicting(manager)
            except ServiceError as e:
                audit.log_failure(
                    AuditEventType.FIREWALL_PROVIDER_DISABLE, "service", manager, str(e),
                )
                raise PersistenceFailure(
                    f"Cannot disable competing firewall manager: {manager}",
                    hint=e.hint,
                    details=e.details,
                ) from e
            if changed:
                disabled.append(manager)
                if self.ctx.dry_run:
                    audit.log_dry_run(
                        AuditEventType.FIREWALL_PROVIDER_DISABLE, "service", manager,
                    )
                else:
                    audit.log_success(
                        AuditEventType.FIREWALL_PROVIDER_DISABLE, "service", manager,
                        message=f"{manager} stopped and disabled ({self.mechanism.name})",
                    )
        return disabled

    def register_unit(self) -> Path:
        unit = self.boot_unit()
        try:
            return self.mechanism.register(unit)
        except (ServiceError, OSError) as e:
            raise PersistenceFailure(
                f"Cannot register boot unit {unit.name} with {self.mechanism.name}",
                details=getattr(e, "details", None) or [str(e)],
            ) from e

    def install(self, artifacts: Sequence[RuleStoreArtifact]) -> PersistenceResult:
        """Install boot-time replay of the given rule files.

        Competing managers are not touched here; see
        disable_conflicting_managers.

        Raises:
            PersistenceFailure: If any step fails; live rules stay applied
        """
        self.write_restore_script(artifacts)
        unit_path = self.register_unit()
        self.ctx.console.success(
            f"Rules will be restored at boot by {self.unit_name} ({self.mechanism.name})"
        )
        return PersistenceResult(
            restore_script=self.restore_script,
            unit_path=unit_path,
        )
