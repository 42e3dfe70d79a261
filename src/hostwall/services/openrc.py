"""OpenRC service abstraction.

Counterpart of the systemd service for hosts booted by OpenRC
(Alpine, Gentoo). Queries run even in dry-run mode.
"""

from pathlib import Path
from typing import Optional

from hostwall.core.context import ExecutionContext
from hostwall.core.exceptions import ExecutionError, ServiceError
from hostwall.core.executor import CommandExecutor


INIT_DIR = Path("/etc/init.d")
DEFAULT_RUNLEVEL = "default"


class OpenRCService:
    """Manage OpenRC services with rc-service and rc-update."""

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        init_dir: Path = INIT_DIR,
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.init_dir = init_dir

    def runlevels(self, service: str) -> list[str]:
        """Runlevels the service is added to.

        `rc-update show` prints one line per service:
            firewalld |      default boot
        """
        result = self.executor.run(
            ["rc-update", "show"],
            check=False,
            read_only=True,
        )
        for line in result.stdout.splitlines():
            name, sep, levels = line.partition("|")
            if sep and name.strip() == service:
                return levels.split()
        return []

    def is_enabled(self, service: str) -> bool:
        return bool(self.runlevels(service))

    def is_started(self, service: str) -> bool:
        result = self.executor.run(
            ["rc-service", service, "status"],
            check=False,
            read_only=True,
        )
        return result.success

    def _change(self, command: list[str], service: str, desc: str) -> None:
        self.ctx.console.step(desc)
        try:
            self.executor.run(command)
        except ExecutionError as e:
            raise ServiceError(
                f"{desc} failed",
                service=service,
                details=e.details,
            ) from e

    def stop(self, service: str, *, description: Optional[str] = None) -> None:
        self._change(["rc-service", service, "stop"], service, description or f"Stopping {service}")

    def restart(self, service: str, *, description: Optional[str] = None) -> None:
        self._change(
            ["rc-service", service, "restart"], service,
            description or f"Restarting {service}",
        )

    def add(self, service: str, runlevel: str = DEFAULT_RUNLEVEL) -> bool:
        """Add a service to a runlevel.

        Returns:
            False if it was already there
        """
        if runlevel in self.runlevels(service):
            self.ctx.console.verbose(f"{service} already in runlevel {runlevel}")
            return False
        self._change(
            ["rc-update", "add", service, runlevel], service,
            f"Adding {service} to runlevel {runlevel}",
        )
        return True

    def delete(self, service: str) -> None:
        """Remove a service from every runlevel it is added to."""
        for runlevel in self.runlevels(service):
            self._change(
                ["rc-update", "del", service, runlevel], service,
                f"Removing {service} from runlevel {runlevel}",
            )

    def install_script(
        self,
        name: str,
        content: str,
        *,
        description: Optional[str] = None,
    ) -> Path:
        """Write an init script (mode 0755)."""
        script_path = self.init_dir / name
        self.executor.write_file(
            script_path,
            content,
            description=description or f"Installing init script {name}",
            permissions=0o755,
        )
        return script_path
