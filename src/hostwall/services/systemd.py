"""Systemd service abstraction.

Provides a safe interface for querying and changing systemd units.
Queries run even in dry-run mode; changes are only announced.
"""

from pathlib import Path
from typing import Optional

from hostwall.core.context import ExecutionContext
from hostwall.core.exceptions import ExecutionError, ServiceError
from hostwall.core.executor import CommandExecutor


SYSTEMD_SYSTEM_DIR = Path("/etc/systemd/system")


def unit_name(service: str) -> str:
    """Append the .service suffix when missing."""
    return service if service.endswith(".service") else f"{service}.service"


class SystemdService:
    """Safe interface for managing systemd services.

    All operations respect dry-run mode and log appropriately.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        unit_dir: Path = SYSTEMD_SYSTEM_DIR,
    ) -> None:
        """Initialize systemd service manager.

        Args:
            ctx: Execution context
            executor: Command executor
            unit_dir: Directory for locally installed unit files
        """
        self.ctx = ctx
        self.executor = executor
        self.unit_dir = unit_dir

    def is_enabled(self, service: str) -> bool:
        """Check if a service is enabled."""
        result = self.executor.run(
            ["systemctl", "is-enabled", "--quiet", service],
            check=False,
            read_only=True,
        )
        return result.success

    def is_masked(self, service: str) -> bool:
        """Check if a service is masked."""
        result = self.executor.run(
            ["systemctl", "is-enabled", service],
            check=False,
            read_only=True,
        )
        return result.stdout.strip() == "masked"

    def _change(self, args: list[str], service: str, desc: str, hint: Optional[str] = None) -> None:
        self.ctx.console.step(desc)
        try:
            self.executor.run(["systemctl", *args])
        except ExecutionError as e:
            raise ServiceError(
                f"{desc} failed",
                service=service,
                hint=hint,
                details=e.details,
            ) from e

    def stop(self, service: str, *, description: Optional[str] = None) -> None:
        """Stop a service.

        Raises:
            ServiceError: If service fails to stop
        """
        self._change(["stop", service], service, description or f"Stopping {service}")

    def restart(self, service: str, *, description: Optional[str] = None) -> None:
        """Restart a service.

        Raises:
            ServiceError: If service fails to restart
        """
        self._change(
            ["restart", service], service,
            description or f"Restarting {service}",
            hint=f"Check logs: journalctl -xeu {service}",
        )

    def enable(self, service: str, *, description: Optional[str] = None) -> None:
        """Enable a service to start on boot. Enabling twice is harmless."""
        self._change(["enable", service], service, description or f"Enabling {service}")

    def mask(self, service: str, *, description: Optional[str] = None) -> None:
        """Mask a service to prevent it from starting.

        Masking links the unit to /dev/null, so neither an operator nor
        a dependency can start it again.
        """
        self._change(["mask", service], service, description or f"Masking {service}")

    def daemon_reload(self) -> None:
        """Reload systemd daemon configuration."""
        self._change(["daemon-reload"], "systemd", "Reloading systemd daemon")

    def install_service(
        self,
        name: str,
        content: str,
        *,
        enable: bool = True,
        description: Optional[str] = None,
    ) -> Path:
        """Install a unit file, reload the daemon and optionally enable it.

        Args:
            name: Service name, with or without the .service suffix
            content: Unit file content
            enable: Enable the unit after installation
            description: Optional description for logging

        Returns:
            Path to the unit file
        """
        name = unit_name(name)
        service_path = self.unit_dir / name

        self.executor.write_file(
            service_path,
            content,
            description=description or f"Installing service {name}",
            permissions=0o644,
        )
        self.daemon_reload()

        if enable:
            self.enable(name, description=f"Enabling {name}")

        return service_path
