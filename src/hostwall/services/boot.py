"""Boot-time replay registration.

A BootUnit describes the one-shot startup action; UnitRenderer turns it
into files through jinja2 templates; a BootMechanism registers it with
whichever init system the host runs.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from jinja2 import Environment, PackageLoader, select_autoescape

from hostwall.core.context import ExecutionContext
from hostwall.core.executor import CommandExecutor
from hostwall.policy.model import RuleStoreArtifact
from hostwall.services.openrc import OpenRCService
from hostwall.services.systemd import SystemdService


jinja_env = Environment(
    loader=PackageLoader("hostwall", "templates"),
    autoescape=select_autoescape(),
    trim_blocks=True,
    lstrip_blocks=True,
)


@dataclass(frozen=True)
class BootUnit:
    """A one-shot action run once networking is up."""
    name: str
    description: str
    command: str
    after: str = "network.target"  # systemd ordering
    need: str = "net"  # OpenRC dependency


class UnitRenderer:
    """Render boot units and the replay script from templates."""

    def __init__(self, env: Environment = jinja_env) -> None:
        self.env = env

    def _render(self, template: str, **values) -> str:
        content = self.env.get_template(template).render(**values)
        return content if content.endswith("\n") else content + "\n"

    def restore_script(self, artifacts: Sequence[RuleStoreArtifact]) -> str:
        return self._render("restore-firewall.sh.j2", artifacts=artifacts)

    def systemd_unit(self, unit: BootUnit) -> str:
        return self._render("systemd.service.j2", unit=unit)

    def openrc_script(self, unit: BootUnit) -> str:
        return self._render("openrc.init.j2", unit=unit)


class BootMechanism(ABC):
    """Init-system specific service operations used by the installer."""

    name: str

    def __init__(self, ctx: ExecutionContext, executor: CommandExecutor,
                 renderer: UnitRenderer) -> None:
        self.ctx = ctx
        self.executor = executor
        self.renderer = renderer

    @abstractmethod
    def register(self, unit: BootUnit) -> Path:
        """Install and enable the unit. Re-registering must be harmless.

        Returns:
            Path of the unit file or init script
        """

    @abstractmethod
    def disable_conflicting(self, service: str) -> bool:
        """Stop and permanently disable a service if it is enabled.

        Returns:
            True if the service was disabled, False if nothing was needed
        """

    @abstractmethod
    def restart(self, service: str) -> None:
        """Restart a running service."""


class SystemdBootMechanism(BootMechanism):
    """Register units with systemd."""

    name = "systemd"

    def __init__(self, ctx: ExecutionContext, executor: CommandExecutor,
                 renderer: UnitRenderer, systemd: Optional[SystemdService] = None) -> None:
        super().__init__(ctx, executor, renderer)
        self.systemd = systemd or SystemdService(ctx, executor)

    def register(self, unit: BootUnit) -> Path:
        return self.systemd.install_service(
            unit.name,
            self.renderer.systemd_unit(unit),
            enable=True,
            description=f"Installing {unit.name}.service",
        )

    def disable_conflicting(self, service: str) -> bool:
        if self.systemd.is_masked(service):
            self.ctx.console.verbose(f"{service} is already masked")
            return False
        if not self.systemd.is_enabled(service):
            self.ctx.console.verbose(f"{service} is not enabled")
            return False

        self.systemd.stop(service)
        self.systemd.mask(service)
        return True

    def restart(self, service: str) -> None:
        self.systemd.restart(service)


class OpenRCBootMechanism(BootMechanism):
    """Register init scripts with OpenRC."""

    name = "openrc"

    def __init__(self, ctx: ExecutionContext, executor: CommandExecutor,
                 renderer: UnitRenderer, openrc: Optional[OpenRCService] = None) -> None:
        super().__init__(ctx, executor, renderer)
        self.openrc = openrc or OpenRCService(ctx, executor)

    def register(self, unit: BootUnit) -> Path:
        path = self.openrc.install_script(unit.name, self.renderer.openrc_script(unit))
        self.openrc.add(unit.name)
        return path

    def disable_conflicting(self, service: str) -> bool:
        if not self.openrc.is_enabled(service):
            self.ctx.console.verbose(f"{service} is not enabled")
            return False

        if self.openrc.is_started(service):
            self.openrc.stop(service)
        self.openrc.delete(service)
        return True

    def restart(self, service: str) -> None:
        self.openrc.restart(service)
