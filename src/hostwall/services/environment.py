"""Host environment detection.

Resolves the package manager and boot mechanism of the host, installs
the packages hostwall drives, and probes for Active Directory membership.
"""

import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from hostwall.core.context import ExecutionContext
from hostwall.core.exceptions import ExecutionError, UnsupportedEnvironment
from hostwall.core.executor import CommandExecutor


SYSTEMD_RUNTIME_DIR = Path("/run/systemd/system")

Which = Callable[[str], Optional[str]]


class BootKind(str, Enum):
    """Init system that registers boot-time units."""
    SYSTEMD = "systemd"
    OPENRC = "openrc"


@dataclass(frozen=True)
class PackageManager:
    """A supported package manager and how to install with it."""
    name: str
    install_command: tuple[str, ...]
    packages: tuple[str, ...]
    env: dict[str, str] = field(default_factory=dict, hash=False)

    def install_args(self) -> list[str]:
        return [*self.install_command, *self.packages]


# Probe order matters: some hosts ship several of these binaries
PACKAGE_MANAGERS: tuple[PackageManager, ...] = (
    PackageManager("apk", ("apk", "add", "--no-cache"), ("iptables", "ip6tables", "rsyslog")),
    PackageManager("dnf", ("dnf", "install", "-y"), ("iptables", "rsyslog")),
    PackageManager("yum", ("yum", "install", "-y"), ("iptables", "rsyslog")),
    PackageManager(
        "apt", ("apt-get", "install", "-y"), ("iptables", "rsyslog"),
        env={"DEBIAN_FRONTEND": "noninteractive"},
    ),
    PackageManager("zypper", ("zypper", "--non-interactive", "install"), ("iptables", "rsyslog")),
)


@dataclass(frozen=True)
class HostEnvironment:
    """Result of environment detection."""
    package_manager: PackageManager
    boot: BootKind


def detect_package_manager(which: Which = shutil.which) -> PackageManager:
    """Find the first supported package manager.

    Raises:
        UnsupportedEnvironment: If none is installed
    """
    for manager in PACKAGE_MANAGERS:
        if which(manager.install_command[0]):
            return manager
    raise UnsupportedEnvironment(
        "No supported package manager found",
        hint="hostwall supports apk, dnf, yum, apt and zypper",
    )


def detect_boot_mechanism(
    which: Which = shutil.which,
    systemd_runtime: Path = SYSTEMD_RUNTIME_DIR,
) -> BootKind:
    """Pick systemd when it is running, else OpenRC.

    Raises:
        UnsupportedEnvironment: If neither is available
    """
    if which("systemctl") and systemd_runtime.is_dir():
        return BootKind.SYSTEMD
    if which("rc-update"):
        return BootKind.OPENRC
    raise UnsupportedEnvironment(
        "No supported boot mechanism found",
        hint="hostwall registers boot units with systemd or OpenRC",
    )


class EnvironmentService:
    """Probe and prepare the host."""

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        which: Which = shutil.which,
        systemd_runtime: Path = SYSTEMD_RUNTIME_DIR,
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.which = which
        self.systemd_runtime = systemd_runtime

    def detect(self) -> HostEnvironment:
        """Resolve package manager and boot mechanism.

        Raises:
            UnsupportedEnvironment: If either is missing
        """
        manager = detect_package_manager(self.which)
        boot = detect_boot_mechanism(self.which, self.systemd_runtime)
        self.ctx.console.verbose(f"Package manager: {manager.name}, boot: {boot.value}")
        return HostEnvironment(package_manager=manager, boot=boot)

    def install_packages(self, manager: PackageManager) -> None:
        """Install the packet filter tools and rsyslog.

        Raises:
            UnsupportedEnvironment: If installation fails
        """
        try:
            self.executor.run(
                manager.install_args(),
                description=f"Installing {', '.join(manager.packages)} with {manager.name}",
                env=manager.env or None,
            )
        except ExecutionError as e:
            raise UnsupportedEnvironment(
                f"Package installation with {manager.name} failed",
                hint="Install iptables and rsyslog manually, then set install_packages: false",
                details=e.details,
            ) from e

    def is_domain_joined(self) -> bool:
        """Check for Active Directory membership.

        A realm reported as 'configured' by realmd counts, as does an
        installed adcli.
        """
        if self.which("realm"):
            result = self.executor.run(
                ["realm", "list"],
                check=False,
                read_only=True,
            )
            if "configured" in result.stdout:
                return True
        return self.which("adcli") is not None
