"""Host syslog integration: run announcements and remote forwarding."""

import stat
from pathlib import Path

from hostwall.core.audit import AuditEventType, get_audit_logger
from hostwall.core.context import ExecutionContext
from hostwall.core.exceptions import ExecutionError
from hostwall.core.executor import CommandExecutor
from hostwall.services.boot import BootMechanism


RSYSLOG_SERVICE = "rsyslog"


def forwarding_line(server: str, port: int) -> str:
    """rsyslog rule forwarding every facility and priority over UDP."""
    return f"*.* @{server}:{port}"


class SyslogService:
    """Write to the local syslog and configure rsyslog forwarding."""

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        mechanism: BootMechanism,
        *,
        tag: str,
        rsyslog_conf: Path,
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.mechanism = mechanism
        self.tag = tag
        self.rsyslog_conf = Path(rsyslog_conf)

    def announce(self, message: str) -> None:
        """Send a message to the local syslog under the configured tag.

        A missing or failing `logger` is reported and does not stop the run.
        """
        try:
            self.executor.run(["logger", "-t", self.tag, message])
        except ExecutionError as e:
            self.ctx.console.warn(f"Could not write to syslog: {e.message}")

    def is_forwarding(self, server: str, port: int) -> bool:
        if not self.rsyslog_conf.exists():
            return False
        line = forwarding_line(server, port)
        return any(
            existing.strip() == line
            for existing in self.rsyslog_conf.read_text().splitlines()
        )

    def configure_forwarding(self, server: str, port: int) -> bool:
        """Forward all host logs to a remote syslog server.

        The forwarding line is added once; rsyslog is restarted only when
        the file changed.

        Returns:
            True if the configuration was changed
        """
        line = forwarding_line(server, port)
        if self.is_forwarding(server, port):
            self.ctx.console.verbose(f"Forwarding to {server}:{port} already configured")
            return False

        current = ""
        mode = 0o644
        if self.rsyslog_conf.exists():
            current = self.rsyslog_conf.read_text()
            mode = stat.S_IMODE(self.rsyslog_conf.stat().st_mode)
        if current and not current.endswith("\n"):
            current += "\n"

        self.executor.write_file(
            self.rsyslog_conf,
            current + line + "\n",
            description=f"Forwarding syslog to {server}:{port}",
            permissions=mode,
        )
        self.mechanism.restart(RSYSLOG_SERVICE)

        audit = get_audit_logger()
        if self.ctx.dry_run:
            audit.log_dry_run(AuditEventType.LOGGING_FORWARDING, "rsyslog", f"{server}:{port}")
        else:
            audit.log_success(
                AuditEventType.LOGGING_FORWARDING, "rsyslog", f"{server}:{port}",
                message=f"Added '{line}' to {self.rsyslog_conf}",
            )
            self.announce(f"Syslog forwarding to {server} configured")
        return True
