"""Core framework components for hostwall."""

from hostwall.core.exceptions import (
    HostwallError,
    ConfigurationError,
    ValidationError,
    InvalidAddress,
    ExecutionError,
    PrerequisiteError,
    UnsupportedEnvironment,
    ServiceError,
    FirewallError,
    ApplyFailure,
    PersistenceFailure,
)

from hostwall.core.context import ExecutionContext, create_context
from hostwall.core.output import console, Console, Verbosity
from hostwall.core.config import AppConfig, HostConfig, FirewallConfig
from hostwall.core.audit import (
    AuditLogger,
    AuditEvent,
    AuditEventType,
    AuditResult,
    configure_audit_logger,
    get_audit_logger,
)
from hostwall.core.executor import CommandExecutor, CommandResult

__all__ = [
    # Exceptions
    "HostwallError",
    "ConfigurationError",
    "ValidationError",
    "InvalidAddress",
    "ExecutionError",
    "PrerequisiteError",
    "UnsupportedEnvironment",
    "ServiceError",
    "FirewallError",
    "ApplyFailure",
    "PersistenceFailure",
    # Context
    "ExecutionContext",
    "create_context",
    # Output
    "console",
    "Console",
    "Verbosity",
    # Config
    "AppConfig",
    "HostConfig",
    "FirewallConfig",
    # Audit
    "AuditLogger",
    "AuditEvent",
    "AuditEventType",
    "AuditResult",
    "configure_audit_logger",
    "get_audit_logger",
    # Executor
    "CommandExecutor",
    "CommandResult",
]
