"""Custom exceptions for the hostwall CLI.

All exceptions provide:
- Clear error messages
- Optional hints for resolution
- Optional details for debugging
- Exit codes for proper shell integration
"""

from typing import Optional


class HostwallError(Exception):
    """Base exception for all hostwall errors.

    Attributes:
        message: Human-readable error description
        hint: Suggested action to resolve the error
        details: Additional context for debugging
        exit_code: Shell exit code (1-127)
    """

    exit_code: int = 1

    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = details or []

    def __str__(self) -> str:
        return self.message


class ConfigurationError(HostwallError):
    """Configuration file or settings errors.

    Raised when:
    - Config file unreadable
    - Invalid YAML syntax
    - Invalid configuration values
    """
    exit_code = 2


class ValidationError(HostwallError):
    """Input validation errors.

    Raised when:
    - Invalid hostname
    - Invalid port set or port number
    - Invalid rate limit
    """
    exit_code = 3


class InvalidAddress(ValidationError):
    """An operator-supplied literal is neither an IPv4 nor an IPv6 address.

    Always raised before any rule is compiled or applied.
    """

    def __init__(
        self,
        literal: str,
        *,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(
            f"Invalid IP: {literal}",
            hint=hint or "Use a dotted-quad IPv4 or colon-separated IPv6 address",
            details=details,
        )
        self.literal = literal


class ExecutionError(HostwallError):
    """Command execution failures.

    Raised when:
    - Shell command returns non-zero exit code
    - Shell command times out
    """
    exit_code = 5

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        return_code: Optional[int] = None,
        stderr: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        if not details:
            details = []
        if return_code is not None:
            details.append(f"Exit code: {return_code}")
        if stderr:
            details.append(f"Error output: {stderr.strip()}")
        super().__init__(message, hint=hint, details=details)
        self.command = command
        self.return_code = return_code
        self.stderr = stderr


class PrerequisiteError(HostwallError):
    """Missing prerequisites.

    Raised when:
    - Insufficient permissions
    - Required command not found
    """
    exit_code = 6


class UnsupportedEnvironment(PrerequisiteError):
    """The host offers no supported package manager or boot mechanism.

    Raised before any operator input is collected and before any
    firewall state is touched.
    """


class ServiceError(HostwallError):
    """Service manager errors (systemd or OpenRC).

    Raised when:
    - Start/stop/restart fails
    - Enable/disable/mask fails
    """
    exit_code = 13

    def __init__(
        self,
        message: str,
        *,
        service: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.service = service


class FirewallError(HostwallError):
    """Firewall/iptables errors.

    Raised when:
    - iptables command fails
    - Rules cannot be saved or persisted
    """
    exit_code = 15

    def __init__(
        self,
        message: str,
        *,
        rule: Optional[str] = None,
        chain: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.rule = rule
        self.chain = chain


class ApplyFailure(FirewallError):
    """The live packet filter rejected a flush, policy or rule.

    No rollback is attempted: rules applied before the failure stay in
    place, behind the DROP chain policies already set.
    """
    exit_code = 16


class PersistenceFailure(FirewallError):
    """Saving rules or registering the boot-time replay failed.

    The live rules remain applied for the current boot but are not
    guaranteed to survive a reboot.
    """
    exit_code = 17
