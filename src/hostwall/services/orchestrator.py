"""Hardening run orchestration.

A run moves strictly forward through fixed states:

    DETECTING_ENVIRONMENT -> COLLECTING_INPUT -> VALIDATING_INPUT ->
    BUILDING_POLICY -> APPLYING_POLICY -> PERSISTING_POLICY -> DONE

Any error moves it to FAILED. There are no retries and no rollback:
rules applied before a failure stay live.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from hostwall.core.audit import AuditEventType, get_audit_logger
from hostwall.core.context import ExecutionContext
from hostwall.core.exceptions import (
    ApplyFailure,
    ExecutionError,
    HostwallError,
    PersistenceFailure,
    ServiceError,
    UnsupportedEnvironment,
    ValidationError,
)
from hostwall.core.executor import CommandExecutor
from hostwall.core.validation import validate_hostname
from hostwall.policy.addresses import parse_address_list
from hostwall.policy.compiler import PolicyInputs, compile_policies
from hostwall.policy.model import AddressFamily, Policy, RuleStoreArtifact
from hostwall.services.boot import (
    BootMechanism,
    OpenRCBootMechanism,
    SystemdBootMechanism,
    UnitRenderer,
)
from hostwall.services.environment import BootKind, EnvironmentService, HostEnvironment
from hostwall.services.iptables import IptablesService
from hostwall.services.operator_input import InputSource
from hostwall.services.persistence import PersistenceInstaller, PersistenceResult
from hostwall.services.rule_store import RuleStore
from hostwall.services.syslog import RSYSLOG_SERVICE, SyslogService


class RunState(str, Enum):
    """States of a hardening run."""
    DETECTING_ENVIRONMENT = "detecting_environment"
    COLLECTING_INPUT = "collecting_input"
    VALIDATING_INPUT = "validating_input"
    BUILDING_POLICY = "building_policy"
    APPLYING_POLICY = "applying_policy"
    PERSISTING_POLICY = "persisting_policy"
    DONE = "done"
    FAILED = "failed"


# Error type that low-level failures are reported as, per state
STATE_ERRORS: dict[RunState, type[HostwallError]] = {
    RunState.DETECTING_ENVIRONMENT: UnsupportedEnvironment,
    RunState.COLLECTING_INPUT: ValidationError,
    RunState.VALIDATING_INPUT: ValidationError,
    RunState.BUILDING_POLICY: ValidationError,
    RunState.APPLYING_POLICY: ApplyFailure,
    RunState.PERSISTING_POLICY: PersistenceFailure,
}

FAILURE_EVENTS: dict[RunState, AuditEventType] = {
    RunState.COLLECTING_INPUT: AuditEventType.INPUT_REJECTED,
    RunState.VALIDATING_INPUT: AuditEventType.INPUT_REJECTED,
    RunState.APPLYING_POLICY: AuditEventType.FIREWALL_APPLY,
    RunState.PERSISTING_POLICY: AuditEventType.FIREWALL_PERSIST,
}


@dataclass
class RawInput:
    """Operator answers before validation."""
    hostname: str
    in_domain: bool
    team_addresses: str
    dc_addresses: str


@dataclass
class RunResult:
    """Outcome of a hardening run."""
    state: RunState
    failed_state: Optional[RunState] = None
    error: Optional[HostwallError] = None
    transitions: list[RunState] = field(default_factory=list)
    environment: Optional[HostEnvironment] = None
    raw_input: Optional[RawInput] = None
    hostname: Optional[str] = None
    inputs: Optional[PolicyInputs] = None
    policies: dict[AddressFamily, Policy] = field(default_factory=dict)
    artifacts: list[RuleStoreArtifact] = field(default_factory=list)
    disabled_managers: list[str] = field(default_factory=list)
    persistence: Optional[PersistenceResult] = None

    @property
    def ok(self) -> bool:
        return self.state is RunState.DONE

    @property
    def exit_code(self) -> int:
        if self.ok:
            return 0
        return self.error.exit_code if self.error else 1


def _wrap(state: RunState, exc: Exception) -> HostwallError:
    """Report a low-level failure as the state's error type."""
    error_cls = STATE_ERRORS[state]
    label = state.value.replace("_", " ")
    details = list(getattr(exc, "details", None) or [])
    wrapped = error_cls(
        f"{label.capitalize()} failed: {exc}",
        hint=getattr(exc, "hint", None),
        details=details,
    )
    wrapped.__cause__ = exc
    return wrapped


class HardeningRun:
    """One pass of detect, collect, validate, build, apply and persist."""

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        source: InputSource,
        *,
        environment: Optional[EnvironmentService] = None,
        iptables: Optional[IptablesService] = None,
        renderer: Optional[UnitRenderer] = None,
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.source = source
        self.config = ctx.config
        self.environment = environment or EnvironmentService(ctx, executor)
        self.iptables = iptables or IptablesService(ctx, executor)
        self.renderer = renderer or UnitRenderer()
        self.mechanism: Optional[BootMechanism] = None

    def _steps(self) -> list[tuple[RunState, Callable[[RunResult], None]]]:
        return [
            (RunState.DETECTING_ENVIRONMENT, self._detect_environment),
            (RunState.COLLECTING_INPUT, self._collect_input),
            (RunState.VALIDATING_INPUT, self._validate_input),
            (RunState.BUILDING_POLICY, self._build_policy),
            (RunState.APPLYING_POLICY, self._apply_policy),
            (RunState.PERSISTING_POLICY, self._persist_policy),
        ]

    def execute(self) -> RunResult:
        """Run every state in order.

        Domain errors do not propagate: they end the run in FAILED and
        are returned in the result.
        """
        result = RunResult(state=RunState.DETECTING_ENVIRONMENT)
        audit = get_audit_logger()

        with audit.correlation("hardening_run"):
            for state, step in self._steps():
                result.state = state
                result.transitions.append(state)
                self.ctx.console.debug(f"State: {state.value}")
                try:
                    step(result)
                except (ExecutionError, OSError) as e:
                    return self._fail(result, state, _wrap(state, e))
                except HostwallError as e:
                    return self._fail(result, state, e)

        result.state = RunState.DONE
        result.transitions.append(RunState.DONE)
        return result

    def _fail(self, result: RunResult, state: RunState, error: HostwallError) -> RunResult:
        result.state = RunState.FAILED
        result.failed_state = state
        result.error = error
        result.transitions.append(RunState.FAILED)

        event = FAILURE_EVENTS.get(state)
        # Service failures are audited where they are raised
        if event is not None and not isinstance(error, ServiceError):
            target = result.hostname or (result.raw_input.hostname if result.raw_input else "-")
            get_audit_logger().log_failure(event, "host", target or "-", str(error))
        return result

    def _mechanism_for(self, boot: BootKind) -> BootMechanism:
        if boot is BootKind.SYSTEMD:
            return SystemdBootMechanism(self.ctx, self.executor, self.renderer)
        return OpenRCBootMechanism(self.ctx, self.executor, self.renderer)

    # =========================================================================
    # States
    # =========================================================================

    def _detect_environment(self, result: RunResult) -> None:
        self.ctx.console.step("Detecting environment")
        env = self.environment.detect()
        result.environment = env
        self.mechanism = self._mechanism_for(env.boot)
        if self.config.install_packages:
            self.environment.install_packages(env.package_manager)

    def _collect_input(self, result: RunResult) -> None:
        hostname = self.source.hostname()
        in_domain = self.environment.is_domain_joined()
        team = self.source.team_addresses()
        dc = self.source.dc_addresses() if in_domain else ""
        if in_domain:
            self.ctx.console.info("Host is joined to a domain")
        result.raw_input = RawInput(hostname, in_domain, team, dc)

    def _validate_input(self, result: RunResult) -> None:
        raw = result.raw_input
        strictness = self.config.firewall.address_strictness
        result.hostname = validate_hostname(raw.hostname)
        team = parse_address_list(raw.team_addresses, strictness)
        dc = parse_address_list(raw.dc_addresses, strictness)
        if not team:
            self.ctx.console.warn("No team addresses given: inbound SSH will be dropped")
        if raw.in_domain and not dc:
            self.ctx.console.warn("No domain controller addresses given")
        result.inputs = PolicyInputs(team_addresses=team, dc_addresses=dc, in_domain=raw.in_domain)

    def _build_policy(self, result: RunResult) -> None:
        self.ctx.console.step("Compiling policy")
        result.policies = compile_policies(self.config.firewall, result.inputs)
        if self.ctx.is_verbose:
            for policy in result.policies.values():
                self.ctx.console.rules(policy.render(), title=f"{policy.family.label} policy")

    def _installer(self) -> PersistenceInstaller:
        persistence = self.config.persistence
        return PersistenceInstaller(
            self.ctx, self.executor, self.mechanism,
            restore_script=persistence.restore_script,
            unit_name=persistence.unit_name,
            conflicting_managers=persistence.conflicting_managers,
        )

    def _configure_forwarding(self, syslog: SyslogService) -> None:
        logging = self.config.logging
        target = f"{logging.syslog_server}:{logging.syslog_port}"
        try:
            syslog.configure_forwarding(logging.syslog_server, logging.syslog_port)
        except (ServiceError, OSError) as e:
            get_audit_logger().log_failure(
                AuditEventType.LOGGING_FORWARDING, "rsyslog", target, str(e),
            )
            raise ServiceError(
                f"Syslog forwarding to {target} failed: {e}",
                service=RSYSLOG_SERVICE,
                hint=getattr(e, "hint", None),
                details=getattr(e, "details", None),
            ) from e

        # The compiled OUTPUT chain has no accept for the log server
        warning = (
            f"Outbound syslog to {target} is blocked by the default-deny "
            "OUTPUT policy; forwarded messages will be dropped"
        )
        self.ctx.console.warn(warning)
        get_audit_logger().log_warning(
            AuditEventType.LOGGING_FORWARDING, "rsyslog", target, warning,
        )

    def _apply_policy(self, result: RunResult) -> None:
        logging = self.config.logging
        syslog = SyslogService(
            self.ctx, self.executor, self.mechanism,
            tag=self.config.firewall.log_prefix,
            rsyslog_conf=logging.rsyslog_conf,
        )
        syslog.announce("Starting firewall configuration")
        if logging.syslog_server:
            self._configure_forwarding(syslog)

        # Stopping ufw or firewalld flushes the filter, so it must precede apply
        result.disabled_managers = self._installer().disable_conflicting_managers()

        audit = get_audit_logger()
        for family, policy in result.policies.items():
            count = self.iptables.apply(policy)
            message = f"{count} rules applied"
            if self.ctx.dry_run:
                audit.log_dry_run(AuditEventType.FIREWALL_APPLY, family.binary, result.hostname, message)
            else:
                audit.log_success(AuditEventType.FIREWALL_APPLY, family.binary, result.hostname, message)
            self.ctx.console.success(f"{family.label} policy applied ({count} rules)")

    def _persist_policy(self, result: RunResult) -> None:
        persistence = self.config.persistence
        store = RuleStore(
            self.ctx, self.executor, self.iptables,
            rules_dir=persistence.rules_dir,
            hostname=result.hostname,
        )
        result.artifacts = store.persist(result.policies)

        audit = get_audit_logger()
        for artifact in result.artifacts:
            if not self.ctx.dry_run:
                audit.log_success(
                    AuditEventType.FIREWALL_SAVE, "file", str(artifact.path),
                    message=f"{artifact.family.label} rules saved",
                )

        result.persistence = self._installer().install(result.artifacts)
        if not self.ctx.dry_run:
            audit.log_success(
                AuditEventType.FIREWALL_PERSIST, self.mechanism.name, persistence.unit_name,
                message=f"Boot replay installed: {result.persistence.unit_path}",
            )
