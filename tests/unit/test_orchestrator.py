"""Unit tests for the hardening run state machine."""

import json

import pytest
from unittest.mock import Mock

from hostwall.core.audit import configure_audit_logger
from hostwall.core.config import AppConfig, HostConfig, LoggingConfig, PersistenceConfig
from hostwall.core.context import ExecutionContext, create_context
from hostwall.core.exceptions import (
    ApplyFailure,
    ExecutionError,
    InvalidAddress,
    ServiceError,
    UnsupportedEnvironment,
)
from hostwall.core.executor import CommandResult
from hostwall.policy.model import AddressFamily
from hostwall.services.environment import EnvironmentService
from hostwall.services.operator_input import StaticInputSource
from hostwall.services.orchestrator import HardeningRun, RunState


ALL_STATES = [
    RunState.DETECTING_ENVIRONMENT,
    RunState.COLLECTING_INPUT,
    RunState.VALIDATING_INPUT,
    RunState.BUILDING_POLICY,
    RunState.APPLYING_POLICY,
    RunState.PERSISTING_POLICY,
    RunState.DONE,
]


def fake_which(*installed):
    return lambda name: f"/usr/bin/{name}" if name in installed else None


class TestHardeningRun:
    """Tests for HardeningRun.execute."""

    @pytest.fixture(autouse=True)
    def audit_log(self, tmp_path):
        """Send audit events to a temporary file."""
        path = tmp_path / "audit.log"
        configure_audit_logger(path)
        return path

    @pytest.fixture
    def app_config(self, tmp_path):
        return AppConfig(config=HostConfig(
            persistence=PersistenceConfig(
                rules_dir=tmp_path / "rules",
                restore_script=tmp_path / "restore-firewall.sh",
            ),
            logging=LoggingConfig(rsyslog_conf=tmp_path / "rsyslog.conf"),
            install_packages=False,
        ))

    @pytest.fixture
    def ctx(self, app_config):
        return create_context().with_config(app_config)

    @pytest.fixture
    def executor(self):
        """Executor where every command succeeds and no manager is enabled."""
        def run(command, **kwargs):
            if command[:2] == ["systemctl", "is-enabled"]:
                return CommandResult(command=command, return_code=1, stdout="disabled\n", stderr="")
            return CommandResult(command=command, return_code=0, stdout="", stderr="")

        executor = Mock()
        executor.run.side_effect = run
        return executor

    @pytest.fixture
    def iptables(self):
        """Packet filter that remembers what was applied."""
        applied = {}

        def apply(policy):
            applied[policy.family] = policy
            return len(policy.effective_rules())

        iptables = Mock()
        iptables.applied = applied
        iptables.apply.side_effect = apply
        iptables.save.side_effect = lambda family: applied[family].render()
        return iptables

    def _run(self, ctx, executor, iptables, tmp_path, source, which=("apt-get", "systemctl")):
        environment = EnvironmentService(
            ctx, executor, which=fake_which(*which), systemd_runtime=tmp_path,
        )
        return HardeningRun(
            ctx, executor, source, environment=environment, iptables=iptables,
        ).execute()

    def test_full_run(self, ctx, executor, iptables, tmp_path, audit_log):
        """Should pass every state and persist both families."""
        source = StaticInputSource("web-01", "10.0.0.5", "")

        result = self._run(ctx, executor, iptables, tmp_path, source)

        assert result.ok
        assert result.exit_code == 0
        assert result.transitions == ALL_STATES
        assert result.hostname == "web-01"
        assert list(result.policies) == [AddressFamily.V4, AddressFamily.V6]
        assert iptables.apply.call_count == 2
        assert [a.path for a in result.artifacts] == [
            tmp_path / "rules" / "web-01.rules",
            tmp_path / "rules" / "web-01.rules.v6",
        ]

        written = {c.args[0]: c for c in executor.write_file.call_args_list}
        rules_file = written[tmp_path / "rules" / "web-01.rules"]
        assert "-s 10.0.0.5 --dport 22 -j ACCEPT" in rules_file.args[1]
        assert rules_file.kwargs["permissions"] == 0o600
        assert tmp_path / "restore-firewall.sh" in written
        assert result.persistence.unit_path.name == "firewall-persistent.service"

        events = [json.loads(line)["event_type"] for line in audit_log.read_text().splitlines()]
        assert events == [
            "firewall.apply", "firewall.apply",
            "firewall.save", "firewall.save",
            "firewall.persist",
        ]

    def test_unsupported_environment(self, ctx, executor, iptables, tmp_path):
        """No package manager halts before input and before any mutation."""
        source = Mock()

        result = self._run(ctx, executor, iptables, tmp_path, source, which=("systemctl",))

        assert result.state is RunState.FAILED
        assert result.failed_state is RunState.DETECTING_ENVIRONMENT
        assert isinstance(result.error, UnsupportedEnvironment)
        assert result.exit_code != 0
        iptables.apply.assert_not_called()
        source.hostname.assert_not_called()
        executor.write_file.assert_not_called()

    def test_package_install_failure(self, app_config, executor, iptables, tmp_path):
        """A failing package install is an unsupported environment."""
        config = AppConfig(config=app_config.config.model_copy(update={"install_packages": True}))
        ctx = create_context().with_config(config)
        executor.run.side_effect = ExecutionError("Command failed", return_code=100)

        result = self._run(ctx, executor, iptables, tmp_path, Mock())

        assert result.failed_state is RunState.DETECTING_ENVIRONMENT
        assert isinstance(result.error, UnsupportedEnvironment)
        iptables.apply.assert_not_called()

    def test_invalid_address(self, ctx, executor, iptables, tmp_path, audit_log):
        """A bad literal fails validation before anything is compiled."""
        source = StaticInputSource("web-01", "999.1.1.1 not-an-ip", "")

        result = self._run(ctx, executor, iptables, tmp_path, source)

        assert result.failed_state is RunState.VALIDATING_INPUT
        assert isinstance(result.error, InvalidAddress)
        assert result.error.literal == "not-an-ip"
        assert result.exit_code == 3
        assert result.policies == {}
        assert RunState.BUILDING_POLICY not in result.transitions
        iptables.apply.assert_not_called()

        event = json.loads(audit_log.read_text().splitlines()[-1])
        assert event["event_type"] == "input.rejected"
        assert event["target"]["name"] == "web-01"

    def test_loose_ipv4_accepted(self, ctx, executor, iptables, tmp_path):
        """Out-of-range octets pass the default check."""
        source = StaticInputSource("web-01", "999.1.1.1", "")

        result = self._run(ctx, executor, iptables, tmp_path, source)

        assert result.ok
        assert "-s 999.1.1.1" in result.policies[AddressFamily.V4].render()

    def test_invalid_hostname(self, ctx, executor, iptables, tmp_path):
        """A hostname that is not a name fails validation."""
        result = self._run(ctx, executor, iptables, tmp_path, StaticInputSource("../x", "", ""))
        assert result.failed_state is RunState.VALIDATING_INPUT

    def test_dc_addresses_skipped_outside_domain(self, ctx, executor, iptables, tmp_path):
        """DC addresses are not asked for on a host without a domain."""
        source = Mock()
        source.hostname.return_value = "web-01"
        source.team_addresses.return_value = "10.0.0.5"

        result = self._run(ctx, executor, iptables, tmp_path, source)

        assert result.ok
        source.dc_addresses.assert_not_called()
        assert result.inputs.in_domain is False

    def test_domain_joined(self, ctx, executor, iptables, tmp_path):
        """A domain-joined host opens DC ports."""
        source = StaticInputSource("web-01", "10.0.0.5", "10.0.0.10 fd00::10")

        result = self._run(
            ctx, executor, iptables, tmp_path, source,
            which=("apt-get", "systemctl", "adcli"),
        )

        assert result.ok
        assert result.raw_input.in_domain is True
        assert "-A OUTPUT -p udp -d 10.0.0.10" in result.policies[AddressFamily.V4].render()
        assert "-A INPUT -p tcp -s fd00::10" in result.policies[AddressFamily.V6].render()

    def test_apply_failure(self, ctx, executor, iptables, tmp_path, audit_log):
        """A rejected rule stops the run before anything is saved."""
        iptables.apply.side_effect = ApplyFailure("iptables rejected: -A INPUT", chain="INPUT")
        source = StaticInputSource("web-01", "10.0.0.5", "")

        result = self._run(ctx, executor, iptables, tmp_path, source)

        assert result.failed_state is RunState.APPLYING_POLICY
        assert result.exit_code == 16
        iptables.save.assert_not_called()
        assert result.artifacts == []

        event = json.loads(audit_log.read_text().splitlines()[-1])
        assert event["event_type"] == "firewall.apply"
        assert event["result"] == "failure"

    def test_persistence_failure(self, ctx, executor, iptables, tmp_path):
        """A failed save leaves the run in FAILED with a persistence error."""
        iptables.save.side_effect = lambda family: "*filter\nCOMMIT\n"
        source = StaticInputSource("web-01", "10.0.0.5", "")

        result = self._run(ctx, executor, iptables, tmp_path, source)

        assert result.failed_state is RunState.PERSISTING_POLICY
        assert result.exit_code == 17

    def test_rerun_is_identical(self, ctx, executor, iptables, tmp_path):
        """Two runs with the same answers compile byte-identical policies."""
        source = StaticInputSource("web-01", "10.0.0.5 fd00::5", "")

        first = self._run(ctx, executor, iptables, tmp_path, source)
        second = self._run(ctx, executor, iptables, tmp_path, source)

        assert {f: p.render() for f, p in first.policies.items()} == {
            f: p.render() for f, p in second.policies.items()
        }

    def test_dry_run(self, app_config, executor, iptables, tmp_path, audit_log):
        """Dry-run passes every state without saving the live ruleset."""
        ctx = create_context(dry_run=True).with_config(app_config)
        source = StaticInputSource("web-01", "10.0.0.5", "")

        result = self._run(ctx, executor, iptables, tmp_path, source)

        assert result.ok
        iptables.save.assert_not_called()
        results = {json.loads(line)["result"] for line in audit_log.read_text().splitlines()}
        assert results == {"dry_run"}

    def test_competing_manager_stopped_before_apply(self, ctx, executor, iptables, tmp_path):
        """Stopping ufw resets the live filter, so the policy is applied after it."""
        def run(command, **kwargs):
            if command[:2] == ["systemctl", "is-enabled"]:
                enabled = command[-1] == "ufw"
                return CommandResult(
                    command=command,
                    return_code=0 if enabled else 1,
                    stdout="enabled\n" if enabled else "disabled\n",
                    stderr="",
                )
            if command == ["systemctl", "stop", "ufw"]:
                iptables.applied.clear()
            return CommandResult(command=command, return_code=0, stdout="", stderr="")

        executor.run.side_effect = run
        source = StaticInputSource("web-01", "10.0.0.5", "")

        result = self._run(ctx, executor, iptables, tmp_path, source)

        assert result.ok
        assert result.disabled_managers == ["ufw"]
        assert list(iptables.applied) == [AddressFamily.V4, AddressFamily.V6]


class TestSyslogForwarding:
    """Tests for remote log forwarding during a run."""

    @pytest.fixture(autouse=True)
    def audit_log(self, tmp_path):
        """Send audit events to a temporary file."""
        path = tmp_path / "audit.log"
        configure_audit_logger(path)
        return path

    @pytest.fixture
    def ctx(self, tmp_path):
        config = AppConfig(config=HostConfig(
            persistence=PersistenceConfig(
                rules_dir=tmp_path / "rules",
                restore_script=tmp_path / "restore-firewall.sh",
            ),
            logging=LoggingConfig(
                syslog_server="192.0.2.10",
                rsyslog_conf=tmp_path / "rsyslog.conf",
            ),
            install_packages=False,
        ))
        return ExecutionContext(_console=Mock()).with_config(config)

    @pytest.fixture
    def iptables(self):
        applied = {}

        def apply(policy):
            applied[policy.family] = policy
            return len(policy.effective_rules())

        iptables = Mock()
        iptables.apply.side_effect = apply
        iptables.save.side_effect = lambda family: applied[family].render()
        return iptables

    def _executor(self, fail_restart=False):
        def run(command, **kwargs):
            if command[:2] == ["systemctl", "is-enabled"]:
                return CommandResult(command=command, return_code=1, stdout="disabled\n", stderr="")
            if fail_restart and command == ["systemctl", "restart", "rsyslog"]:
                raise ExecutionError("Command failed: systemctl restart rsyslog", return_code=1)
            return CommandResult(command=command, return_code=0, stdout="", stderr="")

        executor = Mock()
        executor.run.side_effect = run
        return executor

    def _run(self, ctx, executor, iptables, tmp_path):
        environment = EnvironmentService(
            ctx, executor, which=fake_which("apt-get", "systemctl"), systemd_runtime=tmp_path,
        )
        source = StaticInputSource("web-01", "10.0.0.5", "")
        return HardeningRun(
            ctx, executor, source, environment=environment, iptables=iptables,
        ).execute()

    def test_blocked_forwarding_warned(self, ctx, iptables, tmp_path, audit_log):
        """Forwarding is configured with a warning that OUTPUT drops it."""
        result = self._run(ctx, self._executor(), iptables, tmp_path)

        assert result.ok
        warnings = [c.args[0] for c in ctx.console.warn.call_args_list]
        assert any(
            "192.0.2.10:514" in w and "blocked by the default-deny OUTPUT policy" in w
            for w in warnings
        )

        events = [json.loads(line) for line in audit_log.read_text().splitlines()]
        forwarding = [e for e in events if e["event_type"] == "logging.forwarding"]
        assert [e["result"] for e in forwarding] == ["success", "warning"]

    def test_rsyslog_restart_failure(self, ctx, iptables, tmp_path, audit_log):
        """A failed rsyslog restart is a service error and no filter is touched."""
        executor = self._executor(fail_restart=True)

        result = self._run(ctx, executor, iptables, tmp_path)

        assert result.failed_state is RunState.APPLYING_POLICY
        assert isinstance(result.error, ServiceError)
        assert not isinstance(result.error, ApplyFailure)
        assert result.exit_code == 13
        assert "192.0.2.10:514" in str(result.error)
        iptables.apply.assert_not_called()
        commands = [c.args[0] for c in executor.run.call_args_list]
        assert not any(c[:2] == ["systemctl", "stop"] for c in commands)

        event = json.loads(audit_log.read_text().splitlines()[-1])
        assert event["event_type"] == "logging.forwarding"
        assert event["result"] == "failure"
