"""Unit tests for the command line interface."""

import pytest
from typer.testing import CliRunner
from unittest.mock import MagicMock, patch

from hostwall import __version__
from hostwall.cli import app
from hostwall.core.exceptions import ApplyFailure, UnsupportedEnvironment
from hostwall.services.orchestrator import RunResult, RunState


runner = CliRunner()


@pytest.fixture
def config_path(tmp_path):
    """A config path that does not exist, so defaults apply."""
    return str(tmp_path / "none.yaml")


class TestVersion:
    """Tests for --version."""

    def test_version(self):
        """Should print the version and exit 0."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"hostwall version {__version__}" in result.output


class TestCompileCommand:
    """Tests for the compile command."""

    def test_compile(self, config_path):
        """Should print both rulesets in iptables-restore format."""
        result = runner.invoke(
            app, ["compile", "-t", "10.0.0.5", "--no-color", "--config", config_path],
        )
        assert result.exit_code == 0
        assert "# IPv4 filter policy generated by hostwall" in result.output
        assert "# IPv6 filter policy generated by hostwall" in result.output
        assert "-A INPUT -p tcp -s 10.0.0.5 --dport 22 -j ACCEPT" in result.output
        assert result.output.count("COMMIT") == 2

    def test_compile_domain(self, config_path):
        """DC rules appear only with --domain."""
        args = ["compile", "-t", "10.0.0.5", "-d", "10.0.0.10", "--no-color", "--config", config_path]

        without = runner.invoke(app, args)
        with_domain = runner.invoke(app, args + ["--domain"])

        assert "10.0.0.10" not in without.output
        assert "-A OUTPUT -p tcp -d 10.0.0.10" in with_domain.output

    def test_compile_invalid_address(self, config_path):
        """An invalid literal exits with the validation code."""
        result = runner.invoke(
            app, ["compile", "-t", "not-an-ip", "--no-color", "--config", config_path],
        )
        assert result.exit_code == 3
        assert "Invalid IP: not-an-ip" in result.output

    def test_compile_invalid_config(self, tmp_path):
        """A broken config file exits with the configuration code."""
        path = tmp_path / "config.yaml"
        path.write_text("firewall:\n  log_level: 9\n")
        result = runner.invoke(
            app, ["compile", "-t", "10.0.0.5", "--no-color", "--config", str(path)],
        )
        assert result.exit_code == 2


class TestRunCommand:
    """Tests for the run command."""

    @pytest.fixture(autouse=True)
    def audit(self):
        with patch("hostwall.commands.run.configure_audit_logger") as configure:
            configure.return_value = MagicMock()
            yield configure.return_value

    def test_requires_root(self, config_path):
        """Should exit 6 when not root and not dry-run."""
        with patch("hostwall.commands.run.os.geteuid", return_value=1000):
            result = runner.invoke(app, ["run", "--yes", "--config", config_path])
        assert result.exit_code == 6

    def test_success(self, config_path, audit):
        """A finished run exits 0 and closes the audit session."""
        with patch("hostwall.commands.run.os.geteuid", return_value=0), \
             patch("hostwall.commands.run.HardeningRun") as hardening:
            hardening.return_value.execute.return_value = RunResult(state=RunState.DONE)
            result = runner.invoke(
                app,
                ["run", "-H", "web-01", "-t", "10.0.0.5", "--yes", "--no-color",
                 "--config", config_path],
            )

        assert result.exit_code == 0
        source = hardening.call_args.args[2]
        assert source.hostname() == "web-01"
        assert source.team_addresses() == "10.0.0.5"
        audit.log_session_end.assert_called_once_with(0)

    def test_dry_run_without_root(self, config_path):
        """Dry-run needs neither root nor confirmation."""
        with patch("hostwall.commands.run.os.geteuid", return_value=1000), \
             patch("hostwall.commands.run.HardeningRun") as hardening:
            hardening.return_value.execute.return_value = RunResult(state=RunState.DONE)
            result = runner.invoke(app, ["run", "--dry-run", "--config", config_path])

        assert result.exit_code == 0
        assert "Dry run" in result.output

    def test_unsupported_environment(self, config_path, audit):
        """The run's error decides the exit code."""
        failed = RunResult(
            state=RunState.FAILED,
            failed_state=RunState.DETECTING_ENVIRONMENT,
            error=UnsupportedEnvironment("No supported package manager found"),
        )
        with patch("hostwall.commands.run.os.geteuid", return_value=0), \
             patch("hostwall.commands.run.HardeningRun") as hardening:
            hardening.return_value.execute.return_value = failed
            result = runner.invoke(app, ["run", "--yes", "--config", config_path])

        assert result.exit_code == 6
        assert "No supported package manager found" in result.output
        audit.log_session_end.assert_called_once_with(6)

    def test_apply_failure(self, config_path):
        """Apply failures exit 16."""
        failed = RunResult(
            state=RunState.FAILED,
            failed_state=RunState.APPLYING_POLICY,
            error=ApplyFailure("ip6tables rejected: -A INPUT", details=["[bad] rule"]),
        )
        with patch("hostwall.commands.run.os.geteuid", return_value=0), \
             patch("hostwall.commands.run.HardeningRun") as hardening:
            hardening.return_value.execute.return_value = failed
            result = runner.invoke(app, ["run", "--yes", "--config", config_path])

        assert result.exit_code == 16
        assert "[bad] rule" in result.output


class TestRestoreCommand:
    """Tests for the restore command."""

    def test_restore(self, tmp_path):
        """Should restore both rule files from the configured directory."""
        config = tmp_path / "config.yaml"
        config.write_text(f"persistence:\n  rules_dir: {tmp_path}\n")

        with patch("hostwall.commands.run.os.geteuid", return_value=0), \
             patch("hostwall.commands.run.configure_audit_logger"), \
             patch("hostwall.commands.run.IptablesService") as iptables:
            result = runner.invoke(
                app, ["restore", "-H", "web-01", "--no-color", "--config", str(config)],
            )

        assert result.exit_code == 0
        paths = [c.args[1] for c in iptables.return_value.restore.call_args_list]
        assert paths == [tmp_path / "web-01.rules", tmp_path / "web-01.rules.v6"]

    def test_restore_missing_files(self, tmp_path):
        """Missing rule files exit with the apply failure code."""
        config = tmp_path / "config.yaml"
        config.write_text(f"persistence:\n  rules_dir: {tmp_path}\n")

        with patch("hostwall.commands.run.os.geteuid", return_value=0), \
             patch("hostwall.commands.run.configure_audit_logger"):
            result = runner.invoke(
                app, ["restore", "-H", "web-01", "--no-color", "--config", str(config)],
            )

        assert result.exit_code == 16


class TestConfigCommands:
    """Tests for the config sub-commands."""

    def test_example(self):
        """Should print the example file."""
        result = runner.invoke(app, ["config", "example", "--no-color"])
        assert result.exit_code == 0
        assert "dc_ports:" in result.output

    def test_init_and_validate(self, tmp_path):
        """An initialised file validates."""
        path = str(tmp_path / "config.yaml")

        init = runner.invoke(app, ["config", "init", "--config", path, "--no-color"])
        validate = runner.invoke(app, ["config", "validate", "--config", path, "--no-color"])

        assert init.exit_code == 0
        assert validate.exit_code == 0
        assert "Configuration is valid" in validate.output

    def test_init_refuses_overwrite(self, tmp_path):
        """A second init without --force fails."""
        path = str(tmp_path / "config.yaml")
        runner.invoke(app, ["config", "init", "--config", path])
        result = runner.invoke(app, ["config", "init", "--config", path])
        assert result.exit_code == 2

    def test_validate_invalid(self, tmp_path):
        """Invalid files exit with the configuration code."""
        path = tmp_path / "config.yaml"
        path.write_text("firewall:\n  ssh_rate_limit:\n    count: 50\n")
        result = runner.invoke(app, ["config", "validate", "--config", str(path)])
        assert result.exit_code == 2
