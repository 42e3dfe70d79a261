"""Firewall commands.

- run: harden this host (detect, ask, compile, apply, persist)
- compile: print the compiled rulesets without touching the host
- restore: reload the saved rule files, as the boot unit does
"""

import os
import sys
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.markup import escape

from hostwall.core import (
    AuditEventType,
    CommandExecutor,
    ExecutionContext,
    HostwallError,
    configure_audit_logger,
    console,
    create_context,
)
from hostwall.core.config import DEFAULT_CONFIG_PATH
from hostwall.policy.addresses import parse_address_list
from hostwall.policy.compiler import PolicyInputs, compile_policies
from hostwall.services.iptables import IptablesService
from hostwall.services.operator_input import PromptInputSource, StaticInputSource
from hostwall.services.orchestrator import HardeningRun, RunResult, RunState
from hostwall.services.rule_store import RuleStore


# Shared options
DryRunOption = Annotated[
    bool,
    typer.Option("--dry-run", "-n", help="Preview changes without executing.", is_flag=True),
]
YesOption = Annotated[
    bool,
    typer.Option("--yes", "-y", help="Skip confirmation prompts.", is_flag=True),
]
VerboseOption = Annotated[
    int,
    typer.Option("--verbose", "-v", count=True, help="Increase verbosity (-v, -vv)."),
]
QuietOption = Annotated[
    bool,
    typer.Option("--quiet", "-q", help="Only show errors.", is_flag=True),
]
NoColorOption = Annotated[
    bool,
    typer.Option("--no-color", help="Disable colored output.", is_flag=True),
]
ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config", "-c",
        help=f"Path to configuration file. Default: {DEFAULT_CONFIG_PATH}",
        dir_okay=False,
    ),
]
HostnameOption = Annotated[
    Optional[str],
    typer.Option("--hostname", "-H", help="System hostname; names the rule files."),
]


def _check_root(ctx: ExecutionContext) -> None:
    """Check for root privileges."""
    if os.geteuid() != 0 and not ctx.dry_run:
        ctx.console.error("This operation requires root privileges")
        ctx.console.hint("Run with: sudo hostwall ... or preview with --dry-run")
        raise typer.Exit(6)


def _handle_error(error: HostwallError) -> None:
    """Print a HostwallError with details and hint, then exit with its code."""
    console.error(error.message)

    for detail in error.details:
        console.print(f"  [dim]{escape(detail)}[/dim]")

    if error.hint:
        console.hint(error.hint)

    raise typer.Exit(error.exit_code)


def _report(ctx: ExecutionContext, result: RunResult) -> None:
    details = {
        "Hostname": result.hostname or "-",
        "Domain joined": "yes" if result.inputs and result.inputs.in_domain else "no",
    }
    for family, policy in result.policies.items():
        details[f"{family.label} rules"] = len(policy.effective_rules())
    for artifact in result.artifacts:
        details[f"{artifact.family.label} rule file"] = str(artifact.path)
    if result.persistence:
        details["Replay script"] = str(result.persistence.restore_script)
        details["Boot unit"] = str(result.persistence.unit_path)
    if result.disabled_managers:
        details["Disabled"] = ", ".join(result.disabled_managers)

    title = "Hardening (dry run)" if ctx.dry_run else "Hardening"
    ctx.console.operation_summary(title, result.ok, details)


def run(
    hostname: HostnameOption = None,
    team_ips: Annotated[
        Optional[str],
        typer.Option("--team-ips", "-t", help="Space-separated addresses allowed to SSH in."),
    ] = None,
    dc_ips: Annotated[
        Optional[str],
        typer.Option("--dc-ips", "-d", help="Space-separated domain controller addresses."),
    ] = None,
    dry_run: DryRunOption = False,
    yes: YesOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Harden this host with a default-deny firewall that survives reboots.

    Replaces every IPv4 and IPv6 filter rule, saves the result to
    <rules_dir>/<hostname>.rules[.v6] and registers a boot unit that
    restores it. Values not given as options are asked for.

    [bold]Examples:[/bold]
        sudo hostwall run
        sudo hostwall run -H web-01 -t "10.0.0.5 10.0.0.6" --yes
        hostwall run --dry-run -H web-01 -t 10.0.0.5
    """
    ctx = create_context(
        dry_run=dry_run,
        yes=yes,
        verbose=verbose,
        quiet=quiet,
        no_color=no_color,
        config=config,
    )
    _check_root(ctx)

    try:
        app_config = ctx.config
    except HostwallError as e:
        _handle_error(e)

    audit = configure_audit_logger(app_config.logging.audit_log)
    audit.log_session_start("run", sys.argv[1:])

    if not ctx.dry_run and not ctx.console.confirm(
        "Replace all firewall rules on this host?",
        default=False,
        skip_confirm=not ctx.should_confirm,
    ):
        ctx.console.info("Aborted")
        audit.log_session_end(1)
        raise typer.Exit(1)

    source = StaticInputSource(
        hostname=hostname,
        team_addresses=team_ips,
        dc_addresses=dc_ips,
        fallback=PromptInputSource(ctx.console),
    )
    result = HardeningRun(ctx, CommandExecutor(ctx), source).execute()
    audit.log_session_end(result.exit_code)

    if not result.ok:
        ctx.console.error(f"Run failed during {result.failed_state.value.replace('_', ' ')}")
        if result.policies and result.failed_state is RunState.PERSISTING_POLICY:
            ctx.console.warn("Rules are active now but may not survive a reboot")
        _handle_error(result.error)

    _report(ctx, result)
    if ctx.dry_run:
        ctx.console.info("Dry run: no changes were made")
    else:
        ctx.console.success("Configuration complete. Rules will persist across reboots.")


def compile_cmd(
    team_ips: Annotated[
        str,
        typer.Option("--team-ips", "-t", help="Space-separated addresses allowed to SSH in."),
    ],
    dc_ips: Annotated[
        str,
        typer.Option("--dc-ips", "-d", help="Space-separated domain controller addresses."),
    ] = "",
    domain: Annotated[
        bool,
        typer.Option("--domain", help="Compile as a domain-joined host.", is_flag=True),
    ] = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Print the compiled rulesets in iptables-restore format.

    Does not touch the host and does not need root.

    [bold]Examples:[/bold]
        hostwall compile -t 10.0.0.5
        hostwall compile -t 10.0.0.5 -d "10.0.0.10 fd00::10" --domain --no-color
    """
    ctx = create_context(no_color=no_color, config=config)

    try:
        firewall = ctx.config.firewall
        strictness = firewall.address_strictness
        inputs = PolicyInputs(
            team_addresses=parse_address_list(team_ips, strictness),
            dc_addresses=parse_address_list(dc_ips, strictness),
            in_domain=domain,
        )
        policies = compile_policies(firewall, inputs)
    except HostwallError as e:
        _handle_error(e)

    for policy in policies.values():
        ctx.console.rules(policy.render(), title=f"{policy.family.label} policy")


def restore(
    hostname: Annotated[
        str,
        typer.Option("--hostname", "-H", help="Hostname the rule files were saved under."),
    ],
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Reload the saved rule files into the live firewall.

    Does the same as the boot unit, for use after manual changes.
    """
    ctx = create_context(dry_run=dry_run, verbose=verbose, no_color=no_color, config=config)
    _check_root(ctx)

    try:
        persistence = ctx.config.persistence
        audit = configure_audit_logger(ctx.config.logging.audit_log)
        executor = CommandExecutor(ctx)
        iptables = IptablesService(ctx, executor)
        store = RuleStore(ctx, executor, iptables, persistence.rules_dir, hostname)
        for artifact in store.artifacts():
            iptables.restore(artifact.family, artifact.path)
            if not ctx.dry_run:
                audit.log_success(
                    AuditEventType.FIREWALL_APPLY, artifact.family.binary, hostname,
                    message=f"Restored from {artifact.path}",
                )
    except HostwallError as e:
        _handle_error(e)

    ctx.console.success("Saved rules restored")
