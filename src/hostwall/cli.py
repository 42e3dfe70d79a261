"""Main CLI entry point using Typer.

This module defines the root CLI application and global options.
Commands are implemented in hostwall.commands.
"""

from typing import Annotated

import typer
from rich.console import Console

from hostwall import __version__
from hostwall.core.context import create_context
from hostwall.core.config import (
    AppConfig,
    get_example_config,
    init_config,
)
from hostwall.core.exceptions import HostwallError
from hostwall.commands.run import (
    ConfigOption,
    NoColorOption,
    VerboseOption,
    _handle_error,
    compile_cmd,
    restore,
    run,
)


app = typer.Typer(
    name="hostwall",
    help="Default-deny host firewall with boot-time persistence.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)

config_app = typer.Typer(
    name="config",
    help="Configuration management.",
    no_args_is_help=True,
)

app.command("run")(run)
app.command("compile")(compile_cmd)
app.command("restore")(restore)
app.add_typer(config_app, name="config")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console = Console()
        console.print(f"hostwall version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """hostwall - default-deny firewall for a single Linux host.

    Compiles an IPv4 and IPv6 policy from a few operator answers,
    applies it, saves it and replays it on every boot (systemd or OpenRC).

    [bold]Examples:[/bold]
        sudo hostwall run
        hostwall compile -t 10.0.0.5
        hostwall config show
    """


# ============================================================================
# Config commands
# ============================================================================

@config_app.command("show")
def config_show(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Show the effective configuration (file, defaults and environment)."""
    ctx = create_context(verbose=verbose, no_color=no_color, config=config)

    try:
        app_config = ctx.config

        ctx.console.print()
        ctx.console.print(f"[bold]Configuration file:[/bold] {ctx.config_path}")
        ctx.console.print(f"[bold]File exists:[/bold] {ctx.config_path.exists()}")
        ctx.console.print()

        ctx.console.yaml(app_config.config.to_yaml(), title="Configuration")
    except HostwallError as e:
        _handle_error(e)


@config_app.command("init")
def config_init(
    config: ConfigOption = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Overwrite an existing file.", is_flag=True),
    ] = False,
    no_color: NoColorOption = False,
) -> None:
    """Create a configuration file with defaults and comments."""
    ctx = create_context(no_color=no_color, config=config)

    try:
        init_config(ctx.config_path, force=force)
    except HostwallError as e:
        _handle_error(e)

    ctx.console.success(f"Configuration file created: {ctx.config_path}")
    ctx.console.info("Edit the file to customize settings, then run: hostwall run")


@config_app.command("validate")
def config_validate(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Validate a configuration file."""
    ctx = create_context(verbose=verbose, no_color=no_color, config=config)

    try:
        app_config = AppConfig(config_path=ctx.config_path)
        if not ctx.config_path.exists():
            ctx.console.warn(f"{ctx.config_path} does not exist; defaults are in effect")
            return

        ctx.console.success(f"Configuration is valid: {ctx.config_path}")
        if ctx.is_verbose:
            ctx.console.yaml(app_config.config.to_yaml())

    except HostwallError as e:
        _handle_error(e)


@config_app.command("example")
def config_example(no_color: NoColorOption = False) -> None:
    """Print an example configuration file."""
    ctx = create_context(no_color=no_color)
    ctx.console.print(get_example_config(), markup=False)


if __name__ == "__main__":
    app()
