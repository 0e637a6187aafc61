"""Main CLI entry point for releasectl."""

import sys
from typing import Any

import click
from rich.console import Console

from releasectl import __version__
from releasectl.config import load_config
from releasectl.core.context import ReleaseCtlContext
from releasectl.core.output import OutputFormat
from releasectl.core.exceptions import ReleaseCtlError, ConfigError


CONTEXT_SETTINGS = {
    "help_option_names": ["-h", "--help"],
    "max_content_width": 120,
}


class OutputFormatType(click.ParamType):
    """Custom Click parameter type for output format."""

    name = "format"

    def convert(
        self,
        value: Any,
        param: click.Parameter | None,
        ctx: click.Context | None,
    ) -> OutputFormat:
        if isinstance(value, OutputFormat):
            return value
        try:
            return OutputFormat(value.lower())
        except ValueError:
            self.fail(
                f"Invalid format '{value}'. Choose from: table, json, yaml, raw",
                param,
                ctx,
            )


OUTPUT_FORMAT = OutputFormatType()


def print_version(ctx: click.Context, param: click.Parameter, value: bool) -> None:
    """Print version and exit."""
    if not value or ctx.resilient_parsing:
        return
    console = Console()
    console.print(f"releasectl version {__version__}")
    ctx.exit()


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "-p",
    "--profile",
    metavar="NAME",
    envvar="RELEASECTL_PROFILE",
    help="Configuration profile to use",
)
@click.option(
    "-o",
    "--output",
    "output_format",
    type=OUTPUT_FORMAT,
    metavar="FORMAT",
    help="Output format: table, json, yaml, raw",
)
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="Increase verbosity (-v for info, -vv for debug)",
)
@click.option(
    "-q",
    "--quiet",
    is_flag=True,
    help="Suppress non-essential output",
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show what would happen without making changes",
)
@click.option(
    "--no-color",
    is_flag=True,
    help="Disable colored output",
)
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(exists=True),
    metavar="FILE",
    envvar="RELEASECTL_CONFIG",
    help="Path to config file",
)
@click.option(
    "--version",
    is_flag=True,
    callback=print_version,
    expose_value=False,
    is_eager=True,
    help="Show version and exit",
)
@click.pass_context
def cli(
    ctx: click.Context,
    profile: str | None,
    output_format: OutputFormat | None,
    verbose: int,
    quiet: bool,
    dry_run: bool,
    no_color: bool,
    config_file: str | None,
) -> None:
    """ReleaseCtl - build, ship and verify Node.js releases.

    Builds a source tree once, copies it to every host of an environment
    over SSH, reloads it under PM2 and rolls back when the liveness check
    does not pass.

    \b
    Examples:
        releasectl release deploy --env production
        releasectl release list
        releasectl health check http://10.0.0.5/health
        releasectl scaffold workflow --env production

    \b
    Configuration:
        ~/.releasectl/config.yaml    User configuration
        ./releasectl.yaml            Project configuration
        RELEASECTL_*                 Environment variables
    """
    try:
        config = load_config(config_file, profile)

        ctx.obj = ReleaseCtlContext(
            config=config,
            profile=profile,
            output_format=output_format,
            verbose=verbose,
            quiet=quiet,
            dry_run=dry_run,
            color=not no_color,
        )

        if dry_run and not quiet:
            ctx.obj.output.print_warning("Dry-run mode enabled - no changes will be made")

    except ConfigError as e:
        console = Console(stderr=True)
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)


def register_commands() -> None:
    """Register all command groups."""
    from releasectl.commands.release import release
    from releasectl.commands.health import health
    from releasectl.commands.scaffold import scaffold

    cli.add_command(release)
    cli.add_command(health)
    cli.add_command(scaffold)


register_commands()


@cli.command()
@click.pass_context
def config(ctx: click.Context) -> None:
    """Show current configuration."""
    rctx: ReleaseCtlContext = ctx.obj
    profile = rctx.profile
    config_data = {
        "profile": rctx.profile_name,
        "output_format": rctx.output_format.value,
        "dry_run": rctx.dry_run,
        "verbose": rctx.verbose,
        "state_dir": str(profile.deploy.get_state_dir()),
        "app": profile.app.name,
        "deploy_path": profile.app.deploy_path,
        "health_url": profile.health.url,
        "hosts": ", ".join(profile.hosts) or "-",
        "environments": ", ".join(
            f"{name} ({len(env.hosts)} hosts)" for name, env in profile.environments.items()
        )
        or "-",
    }
    rctx.output.print_data(config_data, title="Current Configuration")


def main() -> None:
    """Main entry point."""
    try:
        cli()
    except ReleaseCtlError as e:
        console = Console(stderr=True)
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        console = Console(stderr=True)
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
