"""Click context object for sharing state across commands."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import click
from rich.markup import escape

from releasectl.config import ReleaseCtlConfig, ProfileConfig, get_default_config
from releasectl.core.output import OutputFormat, OutputFormatter
from releasectl.core.logging import LogLevel, setup_logging

if TYPE_CHECKING:
    from releasectl.release.coordinator import ReleaseCoordinator
    from releasectl.release.state import ReleaseStore


class ReleaseCtlContext:
    """Shared context object for releasectl commands.

    This object is passed through Click's context mechanism and provides
    access to configuration, the release store and the coordinator.
    """

    def __init__(
        self,
        config: ReleaseCtlConfig | None = None,
        profile: str | None = None,
        output_format: OutputFormat | None = None,
        verbose: int = 0,
        quiet: bool = False,
        dry_run: bool = False,
        color: bool = True,
    ):
        self._config = config or get_default_config()
        self._profile_name = profile or "default"

        # CLI overrides config
        self._output_format = output_format or self._config.global_settings.output_format
        self._verbose = verbose
        self._quiet = quiet
        self._dry_run = dry_run or self._config.global_settings.dry_run
        self._color = color

        setup_logging(
            LogLevel.from_flags(verbose, quiet, self._config.global_settings.verbosity),
            rich_output=color,
        )

        self._output = OutputFormatter(
            format=self._output_format,
            color=color,
            quiet=quiet,
        )

        # Lazy-loaded
        self._store: ReleaseStore | None = None
        self._coordinator: ReleaseCoordinator | None = None

    @property
    def config(self) -> ReleaseCtlConfig:
        """Get the loaded configuration."""
        return self._config

    @property
    def profile(self) -> ProfileConfig:
        """Get the current profile configuration."""
        return self._config.get_profile(self._profile_name)

    @property
    def profile_name(self) -> str:
        return self._profile_name

    @property
    def output(self) -> OutputFormatter:
        return self._output

    @property
    def output_format(self) -> OutputFormat:
        return self._output_format

    @property
    def dry_run(self) -> bool:
        """Check if dry-run mode is enabled."""
        return self._dry_run

    @property
    def verbose(self) -> int:
        return self._verbose

    @property
    def quiet(self) -> bool:
        return self._quiet

    @property
    def store(self) -> "ReleaseStore":
        """Get or create the release store."""
        if self._store is None:
            from releasectl.release.state import ReleaseStore

            self._store = ReleaseStore(self.profile.deploy.get_state_dir())
        return self._store

    @property
    def coordinator(self) -> "ReleaseCoordinator":
        """Get or create the release coordinator."""
        if self._coordinator is None:
            from releasectl.release.coordinator import ReleaseCoordinator

            self._coordinator = ReleaseCoordinator(self.profile, self.store)
        return self._coordinator

    def confirm(self, message: str, default: bool = False) -> bool:
        """Ask for user confirmation.

        In dry-run mode, always returns True without prompting.
        """
        if self._dry_run:
            self._output.print(f"[dim]{escape(f'[dry-run] Would prompt: {message}')}[/dim]")
            return True
        if not self._config.global_settings.confirm_destructive:
            return True
        return self._output.confirm(message, default)

    def log_dry_run(self, action: str, details: dict[str, Any] | None = None) -> None:
        """Log a dry-run action."""
        if self._dry_run:
            msg = f"[dry-run] {action}"
            if details:
                detail_str = ", ".join(f"{k}={v}" for k, v in details.items())
                msg = f"{msg} ({detail_str})"
            self._output.print(f"[dim]{escape(msg)}[/dim]")


pass_context = click.make_pass_decorator(ReleaseCtlContext, ensure=True)
