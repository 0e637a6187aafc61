"""Core utilities and shared components for releasectl."""

# Note: Import context lazily to avoid circular imports
# Use: from releasectl.core.context import ReleaseCtlContext, pass_context
from releasectl.core.exceptions import ReleaseCtlError, ConfigError
from releasectl.core.output import OutputFormatter, console

__all__ = [
    "ReleaseCtlError",
    "ConfigError",
    "OutputFormatter",
    "console",
]
