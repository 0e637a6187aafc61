"""Release orchestration: build, transport, supervise, verify, coordinate."""

from releasectl.release.models import (
    Artifact,
    HealthCheckResult,
    Release,
    ReleaseEvent,
    ReleaseStatus,
    ReleaseTrigger,
    SourceRef,
    TargetHost,
)
from releasectl.release.state import ReleaseStore
from releasectl.release.coordinator import ReleaseCoordinator

__all__ = [
    "Artifact",
    "HealthCheckResult",
    "Release",
    "ReleaseEvent",
    "ReleaseStatus",
    "ReleaseTrigger",
    "SourceRef",
    "TargetHost",
    "ReleaseStore",
    "ReleaseCoordinator",
]
