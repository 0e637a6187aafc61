"""Release data models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
import uuid

from releasectl.core.exceptions import InvalidTransitionError


class ReleaseStatus(str, Enum):
    """Release lifecycle status."""

    PENDING = "pending"
    BUILDING = "building"
    DEPLOYING = "deploying"
    HEALTH_CHECKING = "health_checking"
    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset(
    {ReleaseStatus.SUCCEEDED, ReleaseStatus.ROLLED_BACK, ReleaseStatus.FAILED}
)

# Statuses during which the host lock must be held
ACTIVE_STATUSES = frozenset({ReleaseStatus.DEPLOYING, ReleaseStatus.HEALTH_CHECKING})

ALLOWED_TRANSITIONS: dict[ReleaseStatus, frozenset[ReleaseStatus]] = {
    # Operator rollbacks reuse an artifact already on the host and skip building
    ReleaseStatus.PENDING: frozenset(
        {ReleaseStatus.BUILDING, ReleaseStatus.DEPLOYING, ReleaseStatus.FAILED}
    ),
    ReleaseStatus.BUILDING: frozenset({ReleaseStatus.DEPLOYING, ReleaseStatus.FAILED}),
    ReleaseStatus.DEPLOYING: frozenset(
        {ReleaseStatus.HEALTH_CHECKING, ReleaseStatus.ROLLED_BACK, ReleaseStatus.FAILED}
    ),
    ReleaseStatus.HEALTH_CHECKING: frozenset(
        {ReleaseStatus.SUCCEEDED, ReleaseStatus.ROLLED_BACK, ReleaseStatus.FAILED}
    ),
    ReleaseStatus.SUCCEEDED: frozenset(),
    ReleaseStatus.ROLLED_BACK: frozenset(),
    ReleaseStatus.FAILED: frozenset(),
}


def _new_release_id() -> str:
    return str(uuid.uuid4())[:8]


@dataclass(frozen=True)
class SourceRef:
    """Local source tree and the commit it should be at."""

    path: str = "."
    commit: str | None = None


@dataclass(frozen=True)
class ReleaseTrigger:
    """External event that starts a release."""

    source: SourceRef
    environment: str


@dataclass(frozen=True)
class Artifact:
    """Built, immutable release bundle."""

    path: str
    sha256: str
    size: int
    source_ref: str | None = None

    @property
    def filename(self) -> str:
        return f"{self.sha256[:16]}.tar.gz"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "path": self.path,
            "sha256": self.sha256,
            "size": self.size,
            "source_ref": self.source_ref,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Artifact":
        """Create from dictionary."""
        return cls(
            path=data["path"],
            sha256=data["sha256"],
            size=data.get("size", 0),
            source_ref=data.get("source_ref"),
        )


@dataclass
class HealthCheckResult:
    """Outcome of a single liveness probe."""

    target: str
    timestamp: datetime
    healthy: bool
    latency: float
    status_code: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "target": self.target,
            "timestamp": self.timestamp.isoformat(),
            "healthy": self.healthy,
            "latency": round(self.latency, 4),
            "status_code": self.status_code,
            "error": self.error,
        }


@dataclass
class TargetHost:
    """Deployment target and its last confirmed-healthy release."""

    name: str
    address: str = ""
    last_known_good: str | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "address": self.address,
            "last_known_good": self.last_known_good,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TargetHost":
        """Create from dictionary."""
        updated_at = data.get("updated_at")
        return cls(
            name=data["name"],
            address=data.get("address", ""),
            last_known_good=data.get("last_known_good"),
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
        )


@dataclass
class ReleaseEvent:
    """Release event for audit trail."""

    timestamp: datetime
    event_type: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type,
            "message": self.message,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReleaseEvent":
        """Create from dictionary."""
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            event_type=data.get("event_type", ""),
            message=data.get("message", ""),
            details=data.get("details", {}),
        )


@dataclass
class Release:
    """A single release of a source reference to one target host."""

    # Identity
    id: str = field(default_factory=_new_release_id)
    source_ref: str | None = None
    environment: str = ""
    host: str = ""

    # Artifact
    artifact: Artifact | None = None
    previous_release: str | None = None
    rollback_of: str | None = None
    rollback_attempts: int = 0

    # Status
    status: ReleaseStatus = ReleaseStatus.PENDING
    reason: str | None = None
    message: str = ""

    # Timing
    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    # History
    events: list[ReleaseEvent] = field(default_factory=list)
    status_history: list[ReleaseStatus] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.status_history:
            self.status_history = [self.status]

    def transition(self, status: ReleaseStatus, reason: str | None = None, message: str = "") -> None:
        """Move to a new status, rejecting illegal transitions."""
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Illegal transition {self.status.value} -> {status.value}",
                release_id=self.id,
            )

        now = datetime.utcnow()
        if self.started_at is None and status != ReleaseStatus.PENDING:
            self.started_at = now

        self.status = status
        self.status_history.append(status)
        if reason is not None:
            self.reason = reason
        if message:
            self.message = message
        if status in TERMINAL_STATUSES:
            self.completed_at = now

        self.add_event(status.value, message or f"Release {status.value}", {"reason": reason} if reason else None)

    def add_event(self, event_type: str, message: str, details: dict[str, Any] | None = None) -> None:
        """Add an event to the release history."""
        self.events.append(
            ReleaseEvent(
                timestamp=datetime.utcnow(),
                event_type=event_type,
                message=message,
                details=details or {},
            )
        )

    @property
    def duration_seconds(self) -> float | None:
        """Get release duration in seconds."""
        if self.started_at:
            end = self.completed_at or datetime.utcnow()
            return (end - self.started_at).total_seconds()
        return None

    @property
    def deployed_id(self) -> str:
        """Release directory on the host that this release activates."""
        return self.rollback_of or self.id

    @property
    def is_active(self) -> bool:
        """Check if the release currently holds its host."""
        return self.status in ACTIVE_STATUSES

    @property
    def is_complete(self) -> bool:
        """Check if the release reached a terminal state."""
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "source_ref": self.source_ref,
            "environment": self.environment,
            "host": self.host,
            "artifact": self.artifact.to_dict() if self.artifact else None,
            "previous_release": self.previous_release,
            "rollback_of": self.rollback_of,
            "rollback_attempts": self.rollback_attempts,
            "status": self.status.value,
            "reason": self.reason,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "status_history": [s.value for s in self.status_history],
            "events": [e.to_dict() for e in self.events],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Release":
        """Create from dictionary."""
        release = cls(
            id=data.get("id", _new_release_id()),
            source_ref=data.get("source_ref"),
            environment=data.get("environment", ""),
            host=data.get("host", ""),
            artifact=Artifact.from_dict(data["artifact"]) if data.get("artifact") else None,
            previous_release=data.get("previous_release"),
            rollback_of=data.get("rollback_of"),
            rollback_attempts=data.get("rollback_attempts", 0),
            status=ReleaseStatus(data.get("status", "pending")),
            reason=data.get("reason"),
            message=data.get("message", ""),
            status_history=[ReleaseStatus(s) for s in data.get("status_history", [])],
            events=[ReleaseEvent.from_dict(e) for e in data.get("events", [])],
        )

        if data.get("created_at"):
            release.created_at = datetime.fromisoformat(data["created_at"])
        if data.get("started_at"):
            release.started_at = datetime.fromisoformat(data["started_at"])
        if data.get("completed_at"):
            release.completed_at = datetime.fromisoformat(data["completed_at"])

        return release
