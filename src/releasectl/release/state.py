"""Release state persistence."""

from __future__ import annotations

import json
import os
import re
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from releasectl.core.exceptions import StateError
from releasectl.core.logging import get_logger
from releasectl.release.models import Release, ReleaseStatus, TargetHost

logger = get_logger(__name__)


class ReleaseStore:
    """Persist release records and per-host last-known-good pointers."""

    def __init__(self, state_dir: str | Path | None = None):
        """Initialize release store.

        Args:
            state_dir: Directory to store release state
        """
        if state_dir:
            self._state_dir = Path(state_dir).expanduser()
        else:
            self._state_dir = Path.home() / ".releasectl" / "state"

        self._releases_dir = self._state_dir / "releases"
        self._hosts_dir = self._state_dir / "hosts"
        self._releases_dir.mkdir(parents=True, exist_ok=True)
        self._hosts_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    def _write_json(self, path: Path, data: Any) -> None:
        """Write JSON atomically via a temp file in the same directory."""
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def save(self, release: Release) -> None:
        """Save release state.

        Args:
            release: Release to save
        """
        state_file = self._releases_dir / f"{release.id}.json"

        with self._lock:
            try:
                self._write_json(state_file, release.to_dict())
            except (OSError, TypeError, ValueError) as e:
                raise StateError(f"Failed to save release state: {e}", release_id=release.id)

        logger.debug(f"Saved release {release.id} ({release.status.value})")

    def load(self, release_id: str) -> Release:
        """Load release state.

        Args:
            release_id: Release ID

        Returns:
            Loaded Release
        """
        state_file = self._releases_dir / f"{release_id}.json"

        if not state_file.exists():
            raise StateError(f"Release not found: {release_id}", release_id=release_id)

        try:
            with open(state_file) as f:
                data = json.load(f)
            return Release.from_dict(data)
        except (OSError, ValueError, KeyError) as e:
            raise StateError(f"Failed to load release state: {e}", release_id=release_id)

    def delete(self, release_id: str) -> None:
        """Delete release state."""
        state_file = self._releases_dir / f"{release_id}.json"

        with self._lock:
            if state_file.exists():
                state_file.unlink()
                logger.debug(f"Deleted release state {release_id}")

    def list(
        self,
        status: ReleaseStatus | None = None,
        environment: str | None = None,
        host: str | None = None,
        limit: int = 50,
    ) -> list[Release]:
        """List releases, newest first.

        Args:
            status: Filter by status
            environment: Filter by environment
            host: Filter by target host
            limit: Maximum releases to return

        Returns:
            List of Releases
        """
        releases: list[Release] = []

        for state_file in self._releases_dir.glob("*.json"):
            try:
                with open(state_file) as f:
                    release = Release.from_dict(json.load(f))
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Failed to load release {state_file}: {e}")
                continue

            if status and release.status != status:
                continue
            if environment and release.environment != environment:
                continue
            if host and release.host != host:
                continue

            releases.append(release)

        releases.sort(key=lambda r: r.created_at, reverse=True)

        return releases[:limit]

    def list_active(self, host: str | None = None) -> list[Release]:
        """List releases currently deploying or health checking."""
        return [r for r in self.list(host=host, limit=1000) if r.is_active]

    def _host_file(self, name: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", name)
        return self._hosts_dir / f"{safe}.json"

    def _read_host(self, path: Path) -> TargetHost:
        try:
            with open(path) as f:
                return TargetHost.from_dict(json.load(f))
        except (OSError, ValueError, KeyError) as e:
            raise StateError(f"Failed to read host record {path.name}: {e}")

    def get_host(self, name: str) -> TargetHost:
        """Get the stored record for a host, or a blank one."""
        path = self._host_file(name)
        if not path.exists():
            return TargetHost(name=name)
        return self._read_host(path)

    def list_hosts(self) -> list[TargetHost]:
        """List all known host records."""
        hosts = [self._read_host(path) for path in self._hosts_dir.glob("*.json")]
        return sorted(hosts, key=lambda h: h.name)

    def set_last_known_good(self, name: str, release_id: str, address: str = "") -> TargetHost:
        """Record a release as the last-known-good for a host.

        Only the release coordinator calls this, after a release succeeded and
        while it holds the host lock. Each host has its own record file, so
        updates for different hosts never overwrite each other.
        """
        with self._lock:
            host = self.get_host(name)
            host.last_known_good = release_id
            host.updated_at = datetime.utcnow()
            if address:
                host.address = address
            try:
                self._write_json(self._host_file(name), host.to_dict())
            except OSError as e:
                raise StateError(f"Failed to save host record: {e}", release_id=release_id)

        logger.info(f"Host {name} last-known-good is now {release_id}")
        return host

    def cleanup_old(self, days: int = 30) -> int:
        """Remove terminal releases older than the given number of days.

        Returns:
            Number of releases removed
        """
        cutoff = datetime.utcnow().timestamp() - (days * 86400)
        pinned = {h.last_known_good for h in self.list_hosts() if h.last_known_good}
        removed = 0

        for release in self.list(limit=100000):
            if not release.is_complete or release.id in pinned:
                continue
            if release.created_at.timestamp() < cutoff:
                self.delete(release.id)
                removed += 1

        if removed > 0:
            logger.info(f"Cleaned up {removed} old releases")

        return removed
