"""Per-host mutual exclusion for releases."""

import fcntl
import json
import os
import re
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from releasectl.core.exceptions import HostBusyError
from releasectl.core.logging import get_logger

logger = get_logger(__name__)


class HostLockRegistry:
    """Serialize releases to the same host.

    A ``threading.Lock`` per host guards releases within this process and an
    exclusive ``flock`` on ``<lock_dir>/<host>.lock`` guards against other
    releasectl processes sharing the same state directory. The kernel drops
    the ``flock`` when its holder exits, so a crashed release never leaves
    the host locked. Lock files are never unlinked; their content only names
    the current holder.
    """

    def __init__(self, lock_dir: str | Path, poll_interval: float = 0.2):
        self._lock_dir = Path(lock_dir)
        self._lock_dir.mkdir(parents=True, exist_ok=True)
        self._poll_interval = poll_interval
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _thread_lock(self, host: str) -> threading.Lock:
        with self._guard:
            if host not in self._locks:
                self._locks[host] = threading.Lock()
            return self._locks[host]

    def _lock_path(self, host: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", host)
        return self._lock_dir / f"{safe}.lock"

    def holder(self, host: str) -> str | None:
        """Return the release id recorded by the current lock holder, if any."""
        try:
            content = self._lock_path(host).read_text()
        except FileNotFoundError:
            return None
        except OSError:
            return "unknown"
        if not content.strip():
            return None
        try:
            return json.loads(content).get("release_id")
        except ValueError:
            return "unknown"

    @contextmanager
    def hold(self, host: str, release_id: str, timeout: float) -> Iterator[None]:
        """Hold the host lock for the duration of the block.

        Raises:
            HostBusyError: If the lock is not acquired within ``timeout``
        """
        deadline = time.monotonic() + timeout
        lock = self._thread_lock(host)

        if not lock.acquire(timeout=max(timeout, 0)):
            raise HostBusyError(
                f"Host {host} is busy with another release",
                host=host,
                holder=self.holder(host),
            )

        try:
            fd = self._acquire_file(host, release_id, deadline)
            logger.debug(f"Acquired lock for {host} ({release_id})")
            try:
                yield
            finally:
                self._release_file(fd)
                logger.debug(f"Released lock for {host} ({release_id})")
        finally:
            lock.release()

    def _acquire_file(self, host: str, release_id: str, deadline: float) -> int:
        fd = os.open(self._lock_path(host), os.O_CREAT | os.O_RDWR, 0o644)
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        holder = self.holder(host)
                        raise HostBusyError(
                            f"Host {host} is locked by release {holder}",
                            host=host,
                            holder=holder,
                        )
                    time.sleep(min(self._poll_interval, remaining))

            payload = json.dumps(
                {"release_id": release_id, "pid": os.getpid(), "acquired_at": time.time()}
            )
            os.ftruncate(fd, 0)
            os.pwrite(fd, payload.encode(), 0)
            return fd
        except BaseException:
            os.close(fd)
            raise

    def _release_file(self, fd: int) -> None:
        try:
            os.ftruncate(fd, 0)
        finally:
            # Closing the descriptor drops the flock
            os.close(fd)
