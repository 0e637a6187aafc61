"""Tests for per-host release locks."""

import json
import os
import threading
import time

import pytest

from releasectl.core.exceptions import HostBusyError
from releasectl.release.locks import HostLockRegistry


class TestHostLockRegistry:
    """Tests for HostLockRegistry."""

    def test_hold_writes_lock_file(self, locks, state_dir):
        with locks.hold("web-1", "rel00001", timeout=1):
            data = json.loads((state_dir / "locks" / "web-1.lock").read_text())
            assert data["release_id"] == "rel00001"
            assert data["pid"] == os.getpid()
            assert locks.holder("web-1") == "rel00001"

        assert (state_dir / "locks" / "web-1.lock").read_text() == ""
        assert locks.holder("web-1") is None

    def test_released_on_error(self, locks):
        with pytest.raises(RuntimeError):
            with locks.hold("web-1", "rel00001", timeout=1):
                raise RuntimeError("boom")

        with locks.hold("web-1", "rel00002", timeout=0.1):
            assert locks.holder("web-1") == "rel00002"

    def test_busy_in_process(self, locks):
        with locks.hold("web-1", "rel00001", timeout=1):
            result: list[Exception] = []

            def contend():
                try:
                    with locks.hold("web-1", "rel00002", timeout=0.05):
                        pass
                except HostBusyError as e:
                    result.append(e)

            t = threading.Thread(target=contend)
            t.start()
            t.join()

        assert len(result) == 1
        assert result[0].host == "web-1"
        assert result[0].holder == "rel00001"
        assert result[0].reason == "host_busy"

    def test_other_hosts_independent(self, locks):
        with locks.hold("web-1", "rel00001", timeout=1):
            with locks.hold("web-2", "rel00002", timeout=0.05):
                assert locks.holder("web-2") == "rel00002"

    def test_busy_across_processes(self, state_dir):
        # A second registry on the same directory behaves like another process
        first = HostLockRegistry(state_dir / "locks", poll_interval=0.01)
        second = HostLockRegistry(state_dir / "locks", poll_interval=0.01)

        with first.hold("web-1", "rel00001", timeout=1):
            with pytest.raises(HostBusyError, match="rel00001"):
                with second.hold("web-1", "rel00002", timeout=0.05):
                    pass

    def test_waits_for_release(self, locks):
        order: list[str] = []
        acquired = threading.Event()

        def first():
            with locks.hold("web-1", "rel00001", timeout=1):
                order.append("first-start")
                acquired.set()
                time.sleep(0.05)
                order.append("first-end")

        t = threading.Thread(target=first)
        t.start()
        acquired.wait(1)
        with locks.hold("web-1", "rel00002", timeout=2):
            order.append("second")
        t.join()

        assert order == ["first-start", "first-end", "second"]

    def test_leftover_lock_file_is_not_held(self, state_dir):
        # A crashed holder leaves its record behind but not its flock
        lock_dir = state_dir / "locks"
        lock_dir.mkdir(parents=True)
        (lock_dir / "web-1.lock").write_text(json.dumps({"release_id": "dead0001", "pid": 1}))
        registry = HostLockRegistry(lock_dir, poll_interval=0.01)

        with registry.hold("web-1", "rel00001", timeout=0.1):
            assert registry.holder("web-1") == "rel00001"

    def test_single_holder_across_registries(self, state_dir):
        registries = [HostLockRegistry(state_dir / "locks", poll_interval=0.001) for _ in range(2)]
        guard = threading.Lock()
        holders = 0
        peak = 0
        errors: list[Exception] = []

        def worker(registry: HostLockRegistry, name: str) -> None:
            nonlocal holders, peak
            for i in range(20):
                try:
                    with registry.hold("web-1", f"{name}-{i}", timeout=5):
                        with guard:
                            holders += 1
                            peak = max(peak, holders)
                        time.sleep(0.001)
                        with guard:
                            holders -= 1
                except Exception as e:
                    errors.append(e)

        threads = [
            threading.Thread(target=worker, args=(registries[n % 2], f"rel-{n}"))
            for n in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert peak == 1

    def test_host_name_sanitized(self, locks, state_dir):
        with locks.hold("deploy@10.0.0.1:22", "rel00001", timeout=1):
            assert (state_dir / "locks" / "deploy_10.0.0.1_22.lock").exists()
