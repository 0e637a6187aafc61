"""Tests for the release store."""

import json
import threading
from datetime import datetime, timedelta

import pytest

from releasectl.core.exceptions import StateError
from releasectl.release.models import Release, ReleaseStatus
from releasectl.release.state import ReleaseStore


def _release(host: str = "web-1", environment: str = "production", *statuses: ReleaseStatus) -> Release:
    release = Release(host=host, environment=environment)
    for status in statuses:
        release.transition(status)
    return release


class TestReleaseStore:
    """Tests for ReleaseStore."""

    def test_save_and_load(self, store):
        release = _release()
        store.save(release)

        loaded = store.load(release.id)
        assert loaded.id == release.id
        assert loaded.host == "web-1"

    def test_load_missing(self, store):
        with pytest.raises(StateError, match="not found"):
            store.load("missing")

    def test_load_corrupt(self, store):
        (store.state_dir / "releases" / "broken.json").write_text("{not json")
        with pytest.raises(StateError, match="Failed to load"):
            store.load("broken")

    def test_no_temp_files_left(self, store):
        store.save(_release())
        leftovers = [p for p in (store.state_dir / "releases").iterdir() if p.suffix == ".tmp"]
        assert leftovers == []

    def test_delete(self, store):
        release = _release()
        store.save(release)
        store.delete(release.id)
        with pytest.raises(StateError):
            store.load(release.id)

    def test_list_filters(self, store):
        a = _release("web-1", "production", ReleaseStatus.BUILDING, ReleaseStatus.FAILED)
        b = _release("web-2", "production")
        c = _release("web-1", "staging")
        for r in (a, b, c):
            store.save(r)

        assert {r.id for r in store.list()} == {a.id, b.id, c.id}
        assert [r.id for r in store.list(status=ReleaseStatus.FAILED)] == [a.id]
        assert {r.id for r in store.list(environment="production")} == {a.id, b.id}
        assert {r.id for r in store.list(host="web-1")} == {a.id, c.id}
        assert len(store.list(limit=1)) == 1

    def test_list_newest_first(self, store):
        older = _release()
        older.created_at = datetime.utcnow() - timedelta(hours=1)
        newer = _release()
        store.save(older)
        store.save(newer)
        assert [r.id for r in store.list()] == [newer.id, older.id]

    def test_list_skips_corrupt_files(self, store):
        store.save(_release())
        (store.state_dir / "releases" / "broken.json").write_text("{truncated")
        assert len(store.list()) == 1

    def test_list_active(self, store):
        deploying = _release("web-1", "production", ReleaseStatus.BUILDING, ReleaseStatus.DEPLOYING)
        building = _release("web-1", "production", ReleaseStatus.BUILDING)
        other = _release("web-2", "production", ReleaseStatus.BUILDING, ReleaseStatus.DEPLOYING)
        for r in (deploying, building, other):
            store.save(r)

        assert [r.id for r in store.list_active(host="web-1")] == [deploying.id]
        assert len(store.list_active()) == 2


class TestHostRecords:
    """Tests for last-known-good tracking."""

    def test_unknown_host_is_blank(self, store):
        host = store.get_host("web-1")
        assert host.name == "web-1"
        assert host.last_known_good is None

    def test_set_last_known_good(self, store):
        store.set_last_known_good("web-1", "abc12345", address="10.0.0.1")

        host = store.get_host("web-1")
        assert host.last_known_good == "abc12345"
        assert host.address == "10.0.0.1"
        assert host.updated_at is not None

        data = json.loads((store.state_dir / "hosts" / "web-1.json").read_text())
        assert data["last_known_good"] == "abc12345"

    def test_address_kept_when_not_given(self, store):
        store.set_last_known_good("web-1", "one", address="10.0.0.1")
        store.set_last_known_good("web-1", "two")
        assert store.get_host("web-1").address == "10.0.0.1"

    def test_list_hosts_sorted(self, store):
        store.set_last_known_good("web-2", "b")
        store.set_last_known_good("web-1", "a")
        assert [h.name for h in store.list_hosts()] == ["web-1", "web-2"]

    def test_corrupt_hosts_file(self, store):
        (store.state_dir / "hosts" / "web-1.json").write_text("{oops")
        with pytest.raises(StateError):
            store.get_host("web-1")

    def test_persists_across_instances(self, store, state_dir):
        store.set_last_known_good("web-1", "abc12345")
        assert ReleaseStore(state_dir).get_host("web-1").last_known_good == "abc12345"

    def test_concurrent_updates_from_separate_stores(self, state_dir):
        # Two stores stand in for two processes; both read before either writes
        stores = [ReleaseStore(state_dir), ReleaseStore(state_dir)]
        barrier = threading.Barrier(2, timeout=5)

        for s in stores:
            original = s.get_host

            def read_then_wait(name, _original=original):
                host = _original(name)
                barrier.wait()
                return host

            s.get_host = read_then_wait

        threads = [
            threading.Thread(target=stores[0].set_last_known_good, args=("web-1", "rel-1")),
            threading.Thread(target=stores[1].set_last_known_good, args=("web-2", "rel-2")),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        fresh = ReleaseStore(state_dir)
        assert fresh.get_host("web-1").last_known_good == "rel-1"
        assert fresh.get_host("web-2").last_known_good == "rel-2"


class TestCleanup:
    """Tests for cleanup_old."""

    def _aged(self, store, days: int, *statuses: ReleaseStatus) -> Release:
        release = _release("web-1", "production", *statuses)
        release.created_at = datetime.utcnow() - timedelta(days=days)
        store.save(release)
        return release

    def test_removes_old_terminal_releases(self, store):
        old = self._aged(store, 40, ReleaseStatus.BUILDING, ReleaseStatus.FAILED)
        recent = self._aged(store, 1, ReleaseStatus.BUILDING, ReleaseStatus.FAILED)

        assert store.cleanup_old(days=30) == 1
        assert [r.id for r in store.list()] == [recent.id]
        with pytest.raises(StateError):
            store.load(old.id)

    def test_keeps_unfinished_releases(self, store):
        self._aged(store, 40, ReleaseStatus.BUILDING, ReleaseStatus.DEPLOYING)
        assert store.cleanup_old(days=30) == 0

    def test_keeps_last_known_good(self, store):
        pinned = self._aged(
            store,
            40,
            ReleaseStatus.BUILDING,
            ReleaseStatus.DEPLOYING,
            ReleaseStatus.HEALTH_CHECKING,
            ReleaseStatus.SUCCEEDED,
        )
        store.set_last_known_good("web-1", pinned.id)
        assert store.cleanup_old(days=30) == 0
