"""Tests for pull-sync and its per-user coordinator."""

import threading
from concurrent.futures import Future

import pytest

from recorder.files import FileStoreError
from recorder.sync import SyncCoordinator, SyncEngine, SyncResult

from conftest import make_png

USER = "user-1"


@pytest.fixture
def engine(storage, files, backend):
    return SyncEngine(storage, files, backend)


def seed_remote(backend, session_id, created_at, recordings=2, comments=1, user_id=USER):
    backend.tables["sessions"].append({
        "id": session_id, "user_id": user_id, "created_at": created_at, "duration": 90,
        "approval_state": "approved", "session_status": "tasked", "task_id": 4, "reward_id": None,
    })
    for n in range(recordings):
        recording_id = session_id * 10 + n
        path = f"{user_id}/{session_id}/screenshot_{recording_id}.png"
        backend.objects[path] = make_png((n, n, n))
        backend.tables["recordings"].append({
            "id": recording_id, "user_id": user_id, "session_id": session_id,
            "timestamp": f"2025-02-01T10:00:{n:02d}Z", "window_name": f"Window {n}",
            "window_id": str(n), "screenshot_url": backend.public_url(path),
            "thumbnail_url": backend.public_url(path), "type": "tasked", "label": None,
        })
    for n in range(comments):
        backend.tables["comments"].append({
            "id": session_id * 100 + n, "user_id": user_id, "session_id": session_id,
            "start_time": n, "end_time": n + 5, "comment": f"comment {n}",
            "created_at": "2025-02-01T11:00:00Z",
        })


def test_sync_copies_sessions(engine, storage, files, backend):
    seed_remote(backend, 71, "2025-02-01T10:00:00Z")
    seed_remote(backend, 72, "2025-02-02T10:00:00Z", recordings=1, comments=0)

    result = engine.sync_all_sessions_to_local(USER)

    assert result.success
    assert (result.synced, result.skipped, result.failed) == (2, 0, 0)
    session = storage.get_session(71)
    assert session["approval_state"] == "approved"
    assert session["session_status"] == "tasked"
    assert session["duration"] == 90

    recordings = storage.get_session_recordings(71)
    assert len(recordings) == 2
    assert all(r["screenshot"] == "" for r in recordings)
    assert recordings[0]["screenshot_path"].endswith("screenshot_710.png")
    assert files.read_screenshot(recordings[0]["screenshot_path"]) == make_png((0, 0, 0))
    assert storage.get_session_comments(71)[0]["comment"] == "comment 0"
    assert files.load_session_info(71)["session"]["id"] == 71
    assert [s["id"] for s in storage.list_sessions()] == [72, 71]


def test_sync_is_idempotent(engine, storage, backend):
    seed_remote(backend, 71, "2025-02-01T10:00:00Z")
    engine.sync_all_sessions_to_local(USER)
    counts = storage.count_rows()

    again = engine.sync_all_sessions_to_local(USER)
    assert again.success
    assert (again.synced, again.skipped) == (0, 1)
    assert storage.count_rows() == counts


def test_existing_local_session_is_never_resynced(engine, storage, backend):
    seed_remote(backend, 71, "2025-02-01T10:00:00Z")
    engine.sync_all_sessions_to_local(USER)
    seed_remote(backend, 71, "2025-02-01T10:00:00Z", recordings=0, comments=1)

    engine.sync_all_sessions_to_local(USER)
    assert len(storage.get_session_comments(71)) == 1


def test_failed_download_skips_recording(engine, storage, backend):
    seed_remote(backend, 71, "2025-02-01T10:00:00Z")
    backend.fail_downloads.add(f"{USER}/71/screenshot_711.png")

    result = engine.sync_all_sessions_to_local(USER)
    assert result.success
    assert len(storage.get_session_recordings(71)) == 1


def test_failing_session_does_not_abort_batch(engine, storage, backend, monkeypatch):
    seed_remote(backend, 71, "2025-02-01T10:00:00Z")
    seed_remote(backend, 72, "2025-02-02T10:00:00Z")
    original = backend.fetch_session_recordings

    def flaky(user_id, session_id):
        if session_id == 72:
            raise ConnectionError("reset by peer")
        return original(user_id, session_id)

    monkeypatch.setattr(backend, "fetch_session_recordings", flaky)
    result = engine.sync_all_sessions_to_local(USER)

    assert not result.success
    assert (result.synced, result.failed) == (1, 1)
    assert "reset by peer" in result.errors[0]
    assert storage.session_exists(71)
    assert not storage.session_exists(72)


def test_fetch_failure_reported(engine, backend, monkeypatch):
    from recorder.backend import BackendResult

    monkeypatch.setattr(backend, "fetch_user_sessions", lambda user_id: BackendResult(error="HTTP 401"))
    result = engine.sync_all_sessions_to_local(USER)
    assert not result.success
    assert "HTTP 401" in result.errors[0]


def test_partial_sync_rolls_back_and_retries(engine, storage, files, backend, monkeypatch):
    seed_remote(backend, 77, "2025-02-03T10:00:00Z", recordings=1, comments=0)
    save_screenshot = files.save_screenshot

    def disk_full(*args):
        raise FileStoreError("disk full")

    monkeypatch.setattr(files, "save_screenshot", disk_full)
    first = engine.sync_all_sessions_to_local(USER)
    assert (first.synced, first.failed) == (0, 1)
    assert "disk full" in first.errors[0]
    assert not storage.session_exists(77)
    assert not files.session_folder(77).exists()

    monkeypatch.setattr(files, "save_screenshot", save_screenshot)
    second = engine.sync_all_sessions_to_local(USER)
    assert (second.synced, second.failed) == (1, 0)
    assert len(storage.get_session_recordings(77)) == 1


class StubEngine:
    def __init__(self, success=True):
        self.calls = 0
        self.success = success
        self.release = threading.Event()
        self.release.set()

    def sync_all_sessions_to_local(self, user_id):
        self.calls += 1
        self.release.wait(5)
        return SyncResult(success=self.success, synced=1)


class TestCoordinator:
    def test_concurrent_calls_share_in_flight_pass(self, clock):
        engine = StubEngine()
        engine.release.clear()
        coordinator = SyncCoordinator(engine, ttl_seconds=120, clock=clock)

        first = coordinator.sync_if_needed(USER)
        second = coordinator.sync_if_needed(USER)
        assert isinstance(first, Future)
        assert second is first

        engine.release.set()
        assert first.result(timeout=5).synced == 1
        assert engine.calls == 1
        coordinator.shutdown()

    def test_ttl_suppresses_repeat_after_success(self, clock):
        engine = StubEngine()
        coordinator = SyncCoordinator(engine, ttl_seconds=120, clock=clock)

        coordinator.sync_if_needed(USER).result(timeout=5)
        clock.advance(60)
        assert coordinator.sync_if_needed(USER) is None
        clock.advance(61)
        coordinator.sync_if_needed(USER).result(timeout=5)
        assert engine.calls == 2
        coordinator.shutdown()

    def test_failed_pass_does_not_start_cooldown(self, clock):
        engine = StubEngine(success=False)
        coordinator = SyncCoordinator(engine, ttl_seconds=120, clock=clock)

        coordinator.sync_if_needed(USER).result(timeout=5)
        assert coordinator.sync_if_needed(USER) is not None
        coordinator.shutdown()
