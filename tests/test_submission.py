"""Tests for the submission pipeline."""

import json

import pytest

from recorder.config import SubmissionConfig
from recorder.files import encode_inline_image
from recorder.submission import (
    SubmissionPipeline,
    derive_duration,
    points_for_duration,
)

from conftest import make_png

USER = "user-1"


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def pipeline(storage, files, backend, sleeps):
    return SubmissionPipeline(storage, files, backend, SubmissionConfig(), sleep=sleeps.append)


def make_session(storage, files, timestamps, duration=0):
    sid = storage.create_session("passive", created_at="2025-03-01T09:59:00.000Z")
    storage.update_duration(sid, duration)
    ids = []
    for ts in timestamps:
        rid = storage.create_recording(sid, ts, "Editor", "0x1", "passive")
        storage.update_recording_screenshot_path(rid, files.save_screenshot(sid, rid, make_png()))
        ids.append(rid)
    return sid, ids


THREE = ["2025-03-01T10:00:00Z", "2025-03-01T10:00:05Z", "2025-03-01T10:00:12Z"]


def test_points_for_duration():
    assert points_for_duration(65) == 5
    assert points_for_duration(125) == 10
    assert points_for_duration(59) == 0
    assert points_for_duration(600, points_per_minute=2) == 20


def test_derive_duration_without_recordings_keeps_stored():
    assert derive_duration({"duration": 42}, []) == 42


class TestValidation:
    def test_missing_session(self, pipeline):
        result = pipeline.validate(123)
        assert not result.valid
        assert result.error == "Session not found"

    def test_non_draft_session(self, pipeline, storage, files):
        sid, _ = make_session(storage, files, THREE)
        storage.submit_for_approval(sid)
        assert not pipeline.validate(sid).valid

    def test_session_without_recordings(self, pipeline, storage, backend):
        sid = storage.create_session("passive")
        result = pipeline.submit(USER, sid)
        assert not result.success
        assert "at least one recording" in result.error
        assert backend.tables["sessions"] == []


def test_successful_submission(pipeline, storage, files, backend):
    sid, ids = make_session(storage, files, THREE)
    storage.create_comment(sid, 0, 5, "warming up")

    result = pipeline.submit(USER, sid)

    assert result.success
    assert result.duration == 12
    assert result.warnings == []
    assert storage.get_session(sid)["duration"] == 12
    # the caller marks the session submitted
    assert storage.get_session(sid)["approval_state"] == "draft"

    remote = backend.tables["sessions"][0]
    assert remote["id"] == result.remote_session_id
    assert remote["duration"] == 12
    assert remote["user_id"] == USER
    assert remote["approval_state"] == "submitted"

    recordings = backend.tables["recordings"]
    assert [r["screenshot_url"].rsplit("/", 1)[-1] for r in recordings] == \
        [f"screenshot_{rid}.png" for rid in ids]
    assert all(r["session_id"] == result.remote_session_id for r in recordings)
    assert backend.tables["comments"][0]["comment"] == "warming up"

    snapshot = json.loads(backend.objects[f"{USER}/{result.remote_session_id}/session_info.json"])
    assert snapshot["duration"] == 12
    assert len(snapshot["recordings"]) == 3


def test_points_credited_from_final_duration(pipeline, storage, files, backend):
    sid, _ = make_session(storage, files, ["2025-03-01T10:00:00Z", "2025-03-01T10:02:05Z"])
    result = pipeline.submit(USER, sid)
    assert result.success
    assert result.points_earned == 10
    assert backend.tables["profiles"] == [{"id": USER, "points_earned": 10}]


def test_no_points_for_short_session(pipeline, storage, files, backend):
    sid, _ = make_session(storage, files, THREE)
    assert pipeline.submit(USER, sid).points_earned == 0
    assert backend.tables["profiles"] == []


def test_upload_retried_with_backoff(pipeline, storage, files, backend, sleeps):
    sid, ids = make_session(storage, files, THREE)
    remote_id = 500
    backend.fail_uploads[f"{USER}/{remote_id}/screenshot_{ids[0]}.png"] = 2

    result = pipeline.submit(USER, sid)
    assert result.success
    assert sleeps == [1.0, 2.0]


def test_exhausted_upload_rolls_back(pipeline, storage, files, backend, sleeps):
    sid, ids = make_session(storage, files, THREE[:2])
    remote_id = 500
    backend.fail_uploads[f"{USER}/{remote_id}/screenshot_{ids[1]}.png"] = 3

    result = pipeline.submit(USER, sid)

    assert not result.success
    assert result.failed_recording_id == ids[1]
    assert str(ids[1]) in result.error
    assert backend.tables["sessions"] == []
    assert backend.tables["recordings"] == []
    assert sleeps == [1.0, 2.0]
    assert f"deleted remote session {remote_id}" in result.undo_log
    assert f"orphaned object {USER}/{remote_id}/screenshot_{ids[0]}.png" in result.undo_log
    assert storage.get_session(sid)["approval_state"] == "draft"


def test_bulk_insert_failure_rolls_back(pipeline, storage, files, backend):
    sid, _ = make_session(storage, files, THREE)
    backend.fail_tables.add("recordings")

    result = pipeline.submit(USER, sid)
    assert not result.success
    assert result.error == "Failed to save recordings to database"
    assert backend.tables["sessions"] == []


def test_remote_session_creation_failure(pipeline, storage, files, backend):
    sid, _ = make_session(storage, files, THREE)
    backend.fail_tables.add("sessions")
    result = pipeline.submit(USER, sid)
    assert not result.success
    assert result.undo_log == []
    assert backend.upload_attempts == []


def test_enrichment_failures_do_not_fail_submission(pipeline, storage, files, backend):
    sid, _ = make_session(storage, files, ["2025-03-01T10:00:00Z", "2025-03-01T10:05:00Z"])
    storage.create_comment(sid, 0, 1, "note")
    backend.fail_tables.add("comments")
    backend.fail_points = True
    backend.fail_uploads[f"{USER}/500/session_info.json"] = 3

    result = pipeline.submit(USER, sid)
    assert result.success
    assert result.points_earned == 25
    assert len(result.warnings) == 3
    assert len(backend.tables["recordings"]) == 2


def test_inline_payload_fallback(pipeline, storage, backend, png_bytes):
    sid = storage.create_session("passive")
    storage.create_recording(sid, "2025-03-01T10:00:00Z", "Editor", "0x1", "passive",
                             screenshot=encode_inline_image(png_bytes))
    result = pipeline.submit(USER, sid)
    assert result.success
    uploaded = [data for path, data in backend.objects.items() if path.endswith(".png")]
    assert uploaded == [png_bytes]


def test_recording_without_image_fails(pipeline, storage, backend):
    sid = storage.create_session("passive")
    rid = storage.create_recording(sid, "2025-03-01T10:00:00Z", "Editor", "0x1", "passive")
    result = pipeline.submit(USER, sid)
    assert not result.success
    assert result.failed_recording_id == rid
    assert backend.tables["sessions"] == []


def test_progress_is_monotonic(pipeline, storage, files):
    sid, _ = make_session(storage, files, THREE)
    storage.create_comment(sid, 0, 1, "note")
    events = []

    assert pipeline.submit(USER, sid, on_progress=events.append).success

    currents = [e.current for e in events]
    assert currents == sorted(currents)
    assert all(e.total == 3 for e in events)
    assert events[0].status == "Preparing upload..."
    assert events[-1].status == "Complete!"
    assert events[-1].current == 3
    statuses = [e.status for e in events]
    assert "Uploading screenshot 1 of 3..." in statuses
    assert "Saving comments..." in statuses
    assert "Uploading metadata..." in statuses


def test_unexpected_exception_becomes_result(pipeline, storage, files, backend, monkeypatch):
    sid, _ = make_session(storage, files, THREE)

    def explode(rows):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(backend, "insert_recordings", explode)
    result = pipeline.submit(USER, sid)
    assert not result.success
    assert result.error == "connection reset"
    assert backend.tables["sessions"] == []


def test_raising_points_step_keeps_committed_session(pipeline, storage, files, backend, monkeypatch):
    sid, _ = make_session(storage, files, ["2025-03-01T10:00:00Z", "2025-03-01T10:02:05Z"])

    def explode(user_id, points):
        raise RuntimeError("profile service down")

    monkeypatch.setattr(backend, "add_user_points", explode)
    result = pipeline.submit(USER, sid)
    assert result.success
    assert result.warnings == ["points: profile service down"]
    assert len(backend.tables["sessions"]) == 1
    assert len(backend.tables["recordings"]) == 2


def test_failure_after_insert_is_not_rolled_back(pipeline, storage, files, backend, monkeypatch):
    sid, _ = make_session(storage, files, THREE)

    def explode(*args):
        raise RuntimeError("snapshot failed")

    monkeypatch.setattr(pipeline, "_metadata_snapshot", explode)
    result = pipeline.submit(USER, sid)
    assert not result.success
    assert result.error == "snapshot failed"
    assert result.undo_log == []
    assert [s["id"] for s in backend.tables["sessions"]] == [result.remote_session_id]
    assert len(backend.tables["recordings"]) == 3
