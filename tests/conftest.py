"""Shared fixtures for the recorder test suite."""

import io
import itertools
from typing import Dict, List, Optional

import pytest
from PIL import Image

from recorder.backend import BackendResult
from recorder.files import SessionFiles
from recorder.storage import RecordingStorage


def make_png(color=(255, 0, 0), size=(4, 4)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, "PNG")
    return buffer.getvalue()


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend:
    """In-memory stand-in for RemoteBackend with failure injection.

    Attributes:
        fail_uploads: object path -> number of upload attempts that fail
        fail_tables: table names whose inserts fail
    """

    def __init__(self, base_url: str = "https://backend.test"):
        self.base_url = base_url
        self.bucket = "recordings"
        self.tables: Dict[str, List[Dict]] = {
            "sessions": [], "recordings": [], "comments": [], "profiles": [],
        }
        self.objects: Dict[str, bytes] = {}
        self.upload_attempts: List[str] = []
        self.fail_uploads: Dict[str, int] = {}
        self.fail_tables = set()
        self.fail_downloads = set()
        self.fail_points = False
        self._ids = itertools.count(500)

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{path}"

    def set_access_token(self, token: Optional[str]) -> None:
        pass

    def _insert(self, table: str, rows: List[Dict]) -> BackendResult:
        if table in self.fail_tables:
            return BackendResult(error=f"insert into {table} failed")
        created = []
        for row in rows:
            row = dict(row)
            row.setdefault("id", next(self._ids))
            self.tables[table].append(row)
            created.append(row)
        return BackendResult(data=created)

    def create_session(self, row: Dict) -> BackendResult:
        result = self._insert("sessions", [row])
        if result.ok:
            result.data = result.data[0]
        return result

    def delete_session(self, session_id: int) -> BackendResult:
        self.tables["sessions"] = [s for s in self.tables["sessions"] if s["id"] != session_id]
        return BackendResult()

    def insert_recordings(self, rows: List[Dict]) -> BackendResult:
        return self._insert("recordings", rows)

    def insert_comments(self, rows: List[Dict]) -> BackendResult:
        return self._insert("comments", rows)

    def upload_object(self, path: str, data: bytes, content_type: str,
                      bucket: Optional[str] = None) -> BackendResult:
        self.upload_attempts.append(path)
        remaining = self.fail_uploads.get(path, 0)
        if remaining:
            self.fail_uploads[path] = remaining - 1
            return BackendResult(error="HTTP 503: unavailable")
        self.objects[path] = data
        return BackendResult(data=self.public_url(path))

    def fetch_user_sessions(self, user_id: str) -> BackendResult:
        rows = [s for s in self.tables["sessions"] if s.get("user_id") == user_id]
        return BackendResult(data=sorted(rows, key=lambda s: s["created_at"], reverse=True))

    def fetch_session_recordings(self, user_id: str, session_id: int) -> BackendResult:
        rows = [r for r in self.tables["recordings"]
                if r.get("user_id") == user_id and r["session_id"] == session_id]
        return BackendResult(data=sorted(rows, key=lambda r: r["timestamp"]))

    def fetch_session_comments(self, user_id: str, session_id: int) -> BackendResult:
        rows = [c for c in self.tables["comments"]
                if c.get("user_id") == user_id and c["session_id"] == session_id]
        return BackendResult(data=sorted(rows, key=lambda c: c["start_time"]))

    def download_screenshot(self, url: str) -> BackendResult:
        path = url.split(f"/{self.bucket}/", 1)[-1]
        if path in self.fail_downloads or path not in self.objects:
            return BackendResult(error=f"download of {path} failed")
        return BackendResult(data=self.objects[path])

    def add_user_points(self, user_id: str, points: int) -> BackendResult:
        if self.fail_points:
            return BackendResult(error="profile update failed")
        profile = next((p for p in self.tables["profiles"] if p["id"] == user_id), None)
        if profile is None:
            profile = {"id": user_id, "points_earned": 0}
            self.tables["profiles"].append(profile)
        profile["points_earned"] += points
        return BackendResult(data=profile["points_earned"])


@pytest.fixture
def storage(tmp_path):
    return RecordingStorage(tmp_path / "sessions.sqlite")


@pytest.fixture
def files(tmp_path):
    return SessionFiles(str(tmp_path / "recordings"))


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def png_bytes():
    return make_png()


@pytest.fixture
def clock():
    return FakeClock()
