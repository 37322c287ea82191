"""Remote backend client for Session Recorder.

Talks to a Supabase-style backend over HTTP with requests:

- Row access through the PostgREST endpoint ``/rest/v1/<table>`` with
  ``column=eq.value`` filters and ``order=column.asc|desc``
- Object storage through ``/storage/v1/object/<bucket>/<path>``, with public
  URLs under ``/storage/v1/object/public/<bucket>/<path>``

Remote rows carry a ``user_id`` column the local store does not have.
Authentication is handled elsewhere; the caller hands over an access token
with set_access_token(), and requests fall back to the anon key.

Every call returns a BackendResult instead of raising, so callers decide
what is fatal. Network errors and non-2xx responses end up in
``result.error``.

Example:
    >>> backend = RemoteBackend("https://project.supabase.co", "anon-key")
    >>> result = backend.fetch_user_sessions(user_id)
    >>> if result.ok:
    ...     print(len(result.data))
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from .config import BackendConfig

logger = logging.getLogger(__name__)


@dataclass
class BackendResult:
    """Outcome of a backend call: data on success, error message otherwise."""
    data: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RemoteBackend:
    """HTTP client for rows and object storage on the remote backend.

    Attributes:
        url: Base project URL without trailing slash
        bucket: Default storage bucket
        timeout: Per-request timeout in seconds
    """

    def __init__(self, url: str, anon_key: str, bucket: str = "recordings",
                 timeout: float = 30.0, http: Optional[requests.Session] = None):
        self.url = (url or "").rstrip("/")
        self.anon_key = anon_key
        self.bucket = bucket
        self.timeout = timeout
        self.http = http or requests.Session()
        self._access_token: Optional[str] = None

    @classmethod
    def from_config(cls, config: BackendConfig) -> "RemoteBackend":
        return cls(config.url, config.anon_key, bucket=config.bucket,
                   timeout=config.timeout_seconds)

    def set_access_token(self, token: Optional[str]) -> None:
        self._access_token = token

    # =========================================================================
    # Transport
    # =========================================================================

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {self._access_token or self.anon_key}",
        }
        if extra:
            headers.update(extra)
        return headers

    def _request(self, method: str, endpoint: str, *, expect: str = "json",
                 **kwargs) -> BackendResult:
        if not self.url:
            return BackendResult(error="Backend URL is not configured")

        try:
            response = self.http.request(method, f"{self.url}{endpoint}",
                                         timeout=self.timeout, **kwargs)
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            detail = _error_detail(e.response)
            logger.debug(f"{method} {endpoint} failed: {detail}")
            return BackendResult(error=detail)
        except requests.exceptions.RequestException as e:
            logger.debug(f"{method} {endpoint} failed: {e}")
            return BackendResult(error=f"Request failed: {e}")

        if expect == "bytes":
            return BackendResult(data=response.content)
        if not response.content:
            return BackendResult(data=None)
        try:
            return BackendResult(data=response.json())
        except ValueError:
            return BackendResult(error=f"Invalid JSON response from {endpoint}")

    # =========================================================================
    # Rows
    # =========================================================================

    @staticmethod
    def _filters(filters: Optional[Dict[str, Any]]) -> Dict[str, str]:
        return {column: f"eq.{value}" for column, value in (filters or {}).items()}

    def insert(self, table: str, rows: Any) -> BackendResult:
        """Insert one row (dict) or many (list) and return the created rows."""
        return self._request(
            "POST", f"/rest/v1/{table}",
            headers=self._headers({"Content-Type": "application/json",
                                   "Prefer": "return=representation"}),
            data=json.dumps(rows),
        )

    def select(self, table: str, filters: Optional[Dict[str, Any]] = None,
               order: Optional[str] = None) -> BackendResult:
        """Select rows matching equality filters.

        Args:
            table: Table name
            filters: Column -> value equality filters
            order: PostgREST order clause, e.g. "created_at.desc"
        """
        params = {"select": "*", **self._filters(filters)}
        if order:
            params["order"] = order
        result = self._request("GET", f"/rest/v1/{table}", headers=self._headers(), params=params)
        if result.ok and result.data is None:
            result.data = []
        return result

    def update(self, table: str, values: Dict[str, Any], filters: Dict[str, Any]) -> BackendResult:
        return self._request(
            "PATCH", f"/rest/v1/{table}",
            headers=self._headers({"Content-Type": "application/json",
                                   "Prefer": "return=representation"}),
            params=self._filters(filters),
            data=json.dumps(values),
        )

    def delete(self, table: str, filters: Dict[str, Any]) -> BackendResult:
        if not filters:
            return BackendResult(error="Refusing unfiltered delete")
        return self._request("DELETE", f"/rest/v1/{table}",
                             headers=self._headers(), params=self._filters(filters))

    # =========================================================================
    # Object storage
    # =========================================================================

    def public_url(self, path: str, bucket: Optional[str] = None) -> str:
        return f"{self.url}/storage/v1/object/public/{bucket or self.bucket}/{quote(path)}"

    def object_path_from_url(self, url: str, bucket: Optional[str] = None) -> Optional[str]:
        """Extract the in-bucket object path from a public or private object URL."""
        marker = f"/{bucket or self.bucket}/"
        if not url or marker not in url:
            return None
        return url.split(marker, 1)[1]

    def upload_object(self, path: str, data: bytes, content_type: str,
                      bucket: Optional[str] = None) -> BackendResult:
        """Upload bytes without overwriting. Returns the public URL as data."""
        bucket = bucket or self.bucket
        result = self._request(
            "POST", f"/storage/v1/object/{bucket}/{quote(path)}",
            headers=self._headers({"Content-Type": content_type, "x-upsert": "false"}),
            data=data,
        )
        if not result.ok:
            return result
        return BackendResult(data=self.public_url(path, bucket))

    def download_object(self, path: str, bucket: Optional[str] = None) -> BackendResult:
        bucket = bucket or self.bucket
        return self._request("GET", f"/storage/v1/object/{bucket}/{quote(path)}",
                             headers=self._headers(), expect="bytes")

    # =========================================================================
    # Domain helpers
    # =========================================================================

    def create_session(self, row: Dict[str, Any]) -> BackendResult:
        """Insert a session row and return it as a dict (with its remote id)."""
        result = self.insert("sessions", row)
        if result.ok:
            rows = result.data or []
            if not rows:
                return BackendResult(error="Session insert returned no row")
            result.data = rows[0] if isinstance(rows, list) else rows
        return result

    def delete_session(self, session_id: int) -> BackendResult:
        return self.delete("sessions", {"id": session_id})

    def insert_recordings(self, rows: List[Dict[str, Any]]) -> BackendResult:
        return self.insert("recordings", rows)

    def insert_comments(self, rows: List[Dict[str, Any]]) -> BackendResult:
        return self.insert("comments", rows)

    def fetch_user_sessions(self, user_id: str) -> BackendResult:
        return self.select("sessions", {"user_id": user_id}, order="created_at.desc")

    def fetch_session_recordings(self, user_id: str, session_id: int) -> BackendResult:
        return self.select("recordings", {"user_id": user_id, "session_id": session_id},
                           order="timestamp.asc")

    def fetch_session_comments(self, user_id: str, session_id: int) -> BackendResult:
        return self.select("comments", {"user_id": user_id, "session_id": session_id},
                           order="start_time.asc")

    def download_screenshot(self, url: str) -> BackendResult:
        path = self.object_path_from_url(url)
        if path is None:
            return BackendResult(error=f"Invalid screenshot URL format: {url}")
        return self.download_object(path)

    def add_user_points(self, user_id: str, points: int) -> BackendResult:
        """Add points to the user's running total. Returns the new total.

        Read-then-write, not atomic.
        """
        profile = self.select("profiles", {"id": user_id})
        if not profile.ok:
            return profile
        if not profile.data:
            return BackendResult(error="Failed to fetch user profile")

        new_total = (profile.data[0].get("points_earned") or 0) + points
        updated = self.update(
            "profiles",
            {"points_earned": new_total,
             "updated_at": datetime.now(timezone.utc).isoformat()},
            {"id": user_id},
        )
        if not updated.ok:
            return updated
        return BackendResult(data=new_total)


def _error_detail(response: Optional[requests.Response]) -> str:
    if response is None:
        return "HTTP error"
    try:
        body = response.json()
        if isinstance(body, dict):
            message = body.get("message") or body.get("error") or str(body)
        else:
            message = str(body)
    except ValueError:
        message = response.text[:200]
    return f"HTTP {response.status_code}: {message}"
