"""Legacy inline-image migration for Session Recorder.

Early builds stored every screenshot inline in the recordings table as a
``data:image/png;base64,...`` string. This module moves those payloads into
the per-session File Store in three separately invoked phases:

1. migrate_to_files(): write each inline payload to disk and record its path.
   Safe to re-run, it only selects rows that still have no path.
2. verify(): check that every recording has a path and that the file is
   readable.
3. cleanup_legacy(): blank the inline columns. Irreversible, and it refuses
   to run without a passing verification result.

Example:
    >>> engine = MigrationEngine(storage, files)
    >>> result = engine.migrate_to_files()
    >>> verification = engine.verify()
    >>> if verification.success:
    ...     engine.cleanup_legacy(verification)
"""

import io
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from PIL import Image, UnidentifiedImageError

from .files import SessionFiles, decode_inline_image
from .storage import RecordingStorage

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = {"PNG", "JPEG", "WEBP", "GIF"}


@dataclass
class RecordingError:
    recording_id: int
    error: str
    session_id: Optional[int] = None


@dataclass
class MigrationResult:
    success: bool = True
    migrated: int = 0
    failed: int = 0
    errors: List[RecordingError] = field(default_factory=list)


@dataclass
class VerificationResult:
    success: bool = True
    total: int = 0
    valid: int = 0
    invalid: int = 0
    details: List[RecordingError] = field(default_factory=list)


@dataclass
class CleanupResult:
    success: bool
    cleaned: int = 0
    error: Optional[str] = None


def validate_image_payload(image: bytes) -> str:
    """Check that bytes decode as a supported image format.

    Returns:
        The PIL format name, e.g. "PNG".

    Raises:
        ValueError: If the bytes are not a readable image of a supported format.
    """
    try:
        with Image.open(io.BytesIO(image)) as img:
            img_format = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise ValueError(f"Unreadable image data: {e}") from e
    if img_format not in SUPPORTED_FORMATS:
        raise ValueError(f"Unsupported image format: {img_format}")
    return img_format


class MigrationEngine:
    """Moves legacy inline screenshots into the File Store.

    Attributes:
        storage: Local store holding the recordings
        files: File Store receiving the screenshots
    """

    def __init__(self, storage: RecordingStorage, files: SessionFiles):
        self.storage = storage
        self.files = files

    def migrate_to_files(self) -> MigrationResult:
        """Write every un-migrated inline payload to the File Store.

        Per-recording failures are collected and do not stop the batch.
        Metadata snapshots are regenerated once per affected session.

        Returns:
            MigrationResult, success only when no recording failed.
        """
        result = MigrationResult()
        try:
            rows = self.storage.get_recordings_without_path()
        except Exception as e:
            logger.error(f"Error fetching recordings for migration: {e}")
            result.success = False
            result.errors.append(RecordingError(recording_id=-1, error=str(e)))
            return result

        if not rows:
            logger.info("No recordings to migrate")
            return result

        logger.info(f"Found {len(rows)} recordings to migrate")
        affected_sessions = []

        for recording in rows:
            recording_id = recording["id"]
            try:
                image = decode_inline_image(recording["screenshot"])
                validate_image_payload(image)
                path = self.files.save_screenshot(recording["session_id"], recording_id, image)
                self.storage.update_recording_screenshot_path(recording_id, path)
            except Exception as e:
                logger.warning(f"Failed to migrate recording {recording_id}: {e}")
                result.failed += 1
                result.errors.append(RecordingError(
                    recording_id=recording_id,
                    error=str(e) or "Unknown error",
                    session_id=recording["session_id"],
                ))
                continue

            logger.debug(f"Migrated recording {recording_id} to {path}")
            result.migrated += 1
            if recording["session_id"] not in affected_sessions:
                affected_sessions.append(recording["session_id"])

        for session_id in affected_sessions:
            self.files.update_session_metadata(session_id, self.storage)

        result.success = result.failed == 0
        logger.info(f"Migration complete: {result.migrated} migrated, {result.failed} failed")
        return result

    def verify(self) -> VerificationResult:
        """Check that every recording points at a readable file."""
        result = VerificationResult()
        try:
            rows = self.storage.get_all_recordings()
        except Exception as e:
            logger.error(f"Error verifying migration: {e}")
            result.success = False
            result.details.append(RecordingError(recording_id=-1, error=str(e)))
            return result

        result.total = len(rows)
        for row in rows:
            path = row.get("screenshot_path")
            if not path:
                error = "No screenshot_path set"
            elif self.files.read_screenshot(path) is None:
                error = f"File not found: {path}"
            else:
                result.valid += 1
                continue
            result.invalid += 1
            result.details.append(RecordingError(
                recording_id=row["id"], error=error, session_id=row["session_id"],
            ))

        result.success = result.invalid == 0
        logger.info(f"Verification complete: {result.valid}/{result.total} valid, {result.invalid} invalid")
        return result

    def cleanup_legacy(self, verification: Optional[VerificationResult]) -> CleanupResult:
        """Blank inline payloads of recordings whose file is readable.

        Args:
            verification: Result of a verify() run. Cleanup refuses to run
                unless it reports zero invalid recordings.

        Returns:
            CleanupResult with the number of rows cleaned.
        """
        if verification is None or not verification.success or verification.invalid:
            logger.warning("Refusing legacy cleanup without a passing verification")
            return CleanupResult(
                success=False,
                error="Legacy cleanup requires a successful verification with no invalid recordings",
            )

        try:
            ready = [
                row["id"] for row in self.storage.get_all_recordings()
                if row.get("screenshot_path") and self.files.read_screenshot(row["screenshot_path"]) is not None
            ]
            cleaned = self.storage.clear_inline_payloads(ready)
        except Exception as e:
            logger.error(f"Error cleaning up inline data: {e}")
            return CleanupResult(success=False, error=str(e))

        logger.info(f"Cleaned up inline data from {cleaned} recordings")
        return CleanupResult(success=True, cleaned=cleaned)
