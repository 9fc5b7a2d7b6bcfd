"""File-backed screenshot archive with retention."""

import itertools
import json
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from .errors import PersistenceFailure

INDEX_NAME = "index.jsonl"


class ScreenshotArchive:
    """Stores screenshots as JPEG files with a per-session JSONL index.

    Layout::

        <base_dir>/sessions/<session_id>/<timestamp>_<id>.jpg
        <base_dir>/sessions/<session_id>/index.jsonl

    Each index line is a full record. Updates append a new line for the same
    id and readers keep the last line per id.
    """

    def __init__(self, base_dir: Path, max_files_per_session: int = 2000):
        """Initialize archive.

        Args:
            base_dir: Base directory for archive storage
            max_files_per_session: Oldest images beyond this count are removed
        """
        self.base_dir = Path(base_dir).expanduser() / "sessions"
        self.max_files_per_session = max_files_per_session
        self._lock = threading.Lock()
        self._saved = 0

        self.base_dir.mkdir(parents=True, exist_ok=True)
        # Ids stay unique across archive instances sharing a directory
        self._ids = itertools.count(max(int(time.time() * 1000), self._last_stored_id() + 1))
        logger.info(f"Screenshot archive initialized at {self.base_dir}")

    def session_dir(self, session_id: Any) -> Path:
        return self.base_dir / str(session_id)

    def save_screenshot(self, session_id: Any, image_bytes: bytes, analysis_status: str) -> Dict[str, Any]:
        """Write one screenshot and its index entry.

        Args:
            session_id: Session the screenshot belongs to
            image_bytes: Encoded JPEG data
            analysis_status: Initial status ("pending" or "completed")

        Returns:
            The stored record with ``id`` and ``timestamp``

        Raises:
            PersistenceFailure: If the file or index could not be written
        """
        now = datetime.now()
        with self._lock:
            screenshot_id = next(self._ids)
            day_stamp = now.strftime("%Y%m%d_%H%M%S_%f")[:-3]  # ms precision
            session_dir = self.session_dir(session_id)
            image_path = session_dir / f"{day_stamp}_{screenshot_id}.jpg"
            record = {
                "id": screenshot_id,
                "session_id": session_id,
                "timestamp": now.isoformat(),
                "file": image_path.name,
                "bytes": len(image_bytes),
                "analysis_status": analysis_status,
                "description": None,
            }
            try:
                session_dir.mkdir(parents=True, exist_ok=True)
                image_path.write_bytes(image_bytes)
                self._append(session_dir, record)
            except OSError as e:
                raise PersistenceFailure(f"Could not store screenshot {screenshot_id}: {e}") from e

            self._saved += 1
            if self._saved % 10 == 0:
                self._cleanup_old_files(session_dir)

        logger.debug(f"Archived screenshot {screenshot_id} -> {image_path}")
        return record

    def update_screenshot(self, screenshot_id: Any, description: Optional[str], analysis_status: str) -> None:
        """Record an analysis result for a stored screenshot.

        Raises:
            PersistenceFailure: If the screenshot is unknown or the index cannot be written
        """
        with self._lock:
            session_dir = self._locate(screenshot_id)
            if session_dir is None:
                raise PersistenceFailure(f"Unknown screenshot id: {screenshot_id}")
            records = {r["id"]: r for r in self._read_index(session_dir)}
            record = records.get(screenshot_id)
            if record is None:
                raise PersistenceFailure(f"Screenshot {screenshot_id} missing from index")
            record = dict(record, description=description, analysis_status=analysis_status)
            try:
                self._append(session_dir, record)
            except OSError as e:
                raise PersistenceFailure(f"Could not update screenshot {screenshot_id}: {e}") from e

    def list_screenshots(self, session_id: Any) -> List[Dict[str, Any]]:
        """Latest record per screenshot of a session, oldest first."""
        session_dir = self.session_dir(session_id)
        with self._lock:
            latest: Dict[Any, Dict[str, Any]] = {}
            for record in self._read_index(session_dir):
                latest[record["id"]] = record
        return [r for r in latest.values() if (session_dir / r["file"]).exists()]

    def load_image(self, session_id: Any, screenshot_id: Any) -> Optional[bytes]:
        for record in self.list_screenshots(session_id):
            if record["id"] == screenshot_id:
                return (self.session_dir(session_id) / record["file"]).read_bytes()
        return None

    def _last_stored_id(self) -> int:
        last = 0
        for image_path in self.base_dir.glob("*/*.jpg"):
            try:
                last = max(last, int(image_path.stem.rsplit("_", 1)[1]))
            except (IndexError, ValueError):
                continue
        return last

    def _locate(self, screenshot_id: Any) -> Optional[Path]:
        """Session directory holding a screenshot, found by its image file name."""
        for image_path in self.base_dir.glob(f"*/*_{screenshot_id}.jpg"):
            return image_path.parent
        return None

    def _append(self, session_dir: Path, record: Dict[str, Any]) -> None:
        with open(session_dir / INDEX_NAME, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, default=str) + "\n")

    def _read_index(self, session_dir: Path) -> List[Dict[str, Any]]:
        index_path = session_dir / INDEX_NAME
        if not index_path.exists():
            return []
        records = []
        with open(index_path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning(f"Skipping corrupt index line {line_no} in {index_path}")
        return records

    def _cleanup_old_files(self, session_dir: Path) -> None:
        """Remove the oldest images of a session beyond the retention count."""
        images = sorted(session_dir.glob("*.jpg"), key=lambda p: (p.stat().st_mtime, p.name))
        excess = len(images) - self.max_files_per_session
        if excess <= 0:
            return

        removed = 0
        for image_path in images[:excess]:
            try:
                image_path.unlink()
                removed += 1
            except OSError as e:
                logger.warning(f"Failed to remove {image_path}: {e}")

        if removed:
            logger.info(f"Cleaned up {removed} old screenshots in {session_dir.name}")
