"""
Durable autosave storage for in-progress attempts.

Snapshots are keyed by exam and user as "exam_{examId}_{userId}" and are only
recovery hints; grading never reads them.
"""
import json
import logging
import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

from .errors import PersistenceError
from .models import PersistedSnapshot


def snapshot_key(exam_id: str, user_id: str) -> str:
    """Build the storage key for an exam and user pair."""
    return f"exam_{exam_id}_{user_id}"


class SnapshotStore(ABC):
    """Key-value store for one snapshot per exam and user."""

    @abstractmethod
    def save(self, exam_id: str, user_id: str, snapshot: PersistedSnapshot) -> None:
        """
        Store a snapshot, replacing any previous one for the same key.

        Raises:
            PersistenceError: If the snapshot could not be written
        """

    @abstractmethod
    def load(self, exam_id: str, user_id: str) -> Optional[PersistedSnapshot]:
        """
        Retrieve the snapshot for a key.

        Returns:
            The stored snapshot, or None if absent or unreadable
        """

    @abstractmethod
    def clear(self, exam_id: str, user_id: str) -> bool:
        """
        Remove the snapshot for a key.

        Returns:
            True if a snapshot was removed, False if none existed

        Raises:
            PersistenceError: If the snapshot exists but could not be removed
        """


class InMemorySnapshotStore(SnapshotStore):
    """Process-local store. Values are kept serialized so callers never share state."""

    def __init__(self):
        self._values: Dict[str, str] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def save(self, exam_id: str, user_id: str, snapshot: PersistedSnapshot) -> None:
        payload = json.dumps(snapshot.to_dict())
        with self._lock:
            self._values[snapshot_key(exam_id, user_id)] = payload

    def load(self, exam_id: str, user_id: str) -> Optional[PersistedSnapshot]:
        key = snapshot_key(exam_id, user_id)
        with self._lock:
            payload = self._values.get(key)
        if payload is None:
            return None
        try:
            return PersistedSnapshot.from_dict(json.loads(payload))
        except ValueError as e:
            self.logger.warning(f"Discarding unreadable snapshot {key}: {e}")
            return None

    def clear(self, exam_id: str, user_id: str) -> bool:
        with self._lock:
            return self._values.pop(snapshot_key(exam_id, user_id), None) is not None

    def keys(self):
        with self._lock:
            return list(self._values.keys())


class JsonFileSnapshotStore(SnapshotStore):
    """Stores each snapshot as a JSON file in a directory."""

    _UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")

    def __init__(self, snapshot_directory: str = "./snapshots/"):
        """
        Initialize the store.

        Args:
            snapshot_directory: Directory holding one JSON file per snapshot
        """
        self.snapshot_directory = Path(snapshot_directory)
        self.logger = logging.getLogger(__name__)
        self._lock = threading.Lock()

    def _path_for(self, exam_id: str, user_id: str) -> Path:
        filename = self._UNSAFE_CHARS.sub("_", snapshot_key(exam_id, user_id))
        return self.snapshot_directory / f"{filename}.json"

    def save(self, exam_id: str, user_id: str, snapshot: PersistedSnapshot) -> None:
        path = self._path_for(exam_id, user_id)
        payload = json.dumps(snapshot.to_dict(), indent=2)

        with self._lock:
            try:
                self.snapshot_directory.mkdir(parents=True, exist_ok=True)
                # Write to a sibling temp file and swap it in so readers never see a partial file
                fd, temp_name = tempfile.mkstemp(
                    dir=self.snapshot_directory, prefix=f".{path.stem}.", suffix=".tmp"
                )
                try:
                    with os.fdopen(fd, 'w', encoding='utf-8') as f:
                        f.write(payload)
                    os.replace(temp_name, path)
                except BaseException:
                    Path(temp_name).unlink(missing_ok=True)
                    raise
            except OSError as e:
                raise PersistenceError(f"Failed to write snapshot {path}: {e}") from e

        self.logger.debug(f"Saved snapshot {path}")

    def load(self, exam_id: str, user_id: str) -> Optional[PersistedSnapshot]:
        path = self._path_for(exam_id, user_id)

        with self._lock:
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
            except FileNotFoundError:
                return None
            except json.JSONDecodeError as e:
                self.logger.warning(f"Discarding snapshot with invalid JSON {path}: {e}")
                return None
            except OSError as e:
                self.logger.error(f"Failed to read snapshot {path}: {e}")
                return None

        try:
            return PersistedSnapshot.from_dict(data)
        except ValueError as e:
            self.logger.warning(f"Discarding malformed snapshot {path}: {e}")
            return None

    def clear(self, exam_id: str, user_id: str) -> bool:
        path = self._path_for(exam_id, user_id)

        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                raise PersistenceError(f"Failed to remove snapshot {path}: {e}") from e

        self.logger.debug(f"Cleared snapshot {path}")
        return True
