from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import threading
import weakref
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from .errors import StorageError, ValidationError

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
CONTENT_FILE = "note.md"
ATTACHMENTS_DIR = "attachments"
VERSIONS_DIR = "versions"

ENTITY_KINDS = ("tags", "notebooks", "folders")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def check_path_component(value: str, what: str) -> str:
    if not value or value in (".", "..") or "/" in value or "\\" in value or "\x00" in value:
        raise ValidationError(f"Invalid {what}: {value!r}")
    return value


def write_atomic(path: Path, data: str | bytes) -> None:
    """Replace ``path`` with ``data`` via a temp file and ``os.replace``."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class FileStore:
    """On-disk layout of every user's notes and entity collections.

    One instance is built per app and handed to the repository functions.
    Mutations take a keyed lock: one per note and one per entity collection.
    """

    def __init__(self, base_path: Path) -> None:
        self.base_path = Path(base_path)
        self._locks: weakref.WeakValueDictionary[tuple, threading.RLock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    # ---- paths ----

    def set_base_path(self, path: Path) -> None:
        path = Path(path).expanduser()
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot use storage path {path}: {e.strerror or e}") from e
        self.base_path = path
        logger.info("Notes storage path set to %s", path)

    def user_dir(self, user_id: str) -> Path:
        return self.base_path / check_path_component(user_id, "user id")

    def note_dir(self, user_id: str, note_id: str) -> Path:
        return self.user_dir(user_id) / check_path_component(note_id, "note id")

    def entities_file(self, user_id: str, kind: str) -> Path:
        return self.user_dir(user_id) / f"{kind}.json"

    # ---- locking ----

    def _lock(self, key: tuple) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def note_lock(self, user_id: str, note_id: str) -> Iterator[None]:
        lock = self._lock(("note", user_id, note_id))
        with lock:
            yield

    @contextmanager
    def collection_lock(self, user_id: str, kind: str) -> Iterator[None]:
        lock = self._lock(("collection", user_id, kind))
        with lock:
            yield

    # ---- raw io ----

    def read_json(self, path: Path) -> Any | None:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except ValueError as e:
            raise StorageError(f"Corrupt JSON file {path.name}") from e
        except OSError as e:
            raise StorageError(f"Cannot read {path.name}: {e.strerror or e}") from e

    def write_json(self, path: Path, data: Any) -> None:
        try:
            write_atomic(path, json.dumps(data, indent=2, ensure_ascii=False))
        except OSError as e:
            raise StorageError(f"Cannot write {path.name}: {e.strerror or e}") from e

    # ---- notes ----

    def note_ids(self, user_id: str) -> list[str]:
        user_dir = self.user_dir(user_id)
        try:
            return sorted(p.name for p in user_dir.iterdir() if p.is_dir() and not p.name.startswith("."))
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StorageError(f"Cannot list notes: {e.strerror or e}") from e

    def read_metadata(self, user_id: str, note_id: str) -> dict | None:
        data = self.read_json(self.note_dir(user_id, note_id) / METADATA_FILE)
        if data is not None and not isinstance(data, dict):
            raise StorageError(f"Corrupt metadata for note {note_id}")
        return data

    def write_metadata(self, user_id: str, note_id: str, metadata: dict) -> None:
        self.write_json(self.note_dir(user_id, note_id) / METADATA_FILE, metadata)

    def read_content(self, user_id: str, note_id: str) -> str:
        try:
            return (self.note_dir(user_id, note_id) / CONTENT_FILE).read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except OSError as e:
            raise StorageError(f"Cannot read content of note {note_id}: {e.strerror or e}") from e

    def write_content(self, user_id: str, note_id: str, content: str) -> None:
        try:
            write_atomic(self.note_dir(user_id, note_id) / CONTENT_FILE, content)
        except OSError as e:
            raise StorageError(f"Cannot write content of note {note_id}: {e.strerror or e}") from e

    def remove_note_dir(self, user_id: str, note_id: str) -> None:
        try:
            shutil.rmtree(self.note_dir(user_id, note_id))
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageError(f"Cannot remove note {note_id}: {e.strerror or e}") from e

    # ---- entity collections ----

    def read_entities(self, user_id: str, kind: str) -> list[dict]:
        data = self.read_json(self.entities_file(user_id, kind))
        if data is None:
            return []
        if not isinstance(data, list):
            raise StorageError(f"Corrupt {kind} file for user {user_id}")
        return [item for item in data if isinstance(item, dict)]

    def write_entities(self, user_id: str, kind: str, items: list[dict]) -> None:
        self.write_json(self.entities_file(user_id, kind), items)
