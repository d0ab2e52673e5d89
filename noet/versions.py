from __future__ import annotations

import json
import logging
import re
import uuid
from pathlib import Path

from .errors import NotFoundError, StorageError
from .storage import VERSIONS_DIR, FileStore, now_iso

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]*>")
_FILE_RE = re.compile(r"^v(\d+)\.json$")

# Fields a restored snapshot never overwrites.
KEEP_ON_RESTORE = ("id", "created", "deleted", "deletedAt", "attachments")


def _versions_dir(store: FileStore, user_id: str, note_id: str) -> Path:
    return store.note_dir(user_id, note_id) / VERSIONS_DIR


def change_percentage(old: str, new: str) -> float:
    old_text = _TAG_RE.sub("", old or "")
    new_text = _TAG_RE.sub("", new or "")
    if not old_text:
        return 0.0 if not new_text else 100.0
    return abs(len(new_text) - len(old_text)) / len(old_text) * 100


def detect_trigger(metadata: dict, current_content: str, new_content: str | None, changes: dict) -> str | None:
    if new_content is not None and new_content != current_content:
        return "content_change"
    for field, trigger in (
        ("title", "title_change"),
        ("tags", "tags_change"),
        ("folder", "folder_change"),
        ("notebook", "notebook_change"),
    ):
        if field in changes and changes[field] != metadata.get(field):
            return trigger
    return None


def list_versions(store: FileStore, user_id: str, note_id: str) -> list[dict]:
    """All snapshots of a note, newest first."""
    directory = _versions_dir(store, user_id, note_id)
    if not directory.is_dir():
        return []
    versions: list[dict] = []
    for path in directory.iterdir():
        if not _FILE_RE.match(path.name):
            continue
        try:
            data = store.read_json(path)
        except StorageError as e:
            logger.warning("Skipping unreadable version file %s of note %s: %s", path.name, note_id, e)
            continue
        if isinstance(data, dict):
            versions.append(data)
    versions.sort(key=lambda v: v.get("version", 0), reverse=True)
    return versions


def summarize(version: dict) -> dict:
    return {
        "id": version.get("id"),
        "version": version.get("version"),
        "createdAt": version.get("createdAt"),
        "trigger": version.get("trigger"),
        "changeDescription": version.get("changeDescription"),
        "size": version.get("size", 0),
    }


def get_version(store: FileStore, user_id: str, note_id: str, version_id: str) -> dict:
    for version in list_versions(store, user_id, note_id):
        if version.get("id") == version_id:
            return version
    raise NotFoundError("Version not found")


def snapshot(
    store: FileStore,
    user_id: str,
    note_id: str,
    content: str,
    metadata: dict,
    trigger: str,
    max_versions: int,
    new_content: str | None = None,
) -> dict:
    """Write a snapshot of a note; the caller holds the note lock."""
    existing = list_versions(store, user_id, note_id)
    number = (existing[0].get("version", 0) + 1) if existing else 1

    description = trigger
    if trigger == "content_change" and new_content is not None:
        description = f"{change_percentage(content, new_content):.1f}% content change"

    record = {
        "id": str(uuid.uuid4()),
        "version": number,
        "noteId": note_id,
        "userId": user_id,
        "content": content or "",
        "metadata": json.loads(json.dumps(metadata)),
        "createdAt": now_iso(),
        "trigger": trigger,
        "changeDescription": description,
        "size": len(content or ""),
    }
    store.write_json(_versions_dir(store, user_id, note_id) / f"v{number}.json", record)

    for stale in ([record] + existing)[max_versions:]:
        (_versions_dir(store, user_id, note_id) / f"v{stale.get('version')}.json").unlink(missing_ok=True)
    return record


def delete_version(store: FileStore, user_id: str, note_id: str, version_id: str) -> None:
    with store.note_lock(user_id, note_id):
        version = get_version(store, user_id, note_id, version_id)
        (_versions_dir(store, user_id, note_id) / f"v{version.get('version')}.json").unlink(missing_ok=True)


def restore_version(store: FileStore, user_id: str, note_id: str, version_id: str, max_versions: int) -> dict:
    with store.note_lock(user_id, note_id):
        metadata = store.read_metadata(user_id, note_id)
        if metadata is None:
            raise NotFoundError("Note not found")
        version = get_version(store, user_id, note_id, version_id)
        current_content = store.read_content(user_id, note_id)
        snapshot(store, user_id, note_id, current_content, metadata, "before_restore", max_versions)

        restored = {**metadata, **(version.get("metadata") or {})}
        for field in KEEP_ON_RESTORE:
            if field in metadata:
                restored[field] = metadata[field]
        restored["updated"] = now_iso()
        restored["version"] = int(metadata.get("version", 0)) + 1
        restored["restoredFromVersion"] = version.get("version")

        content = version.get("content") or ""
        store.write_content(user_id, note_id, content)
        store.write_metadata(user_id, note_id, restored)

    logger.info("Restored note %s to snapshot %s for user %s", note_id, version.get("version"), user_id)
    return {**restored, "content": content}
