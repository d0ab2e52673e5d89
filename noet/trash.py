"""Move-to-trash, restore and purge of notes.

A note is active, trashed (``deleted`` with a ``deletedAt`` stamp) or purged
(its directory removed). Only a trashed note can be purged.
"""

from __future__ import annotations

import logging

from .errors import NotFoundError, ValidationError
from .repo import mutate_note
from .storage import FileStore, now_iso

logger = logging.getLogger(__name__)


def soft_delete(store: FileStore, user_id: str, note_id: str) -> dict:
    def mark(metadata: dict) -> bool:
        metadata["deleted"] = True
        metadata["deletedAt"] = now_iso()
        return True

    metadata = mutate_note(store, user_id, note_id, mark)
    logger.info("Moved note %s of user %s to trash", note_id, user_id)
    return metadata


def restore(store: FileStore, user_id: str, note_id: str) -> dict:
    def unmark(metadata: dict) -> bool:
        if not metadata.get("deleted") and metadata.get("deletedAt") is None:
            return False
        metadata["deleted"] = False
        metadata["deletedAt"] = None
        return True

    metadata = mutate_note(store, user_id, note_id, unmark)
    logger.info("Restored note %s of user %s from trash", note_id, user_id)
    return metadata


def purge(store: FileStore, user_id: str, note_id: str) -> None:
    with store.note_lock(user_id, note_id):
        metadata = store.read_metadata(user_id, note_id)
        if metadata is None:
            raise NotFoundError("Note not found")
        if not metadata.get("deleted"):
            raise ValidationError("Note must be in trash before permanent deletion")
        store.remove_note_dir(user_id, note_id)
    logger.info("Permanently deleted note %s of user %s", note_id, user_id)
