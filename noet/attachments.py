from __future__ import annotations

import logging
import mimetypes
import os
import re
import tempfile
from pathlib import Path
from typing import BinaryIO

from .errors import NotFoundError, UploadRejected
from .repo import mutate_note
from .storage import ATTACHMENTS_DIR, FileStore, now_iso

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024

ALLOWED_MIME_TYPES = frozenset(
    {
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/bmp",
        "image/tiff",
        "image/svg+xml",
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.ms-powerpoint",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        "text/plain",
        "text/markdown",
        "application/zip",
        "application/json",
        "application/octet-stream",
    }
)

ALLOWED_EXTENSIONS = [
    "jpg", "jpeg", "png", "gif", "webp", "bmp", "tiff", "svg",
    "pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx",
    "txt", "md", "zip", "json",
]

_INLINE_TYPES = {
    "pdf": "application/pdf",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "bmp": "image/bmp",
    "svg": "image/svg+xml",
    "txt": "text/plain; charset=utf-8",
    "md": "text/plain; charset=utf-8",
    "json": "application/json; charset=utf-8",
}

_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9.-]")


def safe_filename(name: str) -> str:
    safe = _UNSAFE_RE.sub("_", name or "")
    if not safe.strip("."):
        raise UploadRejected("Invalid file name")
    return safe


def _attachments_dir(store: FileStore, user_id: str, note_id: str) -> Path:
    return store.note_dir(user_id, note_id) / ATTACHMENTS_DIR


def _stream_to_disk(stream: BinaryIO, target: Path, max_bytes: int) -> int:
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".part")
    size = 0
    try:
        with os.fdopen(fd, "wb") as fh:
            while chunk := stream.read(CHUNK_SIZE):
                size += len(chunk)
                if size > max_bytes:
                    raise UploadRejected(f"File too large. Maximum size is {max_bytes // (1024 * 1024)}MB.")
                fh.write(chunk)
        if size == 0:
            raise UploadRejected("No file uploaded")
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return size


def save_attachment(
    store: FileStore,
    user_id: str,
    note_id: str,
    original_name: str,
    content_type: str | None,
    stream: BinaryIO,
    max_bytes: int,
) -> dict:
    content_type = (content_type or "application/octet-stream").split(";")[0].strip().lower()
    if content_type not in ALLOWED_MIME_TYPES:
        raise UploadRejected(f"File type {content_type} not allowed")
    filename = safe_filename(original_name)

    # No purge may run between the existence check and the final rename.
    with store.note_lock(user_id, note_id):
        if store.read_metadata(user_id, note_id) is None:
            raise NotFoundError("Note not found")

        size = _stream_to_disk(stream, _attachments_dir(store, user_id, note_id) / filename, max_bytes)
        record = {
            "filename": filename,
            "originalName": original_name,
            "size": size,
            "type": content_type,
            "uploaded": now_iso(),
        }

        def attach(metadata: dict) -> bool:
            kept = [a for a in metadata.get("attachments") or [] if a.get("filename") != filename]
            metadata["attachments"] = kept + [record]
            return True

        mutate_note(store, user_id, note_id, attach)
    logger.info("Stored attachment %s (%d bytes) on note %s of user %s", filename, size, note_id, user_id)
    return record


def attachment_path(store: FileStore, user_id: str, note_id: str, filename: str) -> Path:
    if not filename or filename != _UNSAFE_RE.sub("_", filename) or not filename.strip("."):
        raise NotFoundError("Attachment not found")
    path = _attachments_dir(store, user_id, note_id) / filename
    if not path.is_file():
        raise NotFoundError("Attachment not found")
    return path


def download_headers(filename: str) -> tuple[str, str]:
    """Media type and Content-Disposition for serving an attachment."""
    extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    if extension in _INLINE_TYPES:
        return _INLINE_TYPES[extension], f'inline; filename="{filename}"'
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or "application/octet-stream", f'attachment; filename="{filename}"'


def delete_attachment(store: FileStore, user_id: str, note_id: str, filename: str) -> None:
    path = attachment_path(store, user_id, note_id, filename)

    def detach(metadata: dict) -> bool:
        metadata["attachments"] = [a for a in metadata.get("attachments") or [] if a.get("filename") != filename]
        return True

    with store.note_lock(user_id, note_id):
        path.unlink(missing_ok=True)
        mutate_note(store, user_id, note_id, detach)
    logger.info("Removed attachment %s from note %s of user %s", filename, note_id, user_id)
