from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from . import versions
from .errors import ConflictError, NotFoundError, StorageError, ValidationError
from .reorder import HIERARCHICAL_KINDS, canonical_order, check_kind, next_sort_order
from .storage import FileStore, now_iso

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Untitled Note"

# Metadata fields a client patch cannot set directly.
PROTECTED_NOTE_FIELDS = frozenset({"id", "created", "updated", "version", "attachments", "deletedAt", "content", "html", "markdown"})

ENTITY_DEFAULTS: dict[str, dict[str, Any]] = {
    "tags": {"color": "#10B981"},
    "notebooks": {"color": "#3B82F6", "description": "", "parentId": None},
    "folders": {"color": "#8B5CF6", "parentId": None},
}

# sortOrder and parentId change only through reorder/move.
PROTECTED_ENTITY_FIELDS = frozenset({"id", "userId", "created", "updated", "noteCount", "sortOrder", "parentId"})

SORT_FIELDS = ("updated", "created", "title")


def parse_timestamp(raw: str) -> datetime:
    try:
        value = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except (AttributeError, ValueError) as e:
        raise ValidationError(f"Invalid timestamp: {raw}") from e
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _timestamp_or_min(raw: Any) -> datetime:
    try:
        return parse_timestamp(raw)
    except ValidationError:
        return datetime.min.replace(tzinfo=timezone.utc)


def tag_refs(metadata: dict) -> set[str]:
    """Tag ids and names on a note; tags may be plain strings or objects."""
    refs: set[str] = set()
    for tag in metadata.get("tags") or []:
        if isinstance(tag, str):
            if tag.strip():
                refs.add(tag.strip())
        elif isinstance(tag, dict):
            for key in ("id", "name"):
                if isinstance(tag.get(key), str):
                    refs.add(tag[key])
    return refs


# ---- notes ----


def _require_metadata(store: FileStore, user_id: str, note_id: str) -> dict:
    metadata = store.read_metadata(user_id, note_id)
    if metadata is None:
        raise NotFoundError("Note not found")
    return metadata


def _check_str(value: Any, field: str) -> None:
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")


def _check_note_fields(values: dict) -> None:
    for field in ("title", "notebook", "folder"):
        _check_str(values.get(field), field)
    for field in ("starred", "archived", "deleted"):
        if field in values and not isinstance(values[field], bool):
            raise ValidationError(f"{field} must be a boolean")
    if "tags" in values and not isinstance(values["tags"], list):
        raise ValidationError("tags must be a list")


def _check_entity_fields(values: dict) -> None:
    for field in ("color", "description", "parentId"):
        _check_str(values.get(field), field)


def create_note(store: FileStore, user_id: str, fields: dict) -> dict:
    content = fields.get("content")
    if content is None:
        content = fields.get("markdown")
    content = content or ""
    _check_str(content, "content")

    _check_note_fields({k: v for k, v in fields.items() if v is not None})
    title = fields.get("title")
    tags = fields.get("tags") or []

    note_id = str(uuid.uuid4())
    now = now_iso()
    metadata = {
        "id": note_id,
        "title": title if title and title.strip() else DEFAULT_TITLE,
        "created": now,
        "updated": now,
        "tags": tags,
        "notebook": fields.get("notebook"),
        "folder": fields.get("folder"),
        "starred": bool(fields.get("starred", False)),
        "archived": bool(fields.get("archived", False)),
        "deleted": False,
        "deletedAt": None,
        "version": 1,
        "attachments": [],
    }

    with store.note_lock(user_id, note_id):
        store.write_content(user_id, note_id, content)
        store.write_metadata(user_id, note_id, metadata)

    logger.info("Created note %s for user %s", note_id, user_id)
    return {**metadata, "content": content}


def read_note(store: FileStore, user_id: str, note_id: str) -> dict:
    metadata = _require_metadata(store, user_id, note_id)
    return {**metadata, "content": store.read_content(user_id, note_id)}


def _sync_trash_fields(updated: dict, previous: dict, changes: dict) -> None:
    if "deleted" not in changes:
        return
    if changes["deleted"]:
        if not previous.get("deleted") or not previous.get("deletedAt"):
            updated["deletedAt"] = now_iso()
    else:
        updated["deletedAt"] = None


def update_note(store: FileStore, user_id: str, note_id: str, patch: dict, max_versions: int = 100) -> dict:
    """Shallow-merge ``patch`` into a note's metadata and optionally replace its content.

    ``patch`` may carry fields at the top level, in a nested ``metadata``
    object, or both. A ``version`` in the patch is the version the client
    last saw; if it no longer matches, the update is refused.
    """
    patch = dict(patch)
    nested = patch.pop("metadata", None)
    if nested is not None and not isinstance(nested, dict):
        raise ValidationError("metadata must be an object")

    expected_version = patch.pop("version", None)
    if expected_version is not None and (isinstance(expected_version, bool) or not isinstance(expected_version, int)):
        raise ValidationError("version must be an integer")

    content = patch.get("content")
    if content is None:
        content = patch.get("markdown")
    _check_str(content, "content")

    changes = {k: v for k, v in {**patch, **(nested or {})}.items() if k not in PROTECTED_NOTE_FIELDS}
    _check_note_fields(changes)

    with store.note_lock(user_id, note_id):
        metadata = _require_metadata(store, user_id, note_id)
        if expected_version is not None and expected_version != metadata.get("version"):
            raise ConflictError(
                f"Note was modified by another request (current version {metadata.get('version')}, got {expected_version})"
            )

        current_content = store.read_content(user_id, note_id)
        trigger = versions.detect_trigger(metadata, current_content, content, changes)
        if trigger:
            versions.snapshot(
                store, user_id, note_id, current_content, metadata, trigger, max_versions, new_content=content
            )

        updated = {**metadata, **changes}
        _sync_trash_fields(updated, metadata, changes)
        updated["updated"] = now_iso()
        updated["version"] = int(metadata.get("version", 0)) + 1

        # note.md first: metadata.json is the commit point.
        if content is not None:
            store.write_content(user_id, note_id, content)
        store.write_metadata(user_id, note_id, updated)

    return {**updated, "content": content if content is not None else current_content}


def mutate_note(store: FileStore, user_id: str, note_id: str, mutate: Callable[[dict], bool]) -> dict:
    """Locked read-modify-write of a note's metadata.

    ``mutate`` edits the metadata in place and returns False to skip the write.
    A write refreshes ``updated`` and bumps ``version``.
    """
    with store.note_lock(user_id, note_id):
        metadata = _require_metadata(store, user_id, note_id)
        if mutate(metadata) is False:
            return metadata
        metadata["updated"] = now_iso()
        metadata["version"] = int(metadata.get("version", 0)) + 1
        store.write_metadata(user_id, note_id, metadata)
    return metadata


def iter_metadata(store: FileStore, user_id: str):
    for note_id in store.note_ids(user_id):
        try:
            metadata = store.read_metadata(user_id, note_id)
        except StorageError as e:
            logger.warning("Skipping note %s of user %s: %s", note_id, user_id, e)
            continue
        if metadata is not None:
            yield note_id, metadata


@dataclass(frozen=True)
class NoteFilters:
    starred: bool | None = None
    archived: bool | None = None
    deleted: bool = False
    since: str | None = None
    search: str | None = None
    notebook: str | None = None
    folder: str | None = None
    tag: str | None = None


def _matches(store: FileStore, user_id: str, note_id: str, metadata: dict, filters: NoteFilters, since) -> bool:
    if bool(metadata.get("deleted")) != filters.deleted:
        return False
    if filters.starred is not None and bool(metadata.get("starred")) != filters.starred:
        return False
    if filters.archived is not None and bool(metadata.get("archived")) != filters.archived:
        return False
    if since is not None and _timestamp_or_min(metadata.get("updated")) <= since:
        return False
    if filters.notebook and metadata.get("notebook") != filters.notebook:
        return False
    if filters.folder and metadata.get("folder") != filters.folder:
        return False
    if filters.tag and filters.tag not in tag_refs(metadata):
        return False
    if filters.search:
        needle = filters.search.lower()
        title = metadata.get("title") or ""
        if needle not in str(title).lower() and needle not in store.read_content(user_id, note_id).lower():
            return False
    return True


def list_notes(store: FileStore, user_id: str, filters: NoteFilters | None = None) -> list[dict]:
    filters = filters or NoteFilters()
    since = parse_timestamp(filters.since) if filters.since else None
    notes = [
        metadata
        for note_id, metadata in iter_metadata(store, user_id)
        if _matches(store, user_id, note_id, metadata, filters, since)
    ]
    notes.sort(key=lambda n: _timestamp_or_min(n.get("updated")), reverse=True)
    return notes


def search_notes(
    store: FileStore,
    user_id: str,
    filters: NoteFilters,
    sort_by: str = "updated",
    sort_order: str = "desc",
    limit: int = 50,
    offset: int = 0,
) -> dict:
    if sort_by not in SORT_FIELDS:
        raise ValidationError(f"Invalid sortBy: {sort_by}")
    if sort_order not in ("asc", "desc"):
        raise ValidationError(f"Invalid sortOrder: {sort_order}")
    if limit < 0 or offset < 0:
        raise ValidationError("limit and offset must not be negative")

    notes = list_notes(store, user_id, filters)
    if sort_by == "title":
        notes.sort(key=lambda n: str(n.get("title") or "").lower())
    else:
        notes.sort(key=lambda n: _timestamp_or_min(n.get(sort_by)))
    if sort_order == "desc":
        notes.reverse()

    return {"notes": notes[offset : offset + limit], "total": len(notes), "offset": offset, "limit": limit}


# ---- tags / notebooks / folders ----


def _references(kind: str, entity: dict, metadata: dict) -> bool:
    if kind == "tags":
        refs = tag_refs(metadata)
        return entity.get("id") in refs or entity.get("name") in refs
    field = "notebook" if kind == "notebooks" else "folder"
    return metadata.get(field) is not None and metadata.get(field) == entity.get("id")


def _with_counts(store: FileStore, user_id: str, kind: str, entities: list[dict]) -> list[dict]:
    live = [metadata for _, metadata in iter_metadata(store, user_id) if not metadata.get("deleted")]
    return [
        {**entity, "noteCount": sum(1 for metadata in live if _references(kind, entity, metadata))}
        for entity in entities
    ]


def _find(items: list[dict], kind: str, entity_id: str) -> dict:
    for item in items:
        if item.get("id") == entity_id:
            return item
    raise NotFoundError(f"{kind[:-1].capitalize()} not found")


def _clean_name(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("name is required")
    return value.strip()


def list_entities(store: FileStore, user_id: str, kind: str) -> list[dict]:
    check_kind(kind)
    items = [item for item in store.read_entities(user_id, kind) if item.get("id")]
    return _with_counts(store, user_id, kind, canonical_order(items))


def get_entity(store: FileStore, user_id: str, kind: str, entity_id: str) -> dict:
    check_kind(kind)
    entity = _find(store.read_entities(user_id, kind), kind, entity_id)
    return _with_counts(store, user_id, kind, [entity])[0]


def create_entity(store: FileStore, user_id: str, kind: str, fields: dict) -> dict:
    check_kind(kind)
    name = _clean_name(fields.get("name"))
    _check_entity_fields(fields)
    parent_id = fields.get("parentId") if kind in HIERARCHICAL_KINDS else None

    with store.collection_lock(user_id, kind):
        items = store.read_entities(user_id, kind)
        if parent_id is not None and not any(item.get("id") == parent_id for item in items):
            raise ValidationError(f"Parent {parent_id} not found")

        now = now_iso()
        entity = {
            "id": str(uuid.uuid4()),
            "userId": user_id,
            **ENTITY_DEFAULTS[kind],
            **{k: v for k, v in fields.items() if k not in PROTECTED_ENTITY_FIELDS and v is not None},
            "name": name,
            "sortOrder": next_sort_order(items, parent_id),
            "created": now,
            "updated": now,
        }
        if kind in HIERARCHICAL_KINDS:
            entity["parentId"] = parent_id
        items.append(entity)
        store.write_entities(user_id, kind, items)

    logger.info("Created %s %s (%s) for user %s", kind[:-1], entity["id"], name, user_id)
    return {**entity, "noteCount": 0}


def update_entity(store: FileStore, user_id: str, kind: str, entity_id: str, patch: dict) -> dict:
    check_kind(kind)
    changes = {k: v for k, v in patch.items() if k not in PROTECTED_ENTITY_FIELDS}
    if "name" in changes:
        changes["name"] = _clean_name(changes["name"])
    _check_entity_fields(changes)

    with store.collection_lock(user_id, kind):
        items = store.read_entities(user_id, kind)
        entity = _find(items, kind, entity_id)
        entity.update(changes)
        entity["updated"] = now_iso()
        store.write_entities(user_id, kind, items)

    return _with_counts(store, user_id, kind, [entity])[0]


def _detach(kind: str, entity: dict) -> Callable[[dict], bool]:
    def mutate(metadata: dict) -> bool:
        if not _references(kind, entity, metadata):
            return False
        if kind == "tags":
            dropped = {entity.get("id"), entity.get("name")}
            metadata["tags"] = [
                tag
                for tag in metadata.get("tags") or []
                if not (isinstance(tag, str) and tag.strip() in dropped)
                and not (isinstance(tag, dict) and (tag.get("id") in dropped or tag.get("name") in dropped))
            ]
        else:
            metadata["notebook" if kind == "notebooks" else "folder"] = None
        return True

    return mutate


def delete_entity(store: FileStore, user_id: str, kind: str, entity_id: str, policy: str = "ignore") -> None:
    """Hard-delete an entity, applying the referential policy to notes.

    ``ignore`` leaves dangling references, ``cascade`` clears them from every
    note, ``block`` refuses while any note (trashed or not) references it.
    Children of a deleted notebook or folder move up to its parent.
    """
    check_kind(kind)
    with store.collection_lock(user_id, kind):
        items = store.read_entities(user_id, kind)
        entity = _find(items, kind, entity_id)

        referencing = [note_id for note_id, metadata in iter_metadata(store, user_id) if _references(kind, entity, metadata)]
        if policy == "block" and referencing:
            raise ConflictError(f"{kind[:-1].capitalize()} is still used by {len(referencing)} note(s)")

        remaining = [item for item in items if item is not entity]
        if kind in HIERARCHICAL_KINDS:
            stamp = now_iso()
            new_parent = entity.get("parentId")
            base = next_sort_order(remaining, new_parent)
            for offset, child in enumerate(canonical_order(
                [item for item in remaining if item.get("parentId") == entity_id]
            )):
                child["parentId"] = new_parent
                child["sortOrder"] = base + offset
                child["updated"] = stamp
        store.write_entities(user_id, kind, remaining)

    if policy == "cascade":
        detach = _detach(kind, entity)
        for note_id in referencing:
            try:
                mutate_note(store, user_id, note_id, detach)
            except NotFoundError:
                continue

    logger.info("Deleted %s %s for user %s (policy=%s, %d referencing notes)", kind[:-1], entity_id, user_id, policy, len(referencing))


def count_notes(store: FileStore) -> int:
    total = 0
    base = store.base_path
    if not base.is_dir():
        return 0
    for user_dir in base.iterdir():
        if user_dir.is_dir() and not user_dir.name.startswith("."):
            total += len(store.note_ids(user_dir.name))
    return total
