"""User-defined ordering of tags, notebooks and folders.

Every reorder rewrites ``sortOrder`` for the whole sibling group as 0..n-1,
so repeated moves can never produce duplicate or fractional positions.
Notebooks and folders may nest through ``parentId``; tags are flat, so all
tags form one group.
"""

from __future__ import annotations

import logging

from .errors import NotFoundError, ValidationError
from .storage import ENTITY_KINDS, FileStore, now_iso

logger = logging.getLogger(__name__)

POSITIONS = ("before", "after")
HIERARCHICAL_KINDS = ("notebooks", "folders")


def check_kind(kind: str) -> str:
    if kind not in ENTITY_KINDS:
        raise NotFoundError(f"Unknown collection: {kind}")
    return kind


def canonical_order(items: list[dict]) -> list[dict]:
    # Records without a numeric sortOrder fall back to their stored position.
    def key(pair: tuple[int, dict]) -> tuple[float, int]:
        index, item = pair
        order = item.get("sortOrder")
        if isinstance(order, bool) or not isinstance(order, (int, float)):
            order = index
        return (order, index)

    return [item for _, item in sorted(enumerate(items), key=key)]


def siblings(items: list[dict], parent_id: str | None) -> list[dict]:
    return [item for item in items if item.get("parentId") == parent_id]


def next_sort_order(items: list[dict], parent_id: str | None) -> int:
    orders = [
        item["sortOrder"]
        for item in siblings(items, parent_id)
        if isinstance(item.get("sortOrder"), int) and not isinstance(item.get("sortOrder"), bool)
    ]
    return max(orders, default=-1) + 1


def resequence(group: list[dict], stamp: str) -> None:
    for index, item in enumerate(group):
        if item.get("sortOrder") != index or isinstance(item.get("sortOrder"), float):
            item["sortOrder"] = index
            item["updated"] = stamp


def descendant_ids(items: list[dict], entity_id: str) -> set[str]:
    found: set[str] = set()
    frontier = [entity_id]
    while frontier:
        parent = frontier.pop()
        for item in items:
            child = item.get("id")
            if item.get("parentId") == parent and child not in found:
                found.add(child)
                frontier.append(child)
    return found


def reorder(
    store: FileStore,
    user_id: str,
    kind: str,
    source_id: str,
    target_id: str,
    position: str = "after",
) -> None:
    check_kind(kind)
    if position not in POSITIONS:
        raise ValidationError(f"Invalid position: {position} (expected 'before' or 'after')")
    if source_id == target_id:
        return

    with store.collection_lock(user_id, kind):
        items = store.read_entities(user_id, kind)
        by_id = {item.get("id"): item for item in items}
        source = by_id.get(source_id)
        target = by_id.get(target_id)
        if source is None or target is None:
            raise NotFoundError(f"One or both {kind} not found")

        parent_id = target.get("parentId")
        if source.get("parentId") != parent_id:
            raise ValidationError(f"Cannot reorder {kind} across different parents; move the item first")

        group = [item for item in canonical_order(siblings(items, parent_id)) if item is not source]
        target_index = next(i for i, item in enumerate(group) if item is target)
        insert_at = target_index if position == "before" else target_index + 1
        group.insert(insert_at, source)

        resequence(group, now_iso())
        store.write_entities(user_id, kind, items)

    logger.info("Reordered %s %s %s %s for user %s", kind, source_id, position, target_id, user_id)


def move_entity(store: FileStore, user_id: str, kind: str, entity_id: str, parent_id: str | None) -> dict:
    """Reparent a notebook or folder, appending it to its new sibling group."""
    check_kind(kind)
    if kind not in HIERARCHICAL_KINDS:
        raise ValidationError(f"{kind} cannot be nested")

    with store.collection_lock(user_id, kind):
        items = store.read_entities(user_id, kind)
        by_id = {item.get("id"): item for item in items}
        entity = by_id.get(entity_id)
        if entity is None:
            raise NotFoundError(f"{kind[:-1].capitalize()} not found")

        if parent_id is not None:
            if parent_id not in by_id:
                raise ValidationError(f"Parent {parent_id} not found")
            if parent_id == entity_id or parent_id in descendant_ids(items, entity_id):
                raise ValidationError("Cannot move an item into itself or one of its descendants")

        old_parent = entity.get("parentId")
        if old_parent == parent_id:
            return entity

        stamp = now_iso()
        old_group = [item for item in canonical_order(siblings(items, old_parent)) if item is not entity]
        new_group = canonical_order(siblings(items, parent_id))
        entity["parentId"] = parent_id
        entity["updated"] = stamp
        new_group.append(entity)

        resequence(old_group, stamp)
        resequence(new_group, stamp)
        store.write_entities(user_id, kind, items)

    logger.info("Moved %s %s under %s for user %s", kind, entity_id, parent_id, user_id)
    return entity
