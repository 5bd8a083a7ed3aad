"""Keyset pagination helpers for moderation and admin listings."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Generic, Literal, Sequence, TypeVar

from trustlayer.moderation.domain.errors import InvalidInputError

SortOrder = Literal["asc", "desc"]
T = TypeVar("T")

DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100


@dataclass(slots=True)
class KeysetCursor:
    """Represents the state required to resume a keyset page."""

    sort_value: Any
    entity_id: int
    sort_field: str


@dataclass(slots=True)
class Page(Generic[T]):
    items: list[T] = field(default_factory=list)
    cursor: str | None = None


def encode_cursor(cursor: KeysetCursor) -> str:
    """Encode a cursor payload using URL-safe base64."""

    payload: dict[str, Any]
    sort_value = cursor.sort_value
    if isinstance(sort_value, datetime):
        payload = {"v": sort_value.isoformat(), "t": "datetime"}
    elif isinstance(sort_value, (int, float)):
        payload = {"v": sort_value, "t": "number"}
    else:
        payload = {"v": str(sort_value), "t": "string"}
    payload["id"] = cursor.entity_id
    payload["f"] = cursor.sort_field
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_cursor(value: str) -> KeysetCursor:
    """Decode a cursor string produced by :func:`encode_cursor`."""

    try:
        raw = base64.urlsafe_b64decode(value.encode("ascii"))
        payload = json.loads(raw.decode("utf-8"))
        sort_type = payload.get("t")
        sort_value: Any
        if sort_type == "datetime":
            sort_value = datetime.fromisoformat(payload["v"])
        elif sort_type == "number":
            sort_value = payload["v"]
        else:
            sort_value = str(payload.get("v", ""))
        entity_id = int(payload["id"])
    except (ValueError, KeyError, TypeError, AttributeError, binascii.Error) as exc:
        raise InvalidInputError("invalid_cursor") from exc
    sort_field = str(payload.get("f") or "created_at")
    return KeysetCursor(sort_value=sort_value, entity_id=entity_id, sort_field=sort_field)


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_PAGE_SIZE
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise InvalidInputError("invalid_limit")
    return int(limit)


def build_keyset_predicate(
    *,
    sort_column: str,
    order: SortOrder,
    cursor: KeysetCursor,
    params: list[Any],
    id_column: str = "id",
) -> str:
    """Append cursor parameters and return the SQL predicate for keyset pagination."""

    comparator = ">" if order == "asc" else "<"
    value_idx = len(params) + 1
    id_idx = value_idx + 1
    params.extend([cursor.sort_value, cursor.entity_id])
    return f"({sort_column}, {id_column}) {comparator} (${value_idx}, ${id_idx})"


def finish_page(
    rows: Sequence[T],
    limit: int,
    *,
    sort_field: str,
    key: Callable[[T], tuple[Any, int]],
) -> Page[T]:
    """Trim a ``limit + 1`` fetch into a page plus the cursor for the next one."""

    has_more = len(rows) > limit
    items = list(rows[:limit])
    cursor: str | None = None
    if has_more and items:
        sort_value, entity_id = key(items[-1])
        cursor = encode_cursor(KeysetCursor(sort_value=sort_value, entity_id=entity_id, sort_field=sort_field))
    return Page(items=items, cursor=cursor)


def paginate_desc(
    rows: Sequence[T],
    *,
    limit: int,
    cursor: str | None,
    sort_field: str,
    key: Callable[[T], tuple[Any, int]],
) -> Page[T]:
    """In-memory counterpart of the SQL keyset query, newest first."""

    ordered = sorted(rows, key=key, reverse=True)
    if cursor:
        position = decode_cursor(cursor)
        marker = (position.sort_value, position.entity_id)
        ordered = [row for row in ordered if key(row) < marker]
    return finish_page(ordered[: limit + 1], limit, sort_field=sort_field, key=key)
