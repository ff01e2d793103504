"""Offset and cursor (keyset) pagination."""

from __future__ import annotations

import base64
import binascii
import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ormgraph.errors import InvalidQueryError
from ormgraph.logging import get_logger
from ormgraph.query import Order

if TYPE_CHECKING:
    from ormgraph.query import QueryBuilder

logger = get_logger(__name__)


@dataclass
class Page[T]:
    """One page of an offset-paginated result."""

    items: list[T]
    total: int
    per_page: int
    current_page: int

    @property
    def last_page(self) -> int:
        return max(1, -(-self.total // self.per_page)) if self.per_page else 1

    @property
    def has_more_pages(self) -> bool:
        return self.current_page < self.last_page

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": [_item_to_dict(item) for item in self.items],
            "total": self.total,
            "per_page": self.per_page,
            "current_page": self.current_page,
            "last_page": self.last_page,
        }


@dataclass
class CursorPage[T]:
    """One page of a keyset-paginated result.

    ``next_cursor`` is None on the last page; pass it back unchanged to fetch
    the following page.
    """

    items: list[T]
    per_page: int
    next_cursor: str | None
    prev_cursor: str | None
    has_more: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": [_item_to_dict(item) for item in self.items],
            "per_page": self.per_page,
            "next_cursor": self.next_cursor,
            "prev_cursor": self.prev_cursor,
            "has_more": self.has_more,
        }


def _item_to_dict(item: Any) -> Any:
    to_dict = getattr(item, "to_dict", None)
    return to_dict() if callable(to_dict) else item


# ========== Cursor codec ==========

def encode_cursor(column: str, value: Any) -> str:
    """Encode the last seen ``value`` of ``column`` as an opaque token."""
    payload = {"column": column, "value": value, "ts": int(time.time())}
    data = json.dumps(payload, default=str, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(data).decode("ascii")


def decode_cursor(cursor: str | None, column: str) -> dict[str, Any] | None:
    """Decode a token produced by :func:`encode_cursor`.

    A token that does not decode, or that was issued for another column, is
    treated as absent so the caller starts from the first page.
    """
    if not cursor:
        return None
    try:
        payload = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")))
    except (ValueError, binascii.Error, UnicodeError):
        logger.debug("cursor_rejected", reason="undecodable")
        return None
    if not isinstance(payload, dict) or payload.get("value") is None:
        logger.debug("cursor_rejected", reason="malformed")
        return None
    if payload.get("column") != column:
        logger.debug("cursor_rejected", reason="column_mismatch", column=payload.get("column"), expected=column)
        return None
    return payload


def cursor_paginate[T](
    query: QueryBuilder,
    per_page: int,
    cursor: str | None,
    column: str,
    direction: str,
    *,
    fetch: Callable[[QueryBuilder], list[T]],
    value_of: Callable[[T, str], Any],
) -> CursorPage[T]:
    """Fetch one page of ``query`` ordered by ``column``.

    ``query`` is modified in place, so pass a clone. ``fetch`` runs the
    query and ``value_of`` reads the cursor column back out of one item,
    which lets plain rows and hydrated models share this code.
    """
    direction = direction.lower()
    if direction not in ("asc", "desc"):
        raise InvalidQueryError(f"Cursor direction must be 'asc' or 'desc', got {direction!r}")
    if per_page < 1:
        raise InvalidQueryError("per_page must be at least 1")

    decoded = decode_cursor(cursor, column)
    if decoded is not None:
        query.where(column, ">" if direction == "asc" else "<", decoded["value"])

    query.orders = [Order(column, direction)] + [o for o in query.orders if o.column != column]
    query.limit(per_page + 1)

    items = fetch(query)
    has_more = len(items) > per_page
    items = items[:per_page]

    next_cursor = None
    if has_more and items:
        next_cursor = encode_cursor(column, value_of(items[-1], column.split(".")[-1]))

    return CursorPage(
        items=items,
        per_page=per_page,
        next_cursor=next_cursor,
        prev_cursor=cursor if decoded is not None else None,
        has_more=has_more,
    )
