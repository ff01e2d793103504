"""Mixins for common model patterns."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import ClassVar

from ormgraph.fields import ColumnInfo

DELETED_AT = "deleted_at"
CREATED_AT = "created_at"
UPDATED_AT = "updated_at"


def utcnow() -> datetime:
    return datetime.now(UTC)


class SoftDeleteMixin:
    """Mixin that adds soft delete functionality to models.

    Adds a nullable ``deleted_at`` column. Rows with ``deleted_at`` set are
    hidden from model queries by the registry's ``soft_deletes`` global
    scope, and relation sub-queries against the model filter them as well.

    Example:
        >>> class Article(Base, SoftDeleteMixin):
        ...     __tablename__ = "articles"
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     title: Mapped[str]
        >>>
        >>> session.query(Article).get()                 # live rows
        >>> session.query(Article).with_trashed().get()  # everything
        >>> session.query(Article).only_trashed().get()  # deleted rows
        >>> session.soft_delete(article)
        >>> session.restore(article)
    """

    __soft_delete__: ClassVar[bool] = True

    deleted_at = ColumnInfo(name=DELETED_AT, python_type=datetime, nullable=True)

    @property
    def is_deleted(self) -> bool:
        """Check if this instance is soft-deleted."""
        return self.__dict__.get(DELETED_AT) is not None

    def mark_deleted(self) -> None:
        self.deleted_at = utcnow()  # type: ignore[assignment]

    def mark_restored(self) -> None:
        self.deleted_at = None  # type: ignore[assignment]


class TimestampsMixin:
    """Adds ``created_at`` / ``updated_at`` columns maintained by the session."""

    __timestamps__: ClassVar[bool] = True

    created_at = ColumnInfo(name=CREATED_AT, python_type=datetime, nullable=True)
    updated_at = ColumnInfo(name=UPDATED_AT, python_type=datetime, nullable=True)

    def touch(self) -> None:
        """Stamp ``updated_at`` (and ``created_at`` on first save)."""
        now = utcnow()
        if self.__dict__.get(CREATED_AT) is None:
            self.created_at = now  # type: ignore[assignment]
        self.updated_at = now  # type: ignore[assignment]
