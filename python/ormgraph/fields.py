"""Column and field definitions for models."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class JSON:
    """Marker for JSON columns.

    Values are written as JSON text and decoded back to ``dict`` / ``list``
    when rows are hydrated (SQLite and MySQL hand back strings).

    Example:
        >>> class Product(Base):
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     attributes: Mapped[dict] = mapped_column(JSON)
    """


class Mapped(Generic[T]):
    """Type annotation wrapper indicating a database-mapped column.

    Example:
        >>> class User(Base):
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     name: Mapped[str]
        ...     age: Mapped[int | None]
    """


@dataclass
class ForeignKey:
    """Declares that a column references ``table.column``.

    Relations use it to find join keys without spelling them out.

    Example:
        >>> class Post(Base):
        ...     author_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    """

    target: str
    ondelete: str | None = None
    onupdate: str | None = None

    @property
    def table(self) -> str:
        return self.target.split(".")[0]

    @property
    def column(self) -> str:
        parts = self.target.split(".")
        return parts[1] if len(parts) > 1 else "id"


@dataclass
class ColumnInfo:
    """Stores metadata about a database column."""

    name: str | None = None
    python_type: type | None = None
    primary_key: bool = False
    nullable: bool = False
    default: Any = None
    foreign_key: ForeignKey | None = None
    is_json: bool = False

    def decode(self, value: Any) -> Any:
        """Turn a raw driver value into the attribute value."""
        if self.is_json and isinstance(value, (str, bytes)):
            try:
                return json.loads(value)
            except ValueError:
                return value
        return value

    def copy(self, name: str) -> ColumnInfo:
        return ColumnInfo(
            name=name,
            python_type=self.python_type,
            primary_key=self.primary_key,
            nullable=self.nullable,
            default=self.default,
            foreign_key=self.foreign_key,
            is_json=self.is_json,
        )


def mapped_column(
    type_or_fk: type | ForeignKey | None = None,
    /,
    *,
    primary_key: bool = False,
    nullable: bool = False,
    default: Any = None,
) -> Any:
    """Define a database column.

    Args:
        type_or_fk: Optional ForeignKey or JSON marker for this column
        primary_key: Whether this is the primary key column
        nullable: Whether NULL values are allowed
        default: Default value (can be callable)

    Example:
        >>> id: Mapped[int] = mapped_column(primary_key=True)
        >>> author_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
        >>> settings: Mapped[dict] = mapped_column(JSON, default=dict)
    """
    foreign_key = type_or_fk if isinstance(type_or_fk, ForeignKey) else None
    is_json = type_or_fk is JSON or (isinstance(type_or_fk, type) and issubclass(type_or_fk, JSON))

    return ColumnInfo(
        primary_key=primary_key,
        nullable=False if primary_key else nullable,
        default=default,
        foreign_key=foreign_key,
        is_json=is_json,
    )
