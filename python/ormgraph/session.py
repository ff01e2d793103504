"""Session: ties one Connection to one Registry."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from ormgraph.config import DatabaseConfig
from ormgraph.connection import Connection
from ormgraph.errors import ModelNotFoundError
from ormgraph.loading import eager_load, parse_relations
from ormgraph.logging import get_logger
from ormgraph.mixins import DELETED_AT, UPDATED_AT, utcnow
from ormgraph.model_query import ModelQueryBuilder
from ormgraph.registry import Registry

if TYPE_CHECKING:
    from ormgraph.base import Base
    from ormgraph.query import QueryBuilder

logger = get_logger(__name__)


class Session:
    """Entry point for model queries.

    Example:
        >>> session = Session(Connection("sqlite::memory:"), registry)
        >>> user = session.insert(User(name="Alice"))
        >>> users = session.query(User).where_has("posts").with_("posts").get()
        >>> with session.transaction():
        ...     session.update(user, name="Bob")
    """

    def __init__(
        self,
        connection: Connection | DatabaseConfig | str,
        registry: Registry | None = None,
    ) -> None:
        if not isinstance(connection, Connection):
            connection = Connection(connection)
        self.connection = connection
        self.registry = registry if registry is not None else Registry()

    def __enter__(self) -> Session:
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        if exc_type is not None and self.connection.in_transaction():
            self.connection.rollback()

    def close(self) -> None:
        self.connection.disconnect()

    # ========== Queries ==========

    def query[T: "Base"](self, model: type[T], alias: str | None = None) -> ModelQueryBuilder[T]:
        """Start a model query.

        Example:
            >>> session.query(User).filter(age__gt=18).get()
        """
        return ModelQueryBuilder(self, model, alias)

    def table(self, name: str) -> QueryBuilder:
        """Start a plain query builder that returns rows."""
        return self.connection.table(name)

    def load[T: "Base"](self, models: Sequence[T], *relations: Any) -> Sequence[T]:
        """Eager load relations onto models that were already fetched.

        Example:
            >>> users = session.query(User).get()
            >>> session.load(users, "posts", {"roles": lambda q: q.order_by("name")})
        """
        eager_load(self, models, parse_relations(relations))
        return models

    def get[T: "Base"](self, model: type[T], id: Any, *, include_deleted: bool = False) -> T | None:
        """Fetch one model by primary key.

        Soft-deleted rows are skipped unless ``include_deleted`` is set.
        """
        query = self.query(model)
        if include_deleted:
            query.with_trashed()
        return query.find(id)

    def get_or_raise[T: "Base"](self, model: type[T], id: Any) -> T:
        instance = self.get(model, id)
        if instance is None:
            raise ModelNotFoundError(model, id)
        return instance

    # ========== Transactions ==========

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Commit on success, roll back and re-raise on error; nests as savepoints."""
        with self.connection.transaction():
            yield self

    begin = transaction

    # ========== Writes ==========

    def insert[T: "Base"](self, instance: T) -> T:
        """Insert a model and set its generated primary key.

        Example:
            >>> user = session.insert(User(name="Alice"))
            >>> user.id
            1
        """
        model = type(instance)
        if getattr(model, "__timestamps__", False):
            instance.touch()  # type: ignore[attr-defined]

        pk = model.__primary_key__
        values = {
            name: instance.__dict__[name]
            for name in model.__columns__
            if name in instance.__dict__ and not (name == pk and instance.__dict__[name] is None)
        }
        query = self.table(model.__tablename__)
        if pk in values:
            query.insert(values)
        else:
            object.__setattr__(instance, pk, query.insert_get_id(values, pk))
        logger.debug("model_inserted", model=model.__name__, key=instance.get_key())
        return instance

    def insert_all[T: "Base"](self, instances: list[T]) -> list[T]:
        """Insert several models inside one transaction."""
        with self.transaction():
            for instance in instances:
                self.insert(instance)
        return instances

    def update[T: "Base"](self, instance: T, **values: Any) -> T:
        """Write ``values`` to the row and the instance.

        Example:
            >>> session.update(user, name="Bob", age=30)
        """
        model = type(instance)
        if getattr(model, "__timestamps__", False) and UPDATED_AT not in values:
            values[UPDATED_AT] = utcnow()
        for key, value in values.items():
            setattr(instance, key, value)
        if values:
            self._row_query(instance).update(values)
        return instance

    def remove(self, instance: Base) -> None:
        """Delete the row for ``instance`` (hard delete)."""
        self._row_query(instance).delete()

    def soft_delete[T: "Base"](self, instance: T) -> T:
        """Set ``deleted_at``; only for models using SoftDeleteMixin."""
        self._require_soft_delete(instance)
        return self.update(instance, **{DELETED_AT: utcnow()})

    def restore[T: "Base"](self, instance: T) -> T:
        self._require_soft_delete(instance)
        return self.update(instance, **{DELETED_AT: None})

    def force_delete(self, instance: Base) -> None:
        """Remove the row even if the model uses soft deletes."""
        self.remove(instance)

    def _row_query(self, instance: Base) -> QueryBuilder:
        model = type(instance)
        key = instance.get_key()
        if key is None:
            raise ModelNotFoundError(model)
        return self.table(model.__tablename__).where(model.__primary_key__, "=", key)

    @staticmethod
    def _require_soft_delete(instance: Base) -> None:
        if not getattr(type(instance), "__soft_delete__", False):
            raise TypeError(
                f"{type(instance).__name__} doesn't support soft delete. "
                "Add SoftDeleteMixin to enable soft delete."
            )


def create_session(connection: Connection | DatabaseConfig | str, registry: Registry | None = None) -> Session:
    """Create a new session.

    Example:
        >>> session = create_session("sqlite:///app.db", registry)
    """
    return Session(connection, registry)


@contextmanager
def session_context(connection: Connection | DatabaseConfig | str, registry: Registry | None = None) -> Iterator[Session]:
    """Session whose block runs in one transaction.

    Example:
        >>> with session_context(conn, registry) as session:
        ...     session.insert(User(name="Alice"))
    """
    session = Session(connection, registry)
    with session.transaction():
        yield session
