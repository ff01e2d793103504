"""Exception hierarchy for ormgraph."""

from __future__ import annotations

from typing import Any


class OrmError(Exception):
    """Base class for every error raised by ormgraph."""


class ConfigError(OrmError):
    """Invalid or incomplete database configuration, or a missing driver."""


class ConnectionException(OrmError):
    """The database could not be reached or the driver is unsupported."""


class ConnectionLostError(ConnectionException):
    """The connection dropped while a transaction was open.

    The transaction is not restored on reconnect: the caller has to start
    the unit of work again.
    """


class QueryException(OrmError):
    """A statement failed on the database.

    Args:
        message: Human readable description.
        sql: The SQL text that was sent.
        bindings: The values bound to the statement.
        cause: The native driver error.
    """

    def __init__(
        self,
        message: str,
        sql: str,
        bindings: list[Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.sql = sql
        self.bindings = list(bindings or [])
        self.cause = cause

    def __str__(self) -> str:
        return f"{self.args[0]} (SQL: {self.sql})"


class InvalidQueryError(OrmError):
    """The query builder was used in a way that cannot produce valid SQL."""


class RelationNotFoundError(OrmError):
    """A relation name was referenced that the model does not declare."""

    def __init__(self, model: type | str, relation: str, path: str | None = None) -> None:
        model_name = model if isinstance(model, str) else model.__name__
        message = f"Call to undefined relationship [{relation}] on model [{model_name}]"
        if path and path != relation:
            message += f" while resolving [{path}]"
        super().__init__(message)
        self.model = model_name
        self.relation = relation


class InvalidRelationError(OrmError):
    """A relation was used with an operation its kind does not support."""


class ScopeNotFoundError(OrmError):
    """A named query scope was requested that is not registered."""


class ModelNotFoundError(OrmError):
    """A query that must return a model returned nothing."""

    def __init__(self, model: type, ids: Any = None) -> None:
        message = f"No query results for model [{model.__name__}]"
        if ids is not None:
            message += f" {ids!r}"
        super().__init__(message)
        self.model = model
        self.ids = ids
