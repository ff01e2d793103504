"""ormgraph - relationship-aware query building over plain DB-API drivers."""

from __future__ import annotations

from ormgraph.base import Base
from ormgraph.config import DatabaseConfig
from ormgraph.connection import Connection, QueryLogEntry
from ormgraph.errors import (
    ConfigError,
    ConnectionException,
    ConnectionLostError,
    InvalidQueryError,
    InvalidRelationError,
    ModelNotFoundError,
    OrmError,
    QueryException,
    RelationNotFoundError,
    ScopeNotFoundError,
)
from ormgraph.fields import JSON, ForeignKey, Mapped, mapped_column
from ormgraph.grammar import Grammar, MySQLGrammar, PostgresGrammar, SQLiteGrammar, grammar_for
from ormgraph.loading import noload, selectinload
from ormgraph.logging import configure_logging, get_logger
from ormgraph.mixins import SoftDeleteMixin, TimestampsMixin
from ormgraph.model_query import ModelQueryBuilder
from ormgraph.pagination import CursorPage, Page
from ormgraph.query import QueryBuilder, raw
from ormgraph.registry import Registry
from ormgraph.relations import (
    Relation,
    RelationKind,
    belongs_to,
    belongs_to_many,
    has_many,
    has_many_through,
    has_one,
    has_one_through,
    morph_many,
    morph_one,
    morph_to,
    morph_to_many,
    morphed_by_many,
)
from ormgraph.session import Session, create_session, session_context

__version__ = "0.1.0"

__all__ = [
    # Core
    "Connection",
    "DatabaseConfig",
    "QueryLogEntry",
    "Session",
    "create_session",
    "session_context",
    "Registry",
    # Model definition
    "Base",
    "Mapped",
    "mapped_column",
    "ForeignKey",
    "JSON",
    "SoftDeleteMixin",
    "TimestampsMixin",
    # Relations
    "Relation",
    "RelationKind",
    "belongs_to",
    "has_one",
    "has_many",
    "belongs_to_many",
    "morph_to",
    "morph_one",
    "morph_many",
    "morph_to_many",
    "morphed_by_many",
    "has_many_through",
    "has_one_through",
    # Query building
    "QueryBuilder",
    "ModelQueryBuilder",
    "raw",
    "Page",
    "CursorPage",
    "Grammar",
    "SQLiteGrammar",
    "MySQLGrammar",
    "PostgresGrammar",
    "grammar_for",
    # Eager loading
    "selectinload",
    "noload",
    # Logging
    "configure_logging",
    "get_logger",
    # Errors
    "OrmError",
    "ConfigError",
    "ConnectionException",
    "ConnectionLostError",
    "QueryException",
    "InvalidQueryError",
    "RelationNotFoundError",
    "InvalidRelationError",
    "ScopeNotFoundError",
    "ModelNotFoundError",
]
