"""Explicit registry of models, morph aliases and query scopes.

Nothing here is global: a :class:`Registry` is built by the application and
handed to every :class:`~ormgraph.session.Session` that needs it.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any

from ormgraph.errors import InvalidRelationError, RelationNotFoundError, ScopeNotFoundError
from ormgraph.logging import get_logger
from ormgraph.mixins import DELETED_AT
from ormgraph.relations import Relation, resolve_relation

if TYPE_CHECKING:
    from ormgraph.base import Base
    from ormgraph.model_query import ModelQueryBuilder

logger = get_logger(__name__)

Scope = Callable[..., Any]

SOFT_DELETES = "soft_deletes"


def _soft_delete_scope(query: ModelQueryBuilder) -> None:
    query.where_null(query.qualify_column(DELETED_AT))


class Registry:
    """Models, morph map, local scopes and global scopes.

    Example:
        >>> registry = Registry()
        >>> registry.register(User, Post, Comment)
        >>> registry.morph_map({"post": Post, "video": Video})
        >>> registry.scope(User, "active", lambda q: q.where("active", True))
        >>> registry.add_global_scope(Post, "published", lambda q: q.where_not_null("published_at"))
    """

    def __init__(self, models: Iterable[type[Base]] = ()) -> None:
        self._models: dict[str, type[Base]] = {}
        self._morph_map: dict[str, type[Base]] = {}
        self._scopes: dict[type[Base], dict[str, Scope]] = {}
        self._global_scopes: dict[type[Base], dict[str, Scope]] = {}
        self.register(*models)

    # ========== Models ==========

    def register(self, *models: type[Base]) -> None:
        """Make models resolvable by class name and table name."""
        for model in models:
            self._models[model.__name__] = model
            self._models[model.__tablename__] = model
            logger.debug("model_registered", model=model.__name__, table=model.__tablename__)

    def model[M: "Base"](self, model: type[M]) -> type[M]:
        """Class decorator form of :meth:`register`."""
        self.register(model)
        return model

    def get_model(self, ref: str | type) -> type[Base]:
        if isinstance(ref, type):
            return ref  # type: ignore[return-value]
        try:
            return self._models[ref]
        except KeyError:
            raise InvalidRelationError(f"Model [{ref}] is not registered") from None

    def models(self) -> list[type[Base]]:
        return list(dict.fromkeys(self._models.values()))

    # ========== Morph map ==========

    def morph_map(self, mapping: dict[str, type[Base]] | None = None) -> dict[str, type[Base]]:
        """Add aliases stored in ``*_type`` columns and return the whole map."""
        if mapping:
            self._morph_map.update(mapping)
            self.register(*mapping.values())
        return dict(self._morph_map)

    def get_morph_alias(self, model: type[Base]) -> str:
        """Value written to type columns for ``model``.

        The morph map wins, then ``__morph_alias__``, then the class name.
        """
        for alias, mapped in self._morph_map.items():
            if mapped is model:
                return alias
        return model.__morph_alias__ or model.__name__

    def get_morphed_model(self, alias: str) -> type[Base]:
        """Model for a value found in a type column."""
        if alias in self._morph_map:
            return self._morph_map[alias]
        for model in self._models.values():
            if model.__morph_alias__ == alias or model.__name__ == alias:
                return model
        raise InvalidRelationError(f"Unknown morph type [{alias}]")

    # ========== Relations ==========

    def has_relation(self, model: type[Base], name: str) -> bool:
        return name in model.__relations__

    def relation(self, model: type[Base], name: str) -> Relation:
        """Resolve relation ``name`` on ``model``.

        Raises:
            RelationNotFoundError: If the model declares no such relation.
        """
        declaration = model.__relations__.get(name)
        if declaration is None:
            raise RelationNotFoundError(model, name)
        return resolve_relation(self, model, declaration)

    # ========== Scopes ==========

    def scope(self, model: type[Base], name: str, fn: Scope | None = None) -> Any:
        """Register a named local scope, applied with ``query.scope(name, ...)``.

        Usable directly or as a decorator:

            >>> @registry.scope(User, "older_than")
            ... def older_than(query, age):
            ...     query.where("age", ">", age)
        """
        if fn is None:
            def decorator(func: Scope) -> Scope:
                self._scopes.setdefault(model, {})[name] = func
                return func
            return decorator
        self._scopes.setdefault(model, {})[name] = fn
        return fn

    def get_scope(self, model: type[Base], name: str) -> Scope:
        for klass in model.__mro__:
            scopes = self._scopes.get(klass)  # type: ignore[call-overload]
            if scopes and name in scopes:
                return scopes[name]
        raise ScopeNotFoundError(f"Call to undefined scope [{name}] on model [{model.__name__}]")

    def add_global_scope(self, model: type[Base], name: str, fn: Scope) -> None:
        """Register a scope applied to every query on ``model`` unless removed."""
        self._global_scopes.setdefault(model, {})[name] = fn

    def global_scopes(self, model: type[Base]) -> dict[str, Scope]:
        """Global scopes for ``model`` in application order, inherited ones first."""
        scopes: dict[str, Scope] = {}
        if getattr(model, "__soft_delete__", False):
            scopes[SOFT_DELETES] = _soft_delete_scope
        for klass in reversed(model.__mro__):
            scopes.update(self._global_scopes.get(klass, {}))  # type: ignore[call-overload]
        return scopes
