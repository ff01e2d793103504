"""Relation declarations, resolved relation descriptors and per-kind strategies.

Models declare relations as class attributes::

    class User(Base):
        __tablename__ = "users"
        id: Mapped[int] = mapped_column(primary_key=True)

        posts = has_many("Post")
        roles = belongs_to_many("Role")
        image = morph_one("Image", "imageable")

A :class:`~ormgraph.registry.Registry` turns a declaration into an immutable
:class:`Relation` the first time a query names it. Everything that differs
between relation kinds (the SQL shape of an EXISTS / COUNT sub-query, the
eager-load query, how results are matched back to parents) lives in one
:class:`RelationStrategy` per kind, looked up in :data:`STRATEGIES`.
"""

from __future__ import annotations

import enum
import re
from collections import defaultdict
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from ormgraph.errors import InvalidRelationError
from ormgraph.query import (
    BasicWhere,
    BetweenWhere,
    ColumnWhere,
    InWhere,
    NestedWhere,
    NullWhere,
    QueryBuilder,
    Where,
    raw,
)

if TYPE_CHECKING:
    from ormgraph.base import Base
    from ormgraph.model_query import ModelQueryBuilder
    from ormgraph.registry import Registry
    from ormgraph.session import Session

Constraint = Callable[["ModelQueryBuilder"], Any]

# Columns most tables share; unqualified references to them inside a
# relation constraint would bind to the wrong table once joins are added.
AMBIGUOUS_COLUMNS = frozenset({"id", "created_at", "updated_at"})


class RelationKind(enum.Enum):
    BELONGS_TO = "belongs_to"
    HAS_ONE = "has_one"
    HAS_MANY = "has_many"
    BELONGS_TO_MANY = "belongs_to_many"
    MORPH_TO = "morph_to"
    MORPH_ONE = "morph_one"
    MORPH_MANY = "morph_many"
    MORPH_TO_MANY = "morph_to_many"
    MORPHED_BY_MANY = "morphed_by_many"
    HAS_MANY_THROUGH = "has_many_through"
    HAS_ONE_THROUGH = "has_one_through"


_MANY_KINDS = frozenset({
    RelationKind.HAS_MANY,
    RelationKind.BELONGS_TO_MANY,
    RelationKind.MORPH_MANY,
    RelationKind.MORPH_TO_MANY,
    RelationKind.MORPHED_BY_MANY,
    RelationKind.HAS_MANY_THROUGH,
})


def snake_case(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def _foreign_key_for(model: type[Base]) -> str:
    """Conventional name of a column pointing at ``model``: ``BlogPost`` -> ``blog_post_id``."""
    return f"{snake_case(model.__name__)}_{model.__primary_key__}"


# ========== Declarations ==========

@dataclass(frozen=True)
class RelationDeclaration:
    """What a model class says about one relation, before resolution.

    Keys left as None are filled in from naming conventions when the
    registry resolves the declaration.
    """

    kind: RelationKind
    related: str | type | None = None
    name: str | None = None
    foreign_key: str | None = None
    local_key: str | None = None
    table: str | None = None
    foreign_pivot_key: str | None = None
    related_pivot_key: str | None = None
    related_key: str | None = None
    morph_name: str | None = None
    type_column: str | None = None
    id_column: str | None = None
    through: str | type | None = None
    first_key: str | None = None
    second_key: str | None = None
    second_local_key: str | None = None

    def named(self, name: str) -> RelationDeclaration:
        return replace(self, name=name)


def belongs_to(related: str | type, foreign_key: str | None = None, owner_key: str | None = None) -> Any:
    """The parent row holds a key pointing at one related row.

    Example:
        >>> class Post(Base):
        ...     author = belongs_to("User", "author_id")
    """
    return RelationDeclaration(RelationKind.BELONGS_TO, related, foreign_key=foreign_key, local_key=owner_key)


def has_one(related: str | type, foreign_key: str | None = None, local_key: str | None = None) -> Any:
    return RelationDeclaration(RelationKind.HAS_ONE, related, foreign_key=foreign_key, local_key=local_key)


def has_many(related: str | type, foreign_key: str | None = None, local_key: str | None = None) -> Any:
    """Related rows hold a key pointing at the parent.

    Example:
        >>> class User(Base):
        ...     posts = has_many("Post", "author_id")
    """
    return RelationDeclaration(RelationKind.HAS_MANY, related, foreign_key=foreign_key, local_key=local_key)


def belongs_to_many(
    related: str | type,
    table: str | None = None,
    foreign_pivot_key: str | None = None,
    related_pivot_key: str | None = None,
    parent_key: str | None = None,
    related_key: str | None = None,
) -> Any:
    """Many-to-many through a pivot table.

    The pivot table defaults to the two snake_case model names in alphabetical
    order (``role_user``); pivot keys default to ``{model}_id``.
    """
    return RelationDeclaration(
        RelationKind.BELONGS_TO_MANY, related,
        table=table, foreign_pivot_key=foreign_pivot_key, related_pivot_key=related_pivot_key,
        local_key=parent_key, related_key=related_key,
    )


def morph_to(
    name: str | None = None,
    type_column: str | None = None,
    id_column: str | None = None,
    owner_key: str | None = None,
) -> Any:
    """The parent row points at one row of one of several models.

    ``{name}_type`` holds the related model's morph alias and ``{name}_id``
    its key. ``name`` defaults to the attribute name.
    """
    return RelationDeclaration(
        RelationKind.MORPH_TO, None,
        morph_name=name, type_column=type_column, id_column=id_column, local_key=owner_key,
    )


def morph_one(
    related: str | type,
    name: str,
    type_column: str | None = None,
    id_column: str | None = None,
    local_key: str | None = None,
) -> Any:
    return RelationDeclaration(
        RelationKind.MORPH_ONE, related,
        morph_name=name, type_column=type_column, id_column=id_column, local_key=local_key,
    )


def morph_many(
    related: str | type,
    name: str,
    type_column: str | None = None,
    id_column: str | None = None,
    local_key: str | None = None,
) -> Any:
    """Like has_many, with the related rows also recording the parent's type.

    Example:
        >>> class Post(Base):
        ...     comments = morph_many("Comment", "commentable")
    """
    return RelationDeclaration(
        RelationKind.MORPH_MANY, related,
        morph_name=name, type_column=type_column, id_column=id_column, local_key=local_key,
    )


def morph_to_many(
    related: str | type,
    name: str,
    table: str | None = None,
    foreign_pivot_key: str | None = None,
    related_pivot_key: str | None = None,
    parent_key: str | None = None,
    related_key: str | None = None,
) -> Any:
    """Polymorphic many-to-many; the pivot (``{name}s``) records the parent's type."""
    return RelationDeclaration(
        RelationKind.MORPH_TO_MANY, related, morph_name=name,
        table=table, foreign_pivot_key=foreign_pivot_key, related_pivot_key=related_pivot_key,
        local_key=parent_key, related_key=related_key,
    )


def morphed_by_many(
    related: str | type,
    name: str,
    table: str | None = None,
    foreign_pivot_key: str | None = None,
    related_pivot_key: str | None = None,
    parent_key: str | None = None,
    related_key: str | None = None,
) -> Any:
    """Inverse of morph_to_many, declared on the shared model (``Tag.posts``)."""
    return RelationDeclaration(
        RelationKind.MORPHED_BY_MANY, related, morph_name=name,
        table=table, foreign_pivot_key=foreign_pivot_key, related_pivot_key=related_pivot_key,
        local_key=parent_key, related_key=related_key,
    )


def has_many_through(
    related: str | type,
    through: str | type,
    first_key: str | None = None,
    second_key: str | None = None,
    local_key: str | None = None,
    second_local_key: str | None = None,
) -> Any:
    """Reach related rows through an intermediate model.

    Example:
        >>> class Country(Base):
        ...     posts = has_many_through("Post", "User")  # users.country_id, posts.user_id
    """
    return RelationDeclaration(
        RelationKind.HAS_MANY_THROUGH, related, through=through,
        first_key=first_key, second_key=second_key, local_key=local_key, second_local_key=second_local_key,
    )


def has_one_through(
    related: str | type,
    through: str | type,
    first_key: str | None = None,
    second_key: str | None = None,
    local_key: str | None = None,
    second_local_key: str | None = None,
) -> Any:
    return RelationDeclaration(
        RelationKind.HAS_ONE_THROUGH, related, through=through,
        first_key=first_key, second_key=second_key, local_key=local_key, second_local_key=second_local_key,
    )


# ========== Resolved descriptors ==========

@dataclass(frozen=True)
class PivotInfo:
    table: str
    foreign_pivot_key: str
    related_pivot_key: str
    related_key: str
    morph_type: str | None = None
    morph_class: str | None = None


@dataclass(frozen=True)
class ThroughInfo:
    model: type[Base]
    table: str
    first_key: str
    second_key: str
    second_local_key: str


@dataclass(frozen=True)
class MorphInfo:
    type_column: str
    id_column: str
    type_alias: str | None = None


@dataclass(frozen=True)
class Relation:
    """A fully resolved relation between two models.

    ``foreign_key_column`` / ``local_key_column`` mean:

    - BelongsTo, MorphTo: key on the parent / key on the related row
    - HasOne, HasMany, MorphOne, MorphMany: key on the related row / key on the parent
    - pivot kinds: pivot column pointing at the parent / key on the parent
    - through kinds: through column pointing at the parent / key on the parent
    """

    kind: RelationKind
    name: str
    parent: type[Base]
    related: type[Base] | None
    foreign_key_column: str
    local_key_column: str | None
    pivot: PivotInfo | None = None
    through: ThroughInfo | None = None
    morph: MorphInfo | None = None

    def foreign_key(self) -> str:
        return self.foreign_key_column

    def local_key(self) -> str:
        if self.local_key_column is not None:
            return self.local_key_column
        if self.related is not None:
            return self.related.__primary_key__
        raise InvalidRelationError(f"Relation [{self.name}] has no fixed owner key")

    def pivot_info(self) -> PivotInfo | None:
        return self.pivot

    def through_info(self) -> ThroughInfo | None:
        return self.through

    def morph_info(self) -> MorphInfo | None:
        return self.morph

    def related_table(self) -> str:
        if self.related is None:
            raise InvalidRelationError(
                f"Relation [{self.name}] on [{self.parent.__name__}] is polymorphic; "
                "its table depends on the row"
            )
        return self.related.__tablename__

    def parent_table(self) -> str:
        return self.parent.__tablename__

    def is_self_referencing(self) -> bool:
        return self.related is not None and self.related.__tablename__ == self.parent.__tablename__

    def is_many(self) -> bool:
        return self.kind in _MANY_KINDS

    @property
    def strategy(self) -> RelationStrategy:
        return STRATEGIES[self.kind]


def resolve_relation(registry: Registry, model: type[Base], declaration: RelationDeclaration) -> Relation:
    """Fill in conventional key names and look up the models involved."""
    kind = declaration.kind
    name = declaration.name or ""
    parent_table = model.__tablename__
    related = registry.get_model(declaration.related) if declaration.related is not None else None

    if kind is RelationKind.MORPH_TO:
        morph_name = declaration.morph_name or name
        morph = MorphInfo(
            type_column=declaration.type_column or f"{morph_name}_type",
            id_column=declaration.id_column or f"{morph_name}_id",
        )
        return Relation(kind, name, model, None, morph.id_column, declaration.local_key, morph=morph)

    assert related is not None
    related_table = related.__tablename__

    if kind is RelationKind.BELONGS_TO:
        foreign_key, owner_key = declaration.foreign_key, declaration.local_key
        if foreign_key is None:
            foreign_key, scanned = _scan_foreign_key(model, related_table)
            owner_key = owner_key or scanned
        return Relation(
            kind, name, model, related,
            foreign_key or f"{snake_case(name)}_id",
            owner_key or related.__primary_key__,
        )

    if kind in (RelationKind.HAS_ONE, RelationKind.HAS_MANY):
        foreign_key = declaration.foreign_key or _scan_foreign_key(related, parent_table)[0]
        return Relation(
            kind, name, model, related,
            foreign_key or _foreign_key_for(model),
            declaration.local_key or model.__primary_key__,
        )

    if kind in (RelationKind.MORPH_ONE, RelationKind.MORPH_MANY):
        morph_name = declaration.morph_name or name
        morph = MorphInfo(
            type_column=declaration.type_column or f"{morph_name}_type",
            id_column=declaration.id_column or f"{morph_name}_id",
            type_alias=registry.get_morph_alias(model),
        )
        return Relation(
            kind, name, model, related, morph.id_column,
            declaration.local_key or model.__primary_key__, morph=morph,
        )

    if kind is RelationKind.BELONGS_TO_MANY:
        pivot = PivotInfo(
            table=declaration.table or "_".join(sorted([snake_case(model.__name__), snake_case(related.__name__)])),
            foreign_pivot_key=declaration.foreign_pivot_key or _foreign_key_for(model),
            related_pivot_key=declaration.related_pivot_key or _foreign_key_for(related),
            related_key=declaration.related_key or related.__primary_key__,
        )
        return Relation(
            kind, name, model, related, pivot.foreign_pivot_key,
            declaration.local_key or model.__primary_key__, pivot=pivot,
        )

    if kind in (RelationKind.MORPH_TO_MANY, RelationKind.MORPHED_BY_MANY):
        morph_name = declaration.morph_name or name
        inverse = kind is RelationKind.MORPHED_BY_MANY
        pivot = PivotInfo(
            table=declaration.table or f"{morph_name}s",
            foreign_pivot_key=declaration.foreign_pivot_key
            or (_foreign_key_for(model) if inverse else f"{morph_name}_id"),
            related_pivot_key=declaration.related_pivot_key
            or (f"{morph_name}_id" if inverse else _foreign_key_for(related)),
            related_key=declaration.related_key or related.__primary_key__,
            morph_type=f"{morph_name}_type",
            morph_class=registry.get_morph_alias(related if inverse else model),
        )
        return Relation(
            kind, name, model, related, pivot.foreign_pivot_key,
            declaration.local_key or model.__primary_key__, pivot=pivot,
        )

    if kind in (RelationKind.HAS_MANY_THROUGH, RelationKind.HAS_ONE_THROUGH):
        if declaration.through is None:
            raise InvalidRelationError(f"Relation [{name}] on [{model.__name__}] needs a through model")
        through_model = registry.get_model(declaration.through)
        through = ThroughInfo(
            model=through_model,
            table=through_model.__tablename__,
            first_key=declaration.first_key or _foreign_key_for(model),
            second_key=declaration.second_key or _foreign_key_for(through_model),
            second_local_key=declaration.second_local_key or through_model.__primary_key__,
        )
        return Relation(
            kind, name, model, related, through.first_key,
            declaration.local_key or model.__primary_key__, through=through,
        )

    raise InvalidRelationError(f"Unsupported relation kind: {kind}")


def _scan_foreign_key(model: type[Base], target_table: str) -> tuple[str | None, str | None]:
    """Find a column on ``model`` declared with ``ForeignKey("target_table.x")``."""
    for col_name, col_info in model.__columns__.items():
        if col_info.foreign_key and col_info.foreign_key.table == target_table:
            return col_name, col_info.foreign_key.column
    return None, None


# ========== Constraint qualification ==========

def qualify_wheres(wheres: Sequence[Where], qualifier: str, every: bool = False) -> list[Where]:
    """Prefix unqualified column references with ``qualifier``.

    Only :data:`AMBIGUOUS_COLUMNS` are touched unless ``every`` is set.
    """

    def fix(column: Any) -> Any:
        if not isinstance(column, str) or "." in column:
            return column
        if every or column in AMBIGUOUS_COLUMNS:
            return f"{qualifier}.{column}"
        return column

    qualified: list[Where] = []
    for where in wheres:
        if isinstance(where, NestedWhere):
            inner = where.query.clone()
            inner.wheres = qualify_wheres(inner.wheres, qualifier, every)
            where = replace(where, query=inner)
        elif isinstance(where, (BasicWhere, InWhere, NullWhere, BetweenWhere)):
            where = replace(where, column=fix(where.column))
        elif isinstance(where, ColumnWhere):
            where = replace(where, first=fix(where.first))
        qualified.append(where)
    return qualified


def _references_outside(wheres: Sequence[Where], table: str) -> bool:
    """Whether any predicate may touch a column not qualified with ``table``."""
    prefix = f"{table}."
    for where in wheres:
        if isinstance(where, NestedWhere):
            if _references_outside(where.query.wheres, table):
                return True
        elif isinstance(where, (BasicWhere, InWhere, NullWhere, BetweenWhere)):
            if not (isinstance(where.column, str) and where.column.startswith(prefix)):
                return True
        elif isinstance(where, ColumnWhere):
            if not (where.first.startswith(prefix) and where.second.startswith(prefix)):
                return True
        else:
            return True
    return False


def _append_group(query: QueryBuilder, wheres: list[Where]) -> None:
    """AND ``wheres`` onto ``query`` as one parenthesized group."""
    if not wheres:
        return
    group = query.for_nested_where()
    group.wheres = wheres
    if len(wheres) == 1 and not isinstance(wheres[0], NestedWhere):
        query.wheres.append(replace(wheres[0], boolean="and"))
    else:
        query.add_nested_where_query(group)


def _match_value(value: Any) -> Any:
    # Driver types differ (int keys vs varchar morph ids), so compare as text
    return None if value is None else str(value)


# ========== Strategies ==========

class RelationStrategy:
    """SQL shapes and result matching for one relation kind."""

    qualify_every_column = False

    def related_alias(self, relation: Relation, parent_alias: str) -> str:
        """Name the related table goes by inside a sub-query.

        A relation back onto the parent's own table gets ``{table}_relation``
        (with a counter when the parent already uses that name).
        """
        table = relation.related_table()
        if table != relation.parent_table() and table != parent_alias:
            return table
        alias = f"{table}_relation"
        counter = 2
        while alias == parent_alias:
            alias = f"{table}_relation_{counter}"
            counter += 1
        return alias

    # ----- sub-query fragments -----

    def exists_fragment(
        self, relation: Relation, session: Session, parent_alias: str, constraint: Constraint | None = None
    ) -> QueryBuilder:
        """``SELECT 1 FROM related WHERE <relation keys> AND (<constraint>)``."""
        return self._fragment(relation, session, parent_alias, constraint, [raw("1")])

    def count_fragment(
        self, relation: Relation, session: Session, parent_alias: str, constraint: Constraint | None = None
    ) -> QueryBuilder:
        return self._fragment(relation, session, parent_alias, constraint, [raw("COUNT(*)")])

    def aggregate_fragment(
        self,
        relation: Relation,
        session: Session,
        parent_alias: str,
        function: str,
        column: str,
        constraint: Constraint | None = None,
    ) -> QueryBuilder:
        alias = self.related_alias(relation, parent_alias)
        target = column if "." in column else f"{alias}.{column}"
        return self._fragment(relation, session, parent_alias, constraint, [raw(f"{function.upper()}({target})")])

    def _fragment(
        self,
        relation: Relation,
        session: Session,
        parent_alias: str,
        constraint: Constraint | None,
        columns: list[Any],
    ) -> QueryBuilder:
        alias = self.related_alias(relation, parent_alias)
        related = session.query(relation.related, alias=None if alias == relation.related_table() else alias)  # type: ignore[arg-type]
        if constraint is not None:
            constraint(related)

        query = related.to_base()
        user_wheres = qualify_wheres(query.wheres, alias, self.qualify_every_column)
        user_joins = query.joins
        query.wheres = []
        query.joins = []
        query.orders = []
        query.columns = columns

        self.add_fragment_constraints(relation, query, alias, parent_alias, user_wheres)
        query.joins.extend(user_joins)
        _append_group(query, user_wheres)
        return query

    def add_fragment_constraints(
        self,
        relation: Relation,
        query: QueryBuilder,
        alias: str,
        parent_alias: str,
        user_wheres: list[Where],
    ) -> None:
        raise NotImplementedError

    # ----- eager loading -----

    def parent_key_column(self, relation: Relation) -> str:
        """Attribute on the parent whose values are collected for the IN list."""
        return relation.local_key()

    def match_key(self, relation: Relation, item: Base) -> Any:
        """Value on a loaded related item that identifies its parent."""
        raise NotImplementedError

    def materialize(
        self, relation: Relation, session: Session, keys: list[Any], constraint: Constraint | None = None
    ) -> ModelQueryBuilder:
        """Build the one query that loads this relation for all ``keys``."""
        related = session.query(relation.related)  # type: ignore[arg-type]
        if constraint is not None:
            constraint(related)
        user_wheres = qualify_wheres(related.query.wheres, relation.related_table())
        related.query.wheres = []
        self.add_eager_constraints(relation, related.query, keys)
        _append_group(related.query, user_wheres)
        return related

    def add_eager_constraints(self, relation: Relation, query: QueryBuilder, keys: list[Any]) -> None:
        raise NotImplementedError

    def match(self, relation: Relation, parents: Sequence[Base], items: Sequence[Base]) -> None:
        """Attach loaded ``items`` to their ``parents`` under the relation name."""
        buckets: dict[Any, list[Base]] = defaultdict(list)
        for item in items:
            buckets[_match_value(self.match_key(relation, item))].append(item)

        column = self.parent_key_column(relation)
        many = relation.is_many()
        for parent in parents:
            found = buckets.get(_match_value(parent.__dict__.get(column)), [])
            parent._set_relation(relation.name, list(found) if many else (found[0] if found else None))


class BelongsToStrategy(RelationStrategy):
    def add_fragment_constraints(self, relation, query, alias, parent_alias, user_wheres):
        query.where_column(f"{alias}.{relation.local_key()}", "=", f"{parent_alias}.{relation.foreign_key()}")

    def parent_key_column(self, relation):
        return relation.foreign_key()

    def match_key(self, relation, item):
        return item.__dict__.get(relation.local_key())

    def add_eager_constraints(self, relation, query, keys):
        query.where_in(f"{relation.related_table()}.{relation.local_key()}", keys)


class HasOneOrManyStrategy(RelationStrategy):
    def add_fragment_constraints(self, relation, query, alias, parent_alias, user_wheres):
        query.where_column(f"{alias}.{relation.foreign_key()}", "=", f"{parent_alias}.{relation.local_key()}")

    def match_key(self, relation, item):
        return item.__dict__.get(relation.foreign_key())

    def add_eager_constraints(self, relation, query, keys):
        query.where_in(f"{relation.related_table()}.{relation.foreign_key()}", keys)


class MorphOneOrManyStrategy(HasOneOrManyStrategy):
    """HasOne / HasMany plus a check on the related row's type column."""

    def add_fragment_constraints(self, relation, query, alias, parent_alias, user_wheres):
        super().add_fragment_constraints(relation, query, alias, parent_alias, user_wheres)
        morph = relation.morph_info()
        assert morph is not None
        query.where(f"{alias}.{morph.type_column}", "=", morph.type_alias)

    def add_eager_constraints(self, relation, query, keys):
        super().add_eager_constraints(relation, query, keys)
        morph = relation.morph_info()
        assert morph is not None
        query.where(f"{relation.related_table()}.{morph.type_column}", "=", morph.type_alias)


class BelongsToManyStrategy(RelationStrategy):
    """Pivot-table relations.

    Sub-queries start from the pivot table and only join the related table
    when the constraint needs its columns.
    """

    def _fragment(self, relation, session, parent_alias, constraint, columns):
        pivot = relation.pivot_info()
        assert pivot is not None
        alias = self.related_alias(relation, parent_alias)
        related = session.query(relation.related, alias=None if alias == relation.related_table() else alias)
        if constraint is not None:
            constraint(related)

        query = related.to_base()
        related_from = query.from_table
        user_wheres = qualify_wheres(query.wheres, alias)
        user_joins = query.joins
        needs_join = bool(user_joins) or _references_outside(user_wheres, pivot.table)
        if any(f"{alias}." in getattr(c, "sql", "") for c in columns):
            needs_join = True

        query.from_table = pivot.table
        query.wheres = []
        query.joins = []
        query.orders = []
        query.columns = columns
        if needs_join:
            query.join(related_from, f"{alias}.{pivot.related_key}", "=", f"{pivot.table}.{pivot.related_pivot_key}")
            query.joins.extend(user_joins)
        query.where_column(f"{pivot.table}.{pivot.foreign_pivot_key}", "=", f"{parent_alias}.{relation.local_key()}")
        _append_group(query, user_wheres)
        return query

    def add_eager_constraints(self, relation, query, keys):
        pivot = relation.pivot_info()
        assert pivot is not None
        table = relation.related_table()
        if not query.columns:
            query.select(f"{table}.*")
        query.add_select(f"{pivot.table}.{pivot.foreign_pivot_key} AS pivot_{pivot.foreign_pivot_key}")
        query.join(pivot.table, f"{pivot.table}.{pivot.related_pivot_key}", "=", f"{table}.{pivot.related_key}")
        query.where_in(f"{pivot.table}.{pivot.foreign_pivot_key}", keys)

    def match_key(self, relation, item):
        pivot = relation.pivot_info()
        assert pivot is not None
        return item.__dict__.get(f"pivot_{pivot.foreign_pivot_key}")


class MorphToManyStrategy(BelongsToManyStrategy):
    """Polymorphic pivot relations; both directions share the SQL shape.

    The pivot is always joined because its type column must be checked.
    """

    def _fragment(self, relation, session, parent_alias, constraint, columns):
        return RelationStrategy._fragment(self, relation, session, parent_alias, constraint, columns)

    def add_fragment_constraints(self, relation, query, alias, parent_alias, user_wheres):
        pivot = relation.pivot_info()
        assert pivot is not None
        query.join(pivot.table, f"{pivot.table}.{pivot.related_pivot_key}", "=", f"{alias}.{pivot.related_key}")
        query.where_column(f"{pivot.table}.{pivot.foreign_pivot_key}", "=", f"{parent_alias}.{relation.local_key()}")
        query.where(f"{pivot.table}.{pivot.morph_type}", "=", pivot.morph_class)

    def add_eager_constraints(self, relation, query, keys):
        super().add_eager_constraints(relation, query, keys)
        pivot = relation.pivot_info()
        assert pivot is not None
        query.where(f"{pivot.table}.{pivot.morph_type}", "=", pivot.morph_class)


class HasThroughStrategy(RelationStrategy):
    """Relations reached through an intermediate table."""

    qualify_every_column = True

    def add_fragment_constraints(self, relation, query, alias, parent_alias, user_wheres):
        through = relation.through_info()
        assert through is not None
        query.join(through.table, f"{through.table}.{through.second_local_key}", "=", f"{alias}.{through.second_key}")
        query.where_column(f"{through.table}.{through.first_key}", "=", f"{parent_alias}.{relation.local_key()}")

    def add_eager_constraints(self, relation, query, keys):
        through = relation.through_info()
        assert through is not None
        table = relation.related_table()
        if not query.columns:
            query.select(f"{table}.*")
        query.add_select(f"{through.table}.{through.first_key} AS through_{through.first_key}")
        query.join(through.table, f"{through.table}.{through.second_local_key}", "=", f"{table}.{through.second_key}")
        query.where_in(f"{through.table}.{through.first_key}", keys)

    def materialize(self, relation, session, keys, constraint=None):
        related = session.query(relation.related)
        if constraint is not None:
            constraint(related)
        # Both tables are in play, so bare column names must be pinned down
        user_wheres = qualify_wheres(related.query.wheres, relation.related_table(), every=True)
        related.query.wheres = []
        self.add_eager_constraints(relation, related.query, keys)
        _append_group(related.query, user_wheres)
        return related

    def match_key(self, relation, item):
        through = relation.through_info()
        assert through is not None
        return item.__dict__.get(f"through_{through.first_key}")


class MorphToStrategy(RelationStrategy):
    """The related model depends on each parent row's type column.

    There is no single related table, so the plain fragments are refused;
    callers go through :meth:`type_fragment` once per candidate model.
    """

    def related_alias(self, relation, parent_alias):
        raise InvalidRelationError(
            f"Relation [{relation.name}] is a morph_to; use where_has_morph() instead"
        )

    def _fragment(self, relation, session, parent_alias, constraint, columns):
        raise InvalidRelationError(
            f"Relation [{relation.name}] is a morph_to; use where_has_morph() instead"
        )

    def type_fragment(
        self,
        relation: Relation,
        session: Session,
        parent_alias: str,
        model: type[Base],
        constraint: Constraint | None,
        columns: list[Any],
    ) -> QueryBuilder:
        """Sub-query for the rows of one candidate ``model``."""
        morph = relation.morph_info()
        assert morph is not None
        table = model.__tablename__
        alias = table
        if table == relation.parent_table() or table == parent_alias:
            alias = f"{table}_relation" if parent_alias != f"{table}_relation" else f"{table}_relation_2"
        related = session.query(model, alias=None if alias == table else alias)
        if constraint is not None:
            constraint(related)

        query = related.to_base()
        user_wheres = qualify_wheres(query.wheres, alias)
        query.wheres = []
        query.orders = []
        query.columns = columns
        owner_key = relation.local_key_column or model.__primary_key__
        query.where_column(f"{alias}.{owner_key}", "=", f"{parent_alias}.{morph.id_column}")
        _append_group(query, user_wheres)
        return query

    def parent_key_column(self, relation):
        return relation.foreign_key()

    def match_key(self, relation, item):
        return item.__dict__.get(relation.local_key_column or type(item).__primary_key__)

    def materialize_type(
        self,
        relation: Relation,
        session: Session,
        model: type[Base],
        keys: list[Any],
        constraint: Constraint | None = None,
    ) -> ModelQueryBuilder:
        related = session.query(model)
        if constraint is not None:
            constraint(related)
        user_wheres = related.query.wheres
        related.query.wheres = []
        owner_key = relation.local_key_column or model.__primary_key__
        related.query.where_in(f"{model.__tablename__}.{owner_key}", keys)
        _append_group(related.query, user_wheres)
        return related

    def materialize(self, relation, session, keys, constraint=None):
        raise InvalidRelationError(f"Relation [{relation.name}] loads per morph type; see materialize_type()")

    def match_type(self, relation: Relation, parents: Sequence[Base], items: Sequence[Base]) -> None:
        """Attach ``items`` (all of one model) to the parents that point at them."""
        by_key = {_match_value(self.match_key(relation, item)): item for item in items}
        column = relation.foreign_key()
        for parent in parents:
            parent._set_relation(relation.name, by_key.get(_match_value(parent.__dict__.get(column))))


STRATEGIES: dict[RelationKind, RelationStrategy] = {
    RelationKind.BELONGS_TO: BelongsToStrategy(),
    RelationKind.HAS_ONE: HasOneOrManyStrategy(),
    RelationKind.HAS_MANY: HasOneOrManyStrategy(),
    RelationKind.BELONGS_TO_MANY: BelongsToManyStrategy(),
    RelationKind.MORPH_TO: MorphToStrategy(),
    RelationKind.MORPH_ONE: MorphOneOrManyStrategy(),
    RelationKind.MORPH_MANY: MorphOneOrManyStrategy(),
    RelationKind.MORPH_TO_MANY: MorphToManyStrategy(),
    RelationKind.MORPHED_BY_MANY: MorphToManyStrategy(),
    RelationKind.HAS_MANY_THROUGH: HasThroughStrategy(),
    RelationKind.HAS_ONE_THROUGH: HasThroughStrategy(),
}
