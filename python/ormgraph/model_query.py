"""Model-aware query builder: relation filters, aggregates, scopes, eager loads."""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Iterator, Sequence
from typing import TYPE_CHECKING, Any

from ormgraph.base import Base
from ormgraph.errors import InvalidQueryError, InvalidRelationError, ModelNotFoundError, RelationNotFoundError
from ormgraph.loading import LoadOption, Plan, eager_load, parse_relations
from ormgraph.mixins import DELETED_AT, UPDATED_AT, utcnow
from ormgraph.query import _MISSING, NestedWhere, QueryBuilder, raw
from ormgraph.registry import SOFT_DELETES
from ormgraph.relations import MorphToStrategy, Relation, RelationKind, snake_case

if TYPE_CHECKING:
    from ormgraph.pagination import CursorPage, Page
    from ormgraph.session import Session

Callback = Callable[["ModelQueryBuilder[Any]"], Any]

_AS_PATTERN = re.compile(r"\s+as\s+", re.IGNORECASE)


def _can_use_exists(operator: str, count: int) -> bool:
    """``>= 1`` is EXISTS and ``< 1`` is NOT EXISTS; anything else needs COUNT."""
    return operator in (">=", "<") and count == 1


class ModelQueryBuilder[T: "Base"]:
    """Query builder that returns model instances and understands relations.

    Example:
        >>> users = (
        ...     session.query(User)
        ...     .where("active", True)
        ...     .where_has("posts", lambda q: q.where("published", True))
        ...     .with_count("posts")
        ...     .with_("posts.comments")
        ...     .get()
        ... )
    """

    def __init__(
        self,
        session: Session,
        model: type[T],
        alias: str | None = None,
        query: QueryBuilder | None = None,
    ) -> None:
        self.session = session
        self.model = model
        self.alias = alias
        if query is None:
            table = model.__tablename__
            query = session.connection.table(f"{table} AS {alias}" if alias else table)
        self.query = query
        self._scopes = session.registry.global_scopes(model)
        self._eager: Plan = {}
        self._relations: dict[str, Relation] = {}

    @property
    def qualifier(self) -> str:
        """Name other SQL uses to refer to this query's table."""
        return self.alias or self.model.__tablename__

    def qualify_column(self, column: str) -> str:
        return column if "." in column else f"{self.qualifier}.{column}"

    def clone(self) -> ModelQueryBuilder[T]:
        new = ModelQueryBuilder(self.session, self.model, self.alias, self.query.clone())
        new._scopes = dict(self._scopes)
        new._eager = dict(self._eager)
        new._relations = self._relations
        return new

    def _nested(self) -> ModelQueryBuilder[T]:
        nested = ModelQueryBuilder(self.session, self.model, self.alias, self.query.for_nested_where())
        nested._relations = self._relations
        return nested

    def get_relation(self, name: str) -> Relation:
        """Resolve ``name`` on this query's model, once per query."""
        relation = self._relations.get(name)
        if relation is None:
            relation = self.session.registry.relation(self.model, name)
            self._relations[name] = relation
        return relation

    # ========== Plain predicates ==========

    def where(self, column: Any, operator: Any = _MISSING, value: Any = _MISSING, boolean: str = "and") -> ModelQueryBuilder[T]:
        """Same forms as :meth:`QueryBuilder.where`; callbacks get a model builder."""
        if callable(column) and not isinstance(column, str):
            return self.where_nested(column, boolean)
        self.query.where(column, operator, value, boolean)
        return self

    def or_where(self, column: Any, operator: Any = _MISSING, value: Any = _MISSING) -> ModelQueryBuilder[T]:
        return self.where(column, operator, value, "or")

    def where_nested(self, callback: Callback, boolean: str = "and", negated: bool = False) -> ModelQueryBuilder[T]:
        nested = self._nested()
        callback(nested)
        self.query.add_nested_where_query(nested.query, boolean, negated)
        return self

    def where_not(self, callback: Callback, boolean: str = "and") -> ModelQueryBuilder[T]:
        return self.where_nested(callback, boolean, negated=True)

    def or_where_not(self, callback: Callback) -> ModelQueryBuilder[T]:
        return self.where_nested(callback, "or", negated=True)

    def where_key(self, ids: Any) -> ModelQueryBuilder[T]:
        """Filter by primary key value(s)."""
        column = self.qualify_column(self.model.__primary_key__)
        if isinstance(ids, (list, tuple, set)):
            self.query.where_in(column, list(ids))
        else:
            self.query.where(column, "=", ids)
        return self

    def where_in(self, column: str, values: Any, boolean: str = "and", negated: bool = False) -> ModelQueryBuilder[T]:
        self.query.where_in(column, values, boolean, negated)
        return self

    def or_where_in(self, column: str, values: Any) -> ModelQueryBuilder[T]:
        return self.where_in(column, values, "or")

    def where_not_in(self, column: str, values: Any, boolean: str = "and") -> ModelQueryBuilder[T]:
        return self.where_in(column, values, boolean, negated=True)

    def where_null(self, column: str, boolean: str = "and", negated: bool = False) -> ModelQueryBuilder[T]:
        self.query.where_null(column, boolean, negated)
        return self

    def or_where_null(self, column: str) -> ModelQueryBuilder[T]:
        return self.where_null(column, "or")

    def where_not_null(self, column: str, boolean: str = "and") -> ModelQueryBuilder[T]:
        return self.where_null(column, boolean, negated=True)

    def where_between(self, column: str, values: Sequence[Any], boolean: str = "and", negated: bool = False) -> ModelQueryBuilder[T]:
        self.query.where_between(column, values, boolean, negated)
        return self

    def where_column(self, first: str, operator: str, second: str | None = None, boolean: str = "and") -> ModelQueryBuilder[T]:
        self.query.where_column(first, operator, second, boolean)
        return self

    def where_raw(self, sql: str, bindings: Sequence[Any] | None = None, boolean: str = "and") -> ModelQueryBuilder[T]:
        self.query.where_raw(sql, bindings, boolean)
        return self

    def or_where_raw(self, sql: str, bindings: Sequence[Any] | None = None) -> ModelQueryBuilder[T]:
        return self.where_raw(sql, bindings, "or")

    def where_exists(self, query: Any, boolean: str = "and", negated: bool = False) -> ModelQueryBuilder[T]:
        self.query.where_exists(query, boolean, negated)
        return self

    def filter(self, **kwargs: Any) -> ModelQueryBuilder[T]:
        """Django-style keyword filters, see :meth:`QueryBuilder.filter`."""
        self.query.filter(**kwargs)
        return self

    # ========== Select / join / order / limit ==========

    def select(self, *columns: Any) -> ModelQueryBuilder[T]:
        self.query.select(*columns)
        return self

    def add_select(self, *columns: Any) -> ModelQueryBuilder[T]:
        self.query.add_select(*columns)
        return self

    def select_raw(self, sql: str, bindings: Sequence[Any] | None = None) -> ModelQueryBuilder[T]:
        self.query.select_raw(sql, bindings)
        return self

    def distinct(self) -> ModelQueryBuilder[T]:
        self.query.distinct()
        return self

    def join(self, table: str, first: Any, operator: str | None = None, second: str | None = None, type: str = "inner") -> ModelQueryBuilder[T]:
        self.query.join(table, first, operator, second, type)
        return self

    def left_join(self, table: str, first: Any, operator: str | None = None, second: str | None = None) -> ModelQueryBuilder[T]:
        return self.join(table, first, operator, second, "left")

    def group_by(self, *columns: str) -> ModelQueryBuilder[T]:
        self.query.group_by(*columns)
        return self

    def having(self, column: str, operator: Any = _MISSING, value: Any = _MISSING) -> ModelQueryBuilder[T]:
        self.query.having(column, operator, value)
        return self

    def order_by(self, column: str, direction: str = "asc") -> ModelQueryBuilder[T]:
        self.query.order_by(column, direction)
        return self

    def order_by_desc(self, column: str) -> ModelQueryBuilder[T]:
        return self.order_by(column, "desc")

    def latest(self, column: str = "created_at") -> ModelQueryBuilder[T]:
        return self.order_by(column, "desc")

    def oldest(self, column: str = "created_at") -> ModelQueryBuilder[T]:
        return self.order_by(column, "asc")

    def reorder(self, column: str | None = None, direction: str = "asc") -> ModelQueryBuilder[T]:
        self.query.reorder(column, direction)
        return self

    def limit(self, value: int) -> ModelQueryBuilder[T]:
        self.query.limit(value)
        return self

    take = limit

    def offset(self, value: int) -> ModelQueryBuilder[T]:
        self.query.offset(value)
        return self

    skip = offset

    def when(self, condition: Any, callback: Callable[[ModelQueryBuilder[T], Any], Any],
             default: Callable[[ModelQueryBuilder[T], Any], Any] | None = None) -> ModelQueryBuilder[T]:
        if condition:
            callback(self, condition)
        elif default is not None:
            default(self, condition)
        return self

    # ========== Relation existence ==========

    def has(
        self,
        relation: str,
        operator: str = ">=",
        count: int = 1,
        boolean: str = "and",
        callback: Callback | None = None,
    ) -> ModelQueryBuilder[T]:
        """Filter parents by how many related rows they have.

        ``>= 1`` compiles to ``EXISTS``, ``< 1`` to ``NOT EXISTS`` and any other
        comparison to ``(SELECT COUNT(*) ...) <op> ?``. Dotted paths nest.

        Raises:
            RelationNotFoundError: Before any SQL is built, for unknown names.
        """
        if "." in relation:
            return self._has_nested(relation, operator, count, boolean, callback)

        rel = self.get_relation(relation)
        if rel.kind is RelationKind.MORPH_TO:
            raise InvalidRelationError(
                f"Relation [{relation}] on [{self.model.__name__}] is a morph_to; use where_has_morph() instead"
            )

        strategy = rel.strategy
        if _can_use_exists(operator, count):
            sub = strategy.exists_fragment(rel, self.session, self.qualifier, callback)
            self.query.where_exists(sub, boolean, negated=operator == "<")
        else:
            sub = strategy.count_fragment(rel, self.session, self.qualifier, callback)
            self.query.where_sub(sub, operator, count, boolean)
        return self

    def _has_nested(
        self,
        path: str,
        operator: str,
        count: int,
        boolean: str,
        callback: Callback | None,
    ) -> ModelQueryBuilder[T]:
        # doesnt_have("a.b") means "has no a that has a b"
        doesnt_have = operator == "<" and count == 1
        if doesnt_have:
            operator = ">="

        first, rest = path.split(".", 1)
        try:
            self.get_relation(first)
        except RelationNotFoundError:
            raise RelationNotFoundError(self.model, first, path) from None

        def inner(query: ModelQueryBuilder[Any]) -> None:
            query.has(rest, operator, count, "and", callback)

        return self.has(first, "<" if doesnt_have else ">=", 1, boolean, inner)

    def or_has(self, relation: str, operator: str = ">=", count: int = 1) -> ModelQueryBuilder[T]:
        return self.has(relation, operator, count, "or")

    def doesnt_have(self, relation: str, boolean: str = "and", callback: Callback | None = None) -> ModelQueryBuilder[T]:
        return self.has(relation, "<", 1, boolean, callback)

    def or_doesnt_have(self, relation: str) -> ModelQueryBuilder[T]:
        return self.doesnt_have(relation, "or")

    def where_has(
        self,
        relation: str,
        callback: Callback | None = None,
        operator: str = ">=",
        count: int = 1,
    ) -> ModelQueryBuilder[T]:
        """Filter parents that have related rows matching ``callback``.

        Example:
            >>> session.query(User).where_has("posts", lambda q: q.where("title", "like", "%orm%"))
        """
        return self.has(relation, operator, count, "and", callback)

    def or_where_has(
        self,
        relation: str,
        callback: Callback | None = None,
        operator: str = ">=",
        count: int = 1,
    ) -> ModelQueryBuilder[T]:
        return self.has(relation, operator, count, "or", callback)

    def where_doesnt_have(self, relation: str, callback: Callback | None = None) -> ModelQueryBuilder[T]:
        return self.doesnt_have(relation, "and", callback)

    def or_where_doesnt_have(self, relation: str, callback: Callback | None = None) -> ModelQueryBuilder[T]:
        return self.doesnt_have(relation, "or", callback)

    def where_has_nested(self, path: str, callback: Callback | None = None, boolean: str = "and") -> ModelQueryBuilder[T]:
        """``where_has("a", lambda q: q.where_has_nested("b.c", callback))``, spelled out."""
        first, _, rest = path.partition(".")
        if not rest:
            return self.has(first, ">=", 1, boolean, callback)
        return self.has(first, ">=", 1, boolean, lambda q: q.where_has_nested(rest, callback))

    def where_relation(self, relation: str, column: str, operator: Any = _MISSING, value: Any = _MISSING) -> ModelQueryBuilder[T]:
        """Shorthand for a where_has with a single ``where``.

        Example:
            >>> session.query(Post).where_relation("author", "name", "Alice")
        """
        return self.where_has(relation, lambda q: q.where(column, operator, value))

    def or_where_relation(self, relation: str, column: str, operator: Any = _MISSING, value: Any = _MISSING) -> ModelQueryBuilder[T]:
        return self.or_where_has(relation, lambda q: q.where(column, operator, value))

    def with_where_has(self, relation: str, callback: Callback | None = None) -> ModelQueryBuilder[T]:
        """Filter by a relation and eager load the same matching rows."""
        return self.where_has(relation, callback).with_({relation: callback})

    # ========== Belongs-to shortcuts ==========

    def where_belongs_to(
        self, related: Any, relation: str | None = None, boolean: str = "and", negated: bool = False
    ) -> ModelQueryBuilder[T]:
        """Filter on the foreign key of a belongs_to relation.

        ``related`` is a model, a list of models or key value(s). For models
        the relation defaults to the snake_case class name; key values need
        ``relation`` spelled out.

        Example:
            >>> session.query(Post).where_belongs_to(alice, "author")
            >>> session.query(User).where_belongs_to([1, 2], "country")
        """
        items = list(related) if isinstance(related, (list, tuple)) else [related]
        models = [item for item in items if isinstance(item, Base)]
        if relation is None:
            if not models:
                raise InvalidQueryError("A relation name is required when filtering by key values")
            relation = snake_case(type(models[0]).__name__)

        rel = self.get_relation(relation)
        if rel.kind is not RelationKind.BELONGS_TO:
            raise InvalidRelationError(
                f"Relation [{relation}] on [{self.model.__name__}] is not a belongs_to relation"
            )

        owner_key = rel.local_key()
        values = [item.__dict__.get(owner_key) if isinstance(item, Base) else item for item in items]
        column = self.qualify_column(rel.foreign_key())
        if negated:
            if len(values) == 1:
                self.query.where(column, "!=", values[0], boolean)
            elif values:
                self.query.where_not_in(column, values, boolean)
        elif len(values) == 1:
            self.query.where(column, "=", values[0], boolean)
        else:
            self.query.where_in(column, values, boolean)
        return self

    def or_where_belongs_to(self, related: Any, relation: str | None = None) -> ModelQueryBuilder[T]:
        return self.where_belongs_to(related, relation, "or")

    def where_doesnt_belong_to(self, related: Any, relation: str | None = None) -> ModelQueryBuilder[T]:
        return self.where_belongs_to(related, relation, "and", negated=True)

    # ========== Polymorphic existence ==========

    def has_morph(
        self,
        relation: str,
        types: str | type | Sequence[str | type],
        operator: str = ">=",
        count: int = 1,
        boolean: str = "and",
        callback: Callback | None = None,
    ) -> ModelQueryBuilder[T]:
        """Existence filter for a morph_to relation, one branch per candidate type.

        ``types`` may name models, morph aliases or ``"*"`` for every type
        present in the table. An empty list matches nothing.
        """
        rel = self.get_relation(relation)
        if rel.kind is not RelationKind.MORPH_TO:
            raise InvalidRelationError(
                f"Relation [{relation}] on [{self.model.__name__}] is not a morph_to relation"
            )
        strategy = rel.strategy
        assert isinstance(strategy, MorphToStrategy)
        morph = rel.morph_info()
        assert morph is not None

        models = self._morph_types(rel, types)
        use_exists = _can_use_exists(operator, count)
        if use_exists and operator == "<":
            return self._doesnt_have_morph(rel, strategy, models, boolean, callback)
        if not models:
            self.query.where_raw("1 = 0", boolean=boolean)
            return self

        group = self.query.for_nested_where()
        for model in models:
            columns = [raw("1")] if use_exists else [raw("COUNT(*)")]
            sub = strategy.type_fragment(rel, self.session, self.qualifier, model, callback, columns)
            branch = self.query.for_nested_where()
            branch.where(self.qualify_column(morph.type_column), "=", self.session.registry.get_morph_alias(model))
            if use_exists:
                branch.where_exists(sub)
            else:
                branch.where_sub(sub, operator, count)
            group.add_nested_where_query(branch, "or")

        self.query.add_nested_where_query(group, boolean)
        return self

    def _doesnt_have_morph(
        self,
        rel: Relation,
        strategy: MorphToStrategy,
        models: list[type[Base]],
        boolean: str,
        callback: Callback | None,
    ) -> ModelQueryBuilder[T]:
        """One NOT EXISTS per type, ANDed, with the type check inside each sub-query.

        Rows whose type is not listed are kept. No types adds no constraint.
        """
        if not models:
            return self
        morph = rel.morph_info()
        assert morph is not None
        group = self.query.for_nested_where()
        for model in models:
            sub = strategy.type_fragment(rel, self.session, self.qualifier, model, callback, [raw("1")])
            sub.where(self.qualify_column(morph.type_column), "=", self.session.registry.get_morph_alias(model))
            group.where_exists(sub, negated=True)
        self.query.add_nested_where_query(group, boolean)
        return self

    def _morph_types(self, relation: Relation, types: Any) -> list[type[Base]]:
        registry = self.session.registry
        if types == "*" or types == ["*"]:
            morph = relation.morph_info()
            assert morph is not None
            aliases = (
                self.session.connection.table(self.model.__tablename__)
                .distinct()
                .where_not_null(morph.type_column)
                .pluck(morph.type_column)
            )
            return [registry.get_morphed_model(alias) for alias in aliases]  # type: ignore[union-attr]

        if isinstance(types, (str, type)):
            types = [types]
        return [registry.get_model(t) if isinstance(t, type) else registry.get_morphed_model(t) for t in types]

    def where_has_morph(
        self,
        relation: str,
        types: Any,
        callback: Callback | None = None,
        operator: str = ">=",
        count: int = 1,
    ) -> ModelQueryBuilder[T]:
        """Example:
            >>> session.query(Comment).where_has_morph(
            ...     "commentable", ["post", "video"], lambda q: q.where("title", "like", "%orm%")
            ... )
        """
        return self.has_morph(relation, types, operator, count, "and", callback)

    def or_where_has_morph(
        self,
        relation: str,
        types: Any,
        callback: Callback | None = None,
        operator: str = ">=",
        count: int = 1,
    ) -> ModelQueryBuilder[T]:
        return self.has_morph(relation, types, operator, count, "or", callback)

    def where_doesnt_have_morph(self, relation: str, types: Any, callback: Callback | None = None) -> ModelQueryBuilder[T]:
        return self.has_morph(relation, types, "<", 1, "and", callback)

    def or_where_doesnt_have_morph(self, relation: str, types: Any, callback: Callback | None = None) -> ModelQueryBuilder[T]:
        return self.has_morph(relation, types, "<", 1, "or", callback)

    def where_morph_relation(
        self, relation: str, types: Any, column: str, operator: Any = _MISSING, value: Any = _MISSING
    ) -> ModelQueryBuilder[T]:
        """Shorthand for a where_has_morph with a single ``where``.

        Example:
            >>> session.query(Comment).where_morph_relation("commentable", ["post"], "views", ">=", 1000)
        """
        return self.where_has_morph(relation, types, lambda q: q.where(column, operator, value))

    def or_where_morph_relation(
        self, relation: str, types: Any, column: str, operator: Any = _MISSING, value: Any = _MISSING
    ) -> ModelQueryBuilder[T]:
        return self.or_where_has_morph(relation, types, lambda q: q.where(column, operator, value))

    # ========== Relation aggregates ==========

    def with_count(self, *relations: Any) -> ModelQueryBuilder[T]:
        """Add ``{relation}_count`` columns.

        Example:
            >>> session.query(User).with_count("posts", {"posts as drafts": lambda q: q.where("published", False)})
        """
        return self._with_aggregate(relations, "count", "*")

    def with_exists(self, *relations: Any) -> ModelQueryBuilder[T]:
        return self._with_aggregate(relations, "exists", "*")

    def with_sum(self, relation: Any, column: str) -> ModelQueryBuilder[T]:
        return self._with_aggregate([relation], "sum", column)

    def with_avg(self, relation: Any, column: str) -> ModelQueryBuilder[T]:
        return self._with_aggregate([relation], "avg", column)

    def with_min(self, relation: Any, column: str) -> ModelQueryBuilder[T]:
        return self._with_aggregate([relation], "min", column)

    def with_max(self, relation: Any, column: str) -> ModelQueryBuilder[T]:
        return self._with_aggregate([relation], "max", column)

    def _with_aggregate(self, relations: Iterable[Any], function: str, column: str) -> ModelQueryBuilder[T]:
        if not self.query.columns:
            self.query.select(f"{self.qualifier}.*")

        for spec, constraint in _relation_items(relations):
            name, alias = _split_alias(spec)
            rel = self.get_relation(name)
            strategy = rel.strategy

            if function == "exists":
                alias = alias or f"{name}_exists"
                sub_sql, sub_bindings = strategy.exists_fragment(rel, self.session, self.qualifier, constraint).compile()
                self.query.add_select(raw(f"CASE WHEN EXISTS ({sub_sql}) THEN 1 ELSE 0 END AS {alias}", sub_bindings))
            elif function == "count":
                alias = alias or f"{name}_count"
                self.query.add_select_sub(strategy.count_fragment(rel, self.session, self.qualifier, constraint), alias)
            else:
                alias = alias or f"{name}_{function}_{column.split('.')[-1]}"
                sub = strategy.aggregate_fragment(rel, self.session, self.qualifier, function, column, constraint)
                self.query.add_select_sub(sub, alias)
        return self

    def with_count_morph(self, relation: str, types: Any, callback: Callback | None = None) -> ModelQueryBuilder[T]:
        """Add ``{relation}_count``: 1 when the row's parent exists among ``types``, else 0.

        Example:
            >>> session.query(Comment).with_count_morph("commentable", ["post", "video"])
        """
        return self._with_morph_aggregate(relation, types, "count", "*", callback)

    def with_sum_morph(self, relation: str, types: Any, column: str, callback: Callback | None = None) -> ModelQueryBuilder[T]:
        return self._with_morph_aggregate(relation, types, "sum", column, callback)

    def with_avg_morph(self, relation: str, types: Any, column: str, callback: Callback | None = None) -> ModelQueryBuilder[T]:
        return self._with_morph_aggregate(relation, types, "avg", column, callback)

    def with_min_morph(self, relation: str, types: Any, column: str, callback: Callback | None = None) -> ModelQueryBuilder[T]:
        return self._with_morph_aggregate(relation, types, "min", column, callback)

    def with_max_morph(self, relation: str, types: Any, column: str, callback: Callback | None = None) -> ModelQueryBuilder[T]:
        return self._with_morph_aggregate(relation, types, "max", column, callback)

    def _with_morph_aggregate(
        self, relation: str, types: Any, function: str, column: str, callback: Callback | None
    ) -> ModelQueryBuilder[T]:
        """One CASE branch per type; each row has at most one parent, so the
        parent's value is selected as is."""
        rel = self.get_relation(relation)
        if rel.kind is not RelationKind.MORPH_TO:
            raise InvalidRelationError(
                f"Relation [{relation}] on [{self.model.__name__}] is not a morph_to relation"
            )
        strategy = rel.strategy
        assert isinstance(strategy, MorphToStrategy)
        morph = rel.morph_info()
        assert morph is not None

        if not self.query.columns:
            self.query.select(f"{self.qualifier}.*")
        alias = f"{relation}_count" if function == "count" else f"{relation}_{function}_{column.split('.')[-1]}"

        models = self._morph_types(rel, types)
        if not models:
            self.query.add_select(raw(f"{'0' if function == 'count' else 'NULL'} AS {alias}"))
            return self

        type_column = self.qualify_column(morph.type_column)
        branches: list[str] = []
        bindings: list[Any] = []
        for model in models:
            columns = [raw("1")] if function == "count" else [column.split(".")[-1]]
            sub_sql, sub_bindings = strategy.type_fragment(
                rel, self.session, self.qualifier, model, callback, columns
            ).compile()
            branches.append(f"WHEN {type_column} = ? THEN ({sub_sql})")
            bindings += [self.session.registry.get_morph_alias(model), *sub_bindings]

        expression = f"CASE {' '.join(branches)} ELSE NULL END"
        if function == "count":
            expression = f"COALESCE({expression}, 0)"
        self.query.add_select(raw(f"{expression} AS {alias}", bindings))
        return self

    # ========== Eager loading ==========

    def with_(self, *relations: Any) -> ModelQueryBuilder[T]:
        """Eager load relations when the query runs.

        Example:
            >>> session.query(User).with_("posts.comments", {"roles": lambda q: q.order_by("name")})
        """
        plan = parse_relations(relations)
        for path in plan:
            self._validate_path(path)
        self._eager.update(plan)
        return self

    def without(self, *relations: str) -> ModelQueryBuilder[T]:
        """Remove relations (and everything nested under them) from the plan."""
        for name in relations:
            for path in list(self._eager):
                if path == name or path.startswith(f"{name}."):
                    del self._eager[path]
        return self

    def options(self, *opts: LoadOption) -> ModelQueryBuilder[T]:
        for opt in opts:
            if opt.strategy == "noload":
                self.without(opt.attribute)
            else:
                self.with_({opt.attribute: opt.constraint})
        return self

    def _validate_path(self, path: str) -> None:
        model: type[Base] | None = self.model
        for segment in path.split("."):
            if model is None:
                # Below a morph_to the model depends on the row
                return
            if segment not in model.__relations__:
                raise RelationNotFoundError(model, segment, path)
            model = self.session.registry.relation(model, segment).related

    def load(self, models: Sequence[T], *relations: Any) -> Sequence[T]:
        """Eager load relations onto models that were already fetched."""
        eager_load(self.session, models, parse_relations(relations))
        return models

    # ========== Scopes ==========

    def scope(self, name: str, *args: Any, **kwargs: Any) -> ModelQueryBuilder[T]:
        """Apply a local scope registered with ``Registry.scope``."""
        fn = self.session.registry.get_scope(self.model, name)
        fn(self, *args, **kwargs)
        return self

    def without_global_scope(self, *names: str) -> ModelQueryBuilder[T]:
        for name in names:
            self._scopes.pop(name, None)
        return self

    def without_global_scopes(self) -> ModelQueryBuilder[T]:
        self._scopes = {}
        return self

    def with_trashed(self) -> ModelQueryBuilder[T]:
        """Include soft-deleted rows."""
        return self.without_global_scope(SOFT_DELETES)

    def only_trashed(self) -> ModelQueryBuilder[T]:
        """Only soft-deleted rows."""
        self.without_global_scope(SOFT_DELETES)
        self.query.where_not_null(self.qualify_column(DELETED_AT))
        return self

    def to_base(self) -> QueryBuilder:
        """Copy of the underlying query with global scopes applied."""
        query = self.query.clone()
        if not self._scopes:
            return query

        user_wheres = query.wheres
        scoped = []
        for fn in self._scopes.values():
            query.wheres = []
            fn(ModelQueryBuilder(self.session, self.model, self.alias, query))
            scoped.append(query.wheres)

        query.wheres = _grouped(query, user_wheres) if any(scoped) else list(user_wheres)
        for wheres in scoped:
            query.wheres.extend(_grouped(query, wheres))
        return query

    def compile(self) -> tuple[str, list[Any]]:
        return self.to_base().compile()

    def to_sql(self) -> str:
        return self.compile()[0]

    def get_bindings(self) -> list[Any]:
        return self.compile()[1]

    # ========== Results ==========

    def _hydrate(self, rows: Iterable[dict[str, Any]]) -> list[T]:
        models = [self.model._from_row_fast(row) for row in rows]
        if models and self._eager:
            eager_load(self.session, models, self._eager)
        return models  # type: ignore[return-value]

    def get(self) -> list[T]:
        return self._hydrate(self.to_base().get())

    def rows(self) -> list[dict[str, Any]]:
        """Plain rows, no hydration or eager loading."""
        return self.to_base().get()

    def first(self) -> T | None:
        models = self.clone().limit(1).get()
        return models[0] if models else None

    def first_or_fail(self) -> T:
        model = self.first()
        if model is None:
            raise ModelNotFoundError(self.model)
        return model

    def find(self, id: Any) -> T | None:
        return self.clone().where_key(id).first()

    def find_or_fail(self, id: Any) -> T:
        model = self.find(id)
        if model is None:
            raise ModelNotFoundError(self.model, id)
        return model

    def find_many(self, ids: Sequence[Any]) -> list[T]:
        if not ids:
            return []
        return self.clone().where_key(list(ids)).get()

    def count(self, column: str = "*") -> int:
        return self.to_base().count(column)

    def exists(self) -> bool:
        return self.to_base().exists()

    def doesnt_exist(self) -> bool:
        return not self.exists()

    def pluck(self, column: str, key: str | None = None) -> list[Any] | dict[Any, Any]:
        return self.to_base().pluck(column, key)

    def value(self, column: str) -> Any:
        return self.to_base().value(column)

    def sum(self, column: str) -> Any:
        return self.to_base().sum(column)

    def avg(self, column: str) -> Any:
        return self.to_base().avg(column)

    def min(self, column: str) -> Any:
        return self.to_base().min(column)

    def max(self, column: str) -> Any:
        return self.to_base().max(column)

    # ========== Pagination / iteration ==========

    def paginate(self, per_page: int = 15, page: int = 1) -> Page[T]:
        from ormgraph.pagination import Page

        base = self.to_base()
        total = base.clone().reorder().count()
        items = self._hydrate(base.clone().for_page(page, per_page).get()) if total else []
        return Page(items=items, total=total, per_page=per_page, current_page=page)

    def cursor_paginate(
        self,
        per_page: int = 15,
        cursor: str | None = None,
        column: str | None = None,
        direction: str = "asc",
    ) -> CursorPage[T]:
        """Keyset pagination over ``column`` (the primary key by default).

        Example:
            >>> page = session.query(Post).cursor_paginate(20)
            >>> following = session.query(Post).cursor_paginate(20, page.next_cursor)
        """
        from ormgraph.pagination import cursor_paginate

        return cursor_paginate(
            self.to_base(), per_page, cursor, column or self.model.__primary_key__, direction,
            fetch=lambda q: self._hydrate(q.get()),
            value_of=lambda model, name: model.__dict__.get(name),
        )

    def chunk(self, size: int) -> Iterator[list[T]]:
        """Yield models in pages of ``size``; orders by primary key when unordered."""
        base = self.to_base()
        if not base.orders:
            base.order_by(self.qualify_column(self.model.__primary_key__))
        for rows in base.chunk(size):
            yield self._hydrate(rows)

    def chunk_by_id(self, size: int, column: str | None = None) -> Iterator[list[T]]:
        key = column or self.model.__primary_key__
        for rows in self.to_base().chunk_by_id(size, self.qualify_column(key), alias=key.split(".")[-1]):
            yield self._hydrate(rows)

    def lazy_by_id(self, size: int = 1000, column: str | None = None) -> Iterator[T]:
        """Iterate models one by one, fetched ``size`` at a time by key."""
        for models in self.chunk_by_id(size, column):
            yield from models

    def stream(self, batch_size: int = 1000) -> Iterator[T]:
        """Iterate models over a streaming cursor; eager loads run per batch."""
        for rows in self.to_base().stream_chunk(batch_size):
            yield from self._hydrate(rows)

    # ========== Writes ==========

    def update(self, values: dict[str, Any]) -> int:
        if getattr(self.model, "__timestamps__", False):
            values = {UPDATED_AT: utcnow(), **values}
        return self.to_base().update(values)

    def delete(self) -> int:
        """Delete matching rows; soft-deleting models get ``deleted_at`` set instead."""
        if getattr(self.model, "__soft_delete__", False):
            return self.to_base().update({DELETED_AT: utcnow()})
        return self.to_base().delete()

    def force_delete(self) -> int:
        return self.to_base().delete()

    def restore(self) -> int:
        """Clear ``deleted_at`` on matching soft-deleted rows."""
        query = self.clone().with_trashed().to_base()
        return query.update({DELETED_AT: None})

    def __repr__(self) -> str:
        return f"<ModelQueryBuilder {self.model.__name__} {self.to_sql()!r}>"


def _grouped(query: QueryBuilder, wheres: list[Any]) -> list[Any]:
    """Wrap ``wheres`` in parentheses when an OR inside could leak out."""
    if len(wheres) > 1 and any(w.boolean == "or" for w in wheres[1:]):
        group = query.for_nested_where()
        group.wheres = wheres
        return [NestedWhere(group)]
    return list(wheres)


def _relation_items(relations: Iterable[Any]) -> list[tuple[str, Callback | None]]:
    items: list[tuple[str, Callback | None]] = []
    for item in relations:
        if isinstance(item, dict):
            items.extend(item.items())
        elif isinstance(item, (list, tuple)):
            items.extend((name, None) for name in item)
        else:
            items.append((item, None))
    return items


def _split_alias(spec: str) -> tuple[str, str | None]:
    """``"posts as total"`` -> ``("posts", "total")``."""
    parts = _AS_PATTERN.split(spec.strip(), maxsplit=1)
    return (parts[0], parts[1]) if len(parts) == 2 else (parts[0], None)
