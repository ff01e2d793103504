"""Query builder and predicate tree.

Predicates are recorded as immutable nodes in insertion order, each carrying
the boolean connector ("and"/"or") it was added with. Compilation walks the
nodes left to right and collects bindings in the same pass that emits the
placeholders, so the two can never drift apart.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ormgraph.errors import InvalidQueryError

if TYPE_CHECKING:
    from ormgraph.connection import Connection
    from ormgraph.grammar import Grammar
    from ormgraph.pagination import CursorPage, Page

_MISSING: Any = object()

OPERATORS = frozenset({
    "=", "<", ">", "<=", ">=", "<>", "!=", "<=>",
    "like", "not like", "ilike", "not ilike",
    "&", "|", "^", "<<", ">>",
    "regexp", "not regexp", "similar to", "not similar to",
})


@dataclass(frozen=True)
class Expression:
    """A raw SQL fragment that is inserted verbatim, with its own bindings.

    Example:
        >>> query.select(raw("COUNT(*) AS total"))
        >>> query.update({"views": raw("views + ?", [1])})
    """

    sql: str
    bindings: tuple[Any, ...] = ()

    def __str__(self) -> str:
        return self.sql


def raw(sql: str, bindings: Sequence[Any] | None = None) -> Expression:
    """Wrap raw SQL so the builder does not treat it as a column name."""
    return Expression(sql, tuple(bindings or ()))


# ========== Predicate Tree ==========

@dataclass(frozen=True)
class BasicWhere:
    column: str | Expression
    operator: str
    value: Any
    boolean: str = "and"


@dataclass(frozen=True)
class InWhere:
    column: str
    values: tuple[Any, ...] | QueryBuilder
    negated: bool = False
    boolean: str = "and"


@dataclass(frozen=True)
class NullWhere:
    column: str
    negated: bool = False
    boolean: str = "and"


@dataclass(frozen=True)
class BetweenWhere:
    column: str
    low: Any
    high: Any
    negated: bool = False
    boolean: str = "and"


@dataclass(frozen=True)
class ColumnWhere:
    first: str
    operator: str
    second: str
    boolean: str = "and"


@dataclass(frozen=True)
class RawWhere:
    sql: str
    bindings: tuple[Any, ...] = ()
    boolean: str = "and"


@dataclass(frozen=True)
class NestedWhere:
    query: QueryBuilder
    negated: bool = False
    boolean: str = "and"


@dataclass(frozen=True)
class ExistsWhere:
    query: QueryBuilder
    negated: bool = False
    boolean: str = "and"


@dataclass(frozen=True)
class SubqueryWhere:
    """``(<sub-query>) <operator> ?``: compares a scalar sub-select to a value."""

    query: QueryBuilder
    operator: str
    value: Any
    boolean: str = "and"


Where = (
    BasicWhere | InWhere | NullWhere | BetweenWhere | ColumnWhere
    | RawWhere | NestedWhere | ExistsWhere | SubqueryWhere
)


@dataclass(frozen=True)
class SubSelect:
    """A scalar sub-query in the select list: ``(<sql>) AS alias``."""

    query: QueryBuilder
    alias: str


@dataclass(frozen=True)
class Order:
    column: str | Expression
    direction: str = "asc"


@dataclass
class Union:
    query: QueryBuilder
    all: bool = False


def _parse_filter_key(key: str) -> tuple[str, str]:
    """Split a Django-style filter key into column and operator name.

    Example:
        >>> _parse_filter_key("age__gte")
        ('age', 'gte')
        >>> _parse_filter_key("name")
        ('name', 'eq')
    """
    operators = {
        "gt", "gte", "lt", "lte", "ne", "like", "ilike", "in", "notin",
        "isnull", "contains", "icontains", "startswith", "endswith", "between",
    }
    if "__" in key:
        column, op = key.rsplit("__", 1)
        if op in operators:
            return column, op
    return key, "eq"


class QueryBuilder:
    """Fluent builder for a single SQL statement against one table.

    Example:
        >>> users = (
        ...     connection.table("users")
        ...     .where("active", True)
        ...     .where(lambda q: q.where("age", ">", 18).or_where("vip", True))
        ...     .order_by("id")
        ...     .get()
        ... )
    """

    def __init__(
        self,
        connection: Connection | None = None,
        grammar: Grammar | None = None,
        table: str | None = None,
    ) -> None:
        self.connection = connection
        if grammar is None:
            if connection is not None:
                grammar = connection.get_grammar()
            else:
                from ormgraph.grammar import grammar_for
                grammar = grammar_for("sqlite")
        self.grammar: Grammar = grammar
        self.from_table: str | None = table
        self.columns: list[str | Expression | SubSelect] = []
        self.is_distinct = False
        self.joins: list[JoinClause] = []
        self.wheres: list[Where] = []
        self.groups: list[str | Expression] = []
        self.havings: list[Where] = []
        self.orders: list[Order] = []
        self.limit_value: int | None = None
        self.offset_value: int | None = None
        self.unions: list[Union] = []

    # ========== Construction ==========

    def new_query(self) -> QueryBuilder:
        """A fresh builder on the same connection and grammar."""
        return QueryBuilder(self.connection, self.grammar)

    def for_nested_where(self) -> QueryBuilder:
        return QueryBuilder(self.connection, self.grammar, self.from_table)

    def clone(self) -> QueryBuilder:
        """Copy this builder so the copy can be changed independently."""
        new = copy.copy(self)
        new.columns = list(self.columns)
        new.joins = list(self.joins)
        new.wheres = list(self.wheres)
        new.groups = list(self.groups)
        new.havings = list(self.havings)
        new.orders = list(self.orders)
        new.unions = list(self.unions)
        return new

    def table(self, name: str) -> QueryBuilder:
        self.from_table = name
        return self

    def select(self, *columns: str | Expression | Sequence[str]) -> QueryBuilder:
        """Replace the select list.

        Example:
            >>> query.select("id", "name")
            >>> query.select(["id", "name"])
        """
        self.columns = []
        return self.add_select(*columns)

    def add_select(self, *columns: str | Expression | Sequence[str]) -> QueryBuilder:
        for column in columns:
            if isinstance(column, (list, tuple)):
                self.columns.extend(column)
            else:
                self.columns.append(column)  # type: ignore[arg-type]
        return self

    def select_raw(self, sql: str, bindings: Sequence[Any] | None = None) -> QueryBuilder:
        self.columns.append(raw(sql, bindings))
        return self

    add_select_raw = select_raw

    def add_select_sub(self, query: QueryBuilder | Callable[[QueryBuilder], Any], alias: str) -> QueryBuilder:
        """Add ``(<sub-query>) AS alias`` to the select list."""
        if callable(query) and not isinstance(query, QueryBuilder):
            sub = self.new_query()
            query(sub)
            query = sub
        self.columns.append(SubSelect(query, alias))
        return self

    def distinct(self) -> QueryBuilder:
        self.is_distinct = True
        return self

    # ========== WHERE ==========

    def where(
        self,
        column: str | Expression | dict[str, Any] | Callable[[QueryBuilder], Any],
        operator: Any = _MISSING,
        value: Any = _MISSING,
        boolean: str = "and",
    ) -> QueryBuilder:
        """Add a basic WHERE predicate.

        Forms:
            - where("name", "Alice")             -> name = ?
            - where("age", ">", 18)              -> age > ?
            - where({"name": "Alice", "age": 3}) -> name = ? AND age = ?
            - where(lambda q: ...)               -> ( ... )
            - where("deleted_at", None)          -> deleted_at IS NULL
        """
        if isinstance(column, dict):
            return self.where_nested(
                lambda q: [q.where(k, "=", v) for k, v in column.items()], boolean
            )

        if callable(column) and not isinstance(column, (str, Expression)):
            return self.where_nested(column, boolean)

        if value is _MISSING:
            if operator is _MISSING:
                raise InvalidQueryError(f"where({column!r}) needs a value")
            operator, value = "=", operator

        operator = self._validate_operator(operator)

        if value is None:
            if operator == "=":
                return self.where_null(column, boolean)  # type: ignore[arg-type]
            if operator in ("!=", "<>"):
                return self.where_not_null(column, boolean)  # type: ignore[arg-type]
            raise InvalidQueryError(f"Cannot compare {column} {operator} NULL")

        self.wheres.append(BasicWhere(column, operator, value, boolean))
        return self

    def or_where(self, column: Any, operator: Any = _MISSING, value: Any = _MISSING) -> QueryBuilder:
        return self.where(column, operator, value, "or")

    def where_not(self, callback: Callable[[QueryBuilder], Any], boolean: str = "and") -> QueryBuilder:
        """Add a negated group: ``NOT ( ... )``."""
        return self.where_nested(callback, boolean, negated=True)

    def or_where_not(self, callback: Callable[[QueryBuilder], Any]) -> QueryBuilder:
        return self.where_not(callback, "or")

    def where_nested(
        self,
        callback: Callable[[QueryBuilder], Any],
        boolean: str = "and",
        negated: bool = False,
    ) -> QueryBuilder:
        """Group predicates added by ``callback`` inside parentheses.

        A group that ends up empty is dropped.
        """
        nested = self.for_nested_where()
        callback(nested)
        return self.add_nested_where_query(nested, boolean, negated)

    def add_nested_where_query(self, query: QueryBuilder, boolean: str = "and", negated: bool = False) -> QueryBuilder:
        if query.wheres:
            self.wheres.append(NestedWhere(query, negated, boolean))
        return self

    def where_in(
        self,
        column: str,
        values: Sequence[Any] | QueryBuilder | Callable[[QueryBuilder], Any],
        boolean: str = "and",
        negated: bool = False,
    ) -> QueryBuilder:
        """``column IN (?, ?, ...)``; an empty list matches nothing."""
        if callable(values) and not isinstance(values, QueryBuilder):
            sub = self.new_query()
            values(sub)
            values = sub
        if not isinstance(values, QueryBuilder):
            values = tuple(values)
        self.wheres.append(InWhere(column, values, negated, boolean))
        return self

    def or_where_in(self, column: str, values: Any) -> QueryBuilder:
        return self.where_in(column, values, "or")

    def where_not_in(self, column: str, values: Any, boolean: str = "and") -> QueryBuilder:
        return self.where_in(column, values, boolean, negated=True)

    def or_where_not_in(self, column: str, values: Any) -> QueryBuilder:
        return self.where_in(column, values, "or", negated=True)

    def where_null(self, columns: str | Sequence[str], boolean: str = "and", negated: bool = False) -> QueryBuilder:
        for column in [columns] if isinstance(columns, str) else columns:
            self.wheres.append(NullWhere(column, negated, boolean))
        return self

    def or_where_null(self, column: str) -> QueryBuilder:
        return self.where_null(column, "or")

    def where_not_null(self, columns: str | Sequence[str], boolean: str = "and") -> QueryBuilder:
        return self.where_null(columns, boolean, negated=True)

    def or_where_not_null(self, column: str) -> QueryBuilder:
        return self.where_null(column, "or", negated=True)

    def where_between(self, column: str, values: Sequence[Any], boolean: str = "and", negated: bool = False) -> QueryBuilder:
        low, high = values
        self.wheres.append(BetweenWhere(column, low, high, negated, boolean))
        return self

    def where_not_between(self, column: str, values: Sequence[Any], boolean: str = "and") -> QueryBuilder:
        return self.where_between(column, values, boolean, negated=True)

    def where_column(self, first: str, operator: str, second: str | None = None, boolean: str = "and") -> QueryBuilder:
        """Compare two columns: ``first <op> second``."""
        if second is None:
            operator, second = "=", operator
        self.wheres.append(ColumnWhere(first, self._validate_operator(operator), second, boolean))
        return self

    def or_where_column(self, first: str, operator: str, second: str | None = None) -> QueryBuilder:
        return self.where_column(first, operator, second, "or")

    def where_raw(self, sql: str, bindings: Sequence[Any] | None = None, boolean: str = "and") -> QueryBuilder:
        """Add a raw predicate. The SQL is not escaped; values go in ``bindings``."""
        self.wheres.append(RawWhere(sql, tuple(bindings or ()), boolean))
        return self

    def or_where_raw(self, sql: str, bindings: Sequence[Any] | None = None) -> QueryBuilder:
        return self.where_raw(sql, bindings, "or")

    def where_exists(
        self,
        query: QueryBuilder | Callable[[QueryBuilder], Any],
        boolean: str = "and",
        negated: bool = False,
    ) -> QueryBuilder:
        """``EXISTS (<sub-query>)``; the sub-query's bindings are spliced in place."""
        if not isinstance(query, QueryBuilder):
            sub = self.new_query()
            query(sub)
            query = sub
        self.wheres.append(ExistsWhere(query, negated, boolean))
        return self

    def or_where_exists(self, query: Any) -> QueryBuilder:
        return self.where_exists(query, "or")

    def where_not_exists(self, query: Any, boolean: str = "and") -> QueryBuilder:
        return self.where_exists(query, boolean, negated=True)

    def or_where_not_exists(self, query: Any) -> QueryBuilder:
        return self.where_exists(query, "or", negated=True)

    def where_sub(self, query: QueryBuilder, operator: str, value: Any, boolean: str = "and") -> QueryBuilder:
        """``(<scalar sub-query>) <op> ?``."""
        self.wheres.append(SubqueryWhere(query, self._validate_operator(operator), value, boolean))
        return self

    def filter(self, **kwargs: Any) -> QueryBuilder:
        """Add predicates using Django-style keyword filters.

        Example:
            >>> query.filter(name="Alice", age__gt=18)
            >>> query.filter(id__in=[1, 2, 3], deleted_at__isnull=True)
        """
        for key, value in kwargs.items():
            column, op = _parse_filter_key(key)
            if op == "eq":
                self.where(column, "=", value)
            elif op == "in":
                self.where_in(column, value)
            elif op == "notin":
                self.where_not_in(column, value)
            elif op == "isnull":
                self.where_null(column, negated=not value)
            elif op == "between":
                self.where_between(column, value)
            elif op == "contains":
                self.where(column, "like", f"%{value}%")
            elif op == "icontains":
                self.where(column, "ilike", f"%{value}%")
            elif op == "startswith":
                self.where(column, "like", f"{value}%")
            elif op == "endswith":
                self.where(column, "like", f"%{value}")
            else:
                sql_op = {"gt": ">", "gte": ">=", "lt": "<", "lte": "<=", "ne": "!=",
                          "like": "like", "ilike": "ilike"}[op]
                self.where(column, sql_op, value)
        return self

    # ========== JOIN / GROUP / HAVING / ORDER ==========

    def join(
        self,
        table: str,
        first: str | Callable[[JoinClause], Any],
        operator: str | None = None,
        second: str | None = None,
        type: str = "inner",
    ) -> QueryBuilder:
        """Join another table.

        Example:
            >>> query.join("posts", "posts.user_id", "=", "users.id")
            >>> query.join("posts", lambda j: j.on("posts.user_id", "users.id").where("posts.published", 1))
        """
        join = JoinClause(self, type, table)
        if callable(first):
            first(join)
        else:
            join.on(first, operator, second)  # type: ignore[arg-type]
        self.joins.append(join)
        return self

    def left_join(self, table: str, first: Any, operator: str | None = None, second: str | None = None) -> QueryBuilder:
        return self.join(table, first, operator, second, "left")

    def right_join(self, table: str, first: Any, operator: str | None = None, second: str | None = None) -> QueryBuilder:
        return self.join(table, first, operator, second, "right")

    def cross_join(self, table: str) -> QueryBuilder:
        self.joins.append(JoinClause(self, "cross", table))
        return self

    def group_by(self, *columns: str | Expression) -> QueryBuilder:
        self.groups.extend(columns)
        return self

    def having(self, column: str, operator: Any = _MISSING, value: Any = _MISSING, boolean: str = "and") -> QueryBuilder:
        if value is _MISSING:
            operator, value = "=", operator
        self.havings.append(BasicWhere(column, self._validate_operator(operator), value, boolean))
        return self

    def or_having(self, column: str, operator: Any = _MISSING, value: Any = _MISSING) -> QueryBuilder:
        return self.having(column, operator, value, "or")

    def having_raw(self, sql: str, bindings: Sequence[Any] | None = None, boolean: str = "and") -> QueryBuilder:
        self.havings.append(RawWhere(sql, tuple(bindings or ()), boolean))
        return self

    def order_by(self, column: str | Expression, direction: str = "asc") -> QueryBuilder:
        """Add an ORDER BY term. A leading ``-`` on the column means descending."""
        if isinstance(column, str) and column.startswith("-"):
            column, direction = column[1:], "desc"
        direction = direction.lower()
        if direction not in ("asc", "desc"):
            raise InvalidQueryError(f"Order direction must be 'asc' or 'desc', got {direction!r}")
        self.orders.append(Order(column, direction))
        return self

    def order_by_desc(self, column: str) -> QueryBuilder:
        return self.order_by(column, "desc")

    def order_by_raw(self, sql: str, bindings: Sequence[Any] | None = None) -> QueryBuilder:
        self.orders.append(Order(raw(sql, bindings), ""))
        return self

    def latest(self, column: str = "created_at") -> QueryBuilder:
        return self.order_by(column, "desc")

    def oldest(self, column: str = "created_at") -> QueryBuilder:
        return self.order_by(column, "asc")

    def in_random_order(self) -> QueryBuilder:
        return self.order_by_raw(self.grammar.random_function)

    def reorder(self, column: str | None = None, direction: str = "asc") -> QueryBuilder:
        self.orders = []
        if column is not None:
            self.order_by(column, direction)
        return self

    def get_order_direction(self, column: str) -> str | None:
        """Direction the query currently orders ``column`` by, if it does."""
        for order in self.orders:
            if order.column == column:
                return order.direction
        return None

    def limit(self, value: int) -> QueryBuilder:
        self.limit_value = max(0, int(value))
        return self

    take = limit

    def offset(self, value: int) -> QueryBuilder:
        self.offset_value = max(0, int(value))
        return self

    skip = offset

    def for_page(self, page: int, per_page: int = 15) -> QueryBuilder:
        return self.offset((page - 1) * per_page).limit(per_page)

    def union(self, query: QueryBuilder, all: bool = False) -> QueryBuilder:
        self.unions.append(Union(query, all))
        return self

    def union_all(self, query: QueryBuilder) -> QueryBuilder:
        return self.union(query, all=True)

    def when(
        self,
        condition: Any,
        callback: Callable[[QueryBuilder, Any], Any],
        default: Callable[[QueryBuilder, Any], Any] | None = None,
    ) -> QueryBuilder:
        """Apply ``callback`` only when ``condition`` is truthy."""
        if condition:
            callback(self, condition)
        elif default is not None:
            default(self, condition)
        return self

    # ========== Compilation ==========

    def compile(self) -> tuple[str, list[Any]]:
        """Compile to ``(sql, bindings)`` with ``?`` placeholders."""
        return self.grammar.compile_select(self)

    def to_sql(self) -> str:
        return self.compile()[0]

    def get_bindings(self) -> list[Any]:
        return self.compile()[1]

    def to_raw_sql(self) -> str:
        """SQL with bindings inlined. For debugging only; never execute the result."""
        sql, bindings = self.compile()
        return self.grammar.substitute_bindings(sql, bindings)

    # ========== Execution ==========

    def _connection(self) -> Connection:
        if self.connection is None:
            raise InvalidQueryError("Query has no connection to run on")
        return self.connection

    def get(self, *columns: str) -> list[dict[str, Any]]:
        """Run the query and return all rows."""
        query = self.clone().select(*columns) if columns else self
        sql, bindings = query.compile()
        return self._connection().select(sql, bindings)

    def first(self, *columns: str) -> dict[str, Any] | None:
        rows = self.clone().limit(1).get(*columns)
        return rows[0] if rows else None

    def find(self, id: Any, column: str = "id") -> dict[str, Any] | None:
        return self.clone().where(column, "=", id).first()

    def value(self, column: str) -> Any:
        row = self.first(column)
        if row is None:
            return None
        return row[column.split(".")[-1].split(" as ")[-1]]

    def pluck(self, column: str, key: str | None = None) -> list[Any] | dict[Any, Any]:
        """Values of one column, or a ``{key: value}`` mapping when ``key`` is given."""
        columns = [column] if key is None else [column, key]
        rows = self.get(*columns)
        name = column.split(".")[-1]
        if key is None:
            return [row[name] for row in rows]
        key_name = key.split(".")[-1]
        return {row[key_name]: row[name] for row in rows}

    def exists(self) -> bool:
        query = self.clone()
        query.columns = [raw("1 AS present")]
        query.orders = []
        return query.first() is not None

    def doesnt_exist(self) -> bool:
        return not self.exists()

    def aggregate(self, function: str, column: str = "*") -> Any:
        """Run ``function(column)`` over the query and return the scalar result."""
        sql, bindings = self.grammar.compile_aggregate(self, function, column)
        row = self._connection().select_one(sql, bindings)
        return None if row is None else row["aggregate"]

    def count(self, column: str = "*") -> int:
        return int(self.aggregate("count", column) or 0)

    def sum(self, column: str) -> Any:
        return self.aggregate("sum", column)

    def avg(self, column: str) -> Any:
        return self.aggregate("avg", column)

    def min(self, column: str) -> Any:
        return self.aggregate("min", column)

    def max(self, column: str) -> Any:
        return self.aggregate("max", column)

    def insert(self, values: dict[str, Any] | Sequence[dict[str, Any]]) -> int:
        """Insert one row or many rows sharing the same columns."""
        rows = [values] if isinstance(values, dict) else list(values)
        if not rows:
            return 0
        sql, bindings = self.grammar.compile_insert(self._table_name(), rows)
        return self._connection().affecting_statement(sql, bindings)

    def insert_get_id(self, values: dict[str, Any], sequence: str = "id") -> Any:
        sql, bindings = self.grammar.compile_insert_get_id(self._table_name(), values, sequence)
        return self._connection().insert_get_id(sql, bindings, sequence)

    def update(self, values: dict[str, Any]) -> int:
        sql, bindings = self.grammar.compile_update(self, values)
        return self._connection().affecting_statement(sql, bindings)

    def increment(self, column: str, amount: int | float = 1, extra: dict[str, Any] | None = None) -> int:
        return self.update({column: raw(f"{column} + ?", [amount]), **(extra or {})})

    def decrement(self, column: str, amount: int | float = 1, extra: dict[str, Any] | None = None) -> int:
        return self.update({column: raw(f"{column} - ?", [amount]), **(extra or {})})

    def delete(self, id: Any = None) -> int:
        query = self
        if id is not None:
            query = self.clone().where("id", "=", id)
        sql, bindings = self.grammar.compile_delete(query)
        return self._connection().affecting_statement(sql, bindings)

    def upsert(
        self,
        values: dict[str, Any] | Sequence[dict[str, Any]],
        unique_by: str | Sequence[str],
        update: Sequence[str] | None = None,
    ) -> int:
        """Insert rows, updating ``update`` columns when ``unique_by`` collides.

        Example:
            >>> query.upsert([{"email": "a@b.c", "name": "A"}], "email", ["name"])
        """
        rows = [values] if isinstance(values, dict) else list(values)
        if not rows:
            return 0
        unique = [unique_by] if isinstance(unique_by, str) else list(unique_by)
        if not unique:
            raise InvalidQueryError("upsert() needs at least one unique column")
        if update is None:
            update = [c for c in rows[0] if c not in unique]
        sql, bindings = self.grammar.compile_upsert(self._table_name(), rows, unique, list(update))
        return self._connection().affecting_statement(sql, bindings)

    def _table_name(self) -> str:
        if not self.from_table:
            raise InvalidQueryError("No table set on query")
        return self.from_table

    # ========== Pagination / Iteration ==========

    def paginate(self, per_page: int = 15, page: int = 1) -> Page[dict[str, Any]]:
        """Offset pagination with a total count."""
        from ormgraph.pagination import Page

        total = self.clone().reorder().count()
        items = self.clone().for_page(page, per_page).get() if total else []
        return Page(items=items, total=total, per_page=per_page, current_page=page)

    def cursor_paginate(
        self,
        per_page: int = 15,
        cursor: str | None = None,
        column: str = "id",
        direction: str = "asc",
    ) -> CursorPage[dict[str, Any]]:
        """Keyset pagination; see :func:`ormgraph.pagination.cursor_paginate`."""
        from ormgraph.pagination import cursor_paginate

        return cursor_paginate(
            self.clone(), per_page, cursor, column, direction,
            fetch=lambda q: q.get(),
            value_of=lambda row, name: row[name],
        )

    def chunk(self, size: int) -> Iterator[list[dict[str, Any]]]:
        """Yield the result set in pages of ``size`` rows (offset based).

        Example:
            >>> for rows in connection.table("users").order_by("id").chunk(500):
            ...     handle(rows)
        """
        if not self.orders:
            raise InvalidQueryError("chunk() requires an order_by() clause")
        page = 1
        while True:
            rows = self.clone().for_page(page, size).get()
            if not rows:
                return
            yield rows
            if len(rows) < size:
                return
            page += 1

    def chunk_by_id(self, size: int, column: str = "id", alias: str | None = None) -> Iterator[list[dict[str, Any]]]:
        """Yield pages of ``size`` rows using ``column > last_id`` instead of OFFSET."""
        last_id: Any = None
        key = alias or column.split(".")[-1]
        while True:
            query = self.clone().reorder(column, "asc").limit(size)
            if last_id is not None:
                query.where(column, ">", last_id)
            rows = query.get()
            if not rows:
                return
            yield rows
            if len(rows) < size:
                return
            last_id = rows[-1][key]

    def stream(self) -> Iterator[dict[str, Any]]:
        """Iterate rows one at a time, holding the cursor open while iterating."""
        sql, bindings = self.compile()
        yield from self._connection().execute_streaming(sql, bindings)

    def stream_chunk(self, size: int) -> Iterator[list[dict[str, Any]]]:
        """Like :meth:`stream`, but yields lists of up to ``size`` rows."""
        batch: list[dict[str, Any]] = []
        for row in self.stream():
            batch.append(row)
            if len(batch) >= size:
                yield batch
                batch = []
        if batch:
            yield batch

    def _validate_operator(self, operator: Any) -> str:
        if not isinstance(operator, str) or operator.lower() not in OPERATORS:
            raise InvalidQueryError(f"Illegal operator: {operator!r}")
        return operator.lower() if operator.isalpha() or " " in operator else operator

    def __repr__(self) -> str:
        return f"<QueryBuilder {self.to_sql()!r}>"


class JoinClause:
    """The ON conditions of one JOIN. Uses the parent builder's where machinery."""

    def __init__(self, parent: QueryBuilder, type: str, table: str) -> None:
        self.type = type
        self.table = table
        self._query = QueryBuilder(parent.connection, parent.grammar, table)

    @property
    def wheres(self) -> list[Where]:
        return self._query.wheres

    def on(self, first: str | Callable[[JoinClause], Any], operator: str | None = None,
           second: str | None = None, boolean: str = "and") -> JoinClause:
        """Join condition comparing two columns."""
        if callable(first):
            nested = JoinClause(self._query, self.type, self.table)
            first(nested)
            self._query.add_nested_where_query(nested._query, boolean)
            return self
        self._query.where_column(first, operator, second, boolean)  # type: ignore[arg-type]
        return self

    def or_on(self, first: Any, operator: str | None = None, second: str | None = None) -> JoinClause:
        return self.on(first, operator, second, "or")

    def where(self, column: str, operator: Any = _MISSING, value: Any = _MISSING, boolean: str = "and") -> JoinClause:
        """Join condition comparing a column to a bound value."""
        self._query.where(column, operator, value, boolean)
        return self

    def or_where(self, column: str, operator: Any = _MISSING, value: Any = _MISSING) -> JoinClause:
        return self.where(column, operator, value, "or")

    def where_null(self, column: str) -> JoinClause:
        self._query.where_null(column)
        return self
