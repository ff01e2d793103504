"""Per-dialect SQL rendering."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, ClassVar

from ormgraph.config import normalize_driver
from ormgraph.errors import InvalidQueryError
from ormgraph.query import (
    BasicWhere,
    BetweenWhere,
    ColumnWhere,
    ExistsWhere,
    Expression,
    InWhere,
    JoinClause,
    NestedWhere,
    NullWhere,
    QueryBuilder,
    RawWhere,
    SubqueryWhere,
    SubSelect,
    Where,
)


def _split_placeholders(sql: str) -> list[str]:
    """Split ``sql`` on ``?`` placeholders that sit outside quoted literals.

    Returns ``n + 1`` segments for ``n`` placeholders.
    """
    segments: list[str] = []
    current: list[str] = []
    quote: str | None = None
    for char in sql:
        if quote is not None:
            current.append(char)
            if char == quote:
                quote = None
        elif char in ("'", '"', "`"):
            quote = char
            current.append(char)
        elif char == "?":
            segments.append("".join(current))
            current = []
        else:
            current.append(char)
    segments.append("".join(current))
    return segments


class Grammar:
    """Base grammar. Subclasses override the dialect-specific bits.

    Builders always compile with ``?`` placeholders; :meth:`prepare` converts
    them to the driver's parameter style right before execution.
    """

    driver: ClassVar[str] = ""
    parameter_marker: ClassVar[str] = "?"
    escape_percent: ClassVar[bool] = False
    supports_release_savepoint: ClassVar[bool] = True
    supports_streaming: ClassVar[bool] = True
    random_function: ClassVar[str] = "RANDOM()"
    begin_statement: ClassVar[str] = "BEGIN"

    # ========== SELECT ==========

    def compile_select(self, query: QueryBuilder) -> tuple[str, list[Any]]:
        bindings: list[Any] = []
        distinct = "DISTINCT " if query.is_distinct else ""
        sql = f"SELECT {distinct}{self._compile_columns(query.columns, bindings)}"

        if query.from_table:
            sql += f" FROM {query.from_table}"

        for join in query.joins:
            sql += " " + self._compile_join(join, bindings)

        if query.wheres:
            sql += " WHERE " + self.compile_wheres(query.wheres, bindings)

        if query.groups:
            sql += " GROUP BY " + ", ".join(self._column(g, bindings) for g in query.groups)

        if query.havings:
            sql += " HAVING " + self.compile_wheres(query.havings, bindings)

        for union in query.unions:
            union_sql, union_bindings = self.compile_select(union.query)
            sql += f" UNION {'ALL ' if union.all else ''}{self._wrap_union(union_sql)}"
            bindings.extend(union_bindings)

        if query.orders:
            sql += " ORDER BY " + self._compile_orders(query, bindings)

        sql += self._compile_limit_offset(query.limit_value, query.offset_value)
        return sql, bindings

    def compile_wheres(self, wheres: Sequence[Where], bindings: list[Any]) -> str:
        """Join predicates left to right with the connector each was added with."""
        parts: list[str] = []
        for index, where in enumerate(wheres):
            fragment = self._compile_where(where, bindings)
            parts.append(fragment if index == 0 else f"{where.boolean.upper()} {fragment}")
        return " ".join(parts)

    def _compile_where(self, where: Where, bindings: list[Any]) -> str:
        if isinstance(where, BasicWhere):
            column = self._column(where.column, bindings)
            return f"{column} {self._operator(where.operator)} {self._parameter(where.value, bindings)}"

        if isinstance(where, InWhere):
            keyword = "NOT IN" if where.negated else "IN"
            if isinstance(where.values, QueryBuilder):
                sub_sql, sub_bindings = where.values.compile()
                bindings.extend(sub_bindings)
                return f"{where.column} {keyword} ({sub_sql})"
            if not where.values:
                return "1 = 1" if where.negated else "1 = 0"
            placeholders = ", ".join(self._parameter(v, bindings) for v in where.values)
            return f"{where.column} {keyword} ({placeholders})"

        if isinstance(where, NullWhere):
            return f"{where.column} IS {'NOT ' if where.negated else ''}NULL"

        if isinstance(where, BetweenWhere):
            keyword = "NOT BETWEEN" if where.negated else "BETWEEN"
            low = self._parameter(where.low, bindings)
            high = self._parameter(where.high, bindings)
            return f"{where.column} {keyword} {low} AND {high}"

        if isinstance(where, ColumnWhere):
            return f"{where.first} {self._operator(where.operator)} {where.second}"

        if isinstance(where, RawWhere):
            bindings.extend(where.bindings)
            return where.sql

        if isinstance(where, NestedWhere):
            inner = self.compile_wheres(where.query.wheres, bindings)
            return f"{'NOT ' if where.negated else ''}({inner})"

        if isinstance(where, ExistsWhere):
            sub_sql, sub_bindings = where.query.compile()
            bindings.extend(sub_bindings)
            return f"{'NOT ' if where.negated else ''}EXISTS ({sub_sql})"

        if isinstance(where, SubqueryWhere):
            sub_sql, sub_bindings = where.query.compile()
            bindings.extend(sub_bindings)
            return f"({sub_sql}) {self._operator(where.operator)} {self._parameter(where.value, bindings)}"

        raise InvalidQueryError(f"Unknown predicate type: {type(where).__name__}")

    def _compile_columns(self, columns: Sequence[str | Expression | SubSelect], bindings: list[Any]) -> str:
        if not columns:
            return "*"
        parts: list[str] = []
        for column in columns:
            if isinstance(column, SubSelect):
                sub_sql, sub_bindings = column.query.compile()
                bindings.extend(sub_bindings)
                parts.append(f"({sub_sql}) AS {column.alias}")
            else:
                parts.append(self._column(column, bindings))
        return ", ".join(parts)

    def _compile_join(self, join: JoinClause, bindings: list[Any]) -> str:
        if join.type == "cross":
            return f"CROSS JOIN {join.table}"
        sql = f"{join.type.upper()} JOIN {join.table}"
        if join.wheres:
            sql += " ON " + self.compile_wheres(join.wheres, bindings)
        return sql

    def _compile_orders(self, query: QueryBuilder, bindings: list[Any]) -> str:
        parts: list[str] = []
        for order in query.orders:
            if isinstance(order.column, Expression):
                bindings.extend(order.column.bindings)
                parts.append(order.column.sql)
            else:
                parts.append(f"{order.column} {order.direction.upper()}")
        return ", ".join(parts)

    def _compile_limit_offset(self, limit: int | None, offset: int | None) -> str:
        sql = ""
        if limit is not None:
            sql += f" LIMIT {limit}"
        if offset:
            if limit is None:
                sql += self.offset_without_limit
            sql += f" OFFSET {offset}"
        return sql

    offset_without_limit: ClassVar[str] = ""

    def _wrap_union(self, sql: str) -> str:
        return f"({sql})"

    def _column(self, column: str | Expression, bindings: list[Any]) -> str:
        if isinstance(column, Expression):
            bindings.extend(column.bindings)
            return column.sql
        return column

    def _parameter(self, value: Any, bindings: list[Any]) -> str:
        if isinstance(value, Expression):
            bindings.extend(value.bindings)
            return value.sql
        bindings.append(value)
        return "?"

    def _operator(self, operator: str) -> str:
        return operator.upper()

    # ========== Aggregates / writes ==========

    def compile_aggregate(self, query: QueryBuilder, function: str, column: str = "*") -> tuple[str, list[Any]]:
        """``SELECT FN(column) AS aggregate`` over the query.

        Grouped, distinct, unioned or limited queries are wrapped in a derived
        table so the aggregate sees the same rows ``get()`` would return.
        """
        function = function.upper()
        wrap = (
            query.groups or query.is_distinct or query.unions
            or query.limit_value is not None or query.offset_value
        )
        if wrap:
            inner_sql, bindings = self.compile_select(query)
            target = column if column == "*" else column.split(".")[-1]
            return f"SELECT {function}({target}) AS aggregate FROM ({inner_sql}) AS aggregate_table", bindings

        aggregate = query.clone()
        aggregate.columns = [Expression(f"{function}({column}) AS aggregate")]
        aggregate.orders = []
        return self.compile_select(aggregate)

    def compile_insert(self, table: str, rows: Sequence[dict[str, Any]]) -> tuple[str, list[Any]]:
        columns = list(rows[0].keys())
        bindings: list[Any] = []
        groups = []
        for row in rows:
            placeholders = ", ".join(self._parameter(row.get(c), bindings) for c in columns)
            groups.append(f"({placeholders})")
        return f"INSERT INTO {table} ({', '.join(columns)}) VALUES {', '.join(groups)}", bindings

    def compile_insert_get_id(self, table: str, values: dict[str, Any], sequence: str = "id") -> tuple[str, list[Any]]:
        return self.compile_insert(table, [values])

    def compile_update(self, query: QueryBuilder, values: dict[str, Any]) -> tuple[str, list[Any]]:
        if query.joins:
            raise InvalidQueryError("update() does not support joined queries")
        bindings: list[Any] = []
        assignments = ", ".join(f"{col} = {self._parameter(val, bindings)}" for col, val in values.items())
        sql = f"UPDATE {query.from_table} SET {assignments}"
        if query.wheres:
            sql += " WHERE " + self.compile_wheres(query.wheres, bindings)
        return sql, bindings

    def compile_delete(self, query: QueryBuilder) -> tuple[str, list[Any]]:
        bindings: list[Any] = []
        sql = f"DELETE FROM {query.from_table}"
        if query.wheres:
            sql += " WHERE " + self.compile_wheres(query.wheres, bindings)
        return sql, bindings

    def compile_upsert(
        self,
        table: str,
        rows: Sequence[dict[str, Any]],
        unique_by: Sequence[str],
        update: Sequence[str],
    ) -> tuple[str, list[Any]]:
        sql, bindings = self.compile_insert(table, rows)
        sql += f" ON CONFLICT ({', '.join(unique_by)})"
        if not update:
            return sql + " DO NOTHING", bindings
        assignments = ", ".join(f"{col} = excluded.{col}" for col in update)
        return f"{sql} DO UPDATE SET {assignments}", bindings

    # ========== Transactions ==========

    def compile_savepoint(self, name: str) -> str:
        return f"SAVEPOINT {name}"

    def compile_release_savepoint(self, name: str) -> str:
        return f"RELEASE SAVEPOINT {name}"

    def compile_rollback_to_savepoint(self, name: str) -> str:
        return f"ROLLBACK TO SAVEPOINT {name}"

    # ========== Driver boundary ==========

    def prepare(self, sql: str) -> str:
        """Convert ``?`` placeholders to the driver's parameter marker."""
        if self.parameter_marker == "?" and not self.escape_percent:
            return sql
        segments = _split_placeholders(sql)
        if self.escape_percent:
            segments = [s.replace("%", "%%") for s in segments]
        return self.parameter_marker.join(segments)

    def substitute_bindings(self, sql: str, bindings: Sequence[Any]) -> str:
        """Inline bindings into ``sql`` (debug output only)."""
        segments = _split_placeholders(sql)
        if len(segments) - 1 != len(bindings):
            raise InvalidQueryError(
                f"Query has {len(segments) - 1} placeholders but {len(bindings)} bindings"
            )
        out = [segments[0]]
        for value, segment in zip(bindings, segments[1:], strict=True):
            out.append(self.quote_value(value))
            out.append(segment)
        return "".join(out)

    def quote_value(self, value: Any) -> str:
        if value is None:
            return "NULL"
        if isinstance(value, bool):
            return "1" if value else "0"
        if isinstance(value, (int, float)):
            return str(value)
        text = str(value).replace("'", "''")
        return f"'{text}'"


class SQLiteGrammar(Grammar):
    driver = "sqlite"
    supports_release_savepoint = False
    supports_streaming = False
    offset_without_limit = " LIMIT -1"

    def _wrap_union(self, sql: str) -> str:
        return sql

    def _operator(self, operator: str) -> str:
        return {"ilike": "LIKE", "not ilike": "NOT LIKE"}.get(operator, operator.upper())


class MySQLGrammar(Grammar):
    driver = "mysql"
    parameter_marker = "%s"
    random_function = "RAND()"
    begin_statement = "START TRANSACTION"
    offset_without_limit = " LIMIT 18446744073709551615"

    def _operator(self, operator: str) -> str:
        return {"ilike": "LIKE", "not ilike": "NOT LIKE"}.get(operator, operator.upper())

    def compile_upsert(
        self,
        table: str,
        rows: Sequence[dict[str, Any]],
        unique_by: Sequence[str],
        update: Sequence[str],
    ) -> tuple[str, list[Any]]:
        sql, bindings = self.compile_insert(table, rows)
        if not update:
            return sql.replace("INSERT INTO", "INSERT IGNORE INTO", 1), bindings
        assignments = ", ".join(f"{col} = VALUES({col})" for col in update)
        return f"{sql} ON DUPLICATE KEY UPDATE {assignments}", bindings


class PostgresGrammar(Grammar):
    driver = "pgsql"
    parameter_marker = "%s"
    escape_percent = True

    def compile_insert_get_id(self, table: str, values: dict[str, Any], sequence: str = "id") -> tuple[str, list[Any]]:
        sql, bindings = self.compile_insert(table, [values])
        return f"{sql} RETURNING {sequence}", bindings

    def quote_value(self, value: Any) -> str:
        if isinstance(value, bool):
            return "TRUE" if value else "FALSE"
        return super().quote_value(value)


GRAMMARS: dict[str, type[Grammar]] = {
    "sqlite": SQLiteGrammar,
    "mysql": MySQLGrammar,
    "pgsql": PostgresGrammar,
}


def grammar_for(driver: str) -> Grammar:
    """Grammar instance for a driver name (aliases accepted)."""
    return GRAMMARS[normalize_driver(driver)]()
