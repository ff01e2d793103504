"""Database connection with nested transactions and dead-connection recovery."""

from __future__ import annotations

import itertools
import json
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from ormgraph.config import DatabaseConfig
from ormgraph.errors import ConfigError, ConnectionException, ConnectionLostError, OrmError, QueryException
from ormgraph.grammar import Grammar, grammar_for
from ormgraph.logging import get_logger

if TYPE_CHECKING:
    from ormgraph.query import QueryBuilder

logger = get_logger(__name__)

# MySQL: 2006 "server has gone away", 2013 "lost connection during query"
LOST_CONNECTION_CODES = frozenset({2006, 2013})

LOST_CONNECTION_MESSAGES = (
    "server has gone away",
    "lost connection",
    "connection was killed",
    "connection was closed",
    "broken pipe",
    "connection already closed",
    "server closed the connection unexpectedly",
)

_stream_ids = itertools.count(1)


@dataclass(frozen=True)
class QueryLogEntry:
    """One executed statement, as reported to query listeners."""

    sql: str
    bindings: list[Any] = field(default_factory=list)
    time_ms: float = 0.0
    connection: str = "default"


def caused_by_lost_connection(error: BaseException | None) -> bool:
    """Whether a native driver error means the server connection is gone."""
    if error is None:
        return False
    code = getattr(error, "errno", None)
    if code is None and error.args and isinstance(error.args[0], int):
        code = error.args[0]
    if code in LOST_CONNECTION_CODES:
        return True
    message = str(error).lower()
    return any(phrase in message for phrase in LOST_CONNECTION_MESSAGES)


def _native_connector(config: DatabaseConfig) -> Callable[[], Any]:
    """Build a zero-argument factory that opens a DB-API handle for ``config``.

    Drivers are imported lazily so only the one in use has to be installed.
    Every handle is put in autocommit mode; transactions are driven with
    explicit statements.
    """
    kwargs = config.connect_kwargs()

    if config.driver == "sqlite":
        def connect_sqlite() -> Any:
            import sqlite3

            options = dict(kwargs)
            database = options.pop("database", ":memory:")
            return sqlite3.connect(database, isolation_level=None, **options)

        return connect_sqlite

    if config.driver == "pgsql":
        def connect_postgres() -> Any:
            try:
                import psycopg2
            except ImportError:
                raise ConfigError(
                    "psycopg2 is required for PostgreSQL. "
                    "Install with: pip install ormgraph[postgres]"
                ) from None
            handle = psycopg2.connect(**kwargs)
            handle.autocommit = True
            return handle

        return connect_postgres

    def connect_mysql() -> Any:
        try:
            import mysql.connector
        except ImportError:
            raise ConfigError(
                "mysql-connector-python is required for MySQL. "
                "Install with: pip install ormgraph[mysql]"
            ) from None
        return mysql.connector.connect(autocommit=True, **kwargs)

    return connect_mysql


class Connection:
    """One logical database connection wrapping a single native handle.

    Not safe for concurrent use: give each thread its own ``Connection``.

    Example:
        >>> conn = Connection("sqlite::memory:")
        >>> conn.statement("CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT)")
        >>> conn.table("users").insert({"name": "Alice"})
        >>> with conn.transaction():
        ...     conn.table("users").where("id", 1).update({"name": "Bob"})
    """

    def __init__(
        self,
        config: DatabaseConfig | str | dict[str, Any] | None = None,
        *,
        connector: Callable[[], Any] | None = None,
        grammar: Grammar | None = None,
    ) -> None:
        if config is None:
            config = DatabaseConfig()
        elif isinstance(config, str):
            config = DatabaseConfig.from_url(config)
        elif isinstance(config, dict):
            config = DatabaseConfig(**config)
        self.config: DatabaseConfig = config
        self._connector = connector or _native_connector(config)
        self._grammar = grammar or grammar_for(config.driver)
        self._handle: Any = None
        self._transaction_level = 0
        self._savepoints: list[str] = []
        self._logging_queries = False
        self._query_log: list[QueryLogEntry] = []
        self._listeners: list[Callable[[QueryLogEntry], Any]] = []

    # ========== Handle lifecycle ==========

    def get_handle(self) -> Any:
        """The native DB-API connection, opened on first use."""
        if self._handle is None:
            self._handle = self._connect()
        return self._handle

    def _connect(self) -> Any:
        try:
            return self._connector()
        except OrmError:
            raise
        except Exception as exc:
            raise ConnectionException(
                f"Could not connect to [{self.config.name}] ({self.config.dsn()}): {exc}"
            ) from exc

    def reconnect(self) -> None:
        """Drop the current handle and open a new one."""
        logger.info("reconnecting", connection=self.config.name)
        self.disconnect()
        self._handle = self._connect()

    def disconnect(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            handle.close()
        except Exception as exc:
            logger.debug("disconnect_failed", connection=self.config.name, error=str(exc))

    def ensure_connected(self) -> None:
        """Ping the server and reconnect if the connection has died."""
        if self._handle is None:
            self.reconnect()
            return
        try:
            self._execute_on(self._handle.cursor(), "SELECT 1", []).close()
        except Exception as exc:
            if not caused_by_lost_connection(exc):
                raise QueryException(f"Connection check failed: {exc}", "SELECT 1", [], exc) from exc
            self.reconnect()

    def get_grammar(self) -> Grammar:
        return self._grammar

    def get_driver_name(self) -> str:
        return self.config.driver

    def supports_streaming(self) -> bool:
        return self._grammar.supports_streaming

    def table(self, name: str) -> QueryBuilder:
        """Start a query builder on ``name``."""
        from ormgraph.query import QueryBuilder

        return QueryBuilder(self, self._grammar, name)

    # ========== Statement execution ==========

    def execute(self, sql: str, bindings: list[Any] | None = None) -> Any:
        """Run a statement and return the open DB-API cursor. The caller closes it."""
        return self._run(sql, list(bindings or []), self._execute_callback)

    def select(self, sql: str, bindings: list[Any] | None = None) -> list[dict[str, Any]]:
        """Run a query and return every row as a column -> value mapping."""
        return self._run(sql, list(bindings or []), self._select_callback)

    def select_one(self, sql: str, bindings: list[Any] | None = None) -> dict[str, Any] | None:
        rows = self.select(sql, bindings)
        return rows[0] if rows else None

    def affecting_statement(self, sql: str, bindings: list[Any] | None = None) -> int:
        """Run INSERT/UPDATE/DELETE and return the affected row count."""
        return self._run(sql, list(bindings or []), self._affecting_callback)

    def statement(self, sql: str, bindings: list[Any] | None = None) -> bool:
        self._run(sql, list(bindings or []), self._affecting_callback)
        return True

    def unprepared(self, sql: str) -> bool:
        """Run raw SQL without parameter conversion or bindings."""
        def callback(raw_sql: str, _bindings: list[Any]) -> bool:
            cursor = self.get_handle().cursor()
            try:
                cursor.execute(raw_sql)
            finally:
                cursor.close()
            return True

        return self._run(sql, [], callback)

    def insert_get_id(self, sql: str, bindings: list[Any] | None = None, sequence: str = "id") -> Any:
        """Run an INSERT and return the generated key."""
        def callback(query: str, values: list[Any]) -> Any:
            cursor = self._execute_on(self.get_handle().cursor(), query, values)
            try:
                if self.config.driver == "pgsql":
                    row = cursor.fetchone()
                    return row[0] if row else None
                return cursor.lastrowid
            finally:
                cursor.close()

        return self._run(sql, list(bindings or []), callback)

    def execute_streaming(
        self, sql: str, bindings: list[Any] | None = None, batch_size: int = 1000
    ) -> Iterator[dict[str, Any]]:
        """Yield rows one by one without buffering the whole result set.

        The cursor stays open until iteration finishes or the generator is
        closed; do not run other statements on this connection meanwhile.
        Drivers without server-side cursors fall back to a buffered select.
        """
        values = list(bindings or [])
        if not self.supports_streaming():
            yield from self.select(sql, values)
            return

        cursor = self._run(
            sql, values,
            lambda query, params: self._execute_streaming_on(self._streaming_cursor(), query, params),
        )
        try:
            columns: list[str] | None = None
            while True:
                rows = cursor.fetchmany(batch_size)
                if not rows:
                    break
                # named PostgreSQL cursors only describe themselves after a fetch
                if columns is None:
                    columns = self._column_names(cursor)
                for row in rows:
                    yield dict(zip(columns, row, strict=False))
        finally:
            cursor.close()

    def _execute_streaming_on(self, cursor: Any, sql: str, bindings: list[Any]) -> Any:
        try:
            return self._execute_on(cursor, sql, bindings)
        except Exception:
            cursor.close()
            raise

    def _streaming_cursor(self) -> Any:
        handle = self.get_handle()
        if self.config.driver == "pgsql":
            return handle.cursor(name=f"ormgraph_stream_{next(_stream_ids)}", withhold=True)
        if self.config.driver == "mysql":
            return handle.cursor(buffered=False)
        return handle.cursor()

    def _execute_callback(self, sql: str, bindings: list[Any]) -> Any:
        return self._execute_on(self.get_handle().cursor(), sql, bindings)

    def _select_callback(self, sql: str, bindings: list[Any]) -> list[dict[str, Any]]:
        cursor = self._execute_on(self.get_handle().cursor(), sql, bindings)
        try:
            columns = self._column_names(cursor)
            return [dict(zip(columns, row, strict=False)) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def _affecting_callback(self, sql: str, bindings: list[Any]) -> int:
        cursor = self._execute_on(self.get_handle().cursor(), sql, bindings)
        try:
            return cursor.rowcount
        finally:
            cursor.close()

    def _execute_on(self, cursor: Any, sql: str, bindings: list[Any]) -> Any:
        cursor.execute(self._grammar.prepare(sql), self._prepare_bindings(bindings))
        return cursor

    @staticmethod
    def _column_names(cursor: Any) -> list[str]:
        return [column[0] for column in cursor.description or ()]

    def _prepare_bindings(self, bindings: list[Any]) -> list[Any]:
        """Serialize dict/list values to JSON text for JSON columns.

        SQLite has no boolean or datetime type: bools bind as 0/1 and
        datetimes as ISO-8601 text.
        """
        sqlite = self.config.driver == "sqlite"
        prepared: list[Any] = []
        for value in bindings:
            if isinstance(value, (dict, list)):
                value = json.dumps(value, ensure_ascii=False)
            elif sqlite and isinstance(value, bool):
                value = int(value)
            elif sqlite and isinstance(value, (datetime, date)):
                value = value.isoformat(" ") if isinstance(value, datetime) else value.isoformat()
            prepared.append(value)
        return prepared

    def _run(self, sql: str, bindings: list[Any], callback: Callable[[str, list[Any]], Any]) -> Any:
        """Run ``callback`` with lost-connection recovery and query logging.

        Outside a transaction a lost connection is retried exactly once on a
        fresh handle. Inside a transaction it aborts the unit of work.
        """
        start = time.perf_counter()
        try:
            result = self._run_query_callback(sql, bindings, callback)
        except QueryException as exc:
            if not caused_by_lost_connection(exc.cause):
                raise
            logger.warning(
                "connection_lost",
                connection=self.config.name,
                transaction_level=self._transaction_level,
                error=str(exc.cause),
            )
            if self._transaction_level > 0:
                self._reset_transaction_state()
                self.disconnect()
                raise ConnectionLostError(
                    f"Connection [{self.config.name}] was lost inside a transaction; "
                    "the transaction has been aborted"
                ) from exc
            self.reconnect()
            result = self._run_query_callback(sql, bindings, callback)

        self._log_query(sql, bindings, (time.perf_counter() - start) * 1000)
        return result

    def _run_query_callback(self, sql: str, bindings: list[Any], callback: Callable[[str, list[Any]], Any]) -> Any:
        try:
            return callback(sql, bindings)
        except OrmError:
            raise
        except Exception as exc:
            raise QueryException(f"Query execution failed: {exc}", sql, bindings, exc) from exc

    def _execute_control(self, sql: str) -> None:
        """Run a transaction-control statement. No retry is attempted."""
        start = time.perf_counter()

        def callback(query: str, _bindings: list[Any]) -> None:
            cursor = self.get_handle().cursor()
            try:
                cursor.execute(query)
            finally:
                cursor.close()

        self._run_query_callback(sql, [], callback)
        self._log_query(sql, [], (time.perf_counter() - start) * 1000)

    # ========== Transactions ==========

    def begin_transaction(self) -> bool:
        """Start a transaction, or a savepoint when one is already open.

        Example:
            >>> conn.begin_transaction()   # BEGIN
            >>> conn.begin_transaction()   # SAVEPOINT trans_2
            >>> conn.rollback()            # ROLLBACK TO SAVEPOINT trans_2
            >>> conn.commit()              # COMMIT
        """
        if self._transaction_level == 0:
            try:
                self._execute_control(self._grammar.begin_statement)
            except QueryException as exc:
                if not caused_by_lost_connection(exc.cause):
                    raise
                logger.warning("connection_lost", connection=self.config.name, transaction_level=0,
                               error=str(exc.cause))
                self.reconnect()
                self._execute_control(self._grammar.begin_statement)
            self._transaction_level = 1
            logger.debug("transaction_begin", connection=self.config.name, level=1)
            return True

        self._transaction_level += 1
        name = f"trans_{self._transaction_level}"
        self._savepoints.append(name)
        try:
            self.create_savepoint(name)
        except Exception:
            self._savepoints.pop()
            self._transaction_level -= 1
            raise
        logger.debug("transaction_begin", connection=self.config.name, level=self._transaction_level)
        return True

    def commit(self) -> bool:
        """Commit the innermost level. Returns False when no transaction is open."""
        if self._transaction_level == 0:
            return False

        if self._transaction_level > 1:
            name = self._savepoints[-1]
            self.release_savepoint(name)
            self._savepoints.pop()
            self._transaction_level -= 1
            logger.debug("transaction_commit", connection=self.config.name, savepoint=name)
            return True

        self._reset_transaction_state()
        self._execute_control("COMMIT")
        logger.debug("transaction_commit", connection=self.config.name, level=1)
        return True

    def rollback(self) -> bool:
        """Roll back the innermost level. Returns False when no transaction is open."""
        if self._transaction_level == 0:
            return False

        if self._transaction_level > 1:
            name = self._savepoints[-1]
            self.rollback_to_savepoint(name)
            self._savepoints.pop()
            self._transaction_level -= 1
            logger.debug("transaction_rollback", connection=self.config.name, savepoint=name)
            return True

        self._reset_transaction_state()
        self._execute_control("ROLLBACK")
        logger.debug("transaction_rollback", connection=self.config.name, level=1)
        return True

    def _reset_transaction_state(self) -> None:
        self._transaction_level = 0
        self._savepoints = []

    def in_transaction(self) -> bool:
        return self._transaction_level > 0

    def get_transaction_level(self) -> int:
        return self._transaction_level

    def create_savepoint(self, name: str) -> None:
        self._execute_control(self._grammar.compile_savepoint(name))

    def release_savepoint(self, name: str) -> None:
        """Release ``name``; a no-op on dialects without RELEASE SAVEPOINT."""
        if not self._grammar.supports_release_savepoint:
            return
        self._execute_control(self._grammar.compile_release_savepoint(name))

    def rollback_to_savepoint(self, name: str) -> None:
        self._execute_control(self._grammar.compile_rollback_to_savepoint(name))

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Run a block in a transaction that commits on success.

        Nested blocks become savepoints.

        Example:
            >>> with conn.transaction():
            ...     conn.table("accounts").where("id", 1).decrement("balance", 10)
            ...     conn.table("accounts").where("id", 2).increment("balance", 10)
        """
        self.begin_transaction()
        try:
            yield self
            self.commit()
        except Exception:
            self.rollback()
            raise

    # ========== Query log ==========

    def enable_query_log(self) -> None:
        self._logging_queries = True

    def disable_query_log(self) -> None:
        self._logging_queries = False

    def get_query_log(self) -> list[QueryLogEntry]:
        return list(self._query_log)

    def flush_query_log(self) -> None:
        self._query_log = []

    def listen(self, callback: Callable[[QueryLogEntry], Any]) -> None:
        """Register a callback invoked after every executed statement."""
        self._listeners.append(callback)

    def _log_query(self, sql: str, bindings: list[Any], time_ms: float) -> None:
        entry = QueryLogEntry(sql, list(bindings), round(time_ms, 3), self.config.name)
        logger.debug("query_executed", connection=entry.connection, sql=sql,
                     bindings=len(entry.bindings), time_ms=entry.time_ms)
        if self._logging_queries:
            self._query_log.append(entry)
        for listener in self._listeners:
            try:
                listener(entry)
            except Exception as exc:
                logger.warning("query_listener_failed", connection=entry.connection, error=str(exc))

    def __repr__(self) -> str:
        return f"<Connection {self.config.name} driver={self.config.driver} level={self._transaction_level}>"
