"""A scriptable DB-API stand-in for connection tests.

``FakeDatabase`` is passed as the ``connector`` of a
:class:`~ormgraph.connection.Connection`. Every statement sent to any handle
it opened is recorded, and failures can be queued so the next ``execute``
raises them.
"""

from __future__ import annotations

from typing import Any


class FakeDriverError(Exception):
    """Plays the part of a driver's OperationalError."""

    def __init__(self, *args: Any, errno: int | None = None) -> None:
        super().__init__(*args)
        self.errno = errno


def lost_connection() -> FakeDriverError:
    return FakeDriverError("MySQL server has gone away")


class FakeCursor:
    def __init__(self, database: FakeDatabase, **options: Any) -> None:
        self.database = database
        self.options = options
        self.description: list[tuple[str, ...]] | None = None
        self.rowcount = -1
        self.lastrowid: int | None = None
        self.closed = False
        self._rows: list[tuple[Any, ...]] = []

    def execute(self, sql: str, params: Any = None) -> None:
        self.database.executed.append((sql, list(params or [])))
        if self.database.failures:
            raise self.database.failures.pop(0)
        columns, rows = self.database.result
        self.description = [(name, None, None, None, None, None, None) for name in columns]
        self._rows = list(rows)
        self.rowcount = len(rows)
        self.lastrowid = len(self.database.executed)

    def fetchall(self) -> list[tuple[Any, ...]]:
        rows, self._rows = self._rows, []
        return rows

    def fetchmany(self, size: int) -> list[tuple[Any, ...]]:
        rows, self._rows = self._rows[:size], self._rows[size:]
        return rows

    def fetchone(self) -> tuple[Any, ...] | None:
        return self._rows.pop(0) if self._rows else None

    def close(self) -> None:
        self.closed = True
        self.database.closed_cursors += 1


class FakeHandle:
    def __init__(self, database: FakeDatabase) -> None:
        self.database = database
        self.closed = False

    def cursor(self, **options: Any) -> FakeCursor:
        return FakeCursor(self.database, **options)

    def close(self) -> None:
        self.closed = True


class FakeDatabase:
    """Connector that records statements across reconnects."""

    def __init__(self) -> None:
        self.executed: list[tuple[str, list[Any]]] = []
        self.failures: list[BaseException] = []
        self.handles: list[FakeHandle] = []
        self.closed_cursors = 0
        self.result: tuple[list[str], list[tuple[Any, ...]]] = (["value"], [(1,)])

    def __call__(self) -> FakeHandle:
        handle = FakeHandle(self)
        self.handles.append(handle)
        return handle

    @property
    def connects(self) -> int:
        return len(self.handles)

    @property
    def statements(self) -> list[str]:
        return [sql for sql, _ in self.executed]

    def fail_next(self, *errors: BaseException) -> None:
        self.failures.extend(errors)

    def returns(self, columns: list[str], rows: list[tuple[Any, ...]]) -> None:
        self.result = (columns, rows)
