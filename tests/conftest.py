"""Pytest configuration and fixtures."""

from __future__ import annotations

import os

import pytest

from blog import MODELS, MORPH_MAP, create_schema, seed
from fakes import FakeDatabase
from ormgraph import Connection, Registry, Session


@pytest.fixture
def connection():
    """In-memory SQLite connection with the blog schema created."""
    conn = Connection("sqlite::memory:")
    create_schema(conn)
    yield conn
    conn.disconnect()


@pytest.fixture
def registry() -> Registry:
    registry = Registry(MODELS)
    registry.morph_map(MORPH_MAP)
    return registry


@pytest.fixture
def session(connection, registry) -> Session:
    return Session(connection, registry)


@pytest.fixture
def seeded(session) -> Session:
    """Session over the schema with the fixture rows inserted."""
    seed(session.connection)
    return session


@pytest.fixture
def fake_db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def postgres_connection():
    """Connection to a real PostgreSQL database.

    Set the DATABASE_URL environment variable to use a real PostgreSQL
    database. Otherwise, this fixture is skipped.
    """
    url = os.environ.get("DATABASE_URL")
    if not url:
        pytest.skip("DATABASE_URL not set")

    conn = Connection(url)
    yield conn
    conn.disconnect()
