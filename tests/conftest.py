"""Test fixtures and configuration."""

import asyncio
import logging
import os
import sys
from uuid import uuid4

import pytest
import pytest_asyncio
import structlog
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from src.logger import get_logger


# --- Helper to ensure 127.0.0.1 consistency ---
def normalize_url(url: str | None) -> str | None:
    """Normalize localhost to 127.0.0.1 for consistent database connections."""
    if url and "localhost" in url:
        return url.replace("localhost", "127.0.0.1")
    return url


# Unset: each test gets its own SQLite file. Set: run against PostgreSQL.
TEST_DATABASE_URL = normalize_url(os.environ.get("TEST_DATABASE_URL"))

# Set ENVIRONMENT for pydantic settings
os.environ["ENVIRONMENT"] = "testing"

logger = get_logger(__name__)


# --- Structlog Configuration for Tests ---
@pytest.fixture(autouse=True, scope="session")
def configure_structlog_for_tests():
    """Configure structlog for proper capsys capture in tests."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.dev.ConsoleRenderer(colors=False),
        foreign_pre_chain=processors[:-1],
    )

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG)

    yield

    structlog.reset_defaults()


def _enable_savepoints(engine) -> None:
    """pysqlite transaction handling so SAVEPOINT (begin_nested) works."""

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    """Fresh database per test.

    Pipeline code commits at every step boundary, so each test gets its own
    schema instead of an outer rollback transaction.
    """
    from src.database import Base
    import src.models  # noqa: F401

    if TEST_DATABASE_URL:
        engine = create_async_engine(TEST_DATABASE_URL, poolclass=NullPool)
    else:
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
            poolclass=NullPool,
        )
        _enable_savepoints(engine)

    async with engine.begin() as conn:
        if TEST_DATABASE_URL:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    if TEST_DATABASE_URL:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
    try:
        await asyncio.wait_for(engine.dispose(), timeout=10.0)
    except asyncio.TimeoutError:
        logger.error("Engine disposal timed out")


@pytest.fixture
def session_maker(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function", autouse=True)
async def patch_database_connection(session_maker):
    """Route API handlers to the per-test database."""
    from src import database

    previous = database.set_test_session_maker(session_maker)
    yield
    database.set_test_session_maker(previous)


@pytest_asyncio.fixture(scope="function")
async def db(session_maker):
    """Database session on the per-test database."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def client_id():
    """Tenant id shared by the data a test creates."""
    return uuid4()


@pytest_asyncio.fixture(scope="function")
async def client(db_engine):
    """Create async test client with database initialized."""
    from src.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client_instance:
        yield client_instance
