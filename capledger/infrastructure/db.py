"""
Database connection and session management with centralized configuration.

This module provides database connectivity using the centralized configuration
system, with proper error handling and logging integration.
"""

from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .config import DatabaseConfig, get_settings
from .logging import get_logger
from .models import Base

logger = get_logger(__name__)


def _enable_sqlite_foreign_keys(engine: Engine) -> None:
    """Turn on FK enforcement so rating/attachment cascades run on SQLite too."""

    @event.listens_for(engine, "connect")
    def _set_pragma(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_database_engine(config: DatabaseConfig | None = None) -> Engine:
    """
    Create SQLAlchemy engine with proper configuration.

    An in-memory SQLite database is bound to a single shared connection so every
    session of the process sees the same store.

    Example:
        >>> engine = create_database_engine()
    """
    if config is None:
        config = get_settings().database

    connection_url = config.get_connection_url()
    engine_options = config.get_engine_options()

    if config.backend == "sqlite":
        engine_options["connect_args"] = {"check_same_thread": False}
        if config.is_memory:
            engine_options["poolclass"] = StaticPool

    logger.info(f"Creating database engine for {config.backend} backend")
    logger.debug(f"Connection URL: {connection_url.split('@')[-1]}")

    try:
        engine = create_engine(connection_url, **engine_options)
    except Exception as e:
        logger.error(f"Failed to create database engine: {str(e)}")
        raise

    if config.backend == "sqlite":
        _enable_sqlite_foreign_keys(engine)
    logger.info("Database engine created successfully")
    return engine


def create_session_factory(engine: Engine | None = None) -> sessionmaker:
    """
    Create SQLAlchemy session factory.

    Example:
        >>> SessionLocal = create_session_factory()
        >>> with SessionLocal() as session:
        ...     pass
    """
    if engine is None:
        engine = create_database_engine()

    logger.info("Creating session factory")
    return sessionmaker(
        bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True
    )


def initialise_database(engine: Engine) -> None:
    """Create every table that does not exist yet (development and tests; alembic otherwise)."""
    Base.metadata.create_all(engine)
    logger.info("Database schema initialised")


def make_engine_and_session(
    config: DatabaseConfig | None = None, create_schema: bool = False
) -> tuple[Engine, sessionmaker]:
    """
    Create engine and session factory in one call.

    Example:
        >>> engine, SessionLocal = make_engine_and_session(DatabaseConfig(sqlite_path=":memory:"),
        ...                                                create_schema=True)
    """
    engine = create_database_engine(config)
    if create_schema:
        initialise_database(engine)
    return engine, create_session_factory(engine)


def get_database_url() -> str:
    return get_settings().database.get_connection_url()
