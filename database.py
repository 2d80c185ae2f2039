"""
database.py — SQLAlchemy engine and session-factory construction for Itinerizer.

Provides:
  make_engine(url)          — engine with SQLite WAL / PostgreSQL URL fix-ups
  make_session_factory(eng) — sessionmaker bound to the engine
  init_schema(eng)          — create tables (called once by the container)

Nothing here is a module-level singleton: container.build_container() builds
one engine per process and hands the session factory to ItineraryStore.

All SQLAlchemy calls remain synchronous. Use starlette.concurrency.run_in_threadpool
to call blocking DB operations from async route handlers without blocking the
event loop.
"""

import logging

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from models import Base

logger = logging.getLogger(__name__)


def _safe_db_url(url: str) -> str:
    """
    Ensure PostgreSQL URLs use the postgresql:// scheme SQLAlchemy expects.
    Some hosts inject postgres:// instead of postgresql://.
    """
    if url.startswith('postgres://'):
        url = 'postgresql://' + url[len('postgres://'):]
    return url


def make_engine(url: str) -> Engine:
    url = _safe_db_url(url)
    kwargs: dict = {'pool_pre_ping': True}

    if url.startswith('sqlite'):
        kwargs['connect_args'] = {'timeout': 15, 'check_same_thread': False}
        if url in ('sqlite://', 'sqlite:///:memory:'):
            # One shared connection, otherwise every pooled connection sees its own empty DB
            kwargs['poolclass'] = StaticPool

    engine = create_engine(url, **kwargs)

    # ── SQLite WAL mode ───────────────────────────────────────────────────────
    # WAL allows concurrent readers + one writer, and keeps a crashed write
    # from leaving a half-updated row behind. No-op for PostgreSQL.
    if url.startswith('sqlite') and ':memory:' not in url and url != 'sqlite://':
        @event.listens_for(engine, 'connect')
        def _set_sqlite_wal(dbapi_conn, _connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute('PRAGMA journal_mode=WAL')
            cursor.close()

        try:
            with engine.connect() as conn:
                conn.execute(text('PRAGMA journal_mode=WAL'))
            logger.info("SQLite WAL mode enabled")
        except Exception as exc:
            logger.warning("Could not prime SQLite WAL mode: %s", exc)

    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


def init_schema(engine: Engine) -> None:
    """Create all tables. Called once at container construction."""
    Base.metadata.create_all(engine)
