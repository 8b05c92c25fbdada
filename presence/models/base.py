"""
Declarative base, engine construction and session factory for the durable store.

SQLite is the default; PostgreSQL works through DATABASE_URL.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from presence.config import config


class Base(DeclarativeBase):
    """Declarative base for the session tables."""
    pass


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """
    Configure SQLite for concurrent writers.

    WAL mode lets the live loop keep inserting while a backfill or sync
    job runs in another process.
    """
    cursor = dbapi_connection.cursor()
    # WAL: readers never block the writer
    cursor.execute('PRAGMA journal_mode=WAL')
    # fsync at checkpoints only
    cursor.execute('PRAGMA synchronous=NORMAL')
    # Wait instead of failing when another process holds the write lock
    cursor.execute('PRAGMA busy_timeout=5000')
    cursor.close()


def build_engine(url: str, echo: bool = False, **kwargs) -> Engine:
    """Create an engine with the settings appropriate for its dialect."""
    engine_kwargs = {'echo': echo, 'pool_pre_ping': True}
    engine_kwargs.update(kwargs)

    is_sqlite = url.startswith('sqlite')
    if is_sqlite:
        connect_args = engine_kwargs.setdefault('connect_args', {})
        connect_args.setdefault('check_same_thread', False)

    new_engine = create_engine(url, **engine_kwargs)

    if is_sqlite and ':memory:' not in url and url not in ('sqlite://', 'sqlite:///'):
        event.listen(new_engine, 'connect', _set_sqlite_pragma)

    return new_engine


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(
        bind=bind,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,  # rows are read after the session closes
    )


# Default engine for the configured database (log SQL in debug mode)
engine = build_engine(config.database.url, echo=config.debug)

# Session factory shared by the server and the ingest loop
SessionLocal = build_session_factory(engine)
