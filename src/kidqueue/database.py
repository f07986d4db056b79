"""Engine and session factory setup."""

import logging

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import Config
from .models import Base

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str | None = None, *, echo: bool | None = None) -> Engine:
    """Create a SQLAlchemy engine.

    SQLite connections get a busy timeout so that concurrent writers wait
    for the per-school lock instead of failing immediately, and foreign
    keys are switched on. In-memory SQLite uses a single shared connection.

    Args:
        database_url: SQLAlchemy URL; defaults to Config.DATABASE_URL
        echo: Log SQL statements; defaults to Config.DATABASE_ECHO
    """
    url = database_url or Config.DATABASE_URL
    echo = Config.DATABASE_ECHO if echo is None else echo

    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_pre_ping=True)

    if url in ("sqlite://", "sqlite:///:memory:"):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=echo,
        )
    else:
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=echo,
        )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):  # pyright: ignore[reportUnusedFunction]
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


def init_db(engine: Engine) -> None:
    """Create all tables if they don't exist."""
    Base.metadata.create_all(engine)
    logger.info(f"Database initialized at {engine.url}")


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
