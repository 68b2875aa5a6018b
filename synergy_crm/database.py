"""
Database initialization and session management.
"""

import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session

from .config import config
from .errors import StorageError
from .models import Base

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def create_db_engine(url: str, **kwargs) -> Engine:
    """Create an engine, turning on foreign key enforcement for SQLite."""
    db_engine = create_engine(url, **kwargs)

    if db_engine.dialect.name == "sqlite":
        @event.listens_for(db_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return db_engine


# Create engine
engine = create_db_engine(
    config.DATABASE_URL,
    echo=config.FLASK_DEBUG,  # Log SQL in debug mode
    pool_pre_ping=True,  # Verify connections before using
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Optional[Engine] = None) -> None:
    """Create all database tables if they don't exist."""
    Base.metadata.create_all(bind=bind or engine, checkfirst=True)


def drop_db(bind: Optional[Engine] = None) -> None:
    """Drop all database tables. Use with caution!"""
    Base.metadata.drop_all(bind=bind or engine)


@contextmanager
def get_db(session_factory: Optional[SessionFactory] = None) -> Iterator[Session]:
    """
    Get a database session with automatic cleanup.

    Commits when the block exits cleanly and rolls back otherwise, so
    everything done inside one block is a single transaction. Driver
    errors surface as StorageError.

    Usage:
        with get_db() as db:
            contact = db.query(Contact).first()
    """
    db = (session_factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error, transaction rolled back: {e}")
        raise StorageError(f"Database operation failed: {e}") from e
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_db_session() -> Session:
    """
    Get a database session (for Flask request context).

    The caller is responsible for closing the session.
    """
    return SessionLocal()
