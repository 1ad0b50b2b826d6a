"""
Database connection and session management.
Uses SQLAlchemy for Postgres (production) and SQLite (local development, tests).
"""

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from marketplace.core.config import get_config
from marketplace.errors import ConstraintViolation
from marketplace.utils.logger import get_logger

logger = get_logger("database")

DATABASE_URL = get_config().database_url

# Base class for all our database models (must be defined before engine)
Base = declarative_base()


def make_engine(url: str):
    """Create an engine; SQLite connections are shared with the request threadpool."""
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None) -> None:
    """Create tables that do not exist yet. Production schemas should be migrated instead."""
    Base.metadata.create_all(bind=bind or engine)


def get_db() -> Iterator[Session]:
    """
    Dependency function that provides a database session.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """
    Commit on success, roll back on any error.

    IntegrityError is re-raised as ConstraintViolation so callers see the same
    error whether input was rejected by validation or by a database constraint.
    """
    try:
        yield db
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.warning("transaction rolled back: constraint violation: %s", e.orig)
        raise ConstraintViolation(f"Rejected by the store: {e.orig}") from e
    except Exception:
        db.rollback()
        raise
