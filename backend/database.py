# backend/database.py
"""
Database setup and session management for Facility Sentinel.
Uses SQLAlchemy 2.0. The device table is the only store owned by this
backend; business entities live in the facility management system.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from contextlib import contextmanager
from typing import Callable, Generator, Optional

from config import settings


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


def build_engine(database_url: str, echo: bool = False):
    """Create an engine with SQLite-specific settings where needed."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        # FastAPI runs sync handlers in a thread pool
        connect_args = {"check_same_thread": False}

    return create_engine(
        database_url,
        connect_args=connect_args,
        echo=echo,
        pool_pre_ping=True,  # Verify connections before using
    )


engine = build_engine(settings.database_url)

# Session factory
SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
)


def init_db(bind=None) -> None:
    """
    Initialize the database by creating all tables.
    Called on application startup.
    """
    # Import all models to ensure they're registered with Base
    from models import orm  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def get_db_session(session_factory: Optional[Callable] = None) -> Generator:
    """
    Context manager for database sessions.
    Ensures proper cleanup on exceptions.

    Usage:
        with get_db_session() as db:
            db.query(Model).all()
    """
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
