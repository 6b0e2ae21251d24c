import logging
import threading
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

from humanagent.config import get_settings

logger = logging.getLogger(__name__)

# Create Base class
Base = declarative_base()

_DEFAULT_FACTORY: sessionmaker | None = None
_DEFAULT_LOCK = threading.Lock()


def make_engine(db_url: str, **kwargs) -> Engine:
    """Create a SQLAlchemy engine with the given URL and options.

    Args:
        db_url: Database connection URL
        **kwargs: Additional arguments for create_engine

    Returns:
        A SQLAlchemy Engine instance
    """
    connect_args = kwargs.pop("connect_args", {})
    if "sqlite" in db_url:
        if "check_same_thread" not in connect_args:
            connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30

    return create_engine(db_url, connect_args=connect_args, **kwargs)


def make_sessionmaker(engine: Engine) -> sessionmaker:
    """Create a sessionmaker bound to the given engine.

    ``expire_on_commit=False`` keeps attributes readable after the pipeline
    commits intermediate state (claims, token usage) mid-run.
    """
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


def get_session_factory() -> sessionmaker:
    """Return the process-wide session factory, creating it on first use.

    Falls back to a local SQLite file when ``DATABASE_URL`` is unset, or to an
    in-memory database under ``TESTING``.
    """
    global _DEFAULT_FACTORY

    if _DEFAULT_FACTORY is not None:
        return _DEFAULT_FACTORY

    with _DEFAULT_LOCK:
        if _DEFAULT_FACTORY is None:
            settings = get_settings()
            db_url = settings.database_url or (
                "sqlite:///:memory:" if settings.testing else "sqlite:///./humanagent.db"
            )
            engine = make_engine(db_url)
            initialize_database(engine)
            _DEFAULT_FACTORY = make_sessionmaker(engine)
    return _DEFAULT_FACTORY


@contextmanager
def db_session(session_factory: Any = None):
    """Single way to manage database sessions in services and background tasks.

    1. Auto-commit on success
    2. Auto-rollback on error (the exception is re-raised)
    3. Always close session

    Usage::

        with db_session() as db:
            crud.create_task(db, owner_id=1, description="...")
    """
    factory = session_factory or get_session_factory()
    session = factory()

    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session rolled back due to error: {e}")
        raise
    finally:
        session.close()


def initialize_database(engine: Engine = None) -> None:
    """Create all tables on *engine* (or the default engine)."""
    # Register every model with Base before create_all.
    from humanagent.models import models  # noqa: F401

    if engine is None:
        engine = get_session_factory().kw["bind"]
    Base.metadata.create_all(bind=engine)
