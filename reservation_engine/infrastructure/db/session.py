# reservation_engine/infrastructure/db/session.py

from contextlib import contextmanager
from functools import lru_cache
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from reservation_engine.config import get_settings


# -----------------------------
# Base Class for Models
# -----------------------------
class Base(DeclarativeBase):
    pass


# -----------------------------
# Engine
# -----------------------------
def create_db_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        # Threads share the file; writers wait for each other instead of failing.
        engine = create_engine(
            database_url,
            echo=False,
            future=True,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        event.listen(engine, "connect", _sqlite_on_connect)
        return engine

    return create_engine(
        database_url,
        echo=False,
        future=True,
        pool_pre_ping=True,
    )


def _sqlite_on_connect(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@lru_cache()
def get_engine() -> Engine:
    return create_db_engine(get_settings().database_url)


# -----------------------------
# Session Factory
# -----------------------------
def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )


# -----------------------------
# Transaction scope
# -----------------------------
@contextmanager
def transaction(session_factory: sessionmaker) -> Iterator[Session]:
    """
    One unit of work: commit on success, roll back on any error.
    Callers never see a half-written hold.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
