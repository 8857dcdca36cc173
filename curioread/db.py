# db.py
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base

from curioread.config import get_settings

Base = declarative_base()


def make_engine(database_url: str):
    """Build an engine; SQLite gets cross-thread access for the worker pool."""
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine
    return create_engine(database_url, pool_pre_ping=True, pool_recycle=3600)


def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine) -> None:
    # Import models so the declarative Base knows every table
    from curioread import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


engine = make_engine(get_settings().database_url)
SessionLocal = make_session_factory(engine)


@contextmanager
def get_session(factory=None):
    db = (factory or SessionLocal)()
    try:
        yield db
    finally:
        db.close()
