from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


def is_sqlite_url(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def make_engine(database_url: str, *, timeout_secs: float) -> Engine:
    """Engine for the ledger store.

    ``timeout_secs`` bounds how long a writer waits on a locked SQLite file or
    an exhausted pool; past it the store counts as unavailable and the work
    item fails instead of hanging.
    """
    connect_args: dict[str, object] = {}
    engine_kwargs: dict[str, object] = {}
    if is_sqlite_url(database_url):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout_secs
    else:
        engine_kwargs["pool_timeout"] = timeout_secs
        engine_kwargs["pool_pre_ping"] = True
    eng = create_engine(database_url, connect_args=connect_args, **engine_kwargs)
    if is_sqlite_url(database_url):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


_settings = get_settings()
engine = make_engine(_settings.database_url, timeout_secs=_settings.db_timeout_secs)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    session: Session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
