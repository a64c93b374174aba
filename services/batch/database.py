# services/batch/database.py
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from services.batch.models import Base

logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_conn, _record) -> None:
    cur = dbapi_conn.cursor()
    cur.execute("PRAGMA foreign_keys=ON")
    cur.close()


def create_db_engine(database_url: str) -> Engine:
    is_sqlite = database_url.startswith("sqlite")
    connect_args = {"check_same_thread": False, "timeout": 30} if is_sqlite else {}
    engine = create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)
    if is_sqlite:
        # Cascading image deletes rely on FK enforcement.
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)
    logger.info("Database schema ensured on %s", engine.url.render_as_string(hide_password=True))


def create_session_factory(database_url: str, *, create_schema: bool = True) -> sessionmaker:
    engine = create_db_engine(database_url)
    if create_schema:
        init_db(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """One transaction: commit on success, rollback on any exception."""
    session: Session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
