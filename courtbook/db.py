from __future__ import annotations

import logging
from typing import Callable, TypeVar

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlmodel import Session, SQLModel, create_engine

from courtbook.errors import ConflictError
from courtbook.settings import settings
from courtbook import models  # noqa: F401  registers tables on SQLModel.metadata

logger = logging.getLogger(__name__)

T = TypeVar("T")

SERIALIZABLE = "SERIALIZABLE"


def make_engine(database_url: str) -> Engine:
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=False)

    engine = create_engine(
        database_url,
        echo=False,
        connect_args={"check_same_thread": False, "timeout": settings.sqlite_busy_timeout},
    )

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if ":memory:" not in database_url:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    return engine


engine = make_engine(settings.database_url)


def create_db_and_tables(bind: Engine = engine) -> None:
    SQLModel.metadata.create_all(bind)


def get_session():
    with Session(engine) as session:
        yield session


def with_transaction(
    session: Session,
    fn: Callable[[Session], T],
    isolation_level: str = SERIALIZABLE,
) -> T:
    """
    Run ``fn(session)`` inside one write transaction and commit it.

    Whatever read transaction the caller's pre-checks left open is closed
    first, so the re-checks inside ``fn`` see current data. On SQLite the
    transaction is opened with ``BEGIN IMMEDIATE``, which serializes writers;
    on other backends ``isolation_level`` is applied to the connection.
    Any exception rolls the transaction back and is re-raised; a
    serialization failure reported by the database becomes a ConflictError.
    """
    if session.in_transaction():
        session.commit()

    if session.get_bind().dialect.name == "sqlite":
        session.connection().exec_driver_sql("BEGIN IMMEDIATE")
    else:
        session.connection(execution_options={"isolation_level": isolation_level})

    try:
        result = fn(session)
        session.commit()
    except DBAPIError as exc:
        session.rollback()
        if getattr(exc.orig, "pgcode", None) == "40001":
            logger.warning("Serialization failure, transaction aborted: %s", exc.orig)
            raise ConflictError(
                "The request collided with a concurrent change, please try again",
                code="serialization_failure",
            )
        raise
    except Exception:
        session.rollback()
        raise
    return result
