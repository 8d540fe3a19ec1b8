from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from functools import lru_cache

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.engine import RowMapping
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.sql import Executable

from catalog_access.config import settings
from catalog_access.errors import ExecutionError
from catalog_access.logger import get_logger

logger = get_logger(__name__)


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_engine(settings.database_url_normalized, pool_pre_ping=True)


@lru_cache(maxsize=1)
def get_sessionmaker() -> sessionmaker[Session]:
    return sessionmaker(bind=get_engine(), autoflush=False, expire_on_commit=False)


class QuerySession:
    """Read-only statement runner over one SQLAlchemy session.

    Every statement the core issues goes through ``rows`` or ``scalar``, so
    ``queries`` is the exact round-trip count of the operations that used
    this session. Driver and database failures surface as ``ExecutionError``.
    """

    def __init__(self, db: Session) -> None:
        self.db = db
        self.queries = 0
        self.elapsed_ms = 0.0

    def rows(self, stmt: Executable) -> list[RowMapping]:
        return self._run(stmt, lambda result: result.mappings().all())

    def scalar(self, stmt: Executable):
        return self._run(stmt, lambda result: result.scalar())

    def _run(self, stmt: Executable, consume):
        started = time.perf_counter()
        self.queries += 1
        try:
            result = consume(self.db.execute(stmt))
        except SQLAlchemyError as exc:
            logger.error('Statement failed: %s', exc.__class__.__name__)
            raise ExecutionError(str(exc)) from exc
        finally:
            self.elapsed_ms += (time.perf_counter() - started) * 1000
        return result


def _begin_read_only(db: Session, statement_timeout_ms: int | None) -> None:
    if db.get_bind().dialect.name != 'postgresql':
        return
    db.execute(text('SET TRANSACTION READ ONLY'))
    if statement_timeout_ms:
        db.execute(text(f'SET LOCAL statement_timeout = {int(statement_timeout_ms)}'))


@contextmanager
def read_only_session(
    factory: sessionmaker[Session] | None = None,
    *,
    statement_timeout_ms: int | None = None,
) -> Iterator[QuerySession]:
    """Yield a ``QuerySession`` bound to one read-only snapshot transaction.

    The transaction is always rolled back; nothing read through the core is
    ever written.
    """
    factory = factory or get_sessionmaker()
    timeout = settings.statement_timeout_ms if statement_timeout_ms is None else statement_timeout_ms
    db = factory()
    try:
        try:
            db.begin()
            _begin_read_only(db, timeout)
        except SQLAlchemyError as exc:
            raise ExecutionError(str(exc)) from exc
        yield QuerySession(db)
    finally:
        db.rollback()
        db.close()
