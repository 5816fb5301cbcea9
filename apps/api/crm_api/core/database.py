from __future__ import annotations

import logging
from collections.abc import Generator, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from crm_api.core.config import Settings, get_settings


logger = logging.getLogger("crm_api.db")


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_engine(settings: Settings) -> Engine:
    options: dict[str, Any] = {"pool_pre_ping": True}
    if settings.database_url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
    else:
        options["pool_size"] = settings.db_pool_size
        options["pool_timeout"] = settings.db_pool_timeout_seconds
        options["pool_recycle"] = settings.db_pool_recycle_seconds
    return create_engine(settings.database_url, **options)


engine = build_engine(get_settings())
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def get_db() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def unit_of_work(session: Session) -> Iterator[Session]:
    """Run a block of writes as one transaction.

    Commits when the block exits cleanly. Any exception rolls the session back
    before it propagates, so callers never observe partial writes.
    """
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.debug("db.rollback", exc_info=True)
        raise
