"""Engine, session helpers and the transaction abstraction.

``with_transaction`` is the single entry point the orchestrators use to run
a multi-step unit of work. When the store supports transactions the steps
run inside one and are rolled back together on failure. Otherwise the steps
run in fallback mode: each ``checkpoint()`` commits immediately and the
caller is told (through ``UnitOfWork.fallback`` and the returned outcome)
that it must perform its own compensating cleanup on failure.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base

logger = logging.getLogger("checkout.db")


def build_engine(database_url: str) -> Engine:
    """Create the SQLAlchemy engine for ``database_url``.

    In-memory SQLite URLs get a ``StaticPool`` so every session shares the
    same connection (and therefore the same database).
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def ping(engine: Engine) -> bool:
    """Return True when the database answers ``select 1``."""
    try:
        with engine.connect() as conn:
            conn.execute(text("select 1"))
        return True
    except Exception:
        logger.warning("database ping failed", exc_info=True)
        return False


@dataclass
class UnitOfWork:
    """Handle passed to the function run by ``with_transaction``.

    Attributes:
        session: Session every step must use.
        fallback: True when no enclosing transaction protects the steps.
    """

    session: Session
    fallback: bool

    def checkpoint(self) -> None:
        """Make the steps so far visible.

        In fallback mode this commits, so a later failure cannot undo them
        and compensation is required. Inside a real transaction it only
        flushes.
        """
        if self.fallback:
            self.session.commit()
        else:
            self.session.flush()


@dataclass(frozen=True)
class TransactionOutcome:
    value: Any
    fallback: bool


def with_transaction(session: Session, fn: Callable[[UnitOfWork], Any], *,
                     enabled: bool = True) -> TransactionOutcome:
    """Run ``fn`` as one unit of work.

    Args:
        session: Session to run on. Pending work is committed first so the
            unit starts from a clean state.
        fn: Callable receiving a ``UnitOfWork``.
        enabled: Whether the store supports multi-statement transactions.

    Returns:
        TransactionOutcome: ``fn``'s return value and whether fallback mode
        was used.

    Raises:
        Exception: Whatever ``fn`` raises, after rolling back the session.
    """
    session.commit()
    uow = UnitOfWork(session=session, fallback=not enabled)
    try:
        value = fn(uow)
        session.commit()
    except Exception:
        session.rollback()
        raise
    return TransactionOutcome(value=value, fallback=uow.fallback)
