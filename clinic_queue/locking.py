from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date
from typing import Iterator

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session as OrmSession

from .config import get_config
from .errors import Contention

logger = logging.getLogger(__name__)

ADVISORY_NAMESPACE = 7201


class DateLockRegistry:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[date, list] = {}

    def _checkout(self, day: date) -> threading.Lock:
        with self._guard:
            slot = self._locks.get(day)
            if slot is None:
                slot = [threading.Lock(), 0]
                self._locks[day] = slot
            slot[1] += 1
            return slot[0]

    def _release(self, day: date) -> None:
        with self._guard:
            slot = self._locks.get(day)
            if slot is None:
                return
            slot[1] -= 1
            if slot[1] <= 0:
                del self._locks[day]

    @contextmanager
    def hold(self, day: date, timeout: float) -> Iterator[None]:
        lock = self._checkout(day)
        try:
            if not lock.acquire(timeout=timeout):
                logger.warning("Timed out after %.1fs waiting for queue lock on %s", timeout, day)
                raise Contention(appointment_date=day.isoformat())
            try:
                yield
            finally:
                lock.release()
        finally:
            self._release(day)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


DATE_LOCKS = DateLockRegistry()


def acquire_database_lock(db: OrmSession, day: date, timeout: float) -> None:
    """Take the transaction-scoped database lock for ``day``."""
    try:
        bind = db.get_bind()
        if bind.dialect.name == "postgresql":
            db.execute(text(f"SET LOCAL lock_timeout = '{int(timeout * 1000)}ms'"))
            db.execute(
                text("SELECT pg_advisory_xact_lock(:ns, :key)"),
                {"ns": ADVISORY_NAMESPACE, "key": day.toordinal()},
            )
        else:
            # The first statement opens the transaction; on SQLite that is BEGIN IMMEDIATE.
            db.execute(text("SELECT 1"))
    except OperationalError as exc:
        db.rollback()
        logger.warning("Database lock for %s not acquired: %s", day, exc)
        raise Contention(appointment_date=day.isoformat()) from exc


@contextmanager
def serialized_for_date(db: OrmSession, day: date, timeout: float | None = None) -> Iterator[None]:
    """Run the block as the only allocator/caller for ``day``.

    The block is expected to commit or roll back the session before it exits,
    so the database lock is released together with the in-process lock.
    """
    timeout = get_config().lock_timeout_seconds if timeout is None else timeout
    # Never wait on the in-process lock while holding a database transaction.
    if db.in_transaction():
        db.commit()
    with DATE_LOCKS.hold(day, timeout):
        acquire_database_lock(db, day, timeout)
        try:
            yield
        except BaseException:
            db.rollback()
            raise
        finally:
            if db.in_transaction():
                db.rollback()
