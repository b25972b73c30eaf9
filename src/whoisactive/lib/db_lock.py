"""Database-level locking for coordinating concurrent collector processes.

The lock is a single row in `collection_lock`. Acquisition is a conditional
UPDATE that only moves the row from idle to held, so two collectors that
race for an idle lock cannot both win.
"""
from __future__ import annotations

import os
import socket
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Generator

from sqlalchemy import update
from sqlalchemy.orm import Session
import structlog

from whoisactive.models.collection_lock import CollectionLock, LOCK_ROW_ID, IDLE, HELD

logger = structlog.get_logger()


class LockAcquisitionError(Exception):
    """Raised when the collection lock is held by another collector."""
    pass


class LockNotProvisionedError(Exception):
    """Raised when the singleton lock row does not exist."""
    pass


@dataclass(frozen=True)
class LockState:
    running: int
    lock_acquired_at: Optional[datetime] = None
    acquired_by: Optional[str] = None

    @property
    def held(self) -> bool:
        return self.running != IDLE


def _owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _now() -> datetime:
    return datetime.now().replace(microsecond=0)


def ensure_lock_row(session: Session) -> CollectionLock:
    """Create the idle lock row if it is missing. Returns the row."""
    row = session.get(CollectionLock, LOCK_ROW_ID)
    if row is None:
        row = CollectionLock(id=LOCK_ROW_ID, running=IDLE)
        session.add(row)
        try:
            session.commit()
        except Exception:
            session.rollback()
            raise
        logger.info("collection_lock_seeded")
    return row


class DatabaseLock:
    """Store for the singleton collection lock.

    Usage:
        with DatabaseLock(session) as lock:
            # Poll and persist
            pass

    Entering the context calls `try_acquire()` and raises
    `LockAcquisitionError` if another collector holds the lock. Leaving the
    context always releases.
    """

    def __init__(self, session: Session, lock_id: int = LOCK_ROW_ID):
        self.session = session
        self.lock_id = lock_id

    def peek(self) -> LockState:
        """Read the current lock state without changing it."""
        row = self.session.execute(
            CollectionLock.__table__.select().where(CollectionLock.id == self.lock_id)
        ).first()
        if row is None:
            raise LockNotProvisionedError(
                f"Lock row {self.lock_id} is missing; run provisioning first"
            )
        return LockState(
            running=row.running,
            lock_acquired_at=row.lock_acquired_at,
            acquired_by=row.acquired_by,
        )

    def try_acquire(self) -> bool:
        """Move the lock from idle to held in a single conditional UPDATE.

        Returns:
            True if this caller performed the transition, False if the lock was
            already held.
        """
        stmt = (
            update(CollectionLock)
            .where(CollectionLock.id == self.lock_id, CollectionLock.running == IDLE)
            .values(running=HELD, lock_acquired_at=_now(), acquired_by=_owner())
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        if result.rowcount == 1:
            logger.debug("collection_lock_acquired", lock_id=self.lock_id)
            return True
        # Zero rows: either held or never provisioned. peek() tells them apart.
        self.peek()
        return False

    def acquire(self) -> None:
        """Mark the lock held regardless of its current state."""
        self._set(running=HELD, lock_acquired_at=_now(), acquired_by=_owner())

    def release(self) -> None:
        """Mark the lock idle regardless of its current state."""
        self._set(running=IDLE)
        logger.debug("collection_lock_released", lock_id=self.lock_id)

    def _set(self, **values) -> None:
        stmt = (
            update(CollectionLock)
            .where(CollectionLock.id == self.lock_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        if result.rowcount == 0:
            raise LockNotProvisionedError(
                f"Lock row {self.lock_id} is missing; run provisioning first"
            )

    def __enter__(self) -> DatabaseLock:
        if not self.try_acquire():
            state = self.peek()
            raise LockAcquisitionError(
                f"Collection lock is held by {state.acquired_by or 'an unknown collector'} "
                f"(acquired at {state.lock_acquired_at})"
            )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


@contextmanager
def acquire_lock(session: Session, lock_id: int = LOCK_ROW_ID) -> Generator[DatabaseLock, None, None]:
    """Convenience context manager for holding the collection lock.

    Raises:
        LockAcquisitionError: If another collector holds the lock

    Example:
        with acquire_lock(session):
            # Poll and persist
            pass
    """
    with DatabaseLock(session, lock_id=lock_id) as lock:
        yield lock
