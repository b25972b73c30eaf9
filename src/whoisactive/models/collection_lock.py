"""Singleton lock row coordinating concurrent collector processes."""
from sqlalchemy import Column, Integer, String, DateTime
from whoisactive.models import Base

LOCK_ROW_ID = 1
IDLE = 0
HELD = -1


class CollectionLock(Base):
    """Cooperative flag preventing overlapping collection runs.

    The table holds exactly one row (id=1). `running` is 0 when idle and -1
    while a collector is polling. There is no expiry: a collector that dies
    mid-run leaves the row held until it is released by hand.
    """
    __tablename__ = "collection_lock"

    id = Column(Integer, primary_key=True, default=LOCK_ROW_ID)
    running = Column(Integer, nullable=False, default=IDLE)
    lock_acquired_at = Column(DateTime, nullable=True)
    # host:pid of the last acquirer, informational only
    acquired_by = Column(String(255), nullable=True)

    def __repr__(self):
        return (
            f"<CollectionLock(running={self.running}, "
            f"lock_acquired_at={self.lock_acquired_at}, acquired_by={self.acquired_by})>"
        )
