from sqlalchemy import Column, Integer, DateTime
from whoisactive.models import Base


class RunAttempt(Base):
    """One row per collection run, written before the lock is checked."""
    __tablename__ = "run_attempts"

    record_number = Column(Integer, primary_key=True, autoincrement=True)
    # Run start time. The name is historical; every run gets one, not only failed ones.
    failure_time = Column(DateTime, nullable=False, index=True)
