from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import func as sa_func
from sqlalchemy.orm import Session
import structlog

from whoisactive.models.activity_log import ActivityLogEntry, SNAPSHOT_FIELDS
from whoisactive.models.run_attempt import RunAttempt

logger = structlog.get_logger()

# SQL Server's own health-check session; it shows up in every snapshot.
SELF_MONITORING_MARKER = "sp_server_diagnostics"

ORDERS = ("asc", "desc")


def is_noise(row: dict[str, Any]) -> bool:
    """True for rows that must not be logged: no SQL text, or the self-monitoring query."""
    sql_text = row.get("sql_text")
    if sql_text is None:
        return True
    return SELF_MONITORING_MARKER in str(sql_text)


def filter_snapshot_rows(rows: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    return [r for r in rows if not is_noise(r)]


class Repository:
    """Small repository/service layer wrapping SQLAlchemy session operations.

    Covers the run-attempt ledger and the activity log. Every write commits
    on success and rolls back before re-raising on failure.
    """

    def __init__(self, session: Session):
        self.session = session

    # Run-attempt ledger
    def record_attempt(self, at: datetime) -> int:
        """Append a ledger entry for a run starting at `at` and return its record_number."""
        attempt = RunAttempt(failure_time=at)
        self.session.add(attempt)
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return attempt.record_number

    def find_identifier_for(self, at: datetime) -> Optional[int]:
        """Most recent record_number whose stored time equals `at`, or None.

        Two runs started in the same second share a timestamp; this returns
        the later of them. Prefer the value returned by record_attempt().
        """
        return (
            self.session.query(sa_func.max(RunAttempt.record_number))
            .filter(RunAttempt.failure_time == at)
            .scalar()
        )

    def list_run_attempts(self, limit: Optional[int] = None) -> list[RunAttempt]:
        q = self.session.query(RunAttempt).order_by(RunAttempt.record_number.desc())
        if limit:
            q = q.limit(limit)
        return q.all()

    # Activity log
    def append_batch(self, identifier: int, batch_time: datetime, rows: Sequence[dict[str, Any]]) -> int:
        """Persist one run's snapshot rows in a single transaction.

        Rows without SQL text and rows from the self-monitoring query are
        skipped. Nothing is written when no rows remain.

        Returns:
            Number of rows persisted
        """
        if not rows:
            return 0
        kept = filter_snapshot_rows(rows)
        skipped = len(rows) - len(kept)
        if not kept:
            logger.debug("activity_batch_empty", record_number=identifier, skipped=skipped)
            return 0

        entries = []
        for row in kept:
            values = {k: row.get(k) for k in SNAPSHOT_FIELDS}
            entries.append(
                ActivityLogEntry(
                    record_number=identifier,
                    collection_batch_time=batch_time,
                    row_collected_at=row.get("row_collected_at") or batch_time,
                    **values,
                )
            )

        self.session.add_all(entries)
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info(
            "activity_batch_persisted",
            record_number=identifier,
            rows=len(entries),
            skipped=skipped,
        )
        return len(entries)

    def query_log(
        self,
        order: str = "asc",
        limit: Optional[int] = None,
        record_number: Optional[int] = None,
    ) -> list[ActivityLogEntry]:
        """Read the activity log in run/collection order.

        Raises:
            ValueError: If order is not "asc" or "desc"
        """
        order = (order or "asc").lower()
        if order not in ORDERS:
            raise ValueError(f"order must be one of {ORDERS}, got {order!r}")

        columns = (ActivityLogEntry.record_number, ActivityLogEntry.row_collected_at, ActivityLogEntry.id)
        if order == "desc":
            columns = tuple(c.desc() for c in columns)

        q = self.session.query(ActivityLogEntry)
        if record_number is not None:
            q = q.filter(ActivityLogEntry.record_number == record_number)
        q = q.order_by(*columns)
        if limit:
            q = q.limit(limit)
        return q.all()

    def count_rows_for(self, record_number: int) -> int:
        return (
            self.session.query(sa_func.count(ActivityLogEntry.id))
            .filter(ActivityLogEntry.record_number == record_number)
            .scalar()
        )
