"""
Collection loop.

One run records a run attempt, takes the collection lock, polls the
snapshot source a fixed number of times at a fixed interval, persists the
accumulated rows under the run's record_number and releases the lock.
A run that finds the lock held is logged and skipped.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from sqlalchemy.orm import Session
import structlog

from whoisactive.config import CollectorConfig, DEFAULT_INTERVAL_S, DEFAULT_ITERATIONS
from whoisactive.lib.database import Credentials, get_engine, get_sessionmaker
from whoisactive.lib.db_lock import DatabaseLock
from whoisactive.lib.snapshot import WhoIsActiveSource
from whoisactive.models.activity_log import ActivityLogEntry
from whoisactive.services.repository import Repository

logger = structlog.get_logger()

DEFAULT_MINUTES = 1


class SnapshotSource(Protocol):
    def snapshot(self) -> list[dict[str, Any]]:
        ...


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    LOCK_HELD = "lock_held"


@dataclass
class RunResult:
    record_number: int
    started_at: datetime
    outcome: RunOutcome
    polls: int = 0
    rows_collected: int = 0
    rows_persisted: int = 0


def normalize_minutes(minutes: Optional[int]) -> int:
    """Non-positive or missing minute counts mean the default of one."""
    if minutes is None or minutes < 1:
        return DEFAULT_MINUTES
    return int(minutes)


class Collector:
    """Runs collection passes against one target database.

    Args:
        session: Session used for the lock, ledger and log writes
        source: Object whose snapshot() returns the currently active sessions
        server: Target label for log output
        iterations: Polls per run
        interval_seconds: Pause after each poll
        sleep_after_last: Also pause after the final poll, keeping each run ~1 minute
        sleep: Blocking sleep function (injected by tests)
        clock: Returns the current datetime (injected by tests)
    """

    def __init__(
        self,
        session: Session,
        source: SnapshotSource,
        server: str = "",
        iterations: int = DEFAULT_ITERATIONS,
        interval_seconds: float = DEFAULT_INTERVAL_S,
        sleep_after_last: bool = True,
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session = session
        self.source = source
        self.server = server
        self.iterations = iterations if iterations and iterations > 0 else DEFAULT_ITERATIONS
        self.interval_seconds = max(0.0, float(interval_seconds or 0))
        self.sleep_after_last = sleep_after_last
        self.sleep = sleep
        self.clock = clock or datetime.now
        self.repo = Repository(session)
        self.lock = DatabaseLock(session)

    def _now(self) -> datetime:
        return self.clock().replace(microsecond=0)

    def run_once(self) -> RunResult:
        started_at = self._now()
        record_number = self.repo.record_attempt(started_at)
        log = logger.bind(server=self.server, record_number=record_number)

        if not self.lock.try_acquire():
            state = self.lock.peek()
            log.warning(
                "collection_lock_held",
                holder=state.acquired_by,
                lock_acquired_at=state.lock_acquired_at.isoformat() if state.lock_acquired_at else None,
            )
            return RunResult(record_number, started_at, RunOutcome.LOCK_HELD)

        log.info("collection_run_started", iterations=self.iterations, interval_s=self.interval_seconds)
        try:
            rows = self._poll(log)
            persisted = self.repo.append_batch(record_number, started_at, rows)
        except Exception as e:
            log.error("collection_run_failed", error=str(e))
            raise
        finally:
            self.lock.release()

        log.info("collection_run_complete", rows_collected=len(rows), rows_persisted=persisted)
        return RunResult(
            record_number,
            started_at,
            RunOutcome.COMPLETED,
            polls=self.iterations,
            rows_collected=len(rows),
            rows_persisted=persisted,
        )

    def _poll(self, log) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        for i in range(1, self.iterations + 1):
            polled_at = self._now()
            snapshot = self.source.snapshot()
            for row in snapshot:
                row = dict(row)
                row["row_collected_at"] = polled_at
                rows.append(row)
            log.debug("snapshot_polled", poll=i, sessions=len(snapshot))

            if i < self.iterations or self.sleep_after_last:
                self.sleep(self.interval_seconds)
        return rows

    def run_for_minutes(self, minutes: Optional[int] = DEFAULT_MINUTES) -> list[RunResult]:
        """Call run_once() once per minute requested, back to back.

        A run skipped for lock contention does not stop the remaining runs.
        """
        minutes = normalize_minutes(minutes)
        results = []
        for _ in range(minutes):
            results.append(self.run_once())

        skipped = sum(1 for r in results if r.outcome is RunOutcome.LOCK_HELD)
        logger.info(
            "collection_finished",
            server=self.server,
            runs=len(results),
            skipped=skipped,
            rows_persisted=sum(r.rows_persisted for r in results),
        )
        return results


def run_for_minutes(
    credentials: Credentials,
    minutes: Optional[int] = DEFAULT_MINUTES,
    config: Optional[CollectorConfig] = None,
    source_factory: Optional[Callable[[Session], SnapshotSource]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> list[RunResult]:
    """Collect from the database named by `credentials` for about `minutes` minutes."""
    config = config or CollectorConfig()
    if source_factory is None:
        def source_factory(session):
            return WhoIsActiveSource(session, procedure=config.procedure, flags=config.procedure_flags)

    engine = get_engine(credentials.url)
    Session = get_sessionmaker(engine)
    try:
        with Session() as session:
            collector = Collector(
                session,
                source_factory(session),
                server=config.server or credentials.server,
                iterations=config.iterations,
                interval_seconds=config.interval_seconds,
                sleep_after_last=config.sleep_after_last,
                sleep=sleep,
            )
            return collector.run_for_minutes(minutes)
    finally:
        engine.dispose()


def query_log(
    credentials: Credentials,
    order: str = "asc",
    limit: Optional[int] = None,
    record_number: Optional[int] = None,
) -> list[ActivityLogEntry]:
    """Read the persisted activity log for operator inspection."""
    engine = get_engine(credentials.url)
    Session = get_sessionmaker(engine)
    try:
        with Session() as session:
            return Repository(session).query_log(order=order, limit=limit, record_number=record_number)
    finally:
        engine.dispose()
