import argparse
import logging
import sys
import time
from contextlib import contextmanager
from typing import Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from whoisactive.config import CollectorConfig, load_config, validate_config
from whoisactive.lib.database import (
    Credentials,
    get_engine,
    get_sessionmaker,
    mask_url,
    provision_schema,
    drop_schema,
    resolve_credentials,
)
from whoisactive.lib.db_lock import DatabaseLock, LockNotProvisionedError
from whoisactive.lib.snapshot import WhoIsActiveSource
from whoisactive.models.activity_log import SNAPSHOT_FIELDS
from whoisactive.services.collector import Collector, RunOutcome
from whoisactive.services.repository import Repository

logger = structlog.get_logger()

# Columns shown by `log`; the full row is in the table
LOG_COLUMNS = ["record_number", "row_collected_at", "session_id", "blocking_session_id",
               "dd_hh_mm_ss_mss", "status", "login_name", "database_name", "wait_info", "sql_text"]


def configure_logging(fmt: str = "console", level: str = "info") -> None:
    """Configure structlog once for the process. Logs go to stderr."""
    renderer = structlog.processors.JSONRenderer() if fmt == "json" else structlog.dev.ConsoleRenderer()
    level_no = logging.getLevelName(level.upper())
    if not isinstance(level_no, int):
        level_no = logging.INFO
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def _load(args) -> tuple[CollectorConfig, Optional[Credentials]]:
    config = getattr(args, "loaded_config", None) or load_config(getattr(args, "config", None))
    conn = getattr(args, "connection_string", None) or config.database
    creds = resolve_credentials(conn) if conn else None
    return config, creds


@contextmanager
def _session_scope(args, creds: Optional[Credentials]):
    # Tests inject a Session via `args.session`
    session = getattr(args, "session", None)
    if session is not None:
        yield session
        return
    if creds is None:
        raise ValueError("No database configured; pass --connection-string or set 'database' in the config file")
    engine = get_engine(creds.url)
    Session = get_sessionmaker(engine)
    try:
        with Session() as s:
            yield s
    finally:
        engine.dispose()


def _short(value, width: int = 60) -> str:
    if value is None:
        return ""
    s = " ".join(str(value).split())
    return s if len(s) <= width else s[: width - 3] + "..."


def provision(args):
    config, creds = _load(args)
    with _session_scope(args, creds) as session:
        provision_schema(session.get_bind())
        script = getattr(args, "procedure_script", None) or config.procedure_script
        if script:
            source = WhoIsActiveSource(session, procedure=config.procedure)
            if source.install_procedure(script):
                print(f"Installed {config.procedure} from {script}")
            else:
                print(f"{config.procedure} already present")
    print("Schema ready")
    return 0


def drop(args):
    _, creds = _load(args)
    with _session_scope(args, creds) as session:
        drop_schema(session.get_bind())
    print("Schema dropped")
    return 0


def collect(args):
    config, creds = _load(args)
    if getattr(args, "iterations", None):
        config.iterations = args.iterations
    if getattr(args, "interval", None) is not None:
        config.interval_seconds = args.interval
    validate_config(config)
    minutes = getattr(args, "minutes", None)
    server = config.server or (creds.server if creds else "")

    if creds:
        logger.info("collect_starting", database=mask_url(creds.url), minutes=minutes)

    with _session_scope(args, creds) as session:
        source = getattr(args, "source", None) or WhoIsActiveSource(
            session, procedure=config.procedure, flags=config.procedure_flags
        )
        collector = Collector(
            session,
            source,
            server=server,
            iterations=config.iterations,
            interval_seconds=config.interval_seconds,
            sleep_after_last=config.sleep_after_last,
            sleep=getattr(args, "sleep", None) or time.sleep,
        )
        results = collector.run_for_minutes(minutes)

    for r in results:
        if r.outcome is RunOutcome.LOCK_HELD:
            print(f"run {r.record_number} at {r.started_at}: skipped, collection lock held on {server}")
        else:
            print(f"run {r.record_number} at {r.started_at}: {r.rows_persisted} row(s) logged from {r.polls} poll(s)")
    return 0


def show_log(args):
    _, creds = _load(args)
    order = "desc" if getattr(args, "descending", False) else "asc"
    with _session_scope(args, creds) as session:
        entries = Repository(session).query_log(
            order=order,
            limit=getattr(args, "limit", None),
            record_number=getattr(args, "record_number", None),
        )
    if not entries:
        print("No activity logged")
        return 0
    columns = LOG_COLUMNS if not getattr(args, "all_columns", False) else ["record_number", "row_collected_at"] + SNAPSHOT_FIELDS
    print("\t".join(columns))
    for e in entries:
        print("\t".join(_short(getattr(e, c)) for c in columns))
    return 0


def attempts(args):
    _, creds = _load(args)
    with _session_scope(args, creds) as session:
        repo = Repository(session)
        rows = repo.list_run_attempts(limit=getattr(args, "limit", None))
        if not rows:
            print("No run attempts recorded")
            return 0
        for a in rows:
            print(f"{a.record_number}\t{a.failure_time}\t{repo.count_rows_for(a.record_number)} row(s)")
    return 0


def lock_status(args):
    _, creds = _load(args)
    with _session_scope(args, creds) as session:
        state = DatabaseLock(session).peek()
    if state.held:
        print(f"held by {state.acquired_by or 'unknown'} since {state.lock_acquired_at}")
    else:
        print(f"idle (last acquired {state.lock_acquired_at or 'never'})")
    return 0


def unlock(args):
    _, creds = _load(args)
    with _session_scope(args, creds) as session:
        lock = DatabaseLock(session)
        before = lock.peek()
        lock.release()
    logger.warning("collection_lock_released_manually", was_held=before.held, holder=before.acquired_by)
    print("Collection lock released" if before.held else "Collection lock was already idle")
    return 0


def _add_common(p):
    p.add_argument("--config", help="Path to JSON config file")
    p.add_argument("--connection-string", help="SQL Server connection string or SQLAlchemy URL (overrides config)")


def main(argv=None):
    parser = argparse.ArgumentParser(prog="whoisactive", description="Log sp_WhoIsActive snapshots to a table")
    parser.add_argument("--log-format", choices=["console", "json"], help="Log renderer (default: config or console)")
    parser.add_argument("--log-level", help="Log level (default: config or info)")
    sub = parser.add_subparsers(dest="cmd")

    p_prov = sub.add_parser("provision", help="Create the lock, run-attempt and activity log tables")
    _add_common(p_prov)
    p_prov.add_argument("--procedure-script", help="Install sp_WhoIsActive from this script if it is missing")
    p_prov.set_defaults(func=provision)

    p_drop = sub.add_parser("drop", help="Drop the collector tables")
    _add_common(p_drop)
    p_drop.set_defaults(func=drop)

    p_collect = sub.add_parser("collect", help="Collect snapshots for N minutes")
    _add_common(p_collect)
    p_collect.add_argument("--minutes", type=int, default=1, help="Number of one-minute runs (non-positive means 1)")
    p_collect.add_argument("--iterations", type=int, help="Override config: polls per run")
    p_collect.add_argument("--interval", type=float, help="Override config: seconds between polls")
    p_collect.set_defaults(func=collect)

    p_log = sub.add_parser("log", help="Print the activity log")
    _add_common(p_log)
    p_log.add_argument("--descending", action="store_true", help="Newest runs first")
    p_log.add_argument("--limit", type=int, help="Maximum rows to print")
    p_log.add_argument("--record-number", type=int, help="Only rows from this run")
    p_log.add_argument("--all-columns", action="store_true", help="Print every snapshot column")
    p_log.set_defaults(func=show_log)

    p_att = sub.add_parser("attempts", help="List recorded run attempts")
    _add_common(p_att)
    p_att.add_argument("--limit", type=int, help="Maximum attempts to print")
    p_att.set_defaults(func=attempts)

    p_status = sub.add_parser("lock-status", help="Show the collection lock state")
    _add_common(p_status)
    p_status.set_defaults(func=lock_status)

    p_unlock = sub.add_parser("unlock", help="Release a collection lock left behind by a crashed collector")
    _add_common(p_unlock)
    p_unlock.set_defaults(func=unlock)

    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        args.loaded_config = load_config(getattr(args, "config", None))
        configure_logging(args.log_format or args.loaded_config.log_format, args.log_level or args.loaded_config.log_level)
        return args.func(args)
    except (SQLAlchemyError, LockNotProvisionedError, ValueError, OSError) as e:
        logger.error("command_failed", command=args.cmd, error=str(e))
        print(f"ERROR: {e}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
