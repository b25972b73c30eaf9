"""
sp_WhoIsActive snapshot source.

Runs the diagnostic procedure once per call and returns one dict per
active session, keyed by ActivityLogEntry attribute names.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session
import structlog

from whoisactive.models.activity_log import RAW_COLUMN_NAMES, SNAPSHOT_FIELDS

logger = structlog.get_logger()

DEFAULT_PROCEDURE = "dbo.sp_WhoIsActive"

DEFAULT_FLAGS = {
    "get_transaction_info": 1,
    "get_outer_command": 1,
    "get_plans": 1,
}

# [schema.]name, optionally bracketed
_PROCEDURE_PATTERN = re.compile(r"^(\[?[A-Za-z_][\w]*\]?\.)?\[?[A-Za-z_][\w]*\]?$")
_FLAG_PATTERN = re.compile(r"^[A-Za-z_][\w]*$")
_GO_PATTERN = re.compile(r"^\s*GO\s*;?\s*$", re.IGNORECASE | re.MULTILINE)

_KNOWN_FIELDS = frozenset(SNAPSHOT_FIELDS)


def normalize_column(name: str) -> str:
    return RAW_COLUMN_NAMES.get(name, name)


def build_exec_statement(procedure: str, flags: dict[str, Any]) -> str:
    """Build `EXEC <procedure> @flag = :flag, ...` with values left as bind parameters.

    Raises:
        ValueError: If the procedure or a flag name is not a plain identifier
    """
    if not _PROCEDURE_PATTERN.match(procedure):
        raise ValueError(f"Invalid procedure name: {procedure!r}")
    parts = []
    for flag in flags:
        name = flag.lstrip("@")
        if not _FLAG_PATTERN.match(name):
            raise ValueError(f"Invalid procedure flag: {flag!r}")
        parts.append(f"@{name} = :{name}")
    stmt = f"EXEC {procedure}"
    if parts:
        stmt = f"{stmt} " + ", ".join(parts)
    return stmt


def split_batches(script: str) -> list[str]:
    """Split a T-SQL script on `GO` separator lines, dropping empty batches."""
    return [b.strip() for b in _GO_PATTERN.split(script) if b.strip()]


class WhoIsActiveSource:
    """Snapshot source backed by sp_WhoIsActive on the target server."""

    def __init__(self, session: Session, procedure: str = DEFAULT_PROCEDURE, flags: Optional[dict[str, Any]] = None):
        self.session = session
        self.procedure = procedure
        self.flags = dict(DEFAULT_FLAGS if flags is None else flags)
        self._statement = text(build_exec_statement(procedure, self.flags))
        self._params = {k.lstrip("@"): v for k, v in self.flags.items()}

    def snapshot(self) -> list[dict[str, Any]]:
        """Return the sessions active right now."""
        try:
            result = self.session.execute(self._statement, self._params)
            columns = [normalize_column(c) for c in result.keys()]
            rows = result.fetchall()
            # The EXEC leaves an implicit transaction open on some drivers
            self.session.commit()
        except Exception as e:
            self.session.rollback()
            logger.error("snapshot_failed", procedure=self.procedure, error=str(e))
            raise

        dropped = [c for c in columns if c not in _KNOWN_FIELDS]
        if dropped:
            logger.debug("snapshot_columns_ignored", columns=dropped)

        results = []
        for row in rows:
            record = dict(zip(columns, row))
            results.append({k: v for k, v in record.items() if k in _KNOWN_FIELDS})
        return results

    def procedure_exists(self) -> bool:
        found = self.session.execute(
            text("SELECT OBJECT_ID(:name, 'P')"), {"name": self.procedure}
        ).scalar()
        return found is not None

    def install_procedure(self, script_path: str) -> bool:
        """Run the procedure's install script if the procedure is missing.

        Returns:
            True if the script was run, False if the procedure already existed
        """
        if self.procedure_exists():
            logger.info("procedure_present", procedure=self.procedure)
            return False
        script = Path(script_path).read_text(encoding="utf-8-sig")
        batches = split_batches(script)
        try:
            conn = self.session.connection()
            # Raw driver SQL: the script contains colons that text() would read as binds
            for batch in batches:
                conn.exec_driver_sql(batch)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info("procedure_installed", procedure=self.procedure, script=script_path, batches=len(batches))
        return True
