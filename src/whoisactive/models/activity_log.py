from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey
from whoisactive.models import Base


# Raw sp_WhoIsActive column name -> attribute name on ActivityLogEntry.
# Columns not listed here map to themselves.
RAW_COLUMN_NAMES = {
    "dd hh:mm:ss.mss": "dd_hh_mm_ss_mss",
    "CPU": "cpu",
}

SNAPSHOT_FIELDS = [
    "dd_hh_mm_ss_mss",
    "session_id",
    "sql_text",
    "sql_command",
    "login_name",
    "wait_info",
    "tran_log_writes",
    "cpu",
    "tempdb_allocations",
    "tempdb_current",
    "blocking_session_id",
    "reads",
    "writes",
    "physical_reads",
    "query_plan",
    "used_memory",
    "status",
    "tran_start_time",
    "implicit_tran",
    "open_tran_count",
    "percent_complete",
    "host_name",
    "database_name",
    "program_name",
    "start_time",
    "login_time",
    "request_id",
    "collection_time",
]


class ActivityLogEntry(Base):
    """A single active-session row captured by one poll of the snapshot source.

    Counters are stored as text because sp_WhoIsActive formats them for
    display (e.g. "1,024") unless @format_output = 0 is passed.
    """
    __tablename__ = "activity_log"

    id = Column(Integer, primary_key=True)
    record_number = Column(Integer, ForeignKey("run_attempts.record_number"), nullable=False, index=True)
    collection_batch_time = Column(DateTime, nullable=False, index=True)

    dd_hh_mm_ss_mss = Column(String(32), nullable=True)
    session_id = Column(Integer, nullable=True)
    sql_text = Column(Text, nullable=True)
    sql_command = Column(Text, nullable=True)
    login_name = Column(String(128), nullable=True)
    wait_info = Column(String(4000), nullable=True)
    tran_log_writes = Column(String(4000), nullable=True)
    cpu = Column(String(30), nullable=True)
    tempdb_allocations = Column(String(30), nullable=True)
    tempdb_current = Column(String(30), nullable=True)
    blocking_session_id = Column(Integer, nullable=True)
    reads = Column(String(30), nullable=True)
    writes = Column(String(30), nullable=True)
    physical_reads = Column(String(30), nullable=True)
    query_plan = Column(Text, nullable=True)
    used_memory = Column(String(30), nullable=True)
    status = Column(String(30), nullable=True)
    tran_start_time = Column(DateTime, nullable=True)
    implicit_tran = Column(String(3), nullable=True)
    open_tran_count = Column(String(30), nullable=True)
    percent_complete = Column(String(30), nullable=True)
    host_name = Column(String(128), nullable=True)
    database_name = Column(String(128), nullable=True)
    program_name = Column(String(128), nullable=True)
    start_time = Column(DateTime, nullable=True)
    login_time = Column(DateTime, nullable=True)
    request_id = Column(Integer, nullable=True)
    collection_time = Column(DateTime, nullable=True)

    row_collected_at = Column(DateTime, nullable=False)
