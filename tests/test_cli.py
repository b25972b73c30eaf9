from datetime import datetime, timedelta
from types import SimpleNamespace

from whoisactive.cli import collect, lock_status, unlock, show_log, attempts, main, provision
from whoisactive.lib.database import InMemoryAdapter
from whoisactive.lib.db_lock import DatabaseLock


def make_session():
    return InMemoryAdapter().session()


class FakeClock:
    """Wall clock that only moves when sleep() is called."""

    def __init__(self, start=datetime(2026, 10, 19, 12, 0, 0)):
        self.current = start
        self.sleeps = []

    def now(self):
        return self.current

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)


class FakeSource:
    """Returns `per_call` copies of a session row on every snapshot() call."""

    def __init__(self, rows=None, per_call=5):
        self.calls = 0
        if rows is None:
            rows = [
                {
                    "session_id": 50 + i,
                    "sql_text": f"SELECT * FROM dbo.orders WHERE id = {i}",
                    "login_name": "app",
                    "database_name": "Sales",
                    "status": "running",
                    "dd_hh_mm_ss_mss": "00 00:00:01.250",
                    "cpu": "1,024",
                }
                for i in range(per_call)
            ]
        self.rows = rows

    def snapshot(self):
        self.calls += 1
        return [dict(r) for r in self.rows]


def make_args(session, **kw):
    defaults = dict(session=session, config=None, connection_string=None)
    defaults.update(kw)
    return SimpleNamespace(**defaults)


def test_collect_then_show_log(capsys):
    session = make_session()
    clock = FakeClock()
    args = make_args(session, source=FakeSource(per_call=2), sleep=clock.sleep, minutes=1, iterations=3, interval=1.0)
    rc = collect(args)
    assert rc == 0
    out = capsys.readouterr().out
    assert "6 row(s) logged from 3 poll(s)" in out
    assert clock.sleeps == [1.0, 1.0, 1.0]

    rc = show_log(make_args(session, descending=True, limit=None, record_number=None))
    assert rc == 0
    out = capsys.readouterr().out
    assert "record_number" in out
    assert "SELECT * FROM dbo.orders" in out


def test_collect_reports_skipped_run(capsys):
    session = make_session()
    clock = FakeClock()
    DatabaseLock(session).acquire()
    rc = collect(make_args(session, source=FakeSource(), sleep=clock.sleep, minutes=2))
    assert rc == 0
    out = capsys.readouterr().out
    assert out.count("skipped, collection lock held") == 2


def test_lock_status_and_unlock(capsys):
    session = make_session()
    assert lock_status(make_args(session)) == 0
    assert "idle" in capsys.readouterr().out

    DatabaseLock(session).acquire()
    lock_status(make_args(session))
    assert "held by" in capsys.readouterr().out

    assert unlock(make_args(session)) == 0
    assert "Collection lock released" in capsys.readouterr().out
    assert not DatabaseLock(session).peek().held


def test_attempts_lists_runs(capsys):
    session = make_session()
    clock = FakeClock()
    collect(make_args(session, source=FakeSource(per_call=1), sleep=clock.sleep, minutes=2, iterations=1))
    capsys.readouterr()

    assert attempts(make_args(session, limit=None)) == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 2
    assert lines[0].endswith("1 row(s)")


def test_show_log_empty(capsys):
    session = make_session()
    assert show_log(make_args(session)) == 0
    assert "No activity logged" in capsys.readouterr().out


def test_main_provision_and_status(tmp_path, capsys):
    url = f"sqlite:///{tmp_path / 'dba.db'}"
    assert main(["provision", "--connection-string", url]) == 0
    assert "Schema ready" in capsys.readouterr().out

    assert main(["lock-status", "--connection-string", url]) == 0
    assert "idle" in capsys.readouterr().out

    assert main(["drop", "--connection-string", url]) == 0
    assert main(["lock-status", "--connection-string", url]) == 1
    assert "ERROR" in capsys.readouterr().out


def test_main_without_database_fails(tmp_path, capsys, monkeypatch):
    monkeypatch.delenv("WHOISACTIVE_DATABASE", raising=False)
    assert main(["lock-status", "--config", str(tmp_path / "missing.json")]) == 1
    assert "ERROR" in capsys.readouterr().out


def test_main_without_command_prints_help(capsys):
    assert main([]) == 1


def test_collect_negative_interval_override_is_clamped(capsys):
    session = make_session()
    clock = FakeClock()
    args = make_args(session, source=FakeSource(per_call=1), sleep=clock.sleep, minutes=1, iterations=2, interval=-1.0)

    assert collect(args) == 0
    assert "2 row(s) logged from 2 poll(s)" in capsys.readouterr().out
    assert clock.sleeps == [0.0, 0.0]


class RecordingInstaller:
    installed = []

    def __init__(self, session, procedure="dbo.sp_WhoIsActive", flags=None):
        self.procedure = procedure

    def install_procedure(self, script_path):
        self.installed.append(script_path)
        return len(self.installed) == 1


def test_provision_installs_procedure_from_script(tmp_path, capsys, monkeypatch):
    monkeypatch.setattr("whoisactive.cli.WhoIsActiveSource", RecordingInstaller)
    monkeypatch.setattr(RecordingInstaller, "installed", [])
    script = str(tmp_path / "sp_WhoIsActive.sql")
    session = make_session()

    assert provision(make_args(session, procedure_script=script)) == 0
    out = capsys.readouterr().out
    assert f"Installed dbo.sp_WhoIsActive from {script}" in out
    assert "Schema ready" in out

    assert provision(make_args(session, procedure_script=script)) == 0
    assert "dbo.sp_WhoIsActive already present" in capsys.readouterr().out
    assert RecordingInstaller.installed == [script, script]
