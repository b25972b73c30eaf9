import threading

import pytest

from whoisactive.lib.database import get_engine, get_sessionmaker, provision_schema, InMemoryAdapter
from whoisactive.lib.db_lock import (
    DatabaseLock,
    LockAcquisitionError,
    LockNotProvisionedError,
    acquire_lock,
)
from whoisactive.models.collection_lock import CollectionLock, HELD, IDLE


def make_session():
    return InMemoryAdapter().session()


def test_fresh_lock_is_idle():
    session = make_session()
    state = DatabaseLock(session).peek()
    assert state.running == IDLE
    assert not state.held
    assert state.lock_acquired_at is None


def test_try_acquire_then_release():
    session = make_session()
    lock = DatabaseLock(session)
    assert lock.try_acquire() is True

    state = lock.peek()
    assert state.running == HELD
    assert state.held
    assert state.lock_acquired_at is not None
    assert state.lock_acquired_at.microsecond == 0
    assert state.acquired_by

    # a second acquirer loses
    assert lock.try_acquire() is False

    lock.release()
    assert lock.peek().running == IDLE
    assert lock.try_acquire() is True


def test_acquire_and_release_are_unconditional():
    session = make_session()
    lock = DatabaseLock(session)
    lock.acquire()
    lock.acquire()
    assert lock.peek().held
    lock.release()
    lock.release()
    assert not lock.peek().held


def test_peek_has_no_side_effect():
    session = make_session()
    lock = DatabaseLock(session)
    before = lock.peek()
    lock.peek()
    assert lock.peek() == before


def test_context_manager_raises_when_held():
    session = make_session()
    DatabaseLock(session).acquire()
    with pytest.raises(LockAcquisitionError) as exc:
        with acquire_lock(session):
            pass
    assert "held by" in str(exc.value)
    # the failed attempt must not release someone else's lock
    assert DatabaseLock(session).peek().held


def test_context_manager_releases_on_error():
    session = make_session()
    with pytest.raises(RuntimeError):
        with acquire_lock(session) as lock:
            assert lock.peek().held
            raise RuntimeError("boom")
    assert not DatabaseLock(session).peek().held


def test_missing_lock_row_is_reported():
    session = make_session()
    session.query(CollectionLock).delete()
    session.commit()
    lock = DatabaseLock(session)
    with pytest.raises(LockNotProvisionedError):
        lock.peek()
    with pytest.raises(LockNotProvisionedError):
        lock.try_acquire()
    with pytest.raises(LockNotProvisionedError):
        lock.release()


def test_provision_seeds_single_idle_row():
    adapter = InMemoryAdapter()
    provision_schema(adapter.engine)
    s = adapter.session()
    rows = s.query(CollectionLock).all()
    assert len(rows) == 1
    assert rows[0].running == IDLE


def test_only_one_concurrent_acquirer_wins(tmp_path):
    engine = get_engine(f"sqlite:///{tmp_path / 'lock.db'}")
    provision_schema(engine)
    Session = get_sessionmaker(engine)

    workers = 4
    barrier = threading.Barrier(workers)
    results = []
    errors = []

    def contend():
        s = Session()
        try:
            barrier.wait()
            results.append(DatabaseLock(s).try_acquire())
        except Exception as exc:  # surfaced below
            errors.append(exc)
        finally:
            s.close()

    threads = [threading.Thread(target=contend) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not errors
    assert results.count(True) == 1
    assert results.count(False) == workers - 1
    engine.dispose()


def test_second_session_sees_lock_held(tmp_path):
    engine = get_engine(f"sqlite:///{tmp_path / 'lock.db'}")
    provision_schema(engine)
    Session = get_sessionmaker(engine)
    a, b = Session(), Session()

    assert DatabaseLock(a).try_acquire() is True
    assert DatabaseLock(b).peek().held
    assert DatabaseLock(b).try_acquire() is False

    DatabaseLock(a).release()
    assert DatabaseLock(b).try_acquire() is True

    a.close()
    b.close()
    engine.dispose()
