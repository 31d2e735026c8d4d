from datetime import datetime, timedelta

from app.models.pipeline import PipelineLock
from app.services.pipeline.locks import PipelineLockManager, job_lock_key, pipeline_lock_key


class Clock:
    def __init__(self):
        self.now = datetime(2026, 1, 15, 12, 0)

    def __call__(self):
        return self.now


def test_second_acquire_is_refused(session_factory):
    locks = PipelineLockManager(session_factory)

    first = locks.acquire(1, "orders.incremental")
    second = locks.acquire(1, "orders.incremental")

    assert first is not None
    assert second is None
    assert locks.is_locked(1, "orders.incremental")


def test_locks_are_per_shop_and_pipeline(session_factory):
    locks = PipelineLockManager(session_factory)

    assert locks.acquire(1, "orders.incremental") is not None
    assert locks.acquire(2, "orders.incremental") is not None
    assert locks.acquire(1, "products.incremental") is not None


def test_release_is_idempotent(session_factory):
    locks = PipelineLockManager(session_factory)
    handle = locks.acquire(1, "orders.incremental")

    locks.release(handle)
    locks.release(handle)
    locks.release(None)

    assert not locks.is_locked(1, "orders.incremental")
    assert locks.acquire(1, "orders.incremental") is not None


def test_expired_lock_is_taken_over(session_factory):
    clock = Clock()
    locks = PipelineLockManager(session_factory, ttl_seconds=60, clock=clock)
    stale = locks.acquire(1, "orders.incremental")

    clock.now += timedelta(seconds=61)
    fresh = locks.acquire(1, "orders.incremental")

    assert fresh is not None
    assert fresh.owner != stale.owner

    # прежний владелец не может снять чужую блокировку
    locks.release(stale)
    assert locks.is_locked(1, "orders.incremental")

    with session_factory() as session:
        row = session.get(PipelineLock, pipeline_lock_key(1, "orders.incremental"))
        assert row.owner == fresh.owner


def test_job_lock_uses_its_own_key(session_factory):
    locks = PipelineLockManager(session_factory)

    handle = locks.acquire_job_lock("Retry Failed Snapshots")

    assert handle.lock_key == job_lock_key("retry failed snapshots")
    assert handle.lock_key == "job-lock:retry_failed_snapshots"
    assert locks.acquire_job_lock("retry_failed_snapshots") is None


def test_lock_timestamps_are_stored_as_naive_utc(session_factory):
    locks = PipelineLockManager(session_factory, ttl_seconds=60)
    before = datetime.utcnow()

    assert locks.acquire(1, "orders.incremental") is not None

    with session_factory() as session:
        row = session.get(PipelineLock, pipeline_lock_key(1, "orders.incremental"))
    assert row.acquired_at.tzinfo is None
    assert row.expires_at.tzinfo is None
    assert before <= row.acquired_at < row.expires_at
    assert row.expires_at - row.acquired_at == timedelta(seconds=60)
