from app.models.snapshot_job import FailedSnapshotStage, FailedSnapshotStatus, SnapshotJob, SnapshotJobStatus
from app.services.pipeline.locks import PipelineLockManager
from app.services.snapshots.retry import RETRY_SWEEP_LOCK, FailedSnapshotService


def make_job(session_factory, shop, job_id="job-1"):
    with session_factory() as session:
        job = SnapshotJob(shop_id=shop.id, job_id=job_id, endpoint="/api/orders/snapshot", status=SnapshotJobStatus.DOWNLOADED)
        session.add(job)
        session.commit()
        session.refresh(job)
        return job


def recording_dispatchers(calls):
    return {
        FailedSnapshotStage.DOWNLOAD: lambda job_id: calls.append(("download", job_id)),
        FailedSnapshotStage.PROCESS: lambda job_id: calls.append(("process", job_id)),
    }


def test_register_creates_pending_record_and_fails_job(session_factory, shop):
    failures = FailedSnapshotService(session_factory)
    job = make_job(session_factory, shop)

    record = failures.register(job.id, FailedSnapshotStage.PROCESS, "boom")

    assert record.status == FailedSnapshotStatus.PENDING
    assert record.retry_count == 0
    assert record.max_retries == 3
    assert record.context["job_id"] == "job-1"
    with session_factory() as session:
        stored = session.get(SnapshotJob, job.id)
    assert stored.status == SnapshotJobStatus.FAILED
    assert stored.meta["error"] == "boom"


def test_retries_are_bounded(session_factory, shop):
    failures = FailedSnapshotService(session_factory)
    locks = PipelineLockManager(session_factory)
    job = make_job(session_factory, shop)
    calls = []
    failures.register(job.id, FailedSnapshotStage.PROCESS, "boom")

    for _ in range(3):
        result = failures.retry_failed(locks, recording_dispatchers(calls))
        assert result.retried == 1
        # повтор снова упал
        failures.register(job.id, FailedSnapshotStage.PROCESS, "boom again")

    record = failures.get(job.id)
    assert record.retry_count == 3
    assert record.status == FailedSnapshotStatus.EXHAUSTED
    assert calls == [("process", job.id)] * 3

    result = failures.retry_failed(locks, recording_dispatchers(calls))
    assert result.retried == 0
    assert len(calls) == 3


def test_successful_processing_resolves_record(session_factory, shop):
    failures = FailedSnapshotService(session_factory)
    job = make_job(session_factory, shop)
    failures.register(job.id, FailedSnapshotStage.DOWNLOAD, "timeout")

    failures.resolve(job.id)

    record = failures.get(job.id)
    assert record.status == FailedSnapshotStatus.RESOLVED
    assert record.resolved_at is not None


def test_sweep_is_skipped_while_another_runs(session_factory, shop):
    failures = FailedSnapshotService(session_factory)
    locks = PipelineLockManager(session_factory)
    job = make_job(session_factory, shop)
    failures.register(job.id, FailedSnapshotStage.PROCESS, "boom")
    calls = []

    handle = locks.acquire_job_lock(RETRY_SWEEP_LOCK)
    result = failures.retry_failed(locks, recording_dispatchers(calls))
    locks.release(handle)

    assert result.skipped
    assert calls == []
    assert failures.get(job.id).retry_count == 0


def test_dispatch_error_returns_record_to_queue(session_factory, shop):
    failures = FailedSnapshotService(session_factory)
    locks = PipelineLockManager(session_factory)
    first = make_job(session_factory, shop, "job-1")
    second = make_job(session_factory, shop, "job-2")
    failures.register(first.id, FailedSnapshotStage.DOWNLOAD, "timeout")
    failures.register(second.id, FailedSnapshotStage.DOWNLOAD, "timeout")
    calls = []

    def flaky(job_id):
        if job_id == first.id:
            raise RuntimeError("broker unavailable")
        calls.append(job_id)

    result = failures.retry_failed(locks, {FailedSnapshotStage.DOWNLOAD: flaky})

    assert result.failed == 1
    assert result.retried == 1
    assert calls == [second.id]
    record = failures.get(first.id)
    assert record.status == FailedSnapshotStatus.PENDING
    assert record.retry_count == 1
    assert record.error_message == "broker unavailable"


def test_manual_retry_does_not_consume_attempts(session_factory, shop):
    failures = FailedSnapshotService(session_factory, max_retries=1)
    locks = PipelineLockManager(session_factory)
    job = make_job(session_factory, shop)
    calls = []
    failures.register(job.id, FailedSnapshotStage.PROCESS, "boom")
    failures.retry_failed(locks, recording_dispatchers(calls))
    failures.register(job.id, FailedSnapshotStage.PROCESS, "boom")
    assert failures.get(job.id).status == FailedSnapshotStatus.EXHAUSTED

    record = failures.retry_manually(job.id, recording_dispatchers(calls))

    assert record.status == FailedSnapshotStatus.RETRYING
    assert record.retry_count == 1
    assert calls[-1] == ("process", job.id)


def test_manual_retry_of_resolved_record_is_refused(session_factory, shop):
    failures = FailedSnapshotService(session_factory)
    job = make_job(session_factory, shop)
    failures.register(job.id, FailedSnapshotStage.PROCESS, "boom")
    failures.resolve(job.id)

    assert failures.retry_manually(job.id, recording_dispatchers([])) is None
    assert failures.retry_manually(999, recording_dispatchers([])) is None
