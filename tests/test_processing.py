import gzip
import io
import json

import pytest
from sqlmodel import select

from app.models.pipeline import PipelineStatus
from app.models.snapshot_job import FailedSnapshot, FailedSnapshotStage, FailedSnapshotStatus, SnapshotJob, SnapshotJobStatus
from app.models.snapshot_records import OrderRecord
from app.schemas.pipeline_meta import CursorTarget
from app.schemas.snapshot_import import SkipReason
from app.services.snapshots import processing
from app.services.snapshots.exceptions import PipelineLockBusyError
from conftest import gzip_lines, order_line


def make_downloaded_job(session_factory, storage, shop, content, endpoint="/api/orders/snapshot", meta=None, job_id="job-1"):
    path = f"shoptet/{shop.id}/snapshots/{job_id}.json.gz"
    if content is not None:
        storage.put(path, io.BytesIO(content))
    with session_factory() as session:
        job = SnapshotJob(
            shop_id=shop.id,
            job_id=job_id,
            endpoint=endpoint,
            status=SnapshotJobStatus.DOWNLOADED,
            snapshot_path=path,
            meta=meta or {},
        )
        session.add(job)
        session.commit()
        session.refresh(job)
        return job


def cursor_meta(value="2026-01-15T11:59:50+01:00"):
    target = CursorTarget(key="orders.change_time", value=value)
    return {"cursor": target.model_dump(by_alias=True, mode="json")}


def test_mixed_snapshot_is_processed_line_by_line(pipeline, session_factory, storage, shop, queue):
    content = gzip_lines([
        order_line("2026001", "2026-01-15T09:00:00+0100"),
        "{not json",
        "",
        json.dumps([1, 2, 3]),
        order_line("2026002", "2026-01-15T10:30:00+0100"),
        json.dumps({"guid": "no-code", "items": []}),
        json.dumps({"code": "2026003", "items": "broken"}),
    ])
    job = make_downloaded_job(session_factory, storage, shop, content, meta=cursor_meta())

    report = pipeline.processor.run(job.id)

    assert report.status == PipelineStatus.COMPLETED
    assert report.processed_count == 2
    assert report.failed_count == 1
    assert report.skipped_count == 3
    assert report.skip_reasons == {
        SkipReason.MALFORMED_JSON: 1,
        SkipReason.NOT_AN_OBJECT: 1,
        SkipReason.MISSING_IDENTIFIER: 1,
    }
    assert report.last_change_time == "2026-01-15T10:30:00+0100"
    assert queue.variant_batches == [["2026001-A", "2026002-A"]]

    with session_factory() as session:
        codes = sorted(order.code for order in session.exec(select(OrderRecord)).all())
        stored = session.get(SnapshotJob, job.id)
    execution = pipeline.pipelines.find(stored.pipeline_id)

    assert codes == ["2026001", "2026002"]
    assert stored.status == SnapshotJobStatus.PROCESSED
    assert stored.processed_at is not None
    assert execution.status == PipelineStatus.COMPLETED
    assert execution.meta["processed_count"] == 2
    assert execution.meta["skip_reasons"][SkipReason.MALFORMED_JSON] == 1

    # курсор продвигается до самого позднего changeTime из снапшота
    assert pipeline.cursors.get(shop.id, "orders.change_time") == "2026-01-15T10:30:00+0100"


def test_reimport_is_idempotent(pipeline, session_factory, storage, shop):
    content = gzip_lines([order_line("2026001", "2026-01-15T09:00:00+0100")])
    first = make_downloaded_job(session_factory, storage, shop, content, job_id="job-1")
    second = make_downloaded_job(session_factory, storage, shop, content, job_id="job-2")

    pipeline.processor.run(first.id)
    pipeline.processor.run(second.id)

    with session_factory() as session:
        assert len(session.exec(select(OrderRecord)).all()) == 1


def test_variant_ids_are_dispatched_in_batches(pipeline, session_factory, storage, shop, queue):
    items = [{"itemCode": f"VAR-{i:03d}", "amount": 1} for i in range(120)]
    content = gzip_lines([order_line("2026001", "2026-01-15T09:00:00+0100", items=items)])
    job = make_downloaded_job(session_factory, storage, shop, content)

    report = pipeline.processor.run(job.id)

    assert report.dispatched_batches == 3
    assert [len(batch) for batch in queue.variant_batches] == [50, 50, 20]


def test_cursor_without_change_time_tracking_uses_window_end(pipeline, session_factory, storage, shop):
    target = CursorTarget(key="orders.change_time", value="2026-01-15T11:59:50+01:00", track_change_time=False)
    content = gzip_lines([order_line("2026001", "2026-01-15T09:00:00+0100")])
    job = make_downloaded_job(
        session_factory, storage, shop, content,
        meta={"cursor": target.model_dump(by_alias=True, mode="json")},
    )

    pipeline.processor.run(job.id)

    assert pipeline.cursors.get(shop.id, "orders.change_time") == "2026-01-15T11:59:50+01:00"


def test_unknown_endpoint_skips_every_record(pipeline, session_factory, storage, shop):
    content = gzip_lines([json.dumps({"code": "1"}), json.dumps({"code": "2"})])
    job = make_downloaded_job(session_factory, storage, shop, content, endpoint="/api/stocks/snapshot")

    report = pipeline.processor.run(job.id)

    assert report.status == PipelineStatus.COMPLETED
    assert report.processed_count == 0
    assert report.skip_reasons == {SkipReason.UNKNOWN_ENDPOINT: 2}


def test_missing_file_finishes_as_missing_snapshot(pipeline, session_factory, storage, shop):
    job = make_downloaded_job(session_factory, storage, shop, None, meta=cursor_meta())
    pipeline.failures.register(job.id, FailedSnapshotStage.PROCESS, "boom")

    report = pipeline.processor.run(job.id)

    assert report.status == PipelineStatus.MISSING_SNAPSHOT
    with session_factory() as session:
        stored = session.get(SnapshotJob, job.id)
    assert stored.status == SnapshotJobStatus.MISSING_SNAPSHOT
    assert pipeline.pipelines.find(stored.pipeline_id).status == PipelineStatus.MISSING_SNAPSHOT
    assert pipeline.failures.get(job.id).status == FailedSnapshotStatus.EXHAUSTED
    # курсор не трогается
    assert pipeline.cursors.get(shop.id, "orders.change_time") is None


def test_non_gzip_file_finishes_as_invalid_snapshot(pipeline, session_factory, storage, shop):
    job = make_downloaded_job(session_factory, storage, shop, b'{"code": "plain json"}\n')

    report = pipeline.processor.run(job.id)

    assert report.status == PipelineStatus.INVALID_SNAPSHOT
    with session_factory() as session:
        assert session.get(SnapshotJob, job.id).status == SnapshotJobStatus.INVALID_SNAPSHOT


def test_line_with_invalid_utf8_is_skipped(pipeline, session_factory, storage, shop):
    content = gzip.compress(b"\n".join([
        order_line("2026001", "2026-01-15T09:00:00+0100").encode("utf-8"),
        b'{"code": "\xff\xfe bad"}',
        order_line("2026002", "2026-01-15T10:30:00+0100").encode("utf-8"),
    ]))
    job = make_downloaded_job(session_factory, storage, shop, content)

    report = pipeline.processor.run(job.id)

    assert report.status == PipelineStatus.COMPLETED
    assert report.processed_count == 2
    assert report.skip_reasons == {SkipReason.INVALID_ENCODING: 1}


def test_truncated_gzip_finishes_as_invalid_snapshot(pipeline, session_factory, storage, shop):
    content = gzip_lines([order_line(f"2026{i:03d}", "2026-01-15T09:00:00+0100") for i in range(50)])
    job = make_downloaded_job(session_factory, storage, shop, content[:len(content) // 2], meta=cursor_meta())

    report = pipeline.processor.run(job.id)

    assert report.status == PipelineStatus.INVALID_SNAPSHOT
    with session_factory() as session:
        stored = session.get(SnapshotJob, job.id)
    assert stored.status == SnapshotJobStatus.INVALID_SNAPSHOT
    assert pipeline.pipelines.find(stored.pipeline_id).status == PipelineStatus.INVALID_SNAPSHOT
    assert pipeline.cursors.get(shop.id, "orders.change_time") is None


def test_processing_waits_while_shop_pipeline_is_locked(pipeline, session_factory, storage, shop):
    job = make_downloaded_job(session_factory, storage, shop, gzip_lines([order_line("1", "2026-01-15T09:00:00+0100")]))
    handle = pipeline.locks.acquire(shop.id, "/api/orders/snapshot")

    with pytest.raises(PipelineLockBusyError):
        pipeline.processor.run_tracked(job.id)

    with session_factory() as session:
        assert session.get(SnapshotJob, job.id).status == SnapshotJobStatus.DOWNLOADED
        assert session.exec(select(FailedSnapshot)).all() == []

    pipeline.locks.release(handle)
    assert pipeline.processor.run(job.id).status == PipelineStatus.COMPLETED


def test_unexpected_error_is_registered_for_retry(pipeline, session_factory, storage, shop, monkeypatch):
    def exploding_importer(session, shop, record):
        raise RuntimeError("database went away")

    monkeypatch.setattr(processing, "resolve_importer", lambda endpoint: exploding_importer)
    job = make_downloaded_job(session_factory, storage, shop, gzip_lines([order_line("1", "2026-01-15T09:00:00+0100")]))

    with pytest.raises(RuntimeError):
        pipeline.processor.run_tracked(job.id)

    with session_factory() as session:
        stored = session.get(SnapshotJob, job.id)
        record = session.exec(select(FailedSnapshot)).one()

    assert stored.status == SnapshotJobStatus.FAILED
    assert pipeline.pipelines.find(stored.pipeline_id).status == PipelineStatus.ERROR
    assert record.status == FailedSnapshotStatus.PENDING
    assert record.stage == FailedSnapshotStage.PROCESS
    assert record.error_message == "database went away"


def test_unexpected_error_returns_job_to_downloaded(pipeline, session_factory, storage, shop, monkeypatch):
    def exploding_importer(session, shop, record):
        raise RuntimeError("database went away")

    monkeypatch.setattr(processing, "resolve_importer", lambda endpoint: exploding_importer)
    job = make_downloaded_job(session_factory, storage, shop, gzip_lines([order_line("1", "2026-01-15T09:00:00+0100")]))

    with pytest.raises(RuntimeError):
        pipeline.processor.run(job.id)

    with session_factory() as session:
        stored = session.get(SnapshotJob, job.id)
    assert stored.status == SnapshotJobStatus.DOWNLOADED
    assert stored.meta["error"] == "database went away"
