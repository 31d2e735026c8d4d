import io
from datetime import datetime, timedelta

import httpx
import pytest
from sqlmodel import select

from app.models.snapshot_job import FailedSnapshot, FailedSnapshotStatus, SnapshotJob, SnapshotJobStatus
from app.models.snapshot_records import CustomerRecord, OrderRecord, ProductRecord
from app.schemas.snapshot_import import ImportOutcome, SkipReason
from app.services.pipeline.locks import PipelineLockManager
from app.services.shoptet.poller import reschedule_delay
from app.services.shoptet.snapshot_service import DEFAULT_PRODUCT_INCLUDES, filter_unsupported_includes, merge_includes
from app.services.shoptet.webhooks import compute_signature, resolve_webhook_job_id, verify_signature
from app.services.snapshots.exceptions import RecordImportError, ShoptetApiError
from app.services.snapshots.importers import import_customer, import_order, import_product, normalize_endpoint, resolve_importer
from app.services.snapshots.maintenance import POLL_SWEEP_LOCK, discard_snapshot_jobs, poll_snapshot_jobs
from app.services.storage import build_snapshot_path
from app.services.variant_metrics import recalculate_variant_metrics


def make_jobs(session_factory, shop, statuses, idle_for=timedelta(hours=1), meta=None):
    ids = []
    with session_factory() as session:
        for number, status in enumerate(statuses, start=1):
            job = SnapshotJob(
                shop_id=shop.id,
                job_id=f"job-{number}",
                status=status,
                meta=dict(meta or {}),
                updated_at=datetime.utcnow() - idle_for,
            )
            session.add(job)
            session.commit()
            session.refresh(job)
            ids.append(job.id)
    return ids


# Запрос снапшотов

def test_products_snapshot_drops_unsupported_includes(pipeline, platform, shop):
    platform.snapshot_errors.append(httpx.Response(403, json={"errors": [
        {"message": "Access to images include is not allowed"},
        {"message": "The gifts module is not enabled"},
    ]}))

    job = pipeline.snapshots.request_products_snapshot(shop, {"include": "stock"})

    includes = platform.snapshot_params[0]["include"].split(",")
    assert includes[0] == "stock"
    assert "images" not in includes
    assert "gifts" not in includes
    assert "flags" in includes
    assert job.endpoint == "/api/products/snapshot"


def test_products_snapshot_403_without_hints_is_raised(pipeline, platform, shop):
    platform.snapshot_errors.append(httpx.Response(403, json={"errors": [{"message": "Forbidden"}]}))

    with pytest.raises(ShoptetApiError) as error:
        pipeline.snapshots.request_products_snapshot(shop)

    assert error.value.status_code == 403


def test_request_creates_queued_execution_once(pipeline, session_factory, shop):
    job = pipeline.snapshots.request_orders_snapshot(shop, {"changeTimeFrom": "2026-01-15T00:00:00+01:00", "empty": ""})

    execution = pipeline.pipelines.find(job.pipeline_id)
    assert execution.status == "queued"
    assert execution.started_at is None
    assert execution.requested_at is not None
    assert execution.meta["params"] == {"changeTimeFrom": "2026-01-15T00:00:00+01:00", "include": "shippingDetails"}
    assert job.meta["params"] == execution.meta["params"]


def test_include_helpers():
    assert merge_includes(["images", "custom"], ["images", "flags"]) == ["images", "custom", "flags"]
    assert filter_unsupported_includes(DEFAULT_PRODUCT_INCLUDES, None) == DEFAULT_PRODUCT_INCLUDES


# Обслуживание заданий

def test_poll_dispatches_stuck_jobs_only(session_factory, shop):
    locks = PipelineLockManager(session_factory)
    ids = make_jobs(session_factory, shop, [
        SnapshotJobStatus.REQUESTED,
        SnapshotJobStatus.WAITING_RESULT,
        SnapshotJobStatus.PROCESSED,
        SnapshotJobStatus.DISCARDED,
        SnapshotJobStatus.DOWNLOAD_FAILED,
    ])
    dispatched = []

    count = poll_snapshot_jobs(session_factory, locks, dispatched.append)

    # download_failed ведёт очередь повторов FailedSnapshot
    assert count == 2
    assert sorted(dispatched) == [ids[0], ids[1]]


def test_poll_skips_exhausted_failed_snapshots(session_factory, shop):
    locks = PipelineLockManager(session_factory)
    exhausted_id, pending_id = make_jobs(session_factory, shop, [
        SnapshotJobStatus.DOWNLOAD_FAILED,
        SnapshotJobStatus.DOWNLOAD_FAILED,
    ])
    with session_factory() as session:
        session.add(FailedSnapshot(
            snapshot_job_id=exhausted_id,
            shop_id=shop.id,
            status=FailedSnapshotStatus.EXHAUSTED,
            retry_count=3,
            context={"stage": "download"},
        ))
        session.commit()
    dispatched = []

    count = poll_snapshot_jobs(session_factory, locks, dispatched.append, statuses=["download_failed"])

    assert count == 1
    assert dispatched == [pending_id]


def test_poll_leaves_recently_updated_jobs_to_their_chain(session_factory, shop):
    locks = PipelineLockManager(session_factory)
    recent_id, = make_jobs(session_factory, shop, [SnapshotJobStatus.WAITING_RESULT], idle_for=timedelta(seconds=30))
    gave_up_id, = make_jobs(
        session_factory,
        shop,
        [SnapshotJobStatus.WAITING_RESULT],
        idle_for=timedelta(seconds=30),
        meta={"gave_up_at": "2026-01-01T00:00:00Z"},
    )
    dispatched = []

    count = poll_snapshot_jobs(session_factory, locks, dispatched.append, idle_seconds=600)

    assert count == 1
    assert dispatched == [gave_up_id]
    assert recent_id not in dispatched


def test_poll_never_touches_discarded_even_when_asked(session_factory, shop):
    locks = PipelineLockManager(session_factory)
    make_jobs(session_factory, shop, [SnapshotJobStatus.DISCARDED])
    dispatched = []

    assert poll_snapshot_jobs(session_factory, locks, dispatched.append, statuses=["discarded"]) == 0
    assert dispatched == []


def test_poll_is_skipped_while_locked(session_factory, shop):
    locks = PipelineLockManager(session_factory)
    make_jobs(session_factory, shop, [SnapshotJobStatus.REQUESTED])
    locks.acquire_job_lock(POLL_SWEEP_LOCK)

    assert poll_snapshot_jobs(session_factory, locks, lambda job_id: None) == -1


def test_discard_marks_jobs_in_batches(session_factory, shop):
    ids = make_jobs(session_factory, shop, [
        SnapshotJobStatus.WAITING_RESULT,
        SnapshotJobStatus.WAITING_RESULT,
        SnapshotJobStatus.WAITING_RESULT,
        SnapshotJobStatus.PROCESSED,
    ])

    preview = discard_snapshot_jobs(session_factory, ["waiting_result"], dry_run=True)
    assert preview.matched == 3
    assert preview.discarded == 0

    result = discard_snapshot_jobs(session_factory, ["waiting_result"], reason="stale export", batch_size=2)
    assert result.discarded == 3

    with session_factory() as session:
        jobs = {job.id: job for job in session.exec(select(SnapshotJob)).all()}
    assert {jobs[i].status for i in ids[:3]} == {SnapshotJobStatus.DISCARDED}
    assert jobs[ids[0]].meta["discard_reason"] == "stale export"
    assert jobs[ids[3]].status == SnapshotJobStatus.PROCESSED


# Импорт записей

def test_importers_upsert_by_natural_key(session_factory, shop):
    with session_factory() as session:
        import_product(session, shop, {"guid": "p-1", "name": "Old", "variants": [{"code": "V-1"}, {"code": "V-2"}]})
        import_product(session, shop, {"guid": "p-1", "name": "New", "variants": [{"code": "V-1"}]})
        import_customer(session, shop, {"guid": "c-1", "billingAddress": {"email": "buyer@example.com"}})
        result = import_order(session, shop, {
            "code": "2026001",
            "creationTime": "2026-01-15T09:00:00+0100",
            "status": "Nová",
            "items": [{"itemCode": "V-1"}, {"code": "V-2"}, {"name": "shipping"}],
        })
        session.commit()

        products = session.exec(select(ProductRecord)).all()
        customer = session.exec(select(CustomerRecord)).one()
        order = session.exec(select(OrderRecord)).one()

    assert [(p.name, p.variant_codes) for p in products] == [("New", ["V-1"])]
    assert customer.email == "buyer@example.com"
    assert order.status == "Nová"
    assert order.change_time == "2026-01-15T09:00:00+0100"
    assert result.outcome == ImportOutcome.IMPORTED
    assert result.affected_ids == ["V-1", "V-2"]


def test_importer_errors_and_skips(session_factory, shop):
    with session_factory() as session:
        assert import_customer(session, shop, {"email": "x@example.com"}).reason == SkipReason.MISSING_IDENTIFIER
        with pytest.raises(RecordImportError):
            import_product(session, shop, {"guid": "p-1", "variants": {"code": "V-1"}})


def test_importer_is_resolved_by_endpoint_path():
    assert normalize_endpoint("https://api.myshoptet.com/api/orders/snapshot/?page=2") == "/api/orders/snapshot"
    assert resolve_importer("/api/customers/snapshot") is import_customer
    assert resolve_importer("/api/stocks/snapshot") is None
    assert resolve_importer(None) is None


# Метрики вариантов

def test_variant_metrics_recalculation_is_repeatable(session_factory, shop):
    with session_factory() as session:
        session.add(OrderRecord(shop_id=shop.id, code="1", change_time="2026-01-14T10:00:00+0100",
                                items=[{"itemCode": "V-1", "amount": "2"}, {"itemCode": "V-1", "amount": "1"}]))
        session.add(OrderRecord(shop_id=shop.id, code="2", change_time="2026-01-15T10:00:00+0100",
                                items=[{"itemCode": "V-1", "amount": 4}, {"itemCode": "V-2", "amount": 1}]))
        session.commit()

        recalculate_variant_metrics(session, ["V-1"])
        metrics = recalculate_variant_metrics(session, ["V-1", ""])

    assert list(metrics) == ["V-1"]
    assert metrics["V-1"].orders_count == 2
    assert metrics["V-1"].quantity_sold == 7
    assert metrics["V-1"].last_order_at == "2026-01-15T10:00:00+0100"


# Вспомогательные функции

def test_webhook_signature():
    body = b'{"event": "job:finished"}'
    signature = compute_signature("secret", body)

    assert verify_signature("secret", body, signature)
    assert not verify_signature("secret", body + b" ", signature)
    assert not verify_signature("", body, signature)


def test_webhook_job_id_resolution():
    assert resolve_webhook_job_id({"job": {"id": "job-3"}}) == "job-3"
    assert resolve_webhook_job_id({"jobId": 42, "eventInstance": "evt-1"}) == "evt-1"
    assert len(resolve_webhook_job_id({})) == 36


def test_reschedule_delay_sequence():
    assert [reschedule_delay(attempt) for attempt in range(0, 8)] == [30, 30, 60, 120, 240, 600, 600, 600]


def test_snapshot_path_is_sanitized(storage):
    path = build_snapshot_path(7, "https://cdn.example.com/exports/orders%20export(1).json.gz?sig=abc", "job-1")

    assert path == "shoptet/7/snapshots/orders_20export_1_.json.gz"
    assert build_snapshot_path(7, "https://cdn.example.com/", "job-1") == "shoptet/7/snapshots/job-job-1.gz"
    with pytest.raises(ValueError):
        storage.path("../outside.gz")
    storage.put(path, io.BytesIO(b"data"))
    assert storage.exists(path)
    storage.delete(path)
    assert not storage.exists(path)
