import json

import pytest
from fastapi.testclient import TestClient
from sqlmodel import select

from app.api import deps
from app.api.v1.routers import shoptet_webhooks
from app.main import app
from app.models.job_schedule import JobSchedule, ScheduleRunStatus
from app.models.snapshot_job import FailedSnapshotStage, SnapshotJob, SnapshotJobStatus
from app.services.shoptet.webhooks import SIGNATURE_HEADER, compute_signature

WEBHOOK_URL = "/api/shoptet/webhook"


@pytest.fixture
def api(session_factory, pipeline):
    def override_session():
        with session_factory() as session:
            yield session

    def override_pipeline():
        yield pipeline

    app.dependency_overrides[deps.get_session] = override_session
    app.dependency_overrides[deps.get_pipeline] = override_pipeline
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


def post_webhook(api, payload, secret="wh-secret", token="wh-token", signature=None):
    body = json.dumps(payload).encode("utf-8") if not isinstance(payload, bytes) else payload
    headers = {"Content-Type": "application/json"}
    headers[SIGNATURE_HEADER] = signature if signature is not None else compute_signature(secret, body)
    params = {"token": token} if token else {}
    return api.post(WEBHOOK_URL, params=params, content=body, headers=headers)


def test_finished_job_webhook_queues_download(api, shop, session_factory, queue):
    response = post_webhook(api, {"event": "job:finished", "eventInstance": "job-77", "data": {"jobId": "job-77"}})

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["job"]["job_id"] == "job-77"
    assert queue.downloads == [{"job_id": body["job"]["id"], "auto_process": True, "progressive_wait": True, "countdown": 0}]

    with session_factory() as session:
        job = session.get(SnapshotJob, body["job"]["id"])
    assert job.event == "job:finished"
    assert job.result_url.endswith("job-77.json.gz")
    assert job.meta["job_status"] == "completed"
    assert job.meta["event_instances"] == ["job-77"]


def test_repeated_webhook_updates_the_same_job(api, shop, session_factory):
    post_webhook(api, {"event": "job:created", "eventInstance": "evt-1", "jobId": "job-5"})
    post_webhook(api, {"event": "job:created", "eventInstance": "evt-1", "jobId": "job-5"})
    post_webhook(api, {"event": "job:created", "eventInstance": "evt-2", "jobId": "job-5"})

    with session_factory() as session:
        jobs = session.exec(select(SnapshotJob)).all()
    assert len(jobs) == 1
    assert jobs[0].status == SnapshotJobStatus.RECEIVED
    assert jobs[0].meta["event_instances"] == ["evt-1", "evt-2"]


def test_other_events_do_not_poll_the_platform(api, shop, platform, queue):
    response = post_webhook(api, {"event": "job:created", "jobId": "job-9"})

    assert response.status_code == 200
    assert platform.polls == {}
    assert queue.downloads == []


def test_webhook_handling_runs_off_the_event_loop(api, shop, platform, monkeypatch):
    offloaded = []

    async def recording_threadpool(func, *args):
        offloaded.append(func)
        return func(*args)

    monkeypatch.setattr(shoptet_webhooks, "run_in_threadpool", recording_threadpool)

    response = post_webhook(api, {"event": "job:finished", "jobId": "job-3"})

    assert response.status_code == 200
    assert offloaded == [shoptet_webhooks.accept_webhook]
    # опрос платформы выполнился внутри вынесенного вызова
    assert platform.polls == {"job-3": 1}


@pytest.mark.parametrize("kwargs, status_code", [
    ({"token": None}, 401),
    ({"token": "unknown"}, 404),
    ({"signature": ""}, 401),
    ({"secret": "wrong-secret"}, 401),
])
def test_rejected_webhooks(api, shop, kwargs, status_code):
    response = post_webhook(api, {"event": "job:finished", "jobId": "job-1"}, **kwargs)

    assert response.status_code == status_code


def test_invalid_json_body(api, shop):
    response = post_webhook(api, b"{not json")

    assert response.status_code == 400


def test_shop_without_webhook_secret(api, shop, session_factory):
    with session_factory() as session:
        stored = session.merge(shop)
        stored.webhook_secret = None
        session.commit()

    response = post_webhook(api, {"event": "job:finished", "jobId": "job-1"})

    assert response.status_code == 503


def test_request_snapshot_endpoint(api, shop, platform, queue):
    response = api.post(f"/api/snapshots/request/{shop.id}", json={"kind": "customers", "params": {"itemsPerPage": 100}})

    assert response.status_code == 200
    assert response.json()["endpoint"] == "/api/customers/snapshot"
    assert platform.snapshot_params == [{"itemsPerPage": "100"}]
    assert queue.downloads[0]["progressive_wait"] is True


def test_request_snapshot_validation(api, shop):
    assert api.post(f"/api/snapshots/request/{shop.id}", json={"kind": "stocks"}).status_code == 422
    assert api.post("/api/snapshots/request/999", json={"kind": "orders"}).status_code == 404


def test_list_jobs_and_retry_failed(api, shop, pipeline, queue):
    job = pipeline.snapshots.request_orders_snapshot(shop)
    pipeline.failures.register(job.id, FailedSnapshotStage.PROCESS, "boom")

    jobs = api.get("/api/snapshots/jobs", params={"status": "failed"}).json()
    failed = api.get("/api/snapshots/failed").json()
    retried = api.post(f"/api/snapshots/failed/{job.id}/retry")

    assert [item["job_id"] for item in jobs] == ["job-1"]
    assert failed[0]["snapshot_job_id"] == job.id
    assert retried.status_code == 200
    assert retried.json()["status"] == "retrying"
    assert queue.processes == [job.id]
    assert api.post("/api/snapshots/failed/999/retry").status_code == 404


def test_trigger_schedule(api, session_factory, pipeline, queue):
    with session_factory() as session:
        schedule = JobSchedule(name="Orders", job_type="orders.fetch_new", cron_expression="*/5 * * * *")
        session.add(schedule)
        session.commit()
        session.refresh(schedule)

    response = api.post(f"/api/schedules/{schedule.id}/trigger")
    listing = api.get("/api/schedules/").json()

    assert response.status_code == 200
    assert queue.schedules == [str(schedule.id)]
    assert listing[0]["last_run_status"] == ScheduleRunStatus.QUEUED
