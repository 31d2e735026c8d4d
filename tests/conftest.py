import gzip
import json
import os
from typing import Any, Dict, List, Optional

# Движок приложения создаётся при импорте app.database, поэтому URL задаём до импортов
os.environ.setdefault("SQLALCHEMY_DATABASE_URI", "sqlite://")

import httpx
import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import app.models  # noqa: F401
from app.models.shop import Shop
from app.services.shoptet.client import ShoptetClient
from app.services.snapshots.pipeline_factory import TaskQueue, build_snapshot_pipeline
from app.services.storage import SnapshotStorage

API_URL = "https://api.shoptet.test"


def gzip_lines(lines: List[str]) -> bytes:
    return gzip.compress("\n".join(lines).encode("utf-8"))


class RecordingQueue:
    """Очередь задач, которая только запоминает вызовы."""

    def __init__(self):
        self.downloads = []
        self.processes = []
        self.variant_batches = []
        self.schedules = []

    def as_task_queue(self) -> TaskQueue:
        return TaskQueue(
            download=lambda job_id, auto_process=True, progressive_wait=False, countdown=0: self.downloads.append(
                {"job_id": job_id, "auto_process": auto_process, "progressive_wait": progressive_wait, "countdown": countdown}
            ),
            process=self.processes.append,
            variants=self.variant_batches.append,
            schedule=self.schedules.append,
        )


class FakeShoptet:
    """
    Платформа для httpx.MockTransport: выдаёт jobId на запрос снапшота,
    детали задания и gzip файл результата.

    ready_after_polls: сколько опросов задание остаётся без resultUrl
    (None - результат никогда не готов).
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.snapshot_params: List[Dict[str, str]] = []
        self.results: Dict[str, bytes] = {}
        self.next_result: bytes = gzip_lines([])
        self.ready_after_polls: Optional[int] = 0
        self.snapshot_errors: List[httpx.Response] = []
        self.download_status = 200
        self.polls: Dict[str, int] = {}
        self.endpoints: Dict[str, str] = {}
        self._counter = 0

    @staticmethod
    def result_url(job_id: str) -> str:
        return f"https://cdn.shoptet.test/exports/{job_id}.json.gz"

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.url.host == "cdn.shoptet.test":
            job_id = path.rsplit("/", 1)[-1].replace(".json.gz", "")
            if self.download_status != 200 or job_id not in self.results:
                return httpx.Response(self.download_status if self.download_status != 200 else 404)
            return httpx.Response(200, content=self.results[job_id])

        if path.endswith("/snapshot"):
            if self.snapshot_errors:
                return self.snapshot_errors.pop(0)
            self._counter += 1
            job_id = f"job-{self._counter}"
            self.snapshot_params.append(dict(request.url.params))
            self.results[job_id] = self.next_result
            self.endpoints[job_id] = path
            return httpx.Response(200, json={"data": {"jobId": job_id}})

        if path.startswith("/api/system/jobs/"):
            job_id = path.rsplit("/", 1)[-1]
            self.polls[job_id] = self.polls.get(job_id, 0) + 1
            job = {
                "jobId": job_id,
                "endpoint": self.endpoints.get(job_id, "/api/orders/snapshot"),
                "status": "pending",
            }
            ready = self.ready_after_polls is not None and self.polls[job_id] > self.ready_after_polls
            if ready:
                job.update({"status": "completed", "resultUrl": self.result_url(job_id)})
            return httpx.Response(200, json={"data": {"job": job}})

        return httpx.Response(404, json={"errors": [{"message": "not found"}]})


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, class_=Session, expire_on_commit=False)


@pytest.fixture
def shop(session_factory) -> Shop:
    with session_factory() as session:
        shop = Shop(
            name="Test shop",
            timezone="Europe/Prague",
            api_token="private-token",
            webhook_token="wh-token",
            webhook_secret="wh-secret",
        )
        session.add(shop)
        session.commit()
        session.refresh(shop)
        return shop


@pytest.fixture
def platform() -> FakeShoptet:
    return FakeShoptet()


@pytest.fixture
def client(platform) -> ShoptetClient:
    client = ShoptetClient(
        base_url=API_URL,
        transport=httpx.MockTransport(platform.handler),
        retry_times=0,
        retry_sleep=0,
    )
    yield client
    client.close()


@pytest.fixture
def storage(tmp_path) -> SnapshotStorage:
    return SnapshotStorage(str(tmp_path / "storage"))


@pytest.fixture
def queue() -> RecordingQueue:
    return RecordingQueue()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def pipeline(session_factory, client, storage, queue, sleeps):
    return build_snapshot_pipeline(
        session_factory=session_factory,
        client=client,
        storage=storage,
        queue=queue.as_task_queue(),
        sleep=sleeps.append,
    )


def order_line(code: str, change_time: str, items: Optional[List[Dict[str, Any]]] = None) -> str:
    return json.dumps({
        "code": code,
        "guid": f"guid-{code}",
        "status": {"id": -1, "name": "Vyřizuje se"},
        "customer": {"guid": f"customer-{code}"},
        "changeTime": change_time,
        "items": items if items is not None else [{"itemCode": f"{code}-A", "amount": "2"}],
    })
