"""
 * @file: webhooks.py
 * @description: Входящие вебхуки платформы о заданиях экспорта: проверка подписи, регистрация задания, запуск скачивания
 * @dependencies: hmac, SnapshotJob, SnapshotJobPoller
 * @created: 2026-01-02
"""
import hashlib
import hmac
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict

from sqlmodel import Session, select

from app.models.shop import Shop
from app.models.snapshot_job import SnapshotJob, SnapshotJobStatus
from app.schemas.pipeline_meta import SnapshotJobMeta, merge_meta
from app.services.shoptet.client import dig
from app.services.shoptet.poller import SnapshotJobPoller

logger = logging.getLogger("webhooks")

SIGNATURE_HEADER = "Shoptet-Webhook-Signature"
JOB_FINISHED_EVENT = "job:finished"

WEBHOOK_JOB_ID_PATHS = (
    ("jobId",),
    ("data", "jobId"),
    ("job", "jobId"),
    ("job", "id"),
    ("id",),
    ("eventInstance",),
)


def compute_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha1).hexdigest()


def verify_signature(secret: str, raw_body: bytes, signature: str) -> bool:
    """HMAC-SHA1 от сырого тела запроса, сравнение за постоянное время."""
    if not secret or not signature:
        return False
    return hmac.compare_digest(compute_signature(secret, raw_body), signature)


def resolve_webhook_job_id(payload: Dict[str, Any]) -> str:
    for path in WEBHOOK_JOB_ID_PATHS:
        value = dig(payload, *path)
        if isinstance(value, str) and value:
            return value
    return str(uuid.uuid4())


def receive_webhook(
    session_factory: Callable[[], Session],
    poller: SnapshotJobPoller,
    enqueue_download: Callable[[int], None],
    shop: Shop,
    payload: Dict[str, Any],
) -> SnapshotJob:
    """
    Регистрирует задание из вебхука. На job:finished подтягивает детали
    задания и, если результат готов, ставит скачивание с прогрессивным ожиданием.
    """
    job_id = resolve_webhook_job_id(payload)
    event = str(payload.get("event") or "unknown")
    event_instance = payload.get("eventInstance")

    with session_factory() as session:
        job = session.exec(
            select(SnapshotJob).where(SnapshotJob.shop_id == shop.id, SnapshotJob.job_id == job_id)
        ).first()
        if job is None:
            job = SnapshotJob(shop_id=shop.id, job_id=job_id, status=SnapshotJobStatus.RECEIVED)

        job.event = event
        job.payload = payload
        if event_instance:
            instances = list((job.meta or {}).get("event_instances") or [])
            if event_instance not in instances:
                instances.append(str(event_instance))
            job.meta = merge_meta(job.meta, {"event_instances": instances}, schema=SnapshotJobMeta)
        job.updated_at = datetime.utcnow()
        session.add(job)
        session.commit()
        session.refresh(job)

    logger.info(f"[Webhook] Получен вебхук {event}: shop={shop.id} job={job.job_id} db_id={job.id}")

    if event == JOB_FINISHED_EVENT:
        job = poller.poll_job_details(job, shop)
        if job.result_url:
            enqueue_download(job.id)

    return job
