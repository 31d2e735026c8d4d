"""
Celery задачи конвейера снапшотов: скачивание, обработка, повторы,
опрос зависших заданий, отбраковка и пересчёт метрик вариантов.
"""

import logging
from typing import Any, Dict, List, Optional

from app.celery_shared import SHORT_TASK_LIMITS, celery
from app.core.snapshot_sync_config import snapshot_sync_config
from app.database import SessionLocal
from app.models.snapshot_job import FailedSnapshotStage
from app.services.snapshots import maintenance
from app.services.snapshots.exceptions import PipelineLockBusyError
from app.services.snapshots.pipeline_factory import build_snapshot_pipeline
from app.services.variant_metrics import recalculate_variant_metrics as recalculate_metrics
from app.utils.date_utils import parse_iso_datetime, to_naive_utc
from app.utils.logging_config import log_error_with_context

logger = logging.getLogger("snapshots.pipeline")


@celery.task(
    bind=True,
    name="app.services.snapshot_tasks.download_snapshot",
    soft_time_limit=None,
    time_limit=None,
)
def download_snapshot(self, snapshot_job_id: int, auto_process: bool = True, progressive_wait: bool = False):
    """
    Скачивает результат экспорта и передаёт его на обработку.

    Args:
        snapshot_job_id: ID задания экспорта
        auto_process: Обработка отдельной задачей (False - в этой же задаче)
        progressive_wait: Прогрессивное ожидание результата
    """
    pipeline = build_snapshot_pipeline()
    try:
        outcome = pipeline.downloader.run(snapshot_job_id, auto_process=auto_process, progressive_wait=progressive_wait)
        return {"status": outcome, "snapshot_job_id": snapshot_job_id, "task_id": self.request.id}
    finally:
        pipeline.close()


@celery.task(
    bind=True,
    name="app.services.snapshot_tasks.process_snapshot",
    max_retries=snapshot_sync_config.process_max_retries,
    soft_time_limit=None,
    time_limit=None,
)
def process_snapshot(self, snapshot_job_id: int):
    """
    Обрабатывает скачанный снапшот. Повторы с паузами 60 / 300 / 1800 сек,
    после последней неудачи задание регистрируется в FailedSnapshot.
    """
    pipeline = build_snapshot_pipeline()
    try:
        report = pipeline.processor.run(snapshot_job_id)
        return {"snapshot_job_id": snapshot_job_id, **report.model_dump(exclude={"affected_ids"})}
    except PipelineLockBusyError as e:
        # Занятая блокировка не расходует попытки обработки: ставим новую задачу
        delay = snapshot_sync_config.lock_busy_retry_seconds
        logger.info(f"[SnapshotImport] {e.message}, повтор через {delay} сек")
        process_snapshot.apply_async(args=[snapshot_job_id], countdown=delay)
        return {"snapshot_job_id": snapshot_job_id, "status": "pipeline_locked"}
    except Exception as e:
        attempt = self.request.retries
        if attempt < self.max_retries:
            backoff = snapshot_sync_config.process_backoff
            countdown = backoff[min(attempt, len(backoff) - 1)]
            logger.warning(
                f"[SnapshotImport] Ошибка обработки задания {snapshot_job_id}: {e}. "
                f"Повтор через {countdown} сек ({attempt + 1}/{self.max_retries})"
            )
            raise self.retry(exc=e, countdown=countdown)

        log_error_with_context(e, {"operation": "process_snapshot", "snapshot_job_id": snapshot_job_id, "attempts": attempt + 1})
        pipeline.failures.register(snapshot_job_id, FailedSnapshotStage.PROCESS, str(e))
        raise
    finally:
        pipeline.close()


@celery.task(name="app.services.snapshot_tasks.retry_failed_snapshots", **SHORT_TASK_LIMITS)
def retry_failed_snapshots(limit: int = 100):
    """Периодический проход повторов FailedSnapshot."""
    pipeline = build_snapshot_pipeline()
    try:
        dispatchers = {
            FailedSnapshotStage.DOWNLOAD: lambda job_id: download_snapshot.delay(job_id, True, False),
            FailedSnapshotStage.PROCESS: lambda job_id: process_snapshot.delay(job_id),
        }
        result = pipeline.failures.retry_failed(pipeline.locks, dispatchers, limit=limit)
        return result.model_dump()
    finally:
        pipeline.close()


@celery.task(name="app.services.snapshot_tasks.poll_snapshot_jobs", **SHORT_TASK_LIMITS)
def poll_snapshot_jobs(shop_id: Optional[int] = None, statuses: Optional[List[str]] = None):
    """Повторно отправляет на скачивание зависшие задания в requested / waiting_result."""
    pipeline = build_snapshot_pipeline()
    try:
        dispatched = maintenance.poll_snapshot_jobs(
            pipeline.session_factory,
            pipeline.locks,
            lambda job_id: download_snapshot.delay(job_id, True, True),
            shop_id=shop_id,
            statuses=statuses,
        )
        return {"dispatched": dispatched}
    finally:
        pipeline.close()


@celery.task(name="app.services.snapshot_tasks.discard_snapshot_jobs", **SHORT_TASK_LIMITS)
def discard_snapshot_jobs(
    statuses: List[str],
    before: Optional[str] = None,
    shop_id: Optional[int] = None,
    reason: Optional[str] = None,
    dry_run: bool = False,
) -> Dict[str, Any]:
    before_dt = parse_iso_datetime(before) if before else None
    result = maintenance.discard_snapshot_jobs(
        SessionLocal,
        statuses,
        before=to_naive_utc(before_dt) if before_dt else None,
        shop_id=shop_id,
        reason=reason,
        dry_run=dry_run,
    )
    return result.model_dump()


@celery.task(name="app.services.snapshot_tasks.recalculate_variant_metrics", **SHORT_TASK_LIMITS)
def recalculate_variant_metrics(variant_codes: List[str]):
    """Пересчёт метрик пачки вариантов после импорта заказов."""
    with SessionLocal() as session:
        metrics = recalculate_metrics(session, variant_codes)
    return {"recalculated": len(metrics)}
