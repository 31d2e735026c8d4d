"""
Celery задачи расписаний: ежеминутная проверка cron и запуск одного расписания.
"""

import logging
from typing import Optional

from app.celery_shared import SHORT_TASK_LIMITS, celery
from app.services.snapshots.pipeline_factory import build_snapshot_pipeline

logger = logging.getLogger("schedules")


@celery.task(name="app.services.schedule_tasks.run_due_job_schedules", **SHORT_TASK_LIMITS)
def run_due_job_schedules(job_type: Optional[str] = None):
    """Ставит в очередь все включённые расписания, cron которых совпадает с текущей минутой."""
    pipeline = build_snapshot_pipeline()
    try:
        dispatched = pipeline.runner.dispatch_due(job_type=job_type)
        if dispatched:
            logger.info(f"[Schedule] Поставлено в очередь расписаний: {len(dispatched)}")
        return {"dispatched": dispatched}
    finally:
        pipeline.close()


@celery.task(
    bind=True,
    name="app.services.schedule_tasks.run_job_schedule",
    soft_time_limit=None,
    time_limit=None,
)
def run_job_schedule(self, schedule_id: str):
    """
    Выполняет расписание. Синхронизация идёт в этой же задаче с прогрессивным
    ожиданием результата экспорта, поэтому лимит времени снят.
    """
    pipeline = build_snapshot_pipeline()
    try:
        message = pipeline.runner.run(schedule_id)
        return {"schedule_id": schedule_id, "message": message, "task_id": self.request.id}
    finally:
        pipeline.close()
