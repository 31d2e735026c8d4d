"""
 * @file: maintenance.py
 * @description: Обслуживание заданий экспорта: повторный опрос зависших заданий и отбраковка устаревших
 * @dependencies: SnapshotJob, snapshot_sync_config
 * @created: 2026-01-02
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from pydantic import BaseModel
from sqlmodel import Session, select

from app.core.snapshot_sync_config import snapshot_sync_config
from app.models.snapshot_job import FailedSnapshot, FailedSnapshotStatus, SnapshotJob, SnapshotJobStatus
from app.schemas.pipeline_meta import SnapshotJobMeta, merge_meta
from app.services.pipeline.locks import PipelineLockManager
from app.utils.date_utils import utc_now_iso

logger = logging.getLogger("snapshots.pipeline")

POLL_SWEEP_LOCK = "poll_snapshot_jobs"


class DiscardResult(BaseModel):
    matched: int = 0
    discarded: int = 0
    dry_run: bool = False


def _statuses(values: Optional[List[str]]) -> List[SnapshotJobStatus]:
    result = []
    for value in values or []:
        status = SnapshotJobStatus(value)
        # Отбракованные задания больше никогда не опрашиваются
        if status != SnapshotJobStatus.DISCARDED:
            result.append(status)
    return result


def poll_snapshot_jobs(
    session_factory: Callable[[], Session],
    locks: PipelineLockManager,
    enqueue_download: Callable[[int], None],
    shop_id: Optional[int] = None,
    statuses: Optional[List[str]] = None,
    idle_seconds: Optional[int] = None,
) -> int:
    """
    Отправляет на скачивание (с прогрессивным ожиданием) задания, застрявшие
    в requested / waiting_result. Подбирает в том числе задания, по которым
    одиночный опрос исчерпал попытки (gave_up_at).

    Не трогает:
    - задания без gave_up_at, обновлённые позже idle_seconds назад: их ещё
      ведёт расписание или цепочка переоткладывания;
    - задания с исчерпанным FailedSnapshot: им нужен ручной повтор.

    Returns:
        int: Количество отправленных заданий, -1 если проход уже выполняется
    """
    handle = locks.acquire_job_lock(POLL_SWEEP_LOCK)
    if handle is None:
        logger.info("[SnapshotPoll] Проход опроса уже выполняется, пропускаем")
        return -1

    idle = timedelta(seconds=snapshot_sync_config.poll_idle_seconds if idle_seconds is None else idle_seconds)
    try:
        wanted = _statuses(statuses or snapshot_sync_config.poll_statuses)
        with session_factory() as session:
            statement = select(SnapshotJob).where(SnapshotJob.status.in_(wanted))
            if shop_id is not None:
                statement = statement.where(SnapshotJob.shop_id == shop_id)
            jobs = list(session.exec(statement.order_by(SnapshotJob.created_at)).all())
            exhausted = set(session.exec(
                select(FailedSnapshot.snapshot_job_id).where(FailedSnapshot.status == FailedSnapshotStatus.EXHAUSTED)
            ).all())

        idle_before = datetime.utcnow() - idle
        job_ids = []
        for job in jobs:
            if job.id in exhausted:
                continue
            if not (job.meta or {}).get("gave_up_at") and job.updated_at > idle_before:
                continue
            job_ids.append(job.id)

        dispatched = 0
        for job_id in job_ids:
            try:
                enqueue_download(job_id)
                dispatched += 1
            except Exception as e:
                logger.error(f"[SnapshotPoll] Не удалось поставить задание {job_id} на скачивание: {e}")
    finally:
        locks.release(handle)

    logger.info(f"[SnapshotPoll] Отправлено на скачивание заданий: {dispatched} (найдено {len(jobs)})")
    return dispatched


def discard_snapshot_jobs(
    session_factory: Callable[[], Session],
    statuses: List[str],
    before: Optional[datetime] = None,
    shop_id: Optional[int] = None,
    reason: Optional[str] = None,
    dry_run: bool = False,
    batch_size: Optional[int] = None,
) -> DiscardResult:
    """
    Помечает задания discarded пачками, строки не удаляются.

    Args:
        statuses: Статусы заданий для отбраковки
        before: Только задания, созданные раньше (naive UTC)
        shop_id: Ограничение по магазину
        reason: Причина, сохраняется в meta.discard_reason
        dry_run: Только посчитать
    """
    batch_size = batch_size or snapshot_sync_config.discard_batch_size
    wanted = _statuses(statuses)
    if not wanted:
        return DiscardResult(dry_run=dry_run)

    statement = select(SnapshotJob.id).where(SnapshotJob.status.in_(wanted))
    if before is not None:
        statement = statement.where(SnapshotJob.created_at < before)
    if shop_id is not None:
        statement = statement.where(SnapshotJob.shop_id == shop_id)

    with session_factory() as session:
        job_ids = list(session.exec(statement.order_by(SnapshotJob.id)).all())

    result = DiscardResult(matched=len(job_ids), dry_run=dry_run)
    if dry_run:
        return result

    discarded_at = utc_now_iso()
    for start in range(0, len(job_ids), batch_size):
        batch = job_ids[start:start + batch_size]
        with session_factory() as session:
            for job in session.exec(select(SnapshotJob).where(SnapshotJob.id.in_(batch))).all():
                job.status = SnapshotJobStatus.DISCARDED
                job.meta = merge_meta(job.meta, {
                    "discarded_at": discarded_at,
                    "discard_reason": reason,
                }, schema=SnapshotJobMeta)
                job.updated_at = datetime.utcnow()
                session.add(job)
                result.discarded += 1
            session.commit()

    logger.info(f"[SnapshotDiscard] Отбраковано заданий: {result.discarded} (причина: {reason or '-'})")
    return result
