"""
 * @file: retry.py
 * @description: Повторы неудачных снапшотов: регистрация ошибки, ограниченное число попыток, периодический sweep
 * @dependencies: FailedSnapshot, SnapshotJob, PipelineLockManager
 * @created: 2026-01-02
"""
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from pydantic import BaseModel
from sqlmodel import Session, select

from app.core.snapshot_sync_config import snapshot_sync_config
from app.models.snapshot_job import (
    FailedSnapshot,
    FailedSnapshotStage,
    FailedSnapshotStatus,
    SnapshotJob,
    SnapshotJobStatus,
)
from app.schemas.pipeline_meta import SnapshotJobMeta, merge_meta
from app.services.pipeline.locks import PipelineLockManager
from app.utils.date_utils import utc_now_iso
from app.utils.logging_config import log_business_event, log_error_with_context

logger = logging.getLogger("snapshots.retry")

RETRY_SWEEP_LOCK = "retry_failed_snapshots"


class RetrySweepResult(BaseModel):
    """Итог одного прохода повторов."""
    skipped: bool = False
    retried: int = 0
    failed: int = 0
    ignored: int = 0


class FailedSnapshotService:
    def __init__(self, session_factory: Callable[[], Session], max_retries: Optional[int] = None):
        self.session_factory = session_factory
        self.max_retries = max_retries or snapshot_sync_config.failed_snapshot_max_retries

    def get(self, snapshot_job_id: int) -> Optional[FailedSnapshot]:
        with self.session_factory() as session:
            return self._find(session, snapshot_job_id)

    def register(self, snapshot_job_id: int, stage: str, error_message: str) -> Optional[FailedSnapshot]:
        """
        Записывает ошибку задания. Первая ошибка создаёт запись в pending,
        повторная возвращает её в pending либо помечает exhausted.
        Задание, упавшее на обработке, переводится в failed.
        """
        with self.session_factory() as session:
            job = session.get(SnapshotJob, snapshot_job_id)
            if job is None:
                logger.warning(f"[Retry] Задание {snapshot_job_id} не найдено, ошибка не зарегистрирована")
                return None

            record = self._find(session, snapshot_job_id)
            context = {
                "stage": stage,
                "job_id": job.job_id,
                "snapshot_path": job.snapshot_path,
                "pipeline_id": job.pipeline_id,
            }
            if record is None:
                record = FailedSnapshot(
                    snapshot_job_id=job.id,
                    shop_id=job.shop_id,
                    endpoint=job.endpoint,
                    max_retries=self.max_retries,
                    error_message=error_message,
                    context=context,
                )
            else:
                record.context = {**(record.context or {}), **context}
                record.mark_as_failed(error_message)

            if stage == FailedSnapshotStage.PROCESS:
                job.status = SnapshotJobStatus.FAILED
            job.meta = merge_meta(job.meta, {"error": error_message, "failed_at": utc_now_iso()}, schema=SnapshotJobMeta)
            job.updated_at = datetime.utcnow()

            session.add(job)
            session.add(record)
            session.commit()
            session.refresh(record)

        log_business_event(
            "snapshot_failed",
            "Ошибка снапшота зарегистрирована для повтора",
            snapshot_job_id=snapshot_job_id,
            stage=stage,
            status=record.status.value,
            retry_count=record.retry_count,
        )
        return record

    def resolve(self, snapshot_job_id: int) -> None:
        with self.session_factory() as session:
            record = self._find(session, snapshot_job_id)
            if record is None or record.status == FailedSnapshotStatus.RESOLVED:
                return
            record.mark_as_resolved()
            session.add(record)
            session.commit()
        logger.info(f"[Retry] Снапшот задания {snapshot_job_id} успешно обработан после повтора")

    def close_as_exhausted(self, snapshot_job_id: int, reason: str) -> None:
        """Структурная ошибка (нет файла, не gzip): автоматических повторов больше не будет."""
        with self.session_factory() as session:
            record = self._find(session, snapshot_job_id)
            if record is None or record.status in (FailedSnapshotStatus.RESOLVED, FailedSnapshotStatus.EXHAUSTED):
                return
            record.status = FailedSnapshotStatus.EXHAUSTED
            record.error_message = reason
            record.updated_at = datetime.utcnow()
            session.add(record)
            session.commit()

    def retry_manually(self, snapshot_job_id: int, dispatchers: Dict[str, Callable[[int], None]]) -> Optional[FailedSnapshot]:
        """
        Ручной повтор оператором, в том числе исчерпанной записи.
        Счётчик попыток не увеличивается, чтобы не выйти за max_retries.
        """
        with self.session_factory() as session:
            record = self._find(session, snapshot_job_id)
            if record is None or record.status == FailedSnapshotStatus.RESOLVED:
                return None
            dispatch = dispatchers[record.stage]
            record.status = FailedSnapshotStatus.RETRYING
            record.updated_at = datetime.utcnow()
            session.add(record)
            session.commit()
            session.refresh(record)

        dispatch(snapshot_job_id)
        logger.info(f"[Retry] Ручной повтор снапшота задания {snapshot_job_id} (этап {record.stage})")
        return record

    def retry_failed(
        self,
        locks: PipelineLockManager,
        dispatchers: Dict[str, Callable[[int], None]],
        limit: int = 100,
    ) -> RetrySweepResult:
        """
        Повторяет записи в pending с неисчерпанными попытками.
        Проход сериализован блокировкой: второй параллельный проход сразу выходит.
        Ошибка одной записи не останавливает остальные.

        Args:
            locks: Менеджер блокировок
            dispatchers: Этап (download/process) -> функция повторного запуска этапа
            limit: Максимум записей за проход
        """
        handle = locks.acquire_job_lock(RETRY_SWEEP_LOCK)
        if handle is None:
            logger.info("[Retry] Проход повторов уже выполняется, пропускаем")
            return RetrySweepResult(skipped=True)

        result = RetrySweepResult()
        try:
            with self.session_factory() as session:
                statement = (
                    select(FailedSnapshot.id)
                    .where(
                        FailedSnapshot.status == FailedSnapshotStatus.PENDING,
                        FailedSnapshot.retry_count < FailedSnapshot.max_retries,
                    )
                    .order_by(FailedSnapshot.last_failed_at)
                    .limit(limit)
                )
                candidate_ids = list(session.exec(statement).all())

            for record_id in candidate_ids:
                self._retry_one(record_id, dispatchers, result)
        finally:
            locks.release(handle)

        logger.info(
            f"[Retry] Проход повторов завершён: повторено={result.retried}, ошибок={result.failed}, пропущено={result.ignored}"
        )
        return result

    def _retry_one(self, record_id, dispatchers: Dict[str, Callable[[int], None]], result: RetrySweepResult) -> None:
        with self.session_factory() as session:
            record = session.get(FailedSnapshot, record_id)
            # Запись могла измениться после выборки
            if record is None or not record.can_retry():
                result.ignored += 1
                return

            job = session.get(SnapshotJob, record.snapshot_job_id)
            dispatch = dispatchers.get(record.stage)
            if job is None or dispatch is None:
                record.mark_as_failed("Задание или этап для повтора не найдены")
                session.add(record)
                session.commit()
                result.failed += 1
                return

            record.mark_as_retrying()
            session.add(record)
            session.commit()
            snapshot_job_id = record.snapshot_job_id
            stage = record.stage

        try:
            dispatch(snapshot_job_id)
            result.retried += 1
            log_business_event(
                "snapshot_retry_dispatched",
                "Повтор снапшота запущен",
                snapshot_job_id=snapshot_job_id,
                stage=stage,
            )
        except Exception as e:
            result.failed += 1
            log_error_with_context(e, {"operation": "retry_failed_snapshot", "snapshot_job_id": snapshot_job_id})
            with self.session_factory() as session:
                record = session.get(FailedSnapshot, record_id)
                record.mark_as_failed(str(e))
                session.add(record)
                session.commit()

    @staticmethod
    def _find(session: Session, snapshot_job_id: int) -> Optional[FailedSnapshot]:
        return session.exec(
            select(FailedSnapshot).where(FailedSnapshot.snapshot_job_id == snapshot_job_id)
        ).first()
