"""
 * @file: execution_tracker.py
 * @description: Учёт жизненного цикла запусков конвейера (start/update/finish) с метаданными
 * @dependencies: PipelineExecution, SQLModel, pipeline_meta
 * @created: 2026-01-02
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union
from uuid import UUID

from sqlmodel import Session

from app.models.pipeline import PipelineExecution, PipelineStatus
from app.schemas.pipeline_meta import ExecutionMeta, merge_meta
from app.services.snapshots.exceptions import PipelineExecutionFinishedError
from app.utils.logging_config import log_business_event

logger = logging.getLogger("snapshots.pipeline")

MetaUpdate = Union[ExecutionMeta, Dict[str, Any], None]


class SnapshotPipelineService:
    """
    Трекер запусков конвейера. Словарь статусов не проверяется, трекер
    только записывает переходы и их время. finish() терминален.
    Все методы принимают None вместо запуска и тогда ничего не делают:
    у задания экспорта запуск может отсутствовать.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def start(
        self,
        shop_id: int,
        pipeline_key: str,
        meta: MetaUpdate = None,
        requested_at: Optional[datetime] = None,
        status: str = PipelineStatus.STARTED,
        started: bool = True,
    ) -> PipelineExecution:
        now = datetime.utcnow()
        execution = PipelineExecution(
            shop_id=shop_id,
            pipeline_key=pipeline_key,
            status=status,
            requested_at=requested_at,
            started_at=now if started else None,
            meta=merge_meta({}, meta),
        )
        with self.session_factory() as session:
            session.add(execution)
            session.commit()
            session.refresh(execution)

        log_business_event(
            "pipeline_started",
            "Запуск конвейера создан",
            shop_id=shop_id,
            pipeline=pipeline_key,
            execution_id=execution.id,
            status=status,
        )
        return execution

    def update(
        self,
        execution: Optional[PipelineExecution],
        status: Optional[str] = None,
        meta: MetaUpdate = None,
        started_at: Optional[datetime] = None,
        downloaded_at: Optional[datetime] = None,
    ) -> Optional[PipelineExecution]:
        if execution is None:
            return None

        with self.session_factory() as session:
            current = self._load_open(session, execution.id)
            if status is not None:
                current.status = status
            if started_at is not None and current.started_at is None:
                current.started_at = started_at
            if downloaded_at is not None:
                current.downloaded_at = downloaded_at
            current.meta = merge_meta(current.meta, meta)
            current.updated_at = datetime.utcnow()
            session.add(current)
            session.commit()
            session.refresh(current)

        logger.debug(f"[Pipeline] {current.id} -> {current.status}")
        return current

    def finish(
        self,
        execution: Optional[PipelineExecution],
        status: str = PipelineStatus.COMPLETED,
        meta: MetaUpdate = None,
    ) -> Optional[PipelineExecution]:
        if execution is None:
            return None

        with self.session_factory() as session:
            current = self._load_open(session, execution.id)
            now = datetime.utcnow()
            current.status = status
            current.finished_at = now
            current.updated_at = now
            current.meta = merge_meta(current.meta, meta)
            session.add(current)
            session.commit()
            session.refresh(current)

        log_business_event(
            "pipeline_finished",
            "Запуск конвейера завершён",
            shop_id=current.shop_id,
            pipeline=current.pipeline_key,
            execution_id=current.id,
            status=status,
        )
        return current

    def find(self, execution_id: Optional[Union[str, UUID]]) -> Optional[PipelineExecution]:
        if not execution_id:
            return None
        try:
            key = execution_id if isinstance(execution_id, UUID) else UUID(str(execution_id))
        except ValueError:
            return None
        with self.session_factory() as session:
            return session.get(PipelineExecution, key)

    def pipeline_key_for(self, execution_id: Optional[str], default: str) -> str:
        """Ключ конвейера задания: из его запуска, иначе default (endpoint)."""
        execution = self.find(execution_id)
        return execution.pipeline_key if execution is not None else default

    def resume_or_start(
        self,
        execution_id: Optional[str],
        shop_id: int,
        pipeline_key: str,
        meta: MetaUpdate = None,
    ) -> PipelineExecution:
        """
        Возвращает открытый запуск по ID либо создаёт новый. Завершённые
        запуски не переиспользуются: повторная попытка получает новый запуск
        со ссылкой retry_of на предыдущий.
        """
        execution = self.find(execution_id)
        if execution is not None and not execution.is_finished:
            return execution

        start_meta = merge_meta({}, meta)
        if execution is not None:
            start_meta["retry_of"] = str(execution.id)
        return self.start(shop_id, pipeline_key, start_meta)

    @staticmethod
    def _load_open(session: Session, execution_id: UUID) -> PipelineExecution:
        current = session.get(PipelineExecution, execution_id)
        if current is None:
            raise LookupError(f"Запуск конвейера {execution_id} не найден")
        if current.is_finished:
            raise PipelineExecutionFinishedError(
                f"Запуск конвейера {execution_id} уже завершён со статусом {current.status}"
            )
        return current
