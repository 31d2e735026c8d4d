"""
 * @file: pipeline.py
 * @description: Модели запусков конвейера синхронизации и блокировок (магазин, конвейер)
 * @dependencies: SQLModel, datetime
 * @created: 2026-01-02
"""
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field


class PipelineStatus:
    """Статусы запуска конвейера. Трекер словарь не проверяет, это соглашение с вызывающими."""
    QUEUED = "queued"
    STARTED = "started"
    WAITING_RESULT = "waiting_result"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    DOWNLOAD_FAILED = "download_failed"
    MISSING_SNAPSHOT = "missing_snapshot"
    INVALID_SNAPSHOT = "invalid_snapshot"


class PipelineExecution(SQLModel, table=True):
    """
    Одна попытка синхронизации. Никогда не переиспользуется между попытками,
    после finished_at изменения запрещены.
    """
    __tablename__ = "pipeline_executions"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    shop_id: int = Field(foreign_key="shops.id", index=True)
    pipeline_key: str = Field(index=True, description="orders.incremental, /api/orders/snapshot ...")
    status: str = Field(default=PipelineStatus.STARTED, index=True)
    requested_at: Optional[datetime] = Field(default=None)
    started_at: Optional[datetime] = Field(default=None)
    downloaded_at: Optional[datetime] = Field(default=None)
    finished_at: Optional[datetime] = Field(default=None, index=True)
    meta: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_finished(self) -> bool:
        return self.finished_at is not None


class PipelineLock(SQLModel, table=True):
    """
    Эксклюзивная блокировка по ключу. Истечение срока позволяет перехватить
    блокировку упавшего воркера.
    """
    __tablename__ = "pipeline_locks"

    lock_key: str = Field(primary_key=True, description="snapshot_lock:<shop>:<pipeline>")
    shop_id: Optional[int] = Field(default=None, index=True)
    pipeline_key: str
    owner: str = Field(description="Случайный токен владельца")
    acquired_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: datetime = Field(index=True)
