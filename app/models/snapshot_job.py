"""
 * @file: snapshot_job.py
 * @description: Задание экспорта (снапшота) на стороне платформы и обёртка повторов неудачных снапшотов
 * @dependencies: SQLModel, datetime
 * @created: 2026-01-02
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import SQLModel, Field


class SnapshotJobStatus(str, Enum):
    """Статусы задания экспорта."""
    RECEIVED = "received"               # создано входящим вебхуком
    REQUESTED = "requested"
    WAITING_RESULT = "waiting_result"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    PROCESSING = "processing"
    PROCESSED = "processed"
    DOWNLOAD_FAILED = "download_failed"
    MISSING_SNAPSHOT = "missing_snapshot"
    INVALID_SNAPSHOT = "invalid_snapshot"
    FAILED = "failed"                   # обработка исчерпала попытки, см. FailedSnapshot
    DISCARDED = "discarded"


class SnapshotJob(SQLModel, table=True):
    """
    Одно задание экспорта: запрос, ожидание результата, скачивание и обработка.
    """
    __tablename__ = "snapshot_jobs"
    __table_args__ = (UniqueConstraint("shop_id", "job_id", name="uq_snapshot_job_shop_job"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    shop_id: int = Field(foreign_key="shops.id", index=True)
    job_id: str = Field(index=True, description="Внешний ID задания на платформе")
    event: Optional[str] = Field(default=None, description="job:requested, job:finished ...")
    endpoint: Optional[str] = Field(default=None, description="/api/orders/snapshot ...")
    status: SnapshotJobStatus = Field(default=SnapshotJobStatus.REQUESTED, index=True)
    result_url: Optional[str] = Field(default=None)
    valid_until: Optional[datetime] = Field(default=None)
    snapshot_path: Optional[str] = Field(default=None, description="Путь в хранилище после скачивания")
    payload: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    meta: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    processed_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def pipeline_id(self) -> Optional[str]:
        return (self.meta or {}).get("pipeline_id")


class FailedSnapshotStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    RESOLVED = "resolved"
    EXHAUSTED = "exhausted"


class FailedSnapshotStage:
    """Этап, на который задание возвращается при повторе."""
    DOWNLOAD = "download"
    PROCESS = "process"


class FailedSnapshot(SQLModel, table=True):
    """
    Ограниченное число повторов для задания, дошедшего до ошибки.
    retry_count никогда не превышает max_retries.
    """
    __tablename__ = "failed_snapshots"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    snapshot_job_id: int = Field(foreign_key="snapshot_jobs.id", index=True, unique=True)
    shop_id: int = Field(foreign_key="shops.id", index=True)
    endpoint: Optional[str] = Field(default=None)
    status: FailedSnapshotStatus = Field(default=FailedSnapshotStatus.PENDING, index=True)
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    error_message: Optional[str] = Field(default=None)
    context: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    first_failed_at: datetime = Field(default_factory=datetime.utcnow)
    last_failed_at: datetime = Field(default_factory=datetime.utcnow)
    resolved_at: Optional[datetime] = Field(default=None)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def stage(self) -> str:
        return (self.context or {}).get("stage", FailedSnapshotStage.PROCESS)

    def can_retry(self) -> bool:
        """Проверяет, можно ли ещё повторить снапшот."""
        return self.status == FailedSnapshotStatus.PENDING and self.retry_count < self.max_retries

    def mark_as_retrying(self) -> None:
        now = datetime.utcnow()
        self.status = FailedSnapshotStatus.RETRYING
        self.retry_count += 1
        self.last_failed_at = now
        self.updated_at = now

    def mark_as_resolved(self) -> None:
        now = datetime.utcnow()
        self.status = FailedSnapshotStatus.RESOLVED
        self.resolved_at = now
        self.updated_at = now

    def mark_as_failed(self, error_message: str) -> None:
        """Возвращает запись в очередь повторов либо помечает исчерпанной."""
        now = datetime.utcnow()
        self.error_message = error_message
        self.last_failed_at = now
        self.updated_at = now
        if self.retry_count >= self.max_retries:
            self.status = FailedSnapshotStatus.EXHAUSTED
        else:
            self.status = FailedSnapshotStatus.PENDING
