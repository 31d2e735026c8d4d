"""
 * @file: job_schedule.py
 * @description: Расписания периодических задач и журнал их запусков (только добавление)
 * @dependencies: SQLModel, datetime
 * @created: 2026-01-02
"""
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field


class ScheduleRunStatus:
    """Статусы записей журнала запусков."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    WAITING_RESULT = "waiting_result"


class JobSchedule(SQLModel, table=True):
    """
    Именованная периодическая задача. shop_id = None означает «все магазины платформы».
    Последний статус не хранится в строке, а читается из ScheduleRun.
    """
    __tablename__ = "job_schedules"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str = Field(description="Название расписания")
    job_type: str = Field(index=True, description="Тип задачи, например orders.fetch_new")
    enabled: bool = Field(default=True, index=True)
    cron_expression: Optional[str] = Field(default=None, description="Cron выражение (5 полей)")
    timezone: Optional[str] = Field(default=None, description="Часовой пояс для cron")
    shop_id: Optional[int] = Field(default=None, foreign_key="shops.id", index=True)
    options: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON), description="fallback_lookback_hours, full_rescan_hours, lookback_hours ...")

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ScheduleRun(SQLModel, table=True):
    """
    Запись журнала запусков расписания. Строки только добавляются.
    """
    __tablename__ = "job_schedule_runs"

    id: Optional[int] = Field(default=None, primary_key=True)
    schedule_id: UUID = Field(foreign_key="job_schedules.id", index=True)
    status: str = Field(index=True)
    message: Optional[str] = Field(default=None)
    shops_processed: int = Field(default=0)
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
