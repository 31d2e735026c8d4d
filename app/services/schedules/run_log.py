"""
 * @file: run_log.py
 * @description: Журнал запусков расписаний (только добавление записей)
 * @dependencies: ScheduleRun, SQLModel
 * @created: 2026-01-02
"""
import logging
from typing import Callable, List, Optional, Union
from uuid import UUID

from sqlmodel import Session, select

from app.models.job_schedule import ScheduleRun

logger = logging.getLogger("schedules")


def _as_uuid(value: Union[str, UUID]) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


class ScheduleRunLog:
    """Последний статус расписания = самая свежая запись журнала."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def append(
        self,
        schedule_id: Union[str, UUID],
        status: str,
        message: Optional[str] = None,
        shops_processed: int = 0,
    ) -> ScheduleRun:
        run = ScheduleRun(
            schedule_id=_as_uuid(schedule_id),
            status=status,
            message=message,
            shops_processed=shops_processed,
        )
        with self.session_factory() as session:
            session.add(run)
            session.commit()
            session.refresh(run)
        logger.info(f"[Schedule] {schedule_id}: {status} {message or ''}".rstrip())
        return run

    def latest(self, schedule_id: Union[str, UUID], statuses: Optional[List[str]] = None) -> Optional[ScheduleRun]:
        """Самая свежая запись журнала, при statuses - только среди этих статусов."""
        with self.session_factory() as session:
            statement = select(ScheduleRun).where(ScheduleRun.schedule_id == _as_uuid(schedule_id))
            if statuses:
                statement = statement.where(ScheduleRun.status.in_(statuses))
            statement = statement.order_by(ScheduleRun.created_at.desc(), ScheduleRun.id.desc())
            return session.exec(statement).first()

    def history(self, schedule_id: Union[str, UUID], limit: int = 50) -> List[ScheduleRun]:
        with self.session_factory() as session:
            statement = (
                select(ScheduleRun)
                .where(ScheduleRun.schedule_id == _as_uuid(schedule_id))
                .order_by(ScheduleRun.created_at.desc(), ScheduleRun.id.desc())
                .limit(limit)
            )
            return list(session.exec(statement).all())
