from typing import Any, Dict, List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session, select

from app.api import deps
from app.models.job_schedule import JobSchedule, ScheduleRun, ScheduleRunStatus
from app.services.snapshots.pipeline_factory import SnapshotPipeline

router = APIRouter()


@router.get("/")
def list_schedules(
    session: Session = Depends(deps.get_session),
    pipeline: SnapshotPipeline = Depends(deps.get_pipeline),
) -> List[Dict[str, Any]]:
    """Расписания с последним статусом из журнала запусков."""
    schedules = session.exec(select(JobSchedule).order_by(JobSchedule.name)).all()
    result = []
    for schedule in schedules:
        last = pipeline.run_log.latest(schedule.id)
        result.append({
            **schedule.model_dump(mode="json"),
            "last_run_status": last.status if last else None,
            "last_run_message": last.message if last else None,
            "last_run_at": last.created_at if last else None,
        })
    return result


@router.get("/{schedule_id}/runs", response_model=List[ScheduleRun])
def list_schedule_runs(
    schedule_id: UUID,
    limit: int = Query(default=50, le=500),
    pipeline: SnapshotPipeline = Depends(deps.get_pipeline),
):
    return pipeline.run_log.history(schedule_id, limit=limit)


@router.post("/{schedule_id}/trigger")
def trigger_schedule(
    schedule_id: UUID,
    session: Session = Depends(deps.get_session),
    pipeline: SnapshotPipeline = Depends(deps.get_pipeline),
) -> Dict[str, Any]:
    """Ставит расписание в очередь вне cron."""
    schedule = session.get(JobSchedule, schedule_id)
    if schedule is None:
        raise HTTPException(status_code=404, detail="Расписание не найдено")

    pipeline.run_log.append(schedule.id, ScheduleRunStatus.QUEUED, "Запуск вручную")
    pipeline.queue.schedule(str(schedule.id))
    return {"ok": True, "schedule_id": str(schedule.id)}
