import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session, select

from app.api import deps
from app.models.pipeline import PipelineExecution
from app.models.shop import Shop
from app.models.snapshot_job import FailedSnapshot, FailedSnapshotStage, FailedSnapshotStatus, SnapshotJob, SnapshotJobStatus
from app.schemas.shoptet_models import FailedSnapshotRead, SnapshotJobRead, SnapshotRequestBody
from app.services.snapshots.exceptions import ShoptetApiError, SnapshotRequestError
from app.services.snapshots.pipeline_factory import SnapshotPipeline

logger = logging.getLogger("snapshots.pipeline")

router = APIRouter()


@router.get("/jobs", response_model=List[SnapshotJobRead])
def list_snapshot_jobs(
    shop_id: Optional[int] = None,
    status: Optional[SnapshotJobStatus] = None,
    limit: int = Query(default=50, le=500),
    session: Session = Depends(deps.get_session),
):
    """Последние задания экспорта."""
    statement = select(SnapshotJob)
    if shop_id is not None:
        statement = statement.where(SnapshotJob.shop_id == shop_id)
    if status:
        statement = statement.where(SnapshotJob.status == status)
    statement = statement.order_by(SnapshotJob.created_at.desc()).limit(limit)
    return [SnapshotJobRead.model_validate(job, from_attributes=True) for job in session.exec(statement).all()]


@router.get("/failed", response_model=List[FailedSnapshotRead])
def list_failed_snapshots(
    status: Optional[FailedSnapshotStatus] = None,
    limit: int = Query(default=50, le=500),
    session: Session = Depends(deps.get_session),
):
    statement = select(FailedSnapshot)
    if status:
        statement = statement.where(FailedSnapshot.status == status)
    statement = statement.order_by(FailedSnapshot.last_failed_at.desc()).limit(limit)
    return [
        FailedSnapshotRead.model_validate({**record.model_dump(), "id": str(record.id)})
        for record in session.exec(statement).all()
    ]


@router.post("/failed/{snapshot_job_id}/retry", response_model=FailedSnapshotRead)
def retry_failed_snapshot(
    snapshot_job_id: int,
    pipeline: SnapshotPipeline = Depends(deps.get_pipeline),
):
    """Ручной повтор неудачного снапшота на том этапе, где он упал."""
    dispatchers = {
        FailedSnapshotStage.DOWNLOAD: lambda job_id: pipeline.queue.download(job_id, True, False, 0),
        FailedSnapshotStage.PROCESS: pipeline.queue.process,
    }
    record = pipeline.failures.retry_manually(snapshot_job_id, dispatchers)
    if record is None:
        raise HTTPException(status_code=404, detail="Неудачный снапшот не найден или уже обработан")
    return FailedSnapshotRead.model_validate({**record.model_dump(), "id": str(record.id)})


@router.post("/request/{shop_id}", response_model=SnapshotJobRead)
def request_snapshot(
    shop_id: int,
    body: SnapshotRequestBody,
    session: Session = Depends(deps.get_session),
    pipeline: SnapshotPipeline = Depends(deps.get_pipeline),
):
    """Запрашивает экспорт и ставит скачивание с прогрессивным ожиданием."""
    shop = session.get(Shop, shop_id)
    if shop is None:
        raise HTTPException(status_code=404, detail="Магазин не найден")

    try:
        job = pipeline.snapshots.request_export(shop, body.kind, body.params)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except (ShoptetApiError, SnapshotRequestError) as e:
        logger.error(f"[Snapshots] Не удалось запросить снапшот {body.kind} для магазина {shop_id}: {e.message}")
        raise HTTPException(status_code=502, detail=e.message)

    pipeline.queue.download(job.id, True, True, 0)
    return SnapshotJobRead.model_validate(job, from_attributes=True)


@router.get("/executions", response_model=List[PipelineExecution])
def list_pipeline_executions(
    shop_id: Optional[int] = None,
    pipeline_key: Optional[str] = None,
    limit: int = Query(default=50, le=500),
    session: Session = Depends(deps.get_session),
):
    statement = select(PipelineExecution)
    if shop_id is not None:
        statement = statement.where(PipelineExecution.shop_id == shop_id)
    if pipeline_key:
        statement = statement.where(PipelineExecution.pipeline_key == pipeline_key)
    statement = statement.order_by(PipelineExecution.created_at.desc()).limit(limit)
    return list(session.exec(statement).all())
