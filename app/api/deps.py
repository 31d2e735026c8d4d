from typing import Generator
import logging

from sqlmodel import Session

from app.database import get_db
from app.services.snapshots.pipeline_factory import SnapshotPipeline, build_snapshot_pipeline

logger = logging.getLogger(__name__)


def get_session() -> Generator[Session, None, None]:
    yield from get_db()


def get_pipeline() -> Generator[SnapshotPipeline, None, None]:
    """Сервисы конвейера на время запроса."""
    pipeline = build_snapshot_pipeline()
    try:
        yield pipeline
    finally:
        pipeline.close()
