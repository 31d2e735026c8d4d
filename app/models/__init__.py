"""
Automatically add all models to __all__
This is used in alembic while autogenerate database migration script.
"""
# Импорт всех моделей для SQLModel
from .shop import Shop, ShopProvider
from .job_schedule import JobSchedule, ScheduleRun, ScheduleRunStatus
from .shop_sync_cursor import ShopSyncCursor
from .pipeline import PipelineExecution, PipelineLock, PipelineStatus
from .snapshot_job import (
    SnapshotJob,
    SnapshotJobStatus,
    FailedSnapshot,
    FailedSnapshotStatus,
    FailedSnapshotStage,
)
from .snapshot_records import ProductRecord, OrderRecord, CustomerRecord, VariantMetric

__all__ = [
    "Shop",
    "ShopProvider",
    "JobSchedule",
    "ScheduleRun",
    "ScheduleRunStatus",
    "ShopSyncCursor",
    "PipelineExecution",
    "PipelineLock",
    "PipelineStatus",
    "SnapshotJob",
    "SnapshotJobStatus",
    "FailedSnapshot",
    "FailedSnapshotStatus",
    "FailedSnapshotStage",
    "ProductRecord",
    "OrderRecord",
    "CustomerRecord",
    "VariantMetric",
]
