from .pipeline_meta import ExecutionMeta, SnapshotJobMeta, SyncWindowMeta, CursorTarget, merge_meta
from .snapshot_import import ImportOutcome, RecordResult, SkipReason, SnapshotImportReport
from .shoptet_models import ShoptetJobDetails

__all__ = [
    "ExecutionMeta",
    "SnapshotJobMeta",
    "SyncWindowMeta",
    "CursorTarget",
    "merge_meta",
    "ImportOutcome",
    "RecordResult",
    "SkipReason",
    "SnapshotImportReport",
    "ShoptetJobDetails",
]
