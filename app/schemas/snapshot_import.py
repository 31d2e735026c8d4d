from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class ImportOutcome(str, Enum):
    """Результат импорта одной записи снапшота."""
    IMPORTED = "imported"
    SKIPPED = "skipped"
    FAILED = "failed"


class SkipReason:
    """Причины пропуска записей, на которые можно опираться в тестах и отчётах."""
    MALFORMED_JSON = "malformed_json"
    INVALID_ENCODING = "invalid_encoding"
    NOT_AN_OBJECT = "not_an_object"
    UNKNOWN_ENDPOINT = "unknown_endpoint"
    MISSING_IDENTIFIER = "missing_identifier"


class RecordResult(BaseModel):
    """Результат импорта одной записи."""
    outcome: ImportOutcome
    reason: Optional[str] = None
    affected_ids: List[str] = Field(default_factory=list)
    change_time: Optional[str] = None

    @classmethod
    def imported(cls, affected_ids: Optional[List[str]] = None, change_time: Optional[str] = None) -> "RecordResult":
        return cls(outcome=ImportOutcome.IMPORTED, affected_ids=affected_ids or [], change_time=change_time)

    @classmethod
    def skipped(cls, reason: str) -> "RecordResult":
        return cls(outcome=ImportOutcome.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, reason: str) -> "RecordResult":
        return cls(outcome=ImportOutcome.FAILED, reason=reason)


class SnapshotImportReport(BaseModel):
    """Итог обработки снапшота."""
    status: str
    processed_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    skip_reasons: Dict[str, int] = Field(default_factory=dict)
    affected_ids: List[str] = Field(default_factory=list)
    last_change_time: Optional[str] = None
    dispatched_batches: int = 0

    def count_skip(self, reason: str) -> None:
        self.skipped_count += 1
        self.skip_reasons[reason] = self.skip_reasons.get(reason, 0) + 1
