from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.snapshot_job import FailedSnapshotStatus, SnapshotJobStatus


class ShoptetJobDetails(BaseModel):
    """Детали задания экспорта, как их возвращает /api/system/jobs/{jobId}."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    job_id: Optional[str] = Field(default=None, alias="jobId")
    endpoint: Optional[str] = None
    result_url: Optional[str] = Field(default=None, alias="resultUrl")
    valid_until: Optional[datetime] = Field(default=None, alias="validUntil")
    status: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        return bool(self.result_url)

    def raw(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class SnapshotJobRead(BaseModel):
    id: int
    shop_id: int
    job_id: str
    endpoint: Optional[str] = None
    status: SnapshotJobStatus
    result_url: Optional[str] = None
    snapshot_path: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class FailedSnapshotRead(BaseModel):
    id: str
    snapshot_job_id: int
    shop_id: int
    endpoint: Optional[str] = None
    status: FailedSnapshotStatus
    retry_count: int
    max_retries: int
    error_message: Optional[str] = None
    last_failed_at: datetime


class SnapshotRequestBody(BaseModel):
    """Запрос на ручное формирование снапшота."""
    kind: str = Field(description="products | orders | customers")
    params: Dict[str, Any] = Field(default_factory=dict)
