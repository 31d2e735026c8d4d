"""
 * @file: pipeline_meta.py
 * @description: Структурированные метаданные запусков конвейера и заданий экспорта
 * @dependencies: pydantic
 * @created: 2026-01-02
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


META_SCHEMA_VERSION = 1


class SyncWindowMeta(BaseModel):
    """Окно синхронизации [from, to) в ISO-8601."""
    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(alias="from")
    to: str


class CursorTarget(BaseModel):
    """Курсор, который нужно продвинуть после успешной обработки снапшота."""
    key: str
    value: str
    window: Optional[SyncWindowMeta] = None
    track_change_time: bool = True


class ExecutionMeta(BaseModel):
    """
    Метаданные запуска конвейера. Слияние поверхностное: новые ключи
    перезаписывают старые, остальные сохраняются. Всё, что не описано
    полями, кладётся в extra.
    """
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    schema_version: int = META_SCHEMA_VERSION
    schedule_id: Optional[str] = None
    job_id: Optional[str] = None
    params: Optional[Dict[str, Any]] = None
    window: Optional[SyncWindowMeta] = None
    job_status: Optional[str] = None
    retry_attempts: Optional[int] = None
    retry_of: Optional[str] = None
    snapshot_path: Optional[str] = None
    path: Optional[str] = None
    processed_count: Optional[int] = None
    skipped_count: Optional[int] = None
    failed_count: Optional[int] = None
    skip_reasons: Optional[Dict[str, int]] = None
    variant_count: Optional[int] = None
    orders_count: Optional[int] = None
    last_change_time: Optional[str] = None
    error: Optional[str] = None
    extra: Optional[Dict[str, Any]] = None


class SnapshotJobMeta(BaseModel):
    """Метаданные задания экспорта (счётчики опроса, связь с конвейером, курсор)."""
    model_config = ConfigDict(extra="forbid")

    schema_version: int = META_SCHEMA_VERSION
    pipeline_id: Optional[str] = None
    schedule_id: Optional[str] = None
    requested_at: Optional[str] = None
    params: Optional[Dict[str, Any]] = None
    job_status: Optional[str] = None
    job_details: Optional[Dict[str, Any]] = None
    retry_attempts: Optional[int] = None
    last_poll_attempt_at: Optional[str] = None
    progressive_wait: Optional[bool] = None
    gave_up_at: Optional[str] = None
    url: Optional[str] = None
    downloaded_at: Optional[str] = None
    processed_count: Optional[int] = None
    cursor: Optional[CursorTarget] = None
    event_instances: Optional[List[str]] = None
    error: Optional[str] = None
    failed_at: Optional[str] = None
    discarded_at: Optional[str] = None
    discard_reason: Optional[str] = None
    extra: Optional[Dict[str, Any]] = None


def merge_meta(current: Optional[Dict[str, Any]], updates, schema=ExecutionMeta) -> Dict[str, Any]:
    """
    Поверхностно сливает метаданные и проверяет результат по схеме.

    Args:
        current: Текущие метаданные (как хранятся в JSON колонке)
        updates: Модель схемы или словарь с известными ключами
        schema: Класс схемы (ExecutionMeta или SnapshotJobMeta)

    Returns:
        Новый словарь (новый объект, чтобы SQLAlchemy заметил изменение JSON)
    """
    if updates is None:
        return dict(current or {})
    if isinstance(updates, BaseModel):
        patch = updates.model_dump(by_alias=True, exclude_unset=True, mode="json")
    else:
        patch = schema.model_validate(updates).model_dump(by_alias=True, exclude_unset=True, mode="json")

    merged = dict(current or {})
    merged.update(patch)
    merged.setdefault("schema_version", META_SCHEMA_VERSION)
    # Проверяем итог целиком, чтобы в JSON не попадали неизвестные ключи
    schema.model_validate(merged)
    return merged
