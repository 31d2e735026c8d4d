"""
 * @file: snapshot_sync_config.py
 * @description: Настройки конвейера снапшотов: блокировки, окна синхронизации, ожидание и повторы
 * @dependencies: pydantic_settings
 * @created: 2026-01-02
"""
from typing import List

from pydantic_settings import BaseSettings


class SnapshotSyncConfig(BaseSettings):
    """
    Конфигурация конвейера снапшотов и инкрементальной синхронизации.

    Настройки можно переопределить через переменные окружения с префиксом SNAPSHOT_SYNC_
    """
    # Блокировки
    lock_ttl_seconds: int = 1800          # блокировка (магазин, конвейер)
    job_lock_ttl_seconds: int = 600       # блокировка периодических задач (sweep, schedule)
    lock_busy_retry_seconds: int = 60     # повтор скачивания/обработки при занятой блокировке

    # Окно синхронизации
    window_safety_skew_seconds: int = 10
    cursor_overlap_seconds: int = 60
    window_min_minutes: int = 5
    default_fallback_lookback_hours: int = 24
    products_fallback_lookback_hours: int = 168
    status_refresh_lookback_hours: int = 48
    status_refresh_max_lookback_hours: int = 720

    # Ожидание результата экспорта
    progressive_wait_sequence: List[int] = [8, 10, 300]
    reschedule_delays: List[int] = [30, 60, 120, 240, 600]
    max_reschedule_attempts: int = 10

    # Повторы обработки снапшота
    process_max_retries: int = 3
    process_backoff: List[int] = [60, 300, 1800]
    failed_snapshot_max_retries: int = 3

    # Пересчёт метрик вариантов
    variant_batch_size: int = 50

    # Статусы заданий, которые подхватывает polling. download_failed повторяет FailedSnapshot
    poll_statuses: List[str] = ["requested", "waiting_result"]
    # Задание без gave_up_at, обновлённое позже, ещё обслуживается цепочкой переоткладывания
    poll_idle_seconds: int = 900
    discard_batch_size: int = 100

    model_config = {
        "env_prefix": "SNAPSHOT_SYNC_",
        "extra": "ignore"
    }


# Глобальный экземпляр конфигурации
snapshot_sync_config = SnapshotSyncConfig()
