"""
 * @file: window.py
 * @description: Расчёт окна [from, to) инкрементальной синхронизации по курсору, lookback и полному пересканированию
 * @dependencies: datetime, zoneinfo, snapshot_sync_config
 * @created: 2026-01-02
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from app.core.snapshot_sync_config import snapshot_sync_config
from app.schemas.pipeline_meta import SyncWindowMeta
from app.utils.date_utils import parse_iso_datetime, resolve_timezone, to_iso


@dataclass(frozen=True)
class SyncWindow:
    start: datetime
    end: datetime

    def to_meta(self) -> SyncWindowMeta:
        return SyncWindowMeta(**{"from": to_iso(self.start), "to": to_iso(self.end)})


def _shift(moment: datetime, delta: timedelta) -> datetime:
    """Сдвиг по абсолютному времени: переход на летнее время не меняет длину окна."""
    return (moment.astimezone(timezone.utc) + delta).astimezone(moment.tzinfo)


def _window_end(timezone_name: Optional[str], now: Optional[datetime]) -> datetime:
    tz = resolve_timezone(timezone_name)
    current = now.astimezone(tz) if now is not None else datetime.now(tz)
    return _shift(current, -timedelta(seconds=snapshot_sync_config.window_safety_skew_seconds))


def _finalize(start: datetime, end: datetime) -> Optional[SyncWindow]:
    if start >= end:
        start = _shift(end, -timedelta(minutes=snapshot_sync_config.window_min_minutes))
    if start >= end:
        return None
    return SyncWindow(start=start, end=end)


def build_window(
    timezone_name: Optional[str],
    cursor: Optional[str],
    fallback_hours: int,
    full_rescan_hours: int = 0,
    now: Optional[datetime] = None,
) -> Optional[SyncWindow]:
    """
    Окно для инкрементальной синхронизации.

    to = сейчас (в часовом поясе магазина) минус небольшой запас, чтобы не
    обгонять часы платформы. Полное пересканирование игнорирует курсор;
    курсор перекрывается на минуту назад; без курсора берётся fallback.

    Args:
        timezone_name: Часовой пояс магазина
        cursor: Последний водяной знак (ISO-8601) или None
        fallback_hours: Глубина, если курсора нет или он не разбирается
        full_rescan_hours: > 0 - окно на столько часов назад без учёта курсора
        now: Текущее время (для тестов)

    Returns:
        SyncWindow или None, если корректное окно построить нельзя
    """
    end = _window_end(timezone_name, now)
    tz = end.tzinfo

    if full_rescan_hours > 0:
        return _finalize(_shift(end, -timedelta(hours=full_rescan_hours)), end)

    start = None
    if cursor:
        parsed = parse_iso_datetime(cursor)
        if parsed is not None:
            start = _shift(parsed.astimezone(tz), -timedelta(seconds=snapshot_sync_config.cursor_overlap_seconds))

    if start is None:
        start = _shift(end, -timedelta(hours=fallback_hours))

    return _finalize(start, end)


def build_lookback_window(
    timezone_name: Optional[str],
    lookback_hours: int,
    now: Optional[datetime] = None,
) -> Optional[SyncWindow]:
    """Окно фиксированной глубины (обновление статусов заказов), курсор не используется."""
    end = _window_end(timezone_name, now)
    return _finalize(_shift(end, -timedelta(hours=lookback_hours)), end)
