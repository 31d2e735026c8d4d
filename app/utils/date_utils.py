from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.core.config import settings


def parse_iso_datetime(value: Optional[str], tz: Optional[ZoneInfo] = None) -> Optional[datetime]:
    """
    Парсит дату ISO-8601 (как её отдаёт Shoptet: 2025-03-20T10:15:00+0100) в aware datetime.

    Args:
        value: Строка с датой или None
        tz: Часовой пояс для строк без смещения (по умолчанию UTC)

    Returns:
        datetime с tzinfo или None, если строку не удалось разобрать

    Example:
        >>> parse_iso_datetime("2025-03-20T10:15:00+0100")
        datetime(2025, 3, 20, 10, 15, tzinfo=timezone(timedelta(seconds=3600)))
    """
    if not value:
        return None

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"

    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        try:
            # Смещение без двоеточия: +0100
            dt = datetime.strptime(text, "%Y-%m-%dT%H:%M:%S%z")
        except ValueError:
            return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz or timezone.utc)
    return dt


def to_iso(dt: datetime) -> str:
    """Форматирует datetime в ISO-8601 с точностью до секунд."""
    return dt.isoformat(timespec="seconds")


def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    """Часовой пояс магазина или часовой пояс приложения по умолчанию."""
    for candidate in (name, settings.APP_TIMEZONE, "UTC"):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            continue
    return ZoneInfo("UTC")


def to_naive_utc(dt: datetime) -> datetime:
    """Приводит datetime к naive UTC, как он хранится в БД."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def utc_now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))
