from datetime import datetime, timedelta, timezone

from app.core.snapshot_sync_config import snapshot_sync_config
from app.services.pipeline.window import build_lookback_window, build_window

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
SKEW = timedelta(seconds=10)


def test_window_without_cursor_uses_fallback():
    window = build_window("Europe/Prague", None, fallback_hours=24, now=NOW)

    assert window.end == NOW - SKEW
    assert window.start == window.end - timedelta(hours=24)
    # окно считается в часовом поясе магазина
    assert window.end.utcoffset() == timedelta(hours=1)


def test_window_from_cursor_overlaps_one_minute():
    cursor = "2026-01-15T10:00:00+00:00"

    window = build_window("Europe/Prague", cursor, fallback_hours=24, now=NOW)

    assert window.start == datetime(2026, 1, 15, 9, 59, tzinfo=timezone.utc)
    assert window.end == NOW - SKEW


def test_full_rescan_ignores_cursor():
    cursor = "2026-01-15T10:00:00+00:00"

    window = build_window("Europe/Prague", cursor, fallback_hours=24, full_rescan_hours=48, now=NOW)

    assert window.start == window.end - timedelta(hours=48)


def test_unparseable_cursor_falls_back():
    window = build_window("UTC", "not-a-date", fallback_hours=6, now=NOW)

    assert window.start == NOW - SKEW - timedelta(hours=6)


def test_cursor_ahead_of_clock_is_clamped_to_minimum_window():
    cursor = (NOW + timedelta(hours=1)).isoformat()

    window = build_window("UTC", cursor, fallback_hours=24, now=NOW)

    assert window.end - window.start == timedelta(minutes=snapshot_sync_config.window_min_minutes)


def test_no_window_when_minimum_is_zero(monkeypatch):
    monkeypatch.setattr(snapshot_sync_config, "window_min_minutes", 0)
    cursor = (NOW + timedelta(hours=1)).isoformat()

    assert build_window("UTC", cursor, fallback_hours=24, now=NOW) is None


def test_unknown_timezone_uses_application_default():
    window = build_window("Mars/Olympus", None, fallback_hours=1, now=NOW)

    assert window is not None
    assert window.end == NOW - SKEW


def test_lookback_window():
    window = build_lookback_window("UTC", 48, now=NOW)

    assert window.end == NOW - SKEW
    assert window.start == window.end - timedelta(hours=48)
    assert window.to_meta().model_dump(by_alias=True) == {
        "from": "2026-01-13T11:59:50+00:00",
        "to": "2026-01-15T11:59:50+00:00",
    }
