"""Aggregations behind the dashboard: averages, peaks and time-of-day slots."""

from datetime import datetime, timedelta
from typing import List, Optional

from storage import Reading, parse_timestamp, utc_now

RANGES = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "all": None,
    "custom": None,
}

TIME_SLOTS = [
    ("00:00-03:00", 0, 3),
    ("03:00-06:00", 3, 6),
    ("06:00-12:00", 6, 12),
    ("12:00-16:00", 12, 16),
    ("16:00-20:00", 16, 20),
    ("20:00-24:00", 20, 24),
]


def _avg(values):
    return round(sum(values) / len(values), 2) if values else 0


def filter_range(readings: List[Reading], time_range: str = "24h", now: Optional[datetime] = None,
                 start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[Reading]:
    if time_range not in RANGES:
        raise ValueError(f"unknown range {time_range!r} (expected one of: {', '.join(RANGES)})")

    if time_range == "custom":
        out = []
        for r in readings:
            ts = parse_timestamp(r.timestamp)
            if (start is None or ts >= start) and (end is None or ts <= end):
                out.append(r)
        return out

    window = RANGES[time_range]
    if window is None:
        return list(readings)
    cutoff = (now or utc_now()) - window
    return [r for r in readings if parse_timestamp(r.timestamp) >= cutoff]


def average_stats(readings: List[Reading]) -> dict:
    return {
        "avgDownload": _avg([r.download for r in readings]),
        "avgUpload": _avg([r.upload for r in readings]),
        "avgPing": _avg([r.ping for r in readings]),
        "avgJitter": _avg([r.jitter for r in readings]),
    }


def peak_stats(readings: List[Reading]) -> dict:
    """Best download/upload and lowest ping; the earliest reading wins a tie."""
    if not readings:
        return {
            "maxDownload": 0, "maxDownloadTime": "",
            "maxUpload": 0, "maxUploadTime": "",
            "minPing": 0, "minPingTime": "",
        }
    best_down = max(readings, key=lambda r: r.download)
    best_up = max(readings, key=lambda r: r.upload)
    best_ping = min(readings, key=lambda r: r.ping)
    return {
        "maxDownload": best_down.download, "maxDownloadTime": best_down.timestamp,
        "maxUpload": best_up.upload, "maxUploadTime": best_up.timestamp,
        "minPing": best_ping.ping, "minPingTime": best_ping.timestamp,
    }


def time_slot_stats(readings: List[Reading], tz=None) -> List[dict]:
    """Per time-of-day slot averages; hours are taken in ``tz`` (local time if None)."""
    hours = [(parse_timestamp(r.timestamp).astimezone(tz).hour, r) for r in readings]
    out = []
    for name, start, end in TIME_SLOTS:
        slot = [r for hour, r in hours if start <= hour < end]
        out.append({"slot": name, "count": len(slot), **average_stats(slot)})
    return out


def summarize(readings: List[Reading], time_range: str = "24h", now: Optional[datetime] = None,
              start: Optional[datetime] = None, end: Optional[datetime] = None, tz=None) -> dict:
    selected = filter_range(readings, time_range, now=now, start=start, end=end)
    return {
        "range": time_range,
        "count": len(selected),
        "stats": average_stats(selected),
        "peaks": peak_stats(selected),
        "timeSlots": time_slot_stats(selected, tz=tz),
    }
