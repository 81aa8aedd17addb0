import os
import json
import math
import logging
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

log = logging.getLogger("storage")

CONFIG = {
    "data_dir": os.environ.get("SPEED_MONITOR_DATA_DIR", "monitor"),
    "days_to_keep": 7,
}

DEFAULT_INTERVAL_MINUTES = 30
MIN_INTERVAL_MINUTES = 1
MAX_INTERVAL_MINUTES = 1440

APPROXIMATE = "approximate"
EXTERNAL_TOOL = "external-tool"
METHODS = (APPROXIMATE, EXTERNAL_TOOL)


class StorageError(Exception):
    """Backing file could not be read or written (other than being absent)."""


class ValidationError(ValueError):
    """Rejected config value; nothing was written."""


# ---------- TIME ----------
def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ---------- RECORDS ----------
def _non_negative(name, raw) -> float:
    value = float(raw)
    if math.isnan(value) or value < 0:
        raise ValueError(f"{name} must be a non-negative number, got {raw!r}")
    return value


@dataclass(frozen=True)
class Reading:
    timestamp: str
    download: float
    upload: float
    ping: float
    jitter: float
    server: Optional[str] = None
    isp: Optional[str] = None
    method: Optional[str] = None
    estimated: tuple = ()

    @classmethod
    def create(cls, download, upload, ping, jitter, timestamp=None, server=None,
               isp=None, method=None, estimated=()):
        """Build a reading from raw provider numbers (rounded to 2 decimals)."""
        values = {
            name: round(_non_negative(name, raw), 2)
            for name, raw in (("download", download), ("upload", upload), ("ping", ping), ("jitter", jitter))
        }
        return cls(
            timestamp=timestamp or format_timestamp(utc_now()),
            server=server or None,
            isp=isp or None,
            method=method,
            estimated=tuple(estimated),
            **values,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "Reading":
        timestamp = str(data["timestamp"])
        parse_timestamp(timestamp)
        return cls(
            timestamp=timestamp,
            download=_non_negative("download", data["download"]),
            upload=_non_negative("upload", data["upload"]),
            ping=_non_negative("ping", data["ping"]),
            jitter=_non_negative("jitter", data.get("jitter") or 0),
            server=data.get("server"),
            isp=data.get("isp"),
            method=data.get("method"),
            estimated=tuple(data.get("estimated") or ()),
        )

    def to_dict(self) -> dict:
        out = {
            "timestamp": self.timestamp,
            "download": self.download,
            "upload": self.upload,
            "ping": self.ping,
            "jitter": self.jitter,
        }
        for key in ("server", "isp", "method"):
            value = getattr(self, key)
            if value:
                out[key] = value
        if self.estimated:
            out["estimated"] = list(self.estimated)
        return out


@dataclass
class Config:
    interval_minutes: int = DEFAULT_INTERVAL_MINUTES
    method: Optional[str] = None

    def validate(self) -> "Config":
        iv = self.interval_minutes
        if isinstance(iv, bool) or not isinstance(iv, int) or not MIN_INTERVAL_MINUTES <= iv <= MAX_INTERVAL_MINUTES:
            raise ValidationError(
                f"Invalid interval (must be {MIN_INTERVAL_MINUTES}-{MAX_INTERVAL_MINUTES} minutes)"
            )
        if self.method is not None and self.method not in METHODS:
            raise ValidationError(f"Invalid method (must be one of: {', '.join(METHODS)})")
        return self

    @classmethod
    def from_dict(cls, data: dict) -> "Config":
        return cls(
            interval_minutes=data.get("intervalMinutes", DEFAULT_INTERVAL_MINUTES),
            method=data.get("method"),
        )

    def to_dict(self) -> dict:
        out = {"intervalMinutes": self.interval_minutes}
        if self.method:
            out["method"] = self.method
        return out


# ---------- FILES ----------
def _write_json(path: Path, data):
    """Replace ``path`` in one step so readers never see a half-written file."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
    except OSError as e:
        raise StorageError(f"could not write {path}: {e}") from e


def prune(readings: List[Reading], retention: timedelta = timedelta(days=7),
          now: Optional[datetime] = None) -> List[Reading]:
    """Drop readings older than ``now - retention``; the boundary itself is kept."""
    cutoff = (now or utc_now()) - retention
    return [r for r in readings if parse_timestamp(r.timestamp) >= cutoff]


class ConfigStore:
    def __init__(self, path=None):
        self.path = Path(path) if path else Path(CONFIG["data_dir"]) / "config.json"

    def load(self) -> Config:
        try:
            with self.path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            config = Config()
            _write_json(self.path, config.to_dict())
            log.info("Created default config at %s", self.path)
            return config
        except ValueError as e:
            log.warning("%s is not valid JSON, using defaults: %s", self.path, e)
            return Config()
        except OSError as e:
            raise StorageError(f"could not read {self.path}: {e}") from e

        try:
            return Config.from_dict(raw).validate()
        except (AttributeError, ValidationError) as e:
            log.warning("%s holds an invalid config, using defaults: %s", self.path, e)
            return Config()

    def save(self, config: Config) -> Config:
        config.validate()
        _write_json(self.path, config.to_dict())
        return config


class HistoryStore:
    def __init__(self, path=None, retention=None, clock=utc_now):
        self.path = Path(path) if path else Path(CONFIG["data_dir"]) / "speed_data.json"
        self.retention = retention or timedelta(days=CONFIG["days_to_keep"])
        self._clock = clock

    def _read(self, strict=False) -> List[Reading]:
        try:
            with self.path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            return []
        except ValueError as e:
            log.warning("history is not valid JSON (%s), treating as empty", e)
            return []
        except OSError as e:
            if strict:
                raise StorageError(f"could not read {self.path}: {e}") from e
            log.warning("history read failed (%s), treating as empty", e)
            return []

        if not isinstance(raw, list):
            log.warning("%s does not hold a list, treating as empty", self.path)
            return []

        readings = []
        for item in raw:
            try:
                readings.append(Reading.from_dict(item))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                log.warning("Skipping malformed reading %r: %s", item, e)
        return readings

    def load_all(self) -> List[Reading]:
        return self._read()

    def latest(self) -> Optional[Reading]:
        readings = self.load_all()
        return readings[-1] if readings else None

    def append(self, reading: Reading) -> List[Reading]:
        readings = self._read(strict=True)
        readings.append(reading)
        kept = prune(readings, self.retention, now=self._clock())
        dropped = len(readings) - len(kept)
        if dropped:
            log.info("Pruned %d reading(s) older than %s", dropped, self.retention)
        _write_json(self.path, [r.to_dict() for r in kept])
        return kept

    def delete_all(self):
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"could not delete {self.path}: {e}") from e
