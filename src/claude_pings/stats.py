from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

from claude_pings.paths import stats_file_path

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30
# Reference date used by the desktop app when it encodes timestamps as plain numbers.
APPLE_REFERENCE_DATE = datetime(2001, 1, 1, tzinfo=timezone.utc)

Clock = Callable[[], datetime]
StatsListener = Callable[["StatsData"], None]


def _to_utc(value: datetime) -> datetime:
    # Naive values are local wall-clock times.
    return value.astimezone(timezone.utc)


def _format_datetime(value: datetime) -> str:
    return _to_utc(value).isoformat().replace("+00:00", "Z")


def _parse_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _to_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return APPLE_REFERENCE_DATE + timedelta(seconds=value)
    if isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        return _to_utc(datetime.fromisoformat(text))
    raise ValueError(f"Unsupported timestamp value: {value!r}")


def _iter_days(start_day: date, end_day: date) -> Iterator[date]:
    current = start_day
    while current <= end_day:
        yield current
        current += timedelta(days=1)


def _day_key(day: date | datetime | str) -> str:
    if isinstance(day, str):
        return day
    if isinstance(day, datetime):
        return day.date().isoformat()
    return day.isoformat()


def _counter(data: dict[str, Any], key: str) -> int:
    value = int(data.get(key, 0))
    if value < 0:
        raise ValueError(f"{key} must be non-negative, got {value}")
    return value


def _atomic_write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, sort_keys=True, indent=2)
            handle.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


@dataclass
class DayStats:
    """Engagement counters for one calendar day."""

    date: str
    alert_count: int = 0
    dismissed_count: int = 0
    clicked_count: int = 0
    total_response_time_ms: int = 0
    response_count: int = 0

    @property
    def average_response_time(self) -> float | None:
        """Mean response time in seconds, or ``None`` before any response."""
        if self.response_count <= 0:
            return None
        return self.total_response_time_ms / self.response_count / 1000.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "alertCount": self.alert_count,
            "dismissedCount": self.dismissed_count,
            "clickedCount": self.clicked_count,
            "totalResponseTimeMs": self.total_response_time_ms,
            "responseCount": self.response_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DayStats:
        return cls(
            date=str(data["date"]),
            alert_count=_counter(data, "alertCount"),
            dismissed_count=_counter(data, "dismissedCount"),
            clicked_count=_counter(data, "clickedCount"),
            total_response_time_ms=_counter(data, "totalResponseTimeMs"),
            response_count=_counter(data, "responseCount"),
        )


@dataclass
class StatsData:
    """Root persisted document: day buckets keyed by ``YYYY-MM-DD`` plus all-time totals."""

    days: dict[str, DayStats] = field(default_factory=dict)
    all_time_alerts: int = 0
    all_time_clicks: int = 0
    all_time_dismisses: int = 0
    first_used: datetime | None = None

    @classmethod
    def empty(cls) -> StatsData:
        return cls()

    def to_dict(self) -> dict[str, Any]:
        return {
            "days": {key: day.to_dict() for key, day in sorted(self.days.items())},
            "allTimeAlerts": self.all_time_alerts,
            "allTimeClicks": self.all_time_clicks,
            "allTimeDismisses": self.all_time_dismisses,
            "firstUsed": _format_datetime(self.first_used) if self.first_used is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StatsData:
        if not isinstance(data, dict):
            raise ValueError("stats document must be a JSON object")
        raw_days = data.get("days") or {}
        if not isinstance(raw_days, dict):
            raise ValueError("'days' must be an object keyed by date")
        days = {str(key): DayStats.from_dict({"date": key, **raw}) for key, raw in raw_days.items()}
        return cls(
            days=days,
            all_time_alerts=_counter(data, "allTimeAlerts"),
            all_time_clicks=_counter(data, "allTimeClicks"),
            all_time_dismisses=_counter(data, "allTimeDismisses"),
            first_used=_parse_datetime(data.get("firstUsed")),
        )


class StatsStore:
    """
    Per-day alert engagement counters persisted as one JSON document.

    The in-memory document is authoritative. Every mutation prunes days
    older than the retention horizon, notifies listeners and queues an
    atomic rewrite of the file on a single background writer, so the file
    may briefly lag behind memory. Response time is measured once per
    alert id: the first click or dismiss consumes the pending timestamp.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        *,
        clock: Clock | None = None,
        retention_days: int = DEFAULT_RETENTION_DAYS,
    ) -> None:
        if retention_days < 0:
            raise ValueError("retention_days must be non-negative")
        self.path = Path(path) if path is not None else stats_file_path()
        self.retention_days = retention_days
        self._clock: Clock = clock or datetime.now
        self._lock = threading.RLock()
        self._pending: dict[str, datetime] = {}
        self._listeners: list[StatsListener] = []
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="stats-writer")
        self._last_save: Future[None] | None = None
        self._stats = self._load()
        self._prune()

    @property
    def stats(self) -> StatsData:
        return self._stats

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _load(self) -> StatsData:
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                return StatsData.from_dict(json.load(handle))
        except FileNotFoundError:
            return StatsData.empty()
        except (OSError, ValueError, TypeError, KeyError, OverflowError) as exc:
            logger.warning("Ignoring unreadable stats file %s: %s", self.path, exc)
            return StatsData.empty()

    def _today(self) -> date:
        return self._clock().date()

    def _ensure_day(self, day: date) -> DayStats:
        key = _day_key(day)
        bucket = self._stats.days.get(key)
        if bucket is None:
            bucket = DayStats(date=key)
            self._stats.days[key] = bucket
        return bucket

    def _alert_count(self, day: date) -> int:
        bucket = self._stats.days.get(_day_key(day))
        return bucket.alert_count if bucket is not None else 0

    def record_alert(self, alert_id: str) -> None:
        """Count a presented alert and start timing the response to it."""
        with self._lock:
            now = self._clock()
            bucket = self._ensure_day(now.date())
            bucket.alert_count += 1
            self._stats.all_time_alerts += 1
            self._pending[alert_id] = now
            if self._stats.first_used is None:
                self._stats.first_used = _to_utc(now)
            self._commit()

    def record_click(self, alert_id: str) -> None:
        with self._lock:
            now = self._clock()
            bucket = self._ensure_day(now.date())
            bucket.clicked_count += 1
            self._stats.all_time_clicks += 1
            self._consume_pending(alert_id, now, bucket)
            self._commit()

    def record_dismiss(self, alert_id: str) -> None:
        with self._lock:
            now = self._clock()
            bucket = self._ensure_day(now.date())
            bucket.dismissed_count += 1
            self._stats.all_time_dismisses += 1
            self._consume_pending(alert_id, now, bucket)
            self._commit()

    def _consume_pending(self, alert_id: str, now: datetime, bucket: DayStats) -> None:
        started = self._pending.pop(alert_id, None)
        if started is None:
            return
        elapsed_ms = int((now - started).total_seconds() * 1000)
        bucket.total_response_time_ms += max(elapsed_ms, 0)
        bucket.response_count += 1

    def _prune(self) -> None:
        cutoff = _day_key(self._today() - timedelta(days=self.retention_days))
        stale = [key for key in self._stats.days if key < cutoff]
        for key in stale:
            del self._stats.days[key]
        if stale:
            logger.debug("Pruned %d day buckets older than %s", len(stale), cutoff)

    def _commit(self) -> None:
        self._prune()
        self._schedule_save(self._stats.to_dict())
        for listener in list(self._listeners):
            try:
                listener(self._stats)
            except Exception:
                logger.exception("Stats listener failed")

    def _schedule_save(self, snapshot: dict[str, Any]) -> None:
        try:
            self._last_save = self._writer.submit(self._write, snapshot)
        except RuntimeError:
            logger.debug("Stats writer is closed; not persisting to %s", self.path)

    def _write(self, snapshot: dict[str, Any]) -> None:
        try:
            _atomic_write_json(self.path, snapshot)
        except OSError as exc:
            logger.warning("Failed to persist stats to %s: %s", self.path, exc)

    def add_listener(self, listener: StatsListener) -> Callable[[], None]:
        """Call ``listener`` after every mutation; returns a callable that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def flush(self, timeout: float | None = None) -> bool:
        """Wait for queued saves; returns ``False`` if ``timeout`` expired first."""
        pending = self._last_save
        if pending is None:
            return True
        try:
            pending.result(timeout=timeout)
        except FutureTimeoutError:
            return False
        return True

    def close(self) -> None:
        self.flush()
        self._writer.shutdown(wait=True)

    def __enter__(self) -> StatsStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def today_stats(self) -> DayStats | None:
        return self._stats.days.get(_day_key(self._today()))

    def average_response_time(self, day: date | datetime | str | None = None) -> float | None:
        """Average response time in seconds for ``day`` (default today)."""
        key = _day_key(day if day is not None else self._today())
        bucket = self._stats.days.get(key)
        return bucket.average_response_time if bucket is not None else None

    @property
    def this_week_alerts(self) -> int:
        today = self._today()
        return sum(self._alert_count(day) for day in _iter_days(today - timedelta(days=6), today))

    @property
    def last_7_days(self) -> list[tuple[str, int]]:
        """``(weekday label, alert count)`` for the seven days ending today, oldest first."""
        today = self._today()
        return [
            (day.strftime("%a"), self._alert_count(day))
            for day in _iter_days(today - timedelta(days=6), today)
        ]

    @property
    def streak_days(self) -> int:
        """
        Consecutive days with at least one alert.

        The walk starts today, or yesterday when today has no alerts yet, and
        stops at the first day without alerts.
        """
        day = self._today()
        if self._alert_count(day) == 0:
            day -= timedelta(days=1)
        streak = 0
        while self._alert_count(day) > 0:
            streak += 1
            day -= timedelta(days=1)
        return streak
