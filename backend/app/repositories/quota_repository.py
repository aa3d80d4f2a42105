from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from pathlib import Path
from threading import Lock
from typing import cast

LOGGER = logging.getLogger("subdigest.quota")


def _utc_today() -> date:
    return datetime.now(UTC).date()


def _empty_breakdown() -> dict[str, int]:
    return {}


@dataclass(frozen=True)
class QuotaUsage:
    day: str
    units_consumed: int
    last_updated: float
    units_by_operation: dict[str, int] = field(default_factory=_empty_breakdown)


@dataclass(frozen=True)
class QuotaSnapshot:
    usage: QuotaUsage
    daily_limit: int
    warning_threshold: int
    warning: bool


class QuotaTracker:
    """Per-day counter of consumed platform API units.

    Advisory only: it never raises and never blocks a call by itself. The
    record is kept in memory and, when `persist_path` is set, mirrored to a
    JSON file so the day's usage survives a restart.
    """

    def __init__(
        self,
        *,
        daily_limit: int = 10_000,
        warning_fraction: float = 0.8,
        persist_path: Path | None = None,
        today: Callable[[], date] = _utc_today,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._daily_limit = max(1, daily_limit)
        self._warning_fraction = min(1.0, max(0.0, warning_fraction))
        self._persist_path = persist_path
        self._today = today
        self._clock = clock
        self._lock = Lock()
        self._usage: QuotaUsage | None = self._load_persisted()

    @property
    def daily_limit(self) -> int:
        return self._daily_limit

    @property
    def warning_threshold(self) -> int:
        return int(self._daily_limit * self._warning_fraction)

    def current_usage(self) -> QuotaUsage:
        with self._lock:
            return self._current_locked()

    def increment(self, units: int = 1, *, operation: str | None = None) -> QuotaUsage:
        clamped_units = max(0, units)
        with self._lock:
            usage = self._current_locked()
            breakdown = dict(usage.units_by_operation)
            if operation is not None and clamped_units > 0:
                breakdown[operation] = breakdown.get(operation, 0) + clamped_units
            usage = replace(
                usage,
                units_consumed=usage.units_consumed + clamped_units,
                last_updated=self._clock(),
                units_by_operation=breakdown,
            )
            self._usage = usage
            self._persist(usage)
        if clamped_units > 0:
            LOGGER.debug(
                "quota increment operation=%s units=%s total=%s",
                operation,
                clamped_units,
                usage.units_consumed,
            )
        return usage

    def is_approaching_limit(self) -> bool:
        return self.current_usage().units_consumed > self.warning_threshold

    def snapshot(self) -> QuotaSnapshot:
        usage = self.current_usage()
        return QuotaSnapshot(
            usage=usage,
            daily_limit=self._daily_limit,
            warning_threshold=self.warning_threshold,
            warning=usage.units_consumed > self.warning_threshold,
        )

    def _current_locked(self) -> QuotaUsage:
        today = self._today().isoformat()
        if self._usage is None or self._usage.day != today:
            if self._usage is not None:
                LOGGER.info(
                    "quota day_rollover previous_day=%s previous_units=%s",
                    self._usage.day,
                    self._usage.units_consumed,
                )
            self._usage = QuotaUsage(day=today, units_consumed=0, last_updated=self._clock())
        return self._usage

    def _load_persisted(self) -> QuotaUsage | None:
        if self._persist_path is None or not self._persist_path.is_file():
            return None
        try:
            parsed = cast(object, json.loads(self._persist_path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError):
            LOGGER.warning(
                "quota persisted_usage_unreadable path=%s", self._persist_path, exc_info=True
            )
            return None
        if not isinstance(parsed, dict):
            return None
        payload = cast(dict[str, object], parsed)
        day = payload.get("date")
        count = payload.get("count")
        last_updated = payload.get("lastUpdated")
        if not isinstance(day, str) or not isinstance(count, int):
            return None
        breakdown_raw = payload.get("byOperation")
        breakdown: dict[str, int] = {}
        if isinstance(breakdown_raw, dict):
            for key, value in cast(dict[object, object], breakdown_raw).items():
                if isinstance(key, str) and isinstance(value, int):
                    breakdown[key] = value
        return QuotaUsage(
            day=day,
            units_consumed=max(0, count),
            last_updated=(
                float(last_updated) / 1000 if isinstance(last_updated, (int, float)) else 0.0
            ),
            units_by_operation=breakdown,
        )

    def _persist(self, usage: QuotaUsage) -> None:
        if self._persist_path is None:
            return
        document = {
            "date": usage.day,
            "count": usage.units_consumed,
            "lastUpdated": int(usage.last_updated * 1000),
            "byOperation": usage.units_by_operation,
        }
        try:
            self._persist_path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self._persist_path.with_suffix(".tmp")
            temp_path.write_text(json.dumps(document), encoding="utf-8")
            os.replace(temp_path, self._persist_path)
        except OSError:
            LOGGER.warning(
                "quota persist_failed path=%s", self._persist_path, exc_info=True
            )
