"""In-process statistics over scheduler sync runs."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable

from ratewatch.logging_config import get_logger

LOGGER = get_logger(__name__)

DURATION_WINDOW = 100


@dataclass
class TelemetryStats:
    """Snapshot of cycle counters. Durations are in seconds."""

    total_cycles: int = 0
    successful_cycles: int = 0
    failed_cycles: int = 0
    last_sync_time: float | None = None
    last_sync_duration: float | None = None
    start_time: float = 0.0
    average_cycle_duration: float = 0.0
    total_items_processed: int = 0


@dataclass
class RunTelemetry:
    """Counts sync cycles and keeps a rolling window of their durations.

    The scheduler owns one instance for the life of the process; nothing here is
    persisted, so sync run rows remain the record of what actually happened.
    """

    wall_clock: Callable[[], float] = time.time
    monotonic: Callable[[], float] = time.monotonic
    window: int = DURATION_WINDOW

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        self._durations: deque[float] = deque(maxlen=self.window)
        self._stats = TelemetryStats(start_time=self.wall_clock())

    def start_cycle(self) -> float:
        """Return a token marking the start of a cycle."""

        return self.monotonic()

    def end_cycle(self, token: float, success: bool, items_processed: int = 0) -> None:
        duration = max(0.0, self.monotonic() - token)
        with self._lock:
            stats = self._stats
            stats.total_cycles += 1
            stats.last_sync_time = self.wall_clock()
            stats.last_sync_duration = duration
            stats.total_items_processed += items_processed
            if success:
                stats.successful_cycles += 1
            else:
                stats.failed_cycles += 1

            self._durations.append(duration)
            stats.average_cycle_duration = sum(self._durations) / len(self._durations)
            cycle_number = stats.total_cycles

        LOGGER.info(
            "Cycle %d finished in %.2fs | status=%s | items=%d",
            cycle_number,
            duration,
            "SUCCESS" if success else "FAILED",
            items_processed,
        )

    def stats(self) -> TelemetryStats:
        with self._lock:
            return replace(self._stats)

    def formatted_stats(self) -> dict[str, Any]:
        """Return the snapshot with human-readable rate, duration and uptime strings."""

        stats = self.stats()
        if stats.total_cycles > 0:
            success_rate = f"{stats.successful_cycles / stats.total_cycles * 100:.2f}%"
        else:
            success_rate = "0%"

        last_sync_time = None
        if stats.last_sync_time is not None:
            last_sync_time = datetime.fromtimestamp(
                stats.last_sync_time, tz=timezone.utc
            ).isoformat()

        last_sync_duration = None
        if stats.last_sync_duration is not None:
            last_sync_duration = f"{stats.last_sync_duration:.2f}s"

        return {
            "total_cycles": stats.total_cycles,
            "successful_cycles": stats.successful_cycles,
            "failed_cycles": stats.failed_cycles,
            "success_rate": success_rate,
            "last_sync_time": last_sync_time,
            "last_sync_duration": last_sync_duration,
            "uptime": self._uptime_string(stats.start_time),
            "average_cycle_duration": f"{stats.average_cycle_duration:.2f}s",
            "total_items_processed": stats.total_items_processed,
        }

    def _uptime_string(self, start_time: float) -> str:
        uptime = max(0, int(self.wall_clock() - start_time))
        days, remainder = divmod(uptime, 86400)
        hours, remainder = divmod(remainder, 3600)
        minutes = remainder // 60
        if days > 0:
            return f"{days}d {hours}h {minutes}m"
        if hours > 0:
            return f"{hours}h {minutes}m"
        return f"{minutes}m"

    def reset(self) -> None:
        with self._lock:
            self._durations.clear()
            self._stats = TelemetryStats(start_time=self.wall_clock())
