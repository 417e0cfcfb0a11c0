"""Process-wide storage health tracking.

One ``HealthMonitor`` is built per process (by the storage factory) and passed
to every adapter. It keeps two pieces of shared state:

* a sliding-window tally of network-class failures; once the tally exceeds the
  configured threshold within the interval, the threshold action runs once,
* the set of collections whose unique index could not be created, which
  switches dependent adapters into their degraded code paths.
"""

from __future__ import annotations

import logging
import os
import signal
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from .exceptions import StorageConfigError
from .logging_utils import log_event

DEFAULT_FAILURE_THRESHOLD = 0
DEFAULT_INTERVAL_SECONDS = 600.0
DEFAULT_GRACE_SECONDS = 10.0


@dataclass(frozen=True)
class HealthMonitorConfig:
    # 0 disables the threshold action; failures are still tallied.
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    interval_seconds: float = DEFAULT_INTERVAL_SECONDS
    grace_seconds: float = DEFAULT_GRACE_SECONDS

    @classmethod
    def from_raw(cls, raw: Optional[Mapping[str, Any]]) -> "HealthMonitorConfig":
        cfg: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
        threshold = cfg.get("failure_threshold", DEFAULT_FAILURE_THRESHOLD)
        if isinstance(threshold, bool) or not isinstance(threshold, int):
            raise StorageConfigError(
                "storage.health.failure_threshold must be an integer"
            )
        if threshold < 0:
            raise StorageConfigError("storage.health.failure_threshold must be >= 0")
        interval = cfg.get("interval_seconds", DEFAULT_INTERVAL_SECONDS)
        if isinstance(interval, bool) or not isinstance(interval, (int, float)):
            raise StorageConfigError("storage.health.interval_seconds must be a number")
        if interval <= 0:
            raise StorageConfigError("storage.health.interval_seconds must be > 0")
        grace = cfg.get("grace_seconds", DEFAULT_GRACE_SECONDS)
        if isinstance(grace, bool) or not isinstance(grace, (int, float)):
            raise StorageConfigError("storage.health.grace_seconds must be a number")
        return cls(
            failure_threshold=threshold,
            interval_seconds=float(interval),
            grace_seconds=max(float(grace), 0.0),
        )


@dataclass(frozen=True)
class HealthReport:
    kind: str
    failures: int
    threshold: int
    interval_seconds: float
    grace_seconds: float


ThresholdAction = Callable[[HealthReport], None]


def terminate_process_later(
    report: HealthReport, *, logger: Optional[logging.Logger] = None
) -> threading.Timer:
    """Send SIGTERM to the current process once the grace period has passed."""

    def _terminate() -> None:
        log_event(
            logger,
            logging.CRITICAL,
            "storage.health.terminating",
            pid=os.getpid(),
            failures=report.failures,
        )
        os.kill(os.getpid(), signal.SIGTERM)

    timer = threading.Timer(report.grace_seconds, _terminate)
    timer.daemon = True
    timer.start()
    return timer


class HealthMonitor:
    def __init__(
        self,
        config: Optional[HealthMonitorConfig] = None,
        *,
        on_threshold: Optional[ThresholdAction] = None,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or HealthMonitorConfig()
        self._logger = logger or logging.getLogger(__name__)
        self._on_threshold = on_threshold or (
            lambda report: terminate_process_later(report, logger=self._logger)
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._failures: deque[float] = deque()
        self._tripped = False
        self._unique_unavailable: dict[str, str] = {}

    @property
    def config(self) -> HealthMonitorConfig:
        return self._config

    @property
    def tripped(self) -> bool:
        with self._lock:
            return self._tripped

    def failure_count(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._failures)

    def record_failure(
        self, kind: str = "network", exc: Optional[BaseException] = None
    ) -> bool:
        """Tally one failure. Returns True when this call tripped the monitor."""
        now = self._clock()
        with self._lock:
            self._failures.append(now)
            self._prune(now)
            failures = len(self._failures)
            threshold = self._config.failure_threshold
            trip = threshold > 0 and failures > threshold and not self._tripped
            if trip:
                self._tripped = True
        log_event(
            self._logger,
            logging.WARNING,
            "storage.network_failure",
            kind=kind,
            failures=failures,
            threshold=threshold,
            exc=exc,
        )
        if not trip:
            return False
        report = HealthReport(
            kind=kind,
            failures=failures,
            threshold=threshold,
            interval_seconds=self._config.interval_seconds,
            grace_seconds=self._config.grace_seconds,
        )
        log_event(
            self._logger,
            logging.CRITICAL,
            "storage.health.tripped",
            kind=kind,
            failures=failures,
            threshold=threshold,
            interval_seconds=report.interval_seconds,
            grace_seconds=report.grace_seconds,
        )
        self._on_threshold(report)
        return True

    def mark_unique_index_unavailable(self, collection: str, index_name: str) -> None:
        with self._lock:
            self._unique_unavailable.setdefault(collection, index_name)

    def unique_index_unavailable(self, collection: str) -> bool:
        with self._lock:
            return collection in self._unique_unavailable

    def reset(self) -> None:
        with self._lock:
            self._failures.clear()
            self._tripped = False
            self._unique_unavailable.clear()

    def _prune(self, now: float) -> None:
        horizon = now - self._config.interval_seconds
        while self._failures and self._failures[0] < horizon:
            self._failures.popleft()


__all__ = [
    "HealthMonitor",
    "HealthMonitorConfig",
    "HealthReport",
    "ThresholdAction",
    "terminate_process_later",
]
