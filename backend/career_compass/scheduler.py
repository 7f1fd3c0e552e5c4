from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable

from .errors import AccessError

logger = logging.getLogger("career_compass.scheduler")

DEFAULT_SWEEP_INTERVAL_SECONDS = 3600
MIN_SWEEP_INTERVAL_SECONDS = 60


class AutoUpgradeScheduler:
    """Runs the student -> alumni sweep once on start and then every interval.

    The sweep is idempotent, so firing cadence and overlap with sign-in checks
    do not affect the outcome.
    """

    def __init__(
        self,
        *,
        sweep: Callable[[], dict[str, Any]],
        interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.sweep = sweep
        self.interval_seconds = max(MIN_SWEEP_INTERVAL_SECONDS, int(interval_seconds))
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self.runs = 0
        self.last_result: dict[str, Any] | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> dict[str, Any] | None:
        try:
            result = self.sweep()
        except AccessError as exc:
            logger.warning(
                json.dumps(
                    {"event": "auto_upgrade_sweep_failed", "code": exc.code, "message": exc.message},
                    ensure_ascii=False,
                )
            )
            return None

        with self._lock:
            self.runs += 1
            self.last_result = result
        logger.info(
            json.dumps(
                {
                    "event": "auto_upgrade_sweep",
                    "upgradedCount": int(result.get("upgraded_count", 0)),
                    "run": self.runs,
                },
                ensure_ascii=False,
            )
        )
        return result

    def _loop(self) -> None:
        self.run_once()
        while not self._stop_event.wait(self.interval_seconds):
            self.run_once()

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._loop, name="auto-upgrade-sweep", daemon=True)
            self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        self._thread = None
