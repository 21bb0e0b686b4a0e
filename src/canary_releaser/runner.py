"""Periodic drivers for the canary and rollout state machines."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from threading import Event, Lock, Thread
from time import perf_counter

from canary_releaser.models import CycleOutcome
from canary_releaser.observability import MetricsStore, TickMetric, duration_ms

LOGGER = logging.getLogger("canary_releaser.runner")

CANARY_LOOP = "canary"
ROLLOUT_LOOP = "rollout"

_OUTCOME_LEVELS = {
    CycleOutcome.NOOP: logging.DEBUG,
    CycleOutcome.ALREADY_INSTALLED: logging.DEBUG,
    CycleOutcome.AVOID_TAG: logging.DEBUG,
    CycleOutcome.LOCK_NOT_ACQUIRED: logging.DEBUG,
    CycleOutcome.NO_MATCHING_ASSET: logging.DEBUG,
    CycleOutcome.DOWNLOAD_FAILED: logging.WARNING,
    CycleOutcome.NO_ROLLBACK_AVAILABLE: logging.INFO,
    CycleOutcome.ROLLBACK_PERFORMED: logging.WARNING,
    CycleOutcome.SUCCESS: logging.INFO,
}

Tick = Callable[[], CycleOutcome]


class ReleaseRunner:
    """Runs each loop on its own thread so a slow tick only delays itself.

    The first exception escaping a tick stops both loops and is re-raised from
    :meth:`run_forever`; process supervision is expected to restart us.
    """

    def __init__(
        self,
        canary_tick: Tick,
        rollout_tick: Tick,
        *,
        polling_interval_s: float,
        rollout_interval_s: float,
        metrics: MetricsStore | None = None,
        join_timeout_s: float = 1.0,
    ) -> None:
        self._ticks = {CANARY_LOOP: canary_tick, ROLLOUT_LOOP: rollout_tick}
        self._intervals = {
            CANARY_LOOP: max(0.01, polling_interval_s),
            ROLLOUT_LOOP: max(0.01, rollout_interval_s),
        }
        self.metrics = metrics if metrics is not None else MetricsStore()
        self._join_timeout_s = join_timeout_s
        self._stop_event = Event()
        self._error_lock = Lock()
        self._error: BaseException | None = None
        self._threads: list[Thread] = []

    def run_once(self) -> dict[str, CycleOutcome]:
        return {
            ROLLOUT_LOOP: self.run_tick(ROLLOUT_LOOP),
            CANARY_LOOP: self.run_tick(CANARY_LOOP),
        }

    def run_tick(self, loop: str) -> CycleOutcome:
        start = perf_counter()
        outcome = self._ticks[loop]()
        self.metrics.record(
            TickMetric(loop=loop, outcome=outcome.value, duration_ms=duration_ms(start))
        )
        LOGGER.log(
            _OUTCOME_LEVELS.get(outcome, logging.INFO),
            "tick_outcome %s",
            json.dumps({"loop": loop, "outcome": outcome.value}, sort_keys=True),
        )
        return outcome

    def run_forever(self) -> None:
        self._threads = [
            Thread(target=self._run_loop, args=(loop,), name=f"{loop}-loop", daemon=True)
            for loop in (CANARY_LOOP, ROLLOUT_LOOP)
        ]
        for thread in self._threads:
            thread.start()
        try:
            while not self._stop_event.wait(0.5):
                pass
        finally:
            self.close()
        if self._error is not None:
            raise self._error

    def close(self) -> None:
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=self._join_timeout_s)

    @property
    def error(self) -> BaseException | None:
        return self._error

    def _run_loop(self, loop: str) -> None:
        interval = self._intervals[loop]
        while not self._stop_event.wait(interval):
            try:
                self.run_tick(loop)
            except Exception as exc:
                self._fail(loop, exc)
                return

    def _fail(self, loop: str, exc: Exception) -> None:
        with self._error_lock:
            if self._error is None:
                self._error = exc
        self.metrics.record_error(loop, exc)
        LOGGER.error(
            "loop_failed %s",
            json.dumps(
                {
                    "loop": loop,
                    "err": str(exc),
                    "out": getattr(exc, "output", ""),
                },
                sort_keys=True,
            ),
        )
        self._stop_event.set()
