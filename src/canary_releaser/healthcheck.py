"""Bounded-retry health verification for freshly deployed canaries."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable

from canary_releaser.executor import CommandError, CommandExecutor

LOGGER = logging.getLogger("canary_releaser.healthcheck")


class HealthCheckError(RuntimeError):
    def __init__(self, message: str, output: str = "", attempts: int = 0) -> None:
        super().__init__(message)
        self.output = output
        self.attempts = attempts


class HealthChecker:
    """Runs the health-check command in two phases.

    The initial burst retries up to ``retries`` times inside a deadline of
    ``retries * (timeout_s + interval_s)``. After it passes, the command is
    re-run every ``interval_s`` until ``window_s`` (counted from the start of
    :meth:`verify`) has elapsed. A failure in that watch phase is final.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        command: str,
        *,
        timeout_s: float,
        interval_s: float,
        retries: int,
        window_s: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._executor = executor
        self._command = command
        self._timeout_s = max(0.0, timeout_s)
        self._interval_s = max(0.0, interval_s)
        self._retries = max(1, retries)
        self._window_s = max(0.0, window_s)
        self._clock = clock
        self._sleep = sleep

    @property
    def burst_deadline_s(self) -> float:
        return self._timeout_s * self._retries + self._interval_s * self._retries

    def verify(self, tag: str, asset_file: str) -> None:
        started = self._clock()
        self._initial_burst(tag, asset_file, started)
        self._watch(tag, asset_file, started + self._window_s)

    def _initial_burst(self, tag: str, asset_file: str, started: float) -> None:
        deadline = started + self.burst_deadline_s
        attempts = 0
        last_output = ""
        last_error = "health check deadline exceeded before the first attempt"
        while attempts < self._retries:
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            attempts += 1
            timeout = min(self._timeout_s, remaining) if self._timeout_s else remaining
            try:
                self._executor.run(self._command, tag, asset_file, timeout_s=timeout)
                return
            except CommandError as exc:
                last_output = exc.output
                last_error = str(exc)
                LOGGER.debug(
                    "health_check_attempt_failed %s",
                    json.dumps({"tag": tag, "attempt": attempts}, sort_keys=True),
                )
            if attempts < self._retries:
                pause = min(self._interval_s, max(0.0, deadline - self._clock()))
                if pause > 0:
                    self._sleep(pause)
        raise HealthCheckError(
            f"health check command failed after {attempts} attempt(s): {last_error}",
            output=last_output,
            attempts=attempts,
        )

    def _watch(self, tag: str, asset_file: str, window_end: float) -> None:
        if self._interval_s <= 0:
            remaining = window_end - self._clock()
            if remaining > 0:
                self._sleep(remaining)
            return
        next_check = self._clock() + self._interval_s
        while True:
            now = self._clock()
            if now >= window_end:
                return
            if next_check >= window_end:
                self._sleep(window_end - now)
                return
            if next_check > now:
                self._sleep(next_check - now)
            try:
                self._executor.run(self._command, tag, asset_file, timeout_s=self._timeout_s)
            except CommandError as exc:
                raise HealthCheckError(
                    f"health check command failed during canary window: {exc}",
                    output=exc.output,
                    attempts=1,
                ) from exc
            next_check += self._interval_s
