"""Out-of-process command execution for deploy, rollback and health checks."""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping

LOGGER = logging.getLogger("canary_releaser.executor")

VERSION_QUERY_TIMEOUT_S = 30.0


class CommandError(RuntimeError):
    def __init__(self, message: str, output: str = "", returncode: int | None = None) -> None:
        super().__init__(message)
        self.output = output
        self.returncode = returncode


def _decode(raw: str | bytes | None) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return raw


class CommandExecutor:
    """Runs configured shell commands with ``RELEASE_TAG`` and ``ASSET_FILE`` injected."""

    def __init__(self, shell: str = "sh", environ: Mapping[str, str] | None = None) -> None:
        self._shell = shell
        self._environ = environ

    def run(
        self,
        command: str,
        tag: str,
        asset_file: str,
        timeout_s: float | None = None,
    ) -> str:
        env = dict(os.environ if self._environ is None else self._environ)
        env["RELEASE_TAG"] = tag
        env["ASSET_FILE"] = asset_file
        try:
            completed = subprocess.run(
                [self._shell, "-c", command],
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=timeout_s if timeout_s else None,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandError(
                f"command timed out after {timeout_s}s: {command}",
                output=_decode(exc.output),
            ) from exc

        output = completed.stdout or ""
        if completed.returncode != 0:
            raise CommandError(
                f"command exited with status {completed.returncode}: {command}",
                output=output,
                returncode=completed.returncode,
            )
        LOGGER.debug("command result command=%s out=%s", command, output)
        return output

    def query(self, command: str, timeout_s: float | None = VERSION_QUERY_TIMEOUT_S) -> str:
        """Return the trimmed stdout of ``command``; stderr is not captured."""
        try:
            completed = subprocess.run(
                [self._shell, "-c", command],
                env=dict(os.environ if self._environ is None else self._environ),
                stdout=subprocess.PIPE,
                text=True,
                timeout=timeout_s if timeout_s else None,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandError(
                f"command timed out after {timeout_s}s: {command}",
                output=_decode(exc.output),
            ) from exc
        if completed.returncode != 0:
            raise CommandError(
                f"command exited with status {completed.returncode}: {command}",
                output=completed.stdout or "",
                returncode=completed.returncode,
            )
        return (completed.stdout or "").strip()
