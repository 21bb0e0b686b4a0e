"""Artifact fetch plus deploy/rollback command invocation."""

from __future__ import annotations

import json
import logging

from canary_releaser.executor import CommandError, CommandExecutor
from canary_releaser.models import DeployedRelease
from canary_releaser.release_source import ReleaseSource
from canary_releaser.state import CoordinationState

LOGGER = logging.getLogger("canary_releaser.deploy")

DEPLOY_TIMEOUT_S = 300.0


class DeployError(RuntimeError):
    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class Deployer:
    def __init__(
        self,
        state: CoordinationState,
        release_source: ReleaseSource,
        executor: CommandExecutor,
        timeout_s: float = DEPLOY_TIMEOUT_S,
    ) -> None:
        self._state = state
        self._release_source = release_source
        self._executor = executor
        self._timeout_s = timeout_s

    def fetch(self, tag: str) -> DeployedRelease:
        resolved_tag, asset_file = self._release_source.download_asset(tag)
        return DeployedRelease(tag=resolved_tag, asset_file=asset_file)

    def deploy(self, command: str, tag: str) -> DeployedRelease:
        """Fetch ``tag``'s artifact and run ``command`` against it.

        Release-source errors propagate unchanged. A failing command raises
        :class:`DeployError` carrying the captured output.
        """
        release = self.fetch(tag)
        current_version = self._state.installed_version()
        LOGGER.info(
            "deploy_version_info %s",
            json.dumps(
                {"current_version": current_version, "new_version": release.tag},
                sort_keys=True,
            ),
        )
        try:
            self._executor.run(
                command, release.tag, release.asset_file, timeout_s=self._timeout_s
            )
        except CommandError as exc:
            raise DeployError(f"failed to execute command: {exc}", output=exc.output) from exc
        return release
