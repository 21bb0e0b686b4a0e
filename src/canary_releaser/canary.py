"""Canary release state machine and its rollback path."""

from __future__ import annotations

import json
import logging

from canary_releaser.deploy import Deployer
from canary_releaser.executor import CommandError
from canary_releaser.healthcheck import HealthChecker, HealthCheckError
from canary_releaser.models import CycleOutcome, InstallGate
from canary_releaser.release_source import (
    AssetsCannotDownloadError,
    AssetsNotFoundError,
    ReleaseSource,
)
from canary_releaser.state import CoordinationState, RollbackError
from canary_releaser.store import StoreUnavailableError

LOGGER = logging.getLogger("canary_releaser.canary")


def _log(level: int, event: str, **fields: object) -> None:
    LOGGER.log(level, "%s %s", event, json.dumps(fields, sort_keys=True, default=str))


class CanaryReleaser:
    """One tick per polling interval: discover, gate, lock, deploy, verify.

    Expected conditions come back as a :class:`CycleOutcome`. Command failures,
    store failures and an unresolvable rollback target raise.
    """

    def __init__(
        self,
        state: CoordinationState,
        release_source: ReleaseSource,
        deployer: Deployer,
        health_checker: HealthChecker,
        *,
        deploy_command: str,
        rollback_command: str = "",
        include_prerelease: bool = False,
    ) -> None:
        self._state = state
        self._release_source = release_source
        self._deployer = deployer
        self._health_checker = health_checker
        self._deploy_command = deploy_command
        self._rollback_command = rollback_command
        self._include_prerelease = include_prerelease

    def tick(self) -> CycleOutcome:
        self._state.report_self()

        # Captured before deploying so a failed canary can return to it.
        pre_deploy_tag = self._state.installed_version()
        stable_tag = self._state.get_stable_tag()

        try:
            tag = self._release_source.fetch_latest(self._include_prerelease)
        except AssetsNotFoundError as exc:
            _log(logging.DEBUG, "no_release_found", err=str(exc))
            return CycleOutcome.NO_MATCHING_ASSET
        except AssetsCannotDownloadError as exc:
            _log(logging.WARNING, "release_source_unavailable", err=str(exc))
            return CycleOutcome.DOWNLOAD_FAILED

        if tag == stable_tag:
            return CycleOutcome.NOOP

        gate = self._state.can_install(tag)
        if gate is InstallGate.ALREADY_INSTALLED:
            return CycleOutcome.ALREADY_INSTALLED
        if gate is InstallGate.AVOID:
            return CycleOutcome.AVOID_TAG

        try:
            self._deployer.fetch(tag)
        except AssetsNotFoundError as exc:
            _log(logging.DEBUG, "no_matching_asset", tag=tag, err=str(exc))
            return CycleOutcome.NO_MATCHING_ASSET
        except AssetsCannotDownloadError as exc:
            _log(logging.WARNING, "asset_download_failed", tag=tag, err=str(exc))
            return CycleOutcome.DOWNLOAD_FAILED

        if not self._state.try_canary_lock(tag):
            return CycleOutcome.LOCK_NOT_ACQUIRED

        _log(logging.INFO, "canary_lock_acquired", tag=tag)
        release = self._deployer.deploy(self._deploy_command, tag)

        _log(logging.INFO, "canary_health_check_started", tag=release.tag)
        try:
            self._health_checker.verify(release.tag, release.asset_file)
        except HealthCheckError as exc:
            _log(
                logging.ERROR,
                "canary_health_check_failed",
                tag=release.tag,
                attempts=exc.attempts,
                err=str(exc),
                out=exc.output,
            )
            # The canary lock is left to expire on its own TTL.
            self._state.add_avoid_tag(release.tag)
            return self.rollback(pre_deploy_tag)

        self._state.set_stable_tag(release.tag)
        try:
            self._state.report_self()
        except (StoreUnavailableError, CommandError) as exc:
            _log(logging.ERROR, "report_self_failed", err=str(exc))
        self._state.release_canary_lock()
        _log(logging.INFO, "canary_release_success", tag=release.tag)
        return CycleOutcome.SUCCESS

    def rollback(self, pre_deploy_tag: str) -> CycleOutcome:
        """Reinstall the pre-deploy version, or the stable tag when there was none."""
        target = self._state.rollback_tag(pre_deploy_tag)
        if not self._rollback_command:
            _log(logging.INFO, "rollback_unavailable", tag=target)
            return CycleOutcome.NO_ROLLBACK_AVAILABLE

        _log(logging.INFO, "rollback_started", tag=target)
        try:
            self._deployer.deploy(self._rollback_command, target)
        except (AssetsNotFoundError, AssetsCannotDownloadError) as exc:
            raise RollbackError(f"can't fetch rollback artifact {target}: {exc}") from exc
        _log(logging.WARNING, "rollback_success", tag=target)
        return CycleOutcome.ROLLBACK_PERFORMED
