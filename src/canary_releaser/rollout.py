"""Rollout state machine: spread the stable tag across the fleet."""

from __future__ import annotations

import json
import logging

from canary_releaser.deploy import Deployer
from canary_releaser.executor import CommandError
from canary_releaser.models import CycleOutcome, InstallGate
from canary_releaser.release_source import AssetsCannotDownloadError, AssetsNotFoundError
from canary_releaser.state import CoordinationState
from canary_releaser.store import StoreUnavailableError

LOGGER = logging.getLogger("canary_releaser.rollout")


class RolloutController:
    def __init__(
        self,
        state: CoordinationState,
        deployer: Deployer,
        *,
        deploy_command: str,
    ) -> None:
        self._state = state
        self._deployer = deployer
        self._deploy_command = deploy_command

    def tick(self) -> CycleOutcome:
        self._state.report_self()

        tag = self._state.get_stable_tag()
        if not tag:
            return CycleOutcome.NOOP

        gate = self._state.can_install(tag)
        if gate is InstallGate.ALREADY_INSTALLED:
            return CycleOutcome.ALREADY_INSTALLED
        if gate is InstallGate.AVOID:
            LOGGER.warning(
                "stable_tag_in_avoid_set %s", json.dumps({"tag": tag}, sort_keys=True)
            )
            return CycleOutcome.AVOID_TAG

        if not self._state.try_rollout_lock(tag):
            return CycleOutcome.LOCK_NOT_ACQUIRED

        LOGGER.info("rollout_lock_acquired %s", json.dumps({"tag": tag}, sort_keys=True))
        try:
            # No rollback here: the stable tag already passed canary verification.
            self._deployer.deploy(self._deploy_command, tag)
        except AssetsNotFoundError as exc:
            LOGGER.debug(
                "no_matching_asset %s",
                json.dumps({"tag": tag, "err": str(exc)}, sort_keys=True),
            )
            return CycleOutcome.NO_MATCHING_ASSET
        except AssetsCannotDownloadError as exc:
            LOGGER.warning(
                "asset_download_failed %s",
                json.dumps({"tag": tag, "err": str(exc)}, sort_keys=True),
            )
            return CycleOutcome.DOWNLOAD_FAILED

        try:
            self._state.report_self()
        except (StoreUnavailableError, CommandError) as exc:
            LOGGER.error("report_self_failed %s", json.dumps({"err": str(exc)}, sort_keys=True))

        progress = self._state.rollout_progress(tag)
        LOGGER.info(
            "rollout_success %s",
            json.dumps({"tag": tag, "progress": str(progress)}, sort_keys=True),
        )
        return CycleOutcome.SUCCESS
