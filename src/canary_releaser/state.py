"""Fleet-wide coordination state: locks, stable tag, avoid set and members."""

from __future__ import annotations

import json
import logging
import socket
from collections.abc import Callable

from pydantic import ValidationError

from canary_releaser.models import InstallGate, MemberState, RolloutProgress
from canary_releaser.settings import Settings
from canary_releaser.store import SharedStore

LOGGER = logging.getLogger("canary_releaser.state")


class RollbackError(RuntimeError):
    """Raised when no rollback can be carried out for a failed canary."""


class CoordinationState:
    """Narrow view over the shared store used by both control loops.

    Callers never reach the store directly. Every key lives under ``key_prefix``
    so several repositories can share one store.
    """

    def __init__(
        self,
        store: SharedStore,
        key_prefix: str,
        installed_version: Callable[[], str],
        *,
        canary_lock_ttl_s: float,
        rollout_lock_ttl_s: float,
        member_ttl_s: float,
        hostname: str | None = None,
    ) -> None:
        self._store = store
        self._installed_version = installed_version
        self._canary_lock_ttl_s = canary_lock_ttl_s
        self._rollout_lock_ttl_s = rollout_lock_ttl_s
        self._member_ttl_s = member_ttl_s
        self.key_prefix = key_prefix
        self.member_id = f"{hostname or socket.gethostname()}:{key_prefix}"
        self.canary_lock_key = f"{key_prefix}_canary_release_tag"
        self.stable_tag_key = f"{key_prefix}_stable_release_tag"
        self.avoid_tags_key = f"{key_prefix}_avoid_release_tag"
        self.members_key = f"{key_prefix}_members_tag"
        self.rollout_lock_key = f"{key_prefix}_rollout"

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: SharedStore,
        installed_version: Callable[[], str],
        hostname: str | None = None,
    ) -> CoordinationState:
        return cls(
            store,
            settings.key_prefix,
            installed_version,
            canary_lock_ttl_s=settings.canary_lock_ttl,
            rollout_lock_ttl_s=settings.rollout_lock_ttl,
            member_ttl_s=settings.member_ttl,
            hostname=hostname,
        )

    def installed_version(self) -> str:
        return self._installed_version().strip()

    def acquire_lock(self, key: str, tag: str, ttl_s: float) -> bool:
        return self._store.set_if_absent(key, tag, ttl_s)

    def release_lock(self, key: str) -> None:
        self._store.delete(key)

    def try_canary_lock(self, tag: str) -> bool:
        return self.acquire_lock(self.canary_lock_key, tag, self._canary_lock_ttl_s)

    def try_rollout_lock(self, tag: str) -> bool:
        return self.acquire_lock(self.rollout_lock_key, tag, self._rollout_lock_ttl_s)

    def release_canary_lock(self) -> None:
        self.release_lock(self.canary_lock_key)

    def canary_lock_holder(self) -> str | None:
        return self._store.get(self.canary_lock_key)

    def rollout_lock_holder(self) -> str | None:
        return self._store.get(self.rollout_lock_key)

    def get_stable_tag(self) -> str:
        return self._store.get(self.stable_tag_key) or ""

    def set_stable_tag(self, tag: str) -> None:
        self._store.set(self.stable_tag_key, tag)

    def add_avoid_tag(self, tag: str) -> None:
        self._store.set_add(self.avoid_tags_key, tag)

    def list_avoid_tags(self) -> set[str]:
        return self._store.set_members(self.avoid_tags_key)

    def list_members(self) -> set[str]:
        return self._store.set_members(self.members_key)

    def can_install(self, tag: str) -> InstallGate:
        if not tag:
            raise ValueError("tag is empty")
        if tag == self.installed_version():
            return InstallGate.ALREADY_INSTALLED
        if tag in self.list_avoid_tags():
            return InstallGate.AVOID
        return InstallGate.OK

    def rollback_tag(self, pre_deploy_tag: str) -> str:
        target = pre_deploy_tag or self.get_stable_tag()
        if not target:
            raise RollbackError("can't decide rollback tag")
        return target

    def report_self(self, current_version: str | None = None) -> None:
        version = self.installed_version() if current_version is None else current_version
        record = MemberState(current_version=version).model_dump_json(by_alias=True)
        self._store.set_add(self.members_key, self.member_id)
        self._store.set_with_ttl(self.member_id, record, self._member_ttl_s)

    def rollout_progress(self, tag: str) -> RolloutProgress:
        installed = 0
        total = 0
        departed: list[str] = []
        for member in sorted(self.list_members()):
            raw = self._store.get(member)
            if raw is None:
                departed.append(member)
                continue
            total += 1
            try:
                state = MemberState.model_validate_json(raw)
            except ValidationError:
                LOGGER.warning(
                    "member_record_unreadable %s",
                    json.dumps({"member": member}, sort_keys=True),
                )
                continue
            if state.current_version == tag:
                installed += 1
        if departed:
            self._store.set_remove(self.members_key, *departed)
        return RolloutProgress(installed=installed, total=total)
