"""Domain and API models for the canary releaser."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CycleOutcome(StrEnum):
    NOOP = "noop"
    ALREADY_INSTALLED = "already_installed"
    AVOID_TAG = "avoid_tag"
    LOCK_NOT_ACQUIRED = "lock_not_acquired"
    NO_MATCHING_ASSET = "no_matching_asset"
    DOWNLOAD_FAILED = "download_failed"
    ROLLBACK_PERFORMED = "rollback_performed"
    NO_ROLLBACK_AVAILABLE = "no_rollback_available"
    SUCCESS = "success"


class InstallGate(StrEnum):
    OK = "ok"
    ALREADY_INSTALLED = "already_installed"
    AVOID = "avoid"


class MemberState(BaseModel):
    # Field name matches the record layout other fleet members already write.
    model_config = ConfigDict(populate_by_name=True)

    current_version: str = Field(default="", alias="CurrentVersion")


@dataclass(frozen=True, slots=True)
class RolloutProgress:
    installed: int
    total: int

    def __str__(self) -> str:
        return f"{self.installed}/{self.total}"


@dataclass(frozen=True, slots=True)
class DeployedRelease:
    tag: str
    asset_file: str


class ProgressResponse(BaseModel):
    tag: str
    installed: int
    total: int


class StatusResponse(BaseModel):
    key_prefix: str
    member_id: str
    stable_tag: str | None
    canary_lock: str | None
    rollout_lock: str | None
    avoid_tags: list[str]
    members: list[str]
    progress: ProgressResponse | None = None


class MetricsResponse(BaseModel):
    snapshot: dict[str, Any]
