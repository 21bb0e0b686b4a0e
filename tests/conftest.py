from __future__ import annotations

import logging
from collections.abc import Iterator

import pytest

from canary_releaser.canary import CanaryReleaser
from canary_releaser.deploy import Deployer
from canary_releaser.executor import CommandError
from canary_releaser.healthcheck import HealthChecker
from canary_releaser.logs import shutdown_logging
from canary_releaser.release_source import AssetsCannotDownloadError, AssetsNotFoundError
from canary_releaser.rollout import RolloutController
from canary_releaser.state import CoordinationState
from canary_releaser.store import InMemoryStore

PREFIX = "acme/widget"
CANARY_LOCK_TTL_S = 600.0
ROLLOUT_LOCK_TTL_S = 60.0
MEMBER_TTL_S = 120.0


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += max(0.0, seconds)


class FakeExecutor:
    """Records invocations; deploy/rollback install the tag, health results are scripted."""

    def __init__(self, installed: str = "v1.0.0") -> None:
        self.installed = installed
        self.calls: list[tuple[str, str, str]] = []
        self.health_results: list[bool] = []
        self.failing_commands: set[str] = set()

    def run(
        self,
        command: str,
        tag: str,
        asset_file: str,
        timeout_s: float | None = None,
    ) -> str:
        self.calls.append((command, tag, asset_file))
        if command in self.failing_commands:
            raise CommandError(f"{command} failed", output=f"{command} boom", returncode=1)
        if command == "health":
            ok = self.health_results.pop(0) if self.health_results else True
            if not ok:
                raise CommandError("health failed", output=f"unhealthy {tag}", returncode=1)
            return "healthy"
        if command in {"deploy", "rollback"}:
            self.installed = tag
        return ""

    def query(self, command: str, timeout_s: float | None = None) -> str:
        return self.installed

    def commands(self) -> list[str]:
        return [command for command, _, _ in self.calls]


class FakeReleaseSource:
    def __init__(self, latest: str = "v1.1.0") -> None:
        self.latest = latest
        self.unreachable = False
        self.missing_assets: set[str] = set()
        self.downloads: list[str] = []

    def fetch_latest(self, include_prerelease: bool) -> str:
        if self.unreachable:
            raise AssetsCannotDownloadError("github unreachable")
        return self.latest

    def download_asset(self, tag: str) -> tuple[str, str]:
        if tag in self.missing_assets:
            raise AssetsNotFoundError(f"no asset for {tag}")
        self.downloads.append(tag)
        return tag, f"/var/lib/gacr/widget-{tag}.tar.gz"


def make_state(
    store: InMemoryStore,
    executor: FakeExecutor,
    hostname: str = "node-a",
) -> CoordinationState:
    return CoordinationState(
        store,
        PREFIX,
        lambda: executor.query("version"),
        canary_lock_ttl_s=CANARY_LOCK_TTL_S,
        rollout_lock_ttl_s=ROLLOUT_LOCK_TTL_S,
        member_ttl_s=MEMBER_TTL_S,
        hostname=hostname,
    )


def make_canary(
    state: CoordinationState,
    source: FakeReleaseSource,
    executor: FakeExecutor,
    clock: FakeClock,
    rollback_command: str = "rollback",
    window_s: float = 0.0,
) -> CanaryReleaser:
    checker = HealthChecker(
        executor,  # type: ignore[arg-type]
        "health",
        timeout_s=1.0,
        interval_s=1.0,
        retries=3,
        window_s=window_s,
        clock=clock.monotonic,
        sleep=clock.sleep,
    )
    return CanaryReleaser(
        state,
        source,
        Deployer(state, source, executor),  # type: ignore[arg-type]
        checker,
        deploy_command="deploy",
        rollback_command=rollback_command,
    )


def make_rollout(
    state: CoordinationState,
    source: FakeReleaseSource,
    executor: FakeExecutor,
) -> RolloutController:
    return RolloutController(
        state,
        Deployer(state, source, executor),  # type: ignore[arg-type]
        deploy_command="deploy",
    )


@pytest.fixture(autouse=True)
def _reset_package_logger() -> Iterator[None]:
    yield
    shutdown_logging()
    logger = logging.getLogger("canary_releaser")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryStore:
    return InMemoryStore(clock=clock.monotonic)


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def source() -> FakeReleaseSource:
    return FakeReleaseSource()


@pytest.fixture
def state(store: InMemoryStore, executor: FakeExecutor) -> CoordinationState:
    return make_state(store, executor)
