"""Runtime wiring: builds the shared collaborators once and starts the loops."""

from __future__ import annotations

import json
import logging
import signal
from dataclasses import dataclass
from functools import partial
from threading import Thread

import uvicorn

from canary_releaser.api import create_app
from canary_releaser.canary import CanaryReleaser
from canary_releaser.deploy import Deployer
from canary_releaser.executor import CommandExecutor
from canary_releaser.healthcheck import HealthChecker
from canary_releaser.observability import MetricsStore
from canary_releaser.release_source import GitHubReleaseSource, ReleaseSource
from canary_releaser.rollout import RolloutController
from canary_releaser.runner import ReleaseRunner
from canary_releaser.settings import Settings
from canary_releaser.state import CoordinationState
from canary_releaser.store import SharedStore, create_store

LOGGER = logging.getLogger("canary_releaser.main")


@dataclass(slots=True)
class Runtime:
    settings: Settings
    store: SharedStore
    state: CoordinationState
    release_source: ReleaseSource
    canary: CanaryReleaser
    rollout: RolloutController
    runner: ReleaseRunner
    metrics: MetricsStore

    def close(self) -> None:
        self.runner.close()
        close_source = getattr(self.release_source, "close", None)
        if callable(close_source):
            close_source()
        self.store.close()


def build_state(
    settings: Settings,
    store: SharedStore | None = None,
    executor: CommandExecutor | None = None,
) -> CoordinationState:
    command_executor = executor if executor is not None else CommandExecutor()
    return CoordinationState.from_settings(
        settings,
        store if store is not None else create_store(settings),
        partial(command_executor.query, settings.version_command),
    )


def build_runtime(
    settings: Settings,
    store: SharedStore | None = None,
    release_source: ReleaseSource | None = None,
    executor: CommandExecutor | None = None,
) -> Runtime:
    shared_store = store if store is not None else create_store(settings)
    command_executor = executor if executor is not None else CommandExecutor()
    source = (
        release_source
        if release_source is not None
        else GitHubReleaseSource(
            repo=settings.repo,
            package_name_pattern=settings.package_name_pattern,
            save_assets_path=settings.save_assets_path,
            api_url=settings.github_api,
            token=settings.github_token or None,
        )
    )
    state = build_state(settings, shared_store, command_executor)
    deployer = Deployer(state, source, command_executor, timeout_s=settings.deploy_timeout)
    health_checker = HealthChecker(
        command_executor,
        settings.healthcheck_command,
        timeout_s=settings.healthcheck_timeout,
        interval_s=settings.healthcheck_interval,
        retries=settings.healthcheck_retries,
        window_s=0.0 if settings.once else settings.canary_rollout_window,
    )
    canary = CanaryReleaser(
        state,
        source,
        deployer,
        health_checker,
        deploy_command=settings.deploy_command,
        rollback_command=settings.rollback_command,
        include_prerelease=settings.include_prerelease,
    )
    rollout = RolloutController(state, deployer, deploy_command=settings.deploy_command)
    metrics = MetricsStore()
    runner = ReleaseRunner(
        canary.tick,
        rollout.tick,
        polling_interval_s=settings.repository_polling_interval,
        rollout_interval_s=settings.rollout_window,
        metrics=metrics,
    )
    return Runtime(
        settings=settings,
        store=shared_store,
        state=state,
        release_source=source,
        canary=canary,
        rollout=rollout,
        runner=runner,
        metrics=metrics,
    )


def start_status_server(runtime: Runtime) -> uvicorn.Server:
    config = uvicorn.Config(
        create_app(runtime.state, runtime.metrics),
        host=runtime.settings.status_host,
        port=runtime.settings.status_port,
        log_level="warning",
    )
    server = uvicorn.Server(config)
    Thread(target=server.run, name="status-server", daemon=True).start()
    LOGGER.info(
        "status_server_started %s",
        json.dumps(
            {"host": runtime.settings.status_host, "port": runtime.settings.status_port},
            sort_keys=True,
        ),
    )
    return server


def run(settings: Settings) -> None:
    runtime = build_runtime(settings)
    server: uvicorn.Server | None = None
    try:
        if settings.once:
            runtime.runner.run_once()
            return

        if settings.status_port:
            server = start_status_server(runtime)

        def _signal_handler(_signum: int, _frame: object) -> None:
            runtime.runner.close()

        signal.signal(signal.SIGINT, _signal_handler)
        signal.signal(signal.SIGTERM, _signal_handler)
        runtime.runner.run_forever()
    finally:
        if server is not None:
            server.should_exit = True
        runtime.close()
