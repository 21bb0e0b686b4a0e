"""Read-only HTTP status surface for a releaser node."""

from __future__ import annotations

from fastapi import FastAPI

from canary_releaser import __version__
from canary_releaser.models import MetricsResponse, ProgressResponse, StatusResponse
from canary_releaser.observability import MetricsStore
from canary_releaser.state import CoordinationState


def collect_status(state: CoordinationState) -> StatusResponse:
    stable_tag = state.get_stable_tag()
    progress = None
    if stable_tag:
        counts = state.rollout_progress(stable_tag)
        progress = ProgressResponse(
            tag=stable_tag, installed=counts.installed, total=counts.total
        )
    return StatusResponse(
        key_prefix=state.key_prefix,
        member_id=state.member_id,
        stable_tag=stable_tag or None,
        canary_lock=state.canary_lock_holder(),
        rollout_lock=state.rollout_lock_holder(),
        avoid_tags=sorted(state.list_avoid_tags()),
        members=sorted(state.list_members()),
        progress=progress,
    )


def create_app(state: CoordinationState, metrics: MetricsStore | None = None) -> FastAPI:
    tick_metrics = metrics if metrics is not None else MetricsStore()

    app = FastAPI(
        title="Canary Releaser",
        version=__version__,
        description="Fleet canary release coordination status.",
    )

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok", "service": "canary-releaser", "version": __version__}

    @app.get("/v0/status", response_model=StatusResponse)
    def status() -> StatusResponse:
        # Sync handler: store calls block, so FastAPI runs this in its threadpool.
        return collect_status(state)

    @app.get("/v0/metrics", response_model=MetricsResponse)
    async def metrics_snapshot() -> MetricsResponse:
        return MetricsResponse(snapshot=tick_metrics.snapshot())

    return app
