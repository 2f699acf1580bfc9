"""Health check and status endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["health"])


@router.get("/")
@router.get("/health")
def status(request: Request) -> dict[str, int | str]:
    """Return cumulative processed and error counts plus current in-flight jobs."""

    return {"status": "ok", **request.app.state.stats.snapshot()}


@router.get("/health/live")
def liveness() -> dict[str, str]:
    """Return a liveness indicator."""

    return {"status": "live"}


@router.get("/metrics")
def metrics() -> Response:
    """Expose Prometheus metrics."""

    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
