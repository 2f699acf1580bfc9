"""Status endpoint application for the image worker."""

from __future__ import annotations

from fastapi import FastAPI

from . import __version__
from .api import health
from .tasks.image_tasks import WorkerStats


def create_app(stats: WorkerStats | None = None) -> FastAPI:
    app = FastAPI(title="Image Worker", version=__version__)
    app.state.stats = stats or WorkerStats()
    app.include_router(health.router)
    return app
