"""Polling scheduler and process entrypoint for the image worker."""

from __future__ import annotations

import asyncio
import functools
import signal
import threading
from collections.abc import Awaitable, Callable
from time import monotonic

import structlog
import uvicorn

from ..core.config import Settings, get_settings
from ..core.logging import configure_logging
from ..core.storage import build_storage
from ..db import create_db_engine, create_session_factory
from ..main import create_app
from ..services.codec import PillowCodec
from ..services.job_repository import JobRepository
from ..services.lifecycle import JobLifecycle
from ..services.metrics import scheduler_poll_failures_total
from ..services.redis_repository import RedisJobRepository
from ..services.sql_repository import SqlJobRepository
from ..services.transcode import TranscodePolicy
from .image_tasks import JobOutcome, WorkerStats, process_image_job

LOGGER = structlog.get_logger(__name__)

JobRunner = Callable[[str], Awaitable[JobOutcome]]


class Scheduler:
    """Fixed-interval poller that launches one task per claimed job.

    ``stats.in_flight`` bounds concurrency. A job id stays in ``_claimed``
    until its task finishes, so overlapping ticks never launch it twice.
    """

    def __init__(
        self,
        lifecycle: JobLifecycle,
        runner: JobRunner,
        *,
        concurrency: int,
        poll_interval: float,
        stats: WorkerStats | None = None,
        lease_seconds: int = 0,
    ) -> None:
        self.lifecycle = lifecycle
        self.repository: JobRepository = lifecycle.repository
        self.runner = runner
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.stats = stats or WorkerStats()
        self.lease_seconds = lease_seconds
        self._claimed: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._stopping = asyncio.Event()
        self._last_reclaim: float | None = None

    @property
    def in_flight(self) -> int:
        return self.stats.in_flight

    async def tick(self) -> list[asyncio.Task[None]]:
        """Claim up to the free capacity of queued jobs, oldest first."""

        await self._maybe_reclaim()

        capacity = self.concurrency - self.stats.in_flight
        if capacity <= 0:
            return []
        try:
            queued = await asyncio.to_thread(self.repository.list_queued, capacity)
        except Exception as exc:
            scheduler_poll_failures_total.inc()
            LOGGER.warning("poll_failed", error=str(exc))
            return []

        launched: list[asyncio.Task[None]] = []
        for item in queued:
            if self.stats.in_flight >= self.concurrency:
                break
            if item.job_id in self._claimed:
                continue
            self._claimed.add(item.job_id)
            self.stats.job_started()
            task = asyncio.create_task(self._run_one(item.job_id), name=f"image-job-{item.job_id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            launched.append(task)
        return launched

    async def _run_one(self, job_id: str) -> None:
        try:
            await self.runner(job_id)
        except Exception as exc:
            LOGGER.warning("tick_error", job_id=job_id, error=str(exc))
        finally:
            self._claimed.discard(job_id)
            self.stats.job_finished()

    async def _maybe_reclaim(self) -> None:
        if self.lease_seconds <= 0:
            return
        interval = max(self.lease_seconds / 4, self.poll_interval)
        now = monotonic()
        if self._last_reclaim is not None and now - self._last_reclaim < interval:
            return
        self._last_reclaim = now
        try:
            await asyncio.to_thread(
                self.lifecycle.reclaim_stale, self.lease_seconds, frozenset(self._claimed)
            )
        except Exception as exc:
            LOGGER.warning("reclaim_failed", error=str(exc))

    async def run(self) -> None:
        """Tick every ``poll_interval`` until :meth:`stop`, then drain in-flight jobs."""

        LOGGER.info(
            "image_worker_polling_started",
            concurrency=self.concurrency,
            poll_interval=self.poll_interval,
        )
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception as exc:
                LOGGER.warning("poll_error", error=str(exc))
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        await self.wait_idle()
        LOGGER.info("image_worker_polling_stopped", **self.stats.snapshot())

    def stop(self) -> None:
        self._stopping.set()

    async def wait_idle(self) -> None:
        """Wait until every launched job task has finished."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def build_repository(settings: Settings) -> JobRepository:
    """Construct the job repository selected by ``JOB_STORE``."""

    if settings.job_store == "redis":
        return RedisJobRepository.from_url(settings.redis_url)
    engine = create_db_engine(settings.database_url)
    return SqlJobRepository(create_session_factory(engine))


def build_scheduler(settings: Settings, stats: WorkerStats) -> Scheduler:
    storage = build_storage(settings)
    lifecycle = JobLifecycle(build_repository(settings))
    policy = TranscodePolicy(
        storage,
        settings.s3_bucket,
        PillowCodec(settings.max_input_pixels),
        thumbnail_width=settings.thumbnail_width,
        thumbnail_quality=settings.thumbnail_quality,
        transcode_quality=settings.transcode_quality,
    )
    runner = functools.partial(process_image_job, lifecycle=lifecycle, policy=policy, stats=stats)
    return Scheduler(
        lifecycle,
        runner,
        concurrency=settings.concurrency,
        poll_interval=settings.poll_interval,
        stats=stats,
        lease_seconds=settings.processing_lease_seconds,
    )


def _start_health_server(settings: Settings, stats: WorkerStats) -> tuple[uvicorn.Server, threading.Thread]:
    config = uvicorn.Config(
        create_app(stats),
        host=settings.health_host,
        port=settings.health_port,
        log_config=None,
        access_log=False,
    )
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, name="health-server", daemon=True)
    thread.start()
    LOGGER.info("health_server_started", port=settings.health_port)
    return server, thread


async def serve(settings: Settings) -> None:
    stats = WorkerStats()
    scheduler = build_scheduler(settings, stats)
    server, thread = _start_health_server(settings, stats)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, scheduler.stop)
        except NotImplementedError:  # pragma: no cover - Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(scheduler.stop))

    try:
        await scheduler.run()
    finally:
        server.should_exit = True
        await asyncio.to_thread(thread.join, 5)


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, json=settings.log_json)
    LOGGER.info(
        "image_worker_starting",
        storage_backend=settings.storage_backend,
        job_store=settings.job_store,
        concurrency=settings.concurrency,
        poll_ms=settings.poll_ms,
    )
    asyncio.run(serve(settings))


if __name__ == "__main__":
    main()


__all__ = ["Scheduler", "build_repository", "build_scheduler", "main", "serve"]
