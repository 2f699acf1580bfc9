"""Prometheus metric definitions for image processing."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

image_jobs_total = Counter(
    "image_jobs_total",
    "Total image processing jobs by outcome.",
    labelnames=["status"],
)

image_job_duration_seconds = Histogram(
    "image_job_duration_seconds",
    "Duration of image processing jobs in seconds.",
)

image_jobs_in_flight = Gauge(
    "image_jobs_in_flight",
    "Image jobs currently being processed by this worker.",
)

transcode_soft_failures_total = Counter(
    "transcode_soft_failures_total",
    "Best-effort transcoding steps that failed without failing the job.",
    labelnames=["stage"],
)

scheduler_poll_failures_total = Counter(
    "scheduler_poll_failures_total",
    "Poll ticks that could not list queued jobs.",
)

__all__ = [
    "image_job_duration_seconds",
    "image_jobs_in_flight",
    "image_jobs_total",
    "scheduler_poll_failures_total",
    "transcode_soft_failures_total",
]
