"""API routers exposed by the worker."""

from . import health

__all__ = ["health"]
