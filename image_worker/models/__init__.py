"""ORM models exposed for easy imports."""

from .base import Base
from .file import File
from .image_job import ImageJob
from .server_config import CONFIG_ROW_ID, ServerConfig

__all__ = [
    "Base",
    "CONFIG_ROW_ID",
    "File",
    "ImageJob",
    "ServerConfig",
]
