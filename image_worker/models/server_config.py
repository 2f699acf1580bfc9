"""Operator-editable server configuration row."""

from __future__ import annotations

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base

CONFIG_ROW_ID = "config"


class ServerConfig(Base):
    """Single-row table holding runtime-tunable limits."""

    __tablename__ = "server_config"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=CONFIG_ROW_ID)
    upload_max_bytes: Mapped[int | None] = mapped_column(BigInteger)
