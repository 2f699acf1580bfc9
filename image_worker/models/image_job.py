"""Image job model for tracking transcoding work."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class ImageJob(Base):
    """One unit of transcoding work on an uploaded file."""

    __tablename__ = "image_jobs"
    __table_args__ = (Index("ix_image_jobs_status_created_at", "status", "created_at"),)

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    file_id: Mapped[str] = mapped_column(ForeignKey("files.file_id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="queued")
    raw_object_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    raw_content_type: Mapped[str] = mapped_column(String(255), nullable=False)
    raw_size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
