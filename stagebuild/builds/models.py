"""Build ORM models.

This module defines the BuildRecord model storing one row per pipeline
run: what was built, which fingerprint it used, whether the dependency
cache was reused, and where it failed if it did.
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from stagebuild.db import Base
from stagebuild.types import BuildStatus


class BuildRecord(Base):
    """ORM model for pipeline run records.

    Attributes:
        id: Primary key.
        name: Image name from the pipeline file.
        fingerprint: Manifest fingerprint (None if fingerprinting failed).
        status: Run status (pending, running, succeeded, failed).
        requested_at: Timestamp when the run was requested.
        started_at: Timestamp when the run started.
        finished_at: Timestamp when the run finished.
        is_cache_hit: Whether the dependency pass was skipped.
        artifact_sha256: SHA-256 of the shipped executable.
        image_id: Content identity of the published image.
        image_path: Published image directory.
        log_dir: Directory holding the per-pass toolchain logs.
        error_code: Stable error code if the run failed.
        error_stage: Stage that failed.
        error_message: Error message if the run failed.
    """

    __tablename__ = "build_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    fingerprint: Mapped[str | None] = mapped_column(
        String(128), nullable=True, index=True
    )

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildStatus.PENDING.value, index=True
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    is_cache_hit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    artifact_sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    image_id: Mapped[str | None] = mapped_column(String(80), nullable=True)
    image_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    log_dir: Mapped[str | None] = mapped_column(String(500), nullable=True)

    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_build_records_name_status", "name", "status"),)

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        fp = (self.fingerprint or "")[:16]
        return (
            f"<BuildRecord(id={self.id}, name='{self.name}', "
            f"status='{self.status}', fingerprint='{fp}...')>"
        )

    def mark_running(self) -> None:
        """Mark this run as running."""
        self.status = BuildStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self) -> None:
        """Mark this run as succeeded."""
        self.status = BuildStatus.SUCCEEDED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self,
        error_code: str | None = None,
        stage: str | None = None,
        message: str | None = None,
    ) -> None:
        """Mark this run as failed.

        Args:
            error_code: Stable error code.
            stage: Stage that failed.
            message: Error message details.
        """
        self.status = BuildStatus.FAILED.value
        self.finished_at = datetime.now()
        if error_code:
            self.error_code = error_code
        if stage:
            self.error_stage = stage
        if message:
            self.error_message = message

    def is_succeeded(self) -> bool:
        """Check if this run succeeded."""
        return self.status == BuildStatus.SUCCEEDED.value


__all__ = ["BuildRecord"]
