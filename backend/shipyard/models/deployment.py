from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from shipyard.db.base import Base
from shipyard.models.common import deployment_uuid, utcnow


class Deployment(Base):
    __tablename__ = "deployments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=deployment_uuid)
    mode: Mapped[str] = mapped_column(String(16))
    revision: Mapped[str] = mapped_column(String(255))
    migration_policy: Mapped[str] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(32), index=True)
    release_id: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    previous_release_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    live_release_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    switched: Mapped[bool] = mapped_column(Boolean, default=False)
    failure_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    trace_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_deployments_started_at", "started_at"),
    )
