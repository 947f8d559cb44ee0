"""Singleton scan request."""

from __future__ import annotations

import enum

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from coordinator.models.base import Base

SCAN_REQUEST_NAME = "SCAN_REQUEST"


class ScanRequestStatus(enum.StrEnum):
    IDLE = "idle"
    PENDING = "pending"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


ACTIVE_SCAN_STATUSES = (ScanRequestStatus.PENDING.value, ScanRequestStatus.CLAIMED.value)


class ScanRequest(Base):
    """The one durable "a scan should happen" record, keyed by a fixed name."""

    __tablename__ = "scan_requests"

    name: Mapped[str] = mapped_column(String(32), primary_key=True, default=SCAN_REQUEST_NAME)
    request_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ScanRequestStatus.IDLE.value
    )
    target_agent_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    requested_at: Mapped[str | None] = mapped_column(Text, nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    claimed_at: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)
