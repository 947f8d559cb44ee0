"""Durable key/value configuration store."""

from __future__ import annotations

from typing import Any

from sqlalchemy import JSON, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from coordinator.models.base import Base


class ConfigEntry(Base):
    """One named configuration record.

    ``version`` increases on every write so that read-modify-write callers
    can condition their update on the version they read.
    """

    __tablename__ = "admin_config"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)
