"""Agent registration and pairing models."""

from __future__ import annotations

import enum
from typing import Any

from sqlalchemy import JSON, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from coordinator.models.base import Base, new_uuid


class AgentType(enum.StrEnum):
    BRIDGE = "bridge"
    RENDER = "render"


class PairingStatus(enum.StrEnum):
    PENDING = "pending"
    CONSUMED = "consumed"
    EXPIRED = "expired"


class AgentRegistration(Base):
    """A paired worker process.

    ``state`` holds what the agent last reported (counters, history, health,
    version info) plus the operator command flags delivered on heartbeat.
    It is always replaced as a whole, never mutated in place, and every
    update is conditioned on ``state_version`` (optimistic locking).
    """

    __tablename__ = "agent_registrations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    agent_name: Mapped[str] = mapped_column(String(100), nullable=False)
    agent_type: Mapped[str] = mapped_column(String(16), nullable=False)
    agent_key_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    last_heartbeat: Mapped[str | None] = mapped_column(Text, nullable=True)
    state: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)

    __mapper_args__ = {"version_id_col": state_version}


class AgentPairing(Base):
    """Short-lived single-use code exchanged for an agent key."""

    __tablename__ = "agent_pairings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pairing_code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    agent_type: Mapped[str] = mapped_column(String(16), nullable=False)
    agent_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=PairingStatus.PENDING.value
    )
    expires_at: Mapped[str] = mapped_column(Text, nullable=False)
    consumed_at: Mapped[str | None] = mapped_column(Text, nullable=True)
    agent_registration_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)
