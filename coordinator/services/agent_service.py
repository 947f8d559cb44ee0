"""Agent pairing, key authentication, state updates and revocation."""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.orm.exc import StaleDataError

from coordinator.exceptions import ConflictError, NotFoundError
from coordinator.models.agent import AgentPairing, AgentRegistration, AgentType, PairingStatus
from coordinator.services.auth_service import hash_token
from coordinator.services.datetime_service import format_datetime, now_utc, parse_stored

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# No 0/O or 1/I/L: codes are read aloud and typed by hand.
PAIRING_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
PAIRING_GROUP_LENGTH = 4
AGENT_KEY_PREFIX = "dam_"
STATE_UPDATE_ATTEMPTS = 5

# Command flags kept in AgentRegistration.state.
FLAG_FORCE_STOP = "force_stop"
FLAG_SCAN_ABORT = "scan_abort"
FLAG_CHECK_UPDATE = "check_update"
FLAG_APPLY_UPDATE = "apply_update"
COMMAND_FLAGS = (FLAG_FORCE_STOP, FLAG_SCAN_ABORT, FLAG_CHECK_UPDATE, FLAG_APPLY_UPDATE)


def generate_pairing_code() -> str:
    """Return a code such as ``K7QM-3XPA``."""
    groups = (
        "".join(secrets.choice(PAIRING_ALPHABET) for _ in range(PAIRING_GROUP_LENGTH))
        for _ in range(2)
    )
    return "-".join(groups)


def normalize_pairing_code(code: str) -> str:
    compact = "".join(ch for ch in code.upper() if ch.isalnum())
    return f"{compact[:PAIRING_GROUP_LENGTH]}-{compact[PAIRING_GROUP_LENGTH:]}"


async def create_pairing(
    session: AsyncSession,
    agent_type: AgentType,
    agent_name: str | None,
    ttl_minutes: int,
) -> AgentPairing:
    """Issue a single-use pairing code."""
    now = now_utc()
    pairing = AgentPairing(
        pairing_code=generate_pairing_code(),
        agent_type=agent_type.value,
        agent_name=agent_name,
        status=PairingStatus.PENDING.value,
        expires_at=format_datetime(now + timedelta(minutes=ttl_minutes)),
        created_at=format_datetime(now),
    )
    session.add(pairing)
    await session.commit()
    logger.info("Issued %s pairing code expiring in %d minutes", agent_type.value, ttl_minutes)
    return pairing


async def pair_agent(
    session: AsyncSession, pairing_code: str, agent_name: str | None
) -> tuple[AgentRegistration, str]:
    """Exchange a pending pairing code for a new agent registration.

    Returns the registration and the plaintext agent key, which is shown
    exactly once. Consumption is conditioned on the code still being
    pending, so a retried request cannot register twice.

    Raises NotFoundError for unknown codes and ConflictError for expired or
    already consumed ones.
    """
    code = normalize_pairing_code(pairing_code)
    result = await session.execute(select(AgentPairing).where(AgentPairing.pairing_code == code))
    pairing = result.scalar_one_or_none()
    if pairing is None:
        raise NotFoundError("Invalid pairing code")

    now = format_datetime(now_utc())
    if pairing.status == PairingStatus.PENDING.value and pairing.expires_at <= now:
        await session.execute(
            update(AgentPairing)
            .where(
                AgentPairing.id == pairing.id,
                AgentPairing.status == PairingStatus.PENDING.value,
            )
            .values(status=PairingStatus.EXPIRED.value)
        )
        await session.commit()
        raise ConflictError("Pairing code has expired", action="Generate a new pairing code")

    consumed = await session.execute(
        update(AgentPairing)
        .where(
            AgentPairing.id == pairing.id,
            AgentPairing.status == PairingStatus.PENDING.value,
            AgentPairing.expires_at > now,
        )
        .values(status=PairingStatus.CONSUMED.value, consumed_at=now)
    )
    if consumed.rowcount != 1:
        await session.rollback()
        raise ConflictError(
            "Pairing code has already been used or expired",
            action="Generate a new pairing code",
        )

    agent_key = AGENT_KEY_PREFIX + secrets.token_urlsafe(32)
    agent = AgentRegistration(
        agent_name=agent_name or pairing.agent_name or f"{pairing.agent_type}-agent",
        agent_type=pairing.agent_type,
        agent_key_hash=hash_token(agent_key),
        state={},
        created_at=now,
    )
    session.add(agent)
    await session.flush()
    await session.execute(
        update(AgentPairing)
        .where(AgentPairing.id == pairing.id)
        .values(agent_registration_id=agent.id)
    )
    await session.commit()
    logger.info("Paired %s agent %s (%s)", agent.agent_type, agent.agent_name, agent.id)
    return agent, agent_key


async def authenticate_agent(session: AsyncSession, agent_key: str) -> AgentRegistration | None:
    """Look up the agent owning ``agent_key`` by its SHA-256 hash."""
    result = await session.execute(
        select(AgentRegistration).where(AgentRegistration.agent_key_hash == hash_token(agent_key))
    )
    return result.scalar_one_or_none()


async def mutate_agent_state(
    session: AsyncSession,
    agent_id: str,
    mutate: Callable[[AgentRegistration, dict[str, Any]], dict[str, Any]],
) -> AgentRegistration:
    """Apply ``mutate`` to an agent's state under optimistic locking and commit.

    ``mutate`` receives the freshly loaded agent and a copy of its state and
    returns the new state; it may also set plain columns on the agent. On a
    concurrent update the agent is reloaded and ``mutate`` runs again.
    """
    for attempt in range(1, STATE_UPDATE_ATTEMPTS + 1):
        agent = await session.get(AgentRegistration, agent_id, populate_existing=True)
        if agent is None:
            raise NotFoundError(f"Agent {agent_id} not found")
        agent.state = mutate(agent, dict(agent.state or {}))
        try:
            await session.commit()
        except StaleDataError:
            await session.rollback()
            logger.debug("Agent %s state changed concurrently (attempt %d)", agent_id, attempt)
            continue
        return agent
    raise ConflictError(
        "Agent state is being updated too frequently", action="Retry the request"
    )


async def set_agent_flags(
    session: AsyncSession,
    flags: dict[str, bool],
    *,
    agent_ids: list[str] | None = None,
    agent_type: AgentType | None = None,
) -> int:
    """Set command flags on the selected agents (all agents by default)."""
    stmt = select(AgentRegistration.id)
    if agent_ids is not None:
        stmt = stmt.where(AgentRegistration.id.in_(agent_ids))
    if agent_type is not None:
        stmt = stmt.where(AgentRegistration.agent_type == agent_type.value)
    ids = list((await session.execute(stmt)).scalars().all())

    def _apply(_agent: AgentRegistration, state: dict[str, Any]) -> dict[str, Any]:
        state.update(flags)
        return state

    for agent_id in ids:
        await mutate_agent_state(session, agent_id, _apply)
    return len(ids)


async def list_agents(session: AsyncSession) -> list[AgentRegistration]:
    result = await session.execute(
        select(AgentRegistration).order_by(AgentRegistration.created_at)
    )
    return list(result.scalars().all())


def is_online(agent: AgentRegistration, now: datetime, offline_after_seconds: int) -> bool:
    last = parse_stored(agent.last_heartbeat)
    return last is not None and (now - last).total_seconds() <= offline_after_seconds


async def revoke_agent(session: AsyncSession, agent_id: str) -> None:
    """Delete an agent registration; its key stops working immediately."""
    agent = await session.get(AgentRegistration, agent_id)
    if agent is None:
        raise NotFoundError(f"Agent {agent_id} not found")
    await session.delete(agent)
    await session.commit()
    logger.info("Revoked agent %s (%s)", agent.agent_name, agent_id)
