"""Scan request state machine, scan progress and path tests.

There is exactly one scan request row. Its transitions::

    idle/completed/failed/canceled --request--> pending
    pending --claim (one agent wins)--> claimed
    claimed --progress completed/failed--> completed/failed
    pending/claimed --stop--> canceled
    any --reset--> idle

Every transition is a conditional UPDATE on the current status, so two
callers racing for the same transition cannot both succeed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from coordinator.exceptions import ConflictError, NotFoundError
from coordinator.models.agent import AgentRegistration, AgentType
from coordinator.models.base import new_uuid
from coordinator.models.scan_request import (
    ACTIVE_SCAN_STATUSES,
    SCAN_REQUEST_NAME,
    ScanRequest,
    ScanRequestStatus,
)
from coordinator.schemas.config import (
    INGESTION_PROGRESS_KEY,
    PATH_TEST_REQUEST_KEY,
    PATH_TEST_RESULT_KEY,
    SCAN_CHECKPOINT_KEY,
    SCAN_PROGRESS_KEY,
    PathTestRequest,
)
from coordinator.services.agent_service import (
    COMMAND_FLAGS,
    FLAG_FORCE_STOP,
    FLAG_SCAN_ABORT,
    set_agent_flags,
)
from coordinator.services.config_service import delete_raw, get_many, get_raw, set_raw
from coordinator.services.datetime_service import format_datetime, now_utc, parse_stored

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

STALE_SCAN_ACTION = "Reset scan state"
TERMINAL_PROGRESS_STATUSES = (ScanRequestStatus.COMPLETED.value, ScanRequestStatus.FAILED.value)


@dataclass(frozen=True)
class ScanStatus:
    request: ScanRequest
    progress: dict[str, Any] | None
    stale: bool
    action: str | None
    ingestion: dict[str, Any] | None = None


async def get_scan_request(session: AsyncSession) -> ScanRequest:
    """Load the singleton request, creating it idle on first use."""
    request = await session.get(ScanRequest, SCAN_REQUEST_NAME, populate_existing=True)
    if request is not None:
        return request

    request = ScanRequest(
        name=SCAN_REQUEST_NAME,
        status=ScanRequestStatus.IDLE.value,
        updated_at=format_datetime(now_utc()),
    )
    try:
        async with session.begin_nested():
            session.add(request)
    except IntegrityError:
        request = await session.get(ScanRequest, SCAN_REQUEST_NAME, populate_existing=True)
        if request is None:
            raise
    return request


async def request_scan(session: AsyncSession, target_agent_id: str | None = None) -> ScanRequest:
    """Ask for a new scan. Refused while another request is pending or claimed."""
    if target_agent_id is not None:
        if await session.get(AgentRegistration, target_agent_id) is None:
            raise NotFoundError(f"Agent {target_agent_id} not found")
    await get_scan_request(session)
    now = format_datetime(now_utc())
    result = await session.execute(
        update(ScanRequest)
        .where(
            ScanRequest.name == SCAN_REQUEST_NAME,
            ScanRequest.status.not_in(ACTIVE_SCAN_STATUSES),
        )
        .values(
            request_id=new_uuid(),
            status=ScanRequestStatus.PENDING.value,
            target_agent_id=target_agent_id,
            requested_at=now,
            claimed_by=None,
            claimed_at=None,
            completed_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise ConflictError(
            "A scan is already pending or running",
            action="Stop the current scan or reset scan state",
        )
    await session.commit()
    request = await get_scan_request(session)
    logger.info("Scan %s requested (target=%s)", request.request_id, target_agent_id or "any")
    return request


async def claim_scan_request(
    session: AsyncSession, agent_id: str, stop_flag_set: bool
) -> str | None:
    """Try to claim the pending request for ``agent_id``.

    Returns the scan session id on success and ``None`` when there is nothing
    to claim, the request targets another agent, the agent is stopped or a
    concurrent caller won. Commits only when the claim succeeds.
    """
    if stop_flag_set:
        return None
    current = await session.get(ScanRequest, SCAN_REQUEST_NAME, populate_existing=True)
    if current is None or current.status != ScanRequestStatus.PENDING.value:
        return None

    now = format_datetime(now_utc())
    result = await session.execute(
        update(ScanRequest)
        .where(
            ScanRequest.name == SCAN_REQUEST_NAME,
            ScanRequest.status == ScanRequestStatus.PENDING.value,
            ScanRequest.request_id == current.request_id,
            or_(ScanRequest.target_agent_id.is_(None), ScanRequest.target_agent_id == agent_id),
        )
        .values(
            status=ScanRequestStatus.CLAIMED.value,
            claimed_by=agent_id,
            claimed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        return None
    await session.commit()
    logger.info("Agent %s claimed scan %s", agent_id, current.request_id)
    return current.request_id


async def release_scan_claim(session: AsyncSession, agent_id: str, request_id: str) -> bool:
    """Put a claim that never reached its agent back to pending.

    Only the claimant's own still-claimed request is touched; a request that
    was canceled or reset meanwhile stays as it is. Commits.
    """
    now = format_datetime(now_utc())
    result = await session.execute(
        update(ScanRequest)
        .where(
            ScanRequest.name == SCAN_REQUEST_NAME,
            ScanRequest.status == ScanRequestStatus.CLAIMED.value,
            ScanRequest.request_id == request_id,
            ScanRequest.claimed_by == agent_id,
        )
        .values(
            status=ScanRequestStatus.PENDING.value,
            claimed_by=None,
            claimed_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    released = result.rowcount == 1
    if released:
        logger.warning("Scan %s released by agent %s before delivery", request_id, agent_id)
    return released


async def report_scan_progress(
    session: AsyncSession,
    session_id: str,
    status: str,
    counters: dict[str, Any],
    current_path: str | None,
) -> None:
    """Store the latest progress report and finish the request it belongs to."""
    now = format_datetime(now_utc())
    await set_raw(
        session,
        SCAN_PROGRESS_KEY,
        {
            "session_id": session_id,
            "status": status,
            "counters": counters,
            "current_path": current_path,
            "updated_at": now,
        },
    )
    if status in TERMINAL_PROGRESS_STATUSES:
        result = await session.execute(
            update(ScanRequest)
            .where(
                ScanRequest.name == SCAN_REQUEST_NAME,
                ScanRequest.request_id == session_id,
                ScanRequest.status.in_(ACTIVE_SCAN_STATUSES),
            )
            .values(status=status, completed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info("Scan %s finished: %s", session_id, status)
    await session.commit()


async def report_ingestion_progress(session: AsyncSession, processed: int, total: int) -> None:
    """Store how far an agent has got through its current ingest backlog."""
    now = format_datetime(now_utc())
    await set_raw(
        session,
        INGESTION_PROGRESS_KEY,
        {"processed": processed, "total": total, "updated_at": now},
    )
    await session.commit()


async def stop_scan(session: AsyncSession) -> int:
    """Cancel any active request and tell every bridge agent to stop.

    Returns the number of agents flagged.
    """
    now = format_datetime(now_utc())
    await get_scan_request(session)
    await session.execute(
        update(ScanRequest)
        .where(
            ScanRequest.name == SCAN_REQUEST_NAME,
            ScanRequest.status.in_(ACTIVE_SCAN_STATUSES),
        )
        .values(status=ScanRequestStatus.CANCELED.value, completed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    flagged = await set_agent_flags(
        session,
        {FLAG_FORCE_STOP: True, FLAG_SCAN_ABORT: True},
        agent_type=AgentType.BRIDGE,
    )
    logger.info("Scan stopped; %d bridge agents flagged", flagged)
    return flagged


async def resume_scanning(session: AsyncSession) -> int:
    """Clear the stop flags on every agent so ingestion is accepted again."""
    return await set_agent_flags(session, {FLAG_FORCE_STOP: False, FLAG_SCAN_ABORT: False})


async def reset_scan_state(session: AsyncSession) -> None:
    """Return to a clean slate: idle request, no checkpoint, no progress, no flags."""
    await get_scan_request(session)
    now = format_datetime(now_utc())
    await session.execute(
        update(ScanRequest)
        .where(ScanRequest.name == SCAN_REQUEST_NAME)
        .values(
            status=ScanRequestStatus.IDLE.value,
            request_id=None,
            target_agent_id=None,
            claimed_by=None,
            claimed_at=None,
            completed_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await delete_raw(session, SCAN_CHECKPOINT_KEY, SCAN_PROGRESS_KEY, INGESTION_PROGRESS_KEY)
    await session.commit()
    await set_agent_flags(session, dict.fromkeys(COMMAND_FLAGS, False))
    logger.info("Scan state reset")


def _is_stale(
    request: ScanRequest, progress: dict[str, Any] | None, now: datetime, limit: int
) -> bool:
    def older_than_limit(value: str | None) -> bool:
        stamp = parse_stored(value)
        return stamp is not None and (now - stamp).total_seconds() > limit

    if request.status == ScanRequestStatus.CLAIMED.value:
        if progress and progress.get("session_id") == request.request_id:
            return older_than_limit(progress.get("updated_at"))
        return older_than_limit(request.claimed_at)
    if progress and progress.get("status") == "running":
        return older_than_limit(progress.get("updated_at"))
    return False


async def scan_status(
    session: AsyncSession, stale_after_seconds: int, now: datetime | None = None
) -> ScanStatus:
    """Current request and progress, flagged stale when nothing moved recently."""
    request = await get_scan_request(session)
    stored = await get_many(session, [SCAN_PROGRESS_KEY, INGESTION_PROGRESS_KEY])
    progress = stored.get(SCAN_PROGRESS_KEY)
    stale = _is_stale(request, progress, now or now_utc(), stale_after_seconds)
    return ScanStatus(
        request=request,
        progress=progress,
        stale=stale,
        action=STALE_SCAN_ACTION if stale else None,
        ingestion=stored.get(INGESTION_PROGRESS_KEY),
    )


# ── Path tests ───────────────────────────────────────────────────────


async def request_path_test(
    session: AsyncSession,
    host_path: str | None = None,
    container_mount_root: str | None = None,
    scan_roots: list[str] | None = None,
) -> PathTestRequest:
    """Queue a path test for the next bridge heartbeat, replacing any older one."""
    request = PathTestRequest(
        request_id=new_uuid(),
        requested_at=format_datetime(now_utc()),
        host_path=host_path,
        container_mount_root=container_mount_root,
        scan_roots=scan_roots,
    )
    await set_raw(session, PATH_TEST_REQUEST_KEY, request.model_dump(mode="json"))
    await delete_raw(session, PATH_TEST_RESULT_KEY)
    await session.commit()
    return request


async def pending_path_test(session: AsyncSession) -> PathTestRequest | None:
    value = await get_raw(session, PATH_TEST_REQUEST_KEY)
    if not value:
        return None
    request = PathTestRequest.model_validate(value)
    return request if request.status == "pending" else None


async def report_path_test(
    session: AsyncSession, request_id: str, results: dict[str, Any]
) -> None:
    """Store an agent's path test results and close the matching request."""
    now = format_datetime(now_utc())
    await set_raw(
        session, PATH_TEST_RESULT_KEY, {**results, "request_id": request_id, "tested_at": now}
    )
    current = await get_raw(session, PATH_TEST_REQUEST_KEY)
    if current and current.get("request_id") == request_id:
        await set_raw(session, PATH_TEST_REQUEST_KEY, {**current, "status": "completed"})
    await session.commit()


async def path_test_state(session: AsyncSession) -> dict[str, Any]:
    stored = await get_many(session, [PATH_TEST_REQUEST_KEY, PATH_TEST_RESULT_KEY])
    return {
        "request": stored.get(PATH_TEST_REQUEST_KEY),
        "result": stored.get(PATH_TEST_RESULT_KEY),
    }
