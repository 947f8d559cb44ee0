"""Admin endpoints: agent fleet, scan control, config, queues, maintenance."""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.api.deps import get_name_lookup, get_session, get_settings, require_admin
from coordinator.config import Settings
from coordinator.exceptions import NotFoundError
from coordinator.models.agent import AgentRegistration, AgentType
from coordinator.models.user import User
from coordinator.schemas.admin import (
    AgentListResponse,
    AgentSummary,
    AgentUpdateRequest,
    BatchResponse,
    ConfigValueResponse,
    FlagUpdateResponse,
    MaintenanceRequest,
    PathTestCreateRequest,
    PathTestStateResponse,
    PurgeRequest,
    ScanRequestCreate,
    ScanRequestResponse,
    ScanStatusResponse,
)
from coordinator.schemas.agent import OkResponse, PairingCodeCreateRequest, PairingCodeResponse
from coordinator.schemas.config import ConfigKey, PathTestRequest, WorkflowFolderMap
from coordinator.schemas.jobs import CountResponse, JobStatusResponse, QueueStatsResponse
from coordinator.services.agent_service import (
    COMMAND_FLAGS,
    FLAG_APPLY_UPDATE,
    FLAG_CHECK_UPDATE,
    create_pairing,
    is_online,
    list_agents,
    revoke_agent,
    set_agent_flags,
)
from coordinator.services.config_service import (
    get_raw,
    load_record,
    parse_record,
    record_model,
    redact_record,
    save_record,
)
from coordinator.services.datetime_service import now_utc
from coordinator.services.lookup_service import NameLookup
from coordinator.services.maintenance_service import (
    BatchResult,
    purge_assets_before,
    rebuild_all_style_groups,
    reclassify_assets,
)
from coordinator.services.queue_service import (
    clear_completed_jobs,
    clear_failed_renders,
    processing_queue_stats,
    render_queue_stats,
    requeue_render_job,
    reset_stale_jobs,
    retry_failed_jobs,
)
from coordinator.services.scan_service import (
    path_test_state,
    request_path_test,
    request_scan,
    reset_scan_state,
    resume_scanning,
    scan_status,
    stop_scan,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


def _agent_summary(agent: AgentRegistration, online: bool) -> AgentSummary:
    state: dict[str, Any] = agent.state or {}
    return AgentSummary(
        id=agent.id,
        agent_name=agent.agent_name,
        agent_type=agent.agent_type,
        last_heartbeat=agent.last_heartbeat,
        online=online,
        last_counters=state.get("last_counters") or {},
        last_error=state.get("last_error"),
        health=state.get("health"),
        version_info=state.get("version_info"),
        flags={flag: bool(state.get(flag)) for flag in COMMAND_FLAGS},
        created_at=agent.created_at,
    )


def _batch_response(result: BatchResult) -> BatchResponse:
    return BatchResponse(
        processed=result.processed, next_offset=result.next_offset, done=result.done
    )


# ── Agents ───────────────────────────────────────────────────────────


@router.post("/pairing-codes", response_model=PairingCodeResponse, status_code=201)
async def create_pairing_code(
    body: PairingCodeCreateRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    _user: Annotated[User, Depends(require_admin)],
) -> PairingCodeResponse:
    """Issue a single-use code an agent exchanges for its key."""
    pairing = await create_pairing(
        session, body.agent_type, body.agent_name, settings.pairing_code_ttl_minutes
    )
    return PairingCodeResponse(
        pairing_code=pairing.pairing_code,
        agent_type=AgentType(pairing.agent_type),
        expires_at=pairing.expires_at,
    )


@router.get("/agents", response_model=AgentListResponse)
async def get_agents(
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    _user: Annotated[User, Depends(require_admin)],
) -> AgentListResponse:
    now = now_utc()
    agents = await list_agents(session)
    return AgentListResponse(
        agents=[
            _agent_summary(agent, is_online(agent, now, settings.agent_offline_after_seconds))
            for agent in agents
        ]
    )


@router.delete("/agents/{agent_id}", status_code=204)
async def delete_agent(
    agent_id: str,
    session: Annotated[AsyncSession, Depends(get_session)],
    _user: Annotated[User, Depends(require_admin)],
) -> None:
    await revoke_agent(session, agent_id)


@router.post("/agents/{agent_id}/update", response_model=FlagUpdateResponse)
async def request_agent_update(
    agent_id: str,
    body: AgentUpdateRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    _user: Annotated[User, Depends(require_admin)],
) -> FlagUpdateResponse:
    """Flag an agent to check for or apply an update on its next heartbeat."""
    if await session.get(AgentRegistration, agent_id) is None:
        raise NotFoundError(f"Agent {agent_id} not found")
    flag = FLAG_CHECK_UPDATE if body.action == "check" else FLAG_APPLY_UPDATE
    updated = await set_agent_flags(session, {flag: True}, agent_ids=[agent_id])
    logger.info("Agent %s flagged for %s update", agent_id, body.action)
    return FlagUpdateResponse(agents_updated=updated)


# ── Scan control ─────────────────────────────────────────────────────


@router.get("/scan", response_model=ScanStatusResponse)
async def get_scan_status(
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    _user: Annotated[User, Depends(require_admin)],
) -> ScanStatusResponse:
    current = await scan_status(session, settings.scan_stale_seconds)
    return ScanStatusResponse(
        request=ScanRequestResponse.model_validate(current.request),
        progress=current.progress,
        stale=current.stale,
        action=current.action,
        ingestion=current.ingestion,
    )


@router.post("/scan/request", response_model=ScanRequestResponse, status_code=201)
async def create_scan_request(
    session: Annotated[AsyncSession, Depends(get_session)],
    _user: Annotated[User, Depends(require_admin)],
    body: Annotated[ScanRequestCreate | None, Body()] = None,
) -> ScanRequestResponse:
    """Ask a bridge agent (any, or the given one) to start a scan."""
    target = body.target_agent_id if body is not None else None
    request = await request_scan(session, target)
    return ScanRequestResponse.model_validate(request)


@router.post("/scan/stop", response_model=FlagUpdateResponse)
async def stop_scanning(
    session: Annotated[AsyncSession, Depends(get_session)],
    _user: Annotated[User, Depends(require_admin)],
) -> FlagUpdateResponse:
    return FlagUpdateResponse(agents_updated=await stop_scan(session))


@router.post("/scan/resume", response_model=FlagUpdateResponse)
async def resume(
    session: Annotated[AsyncSession, Depends(get_session)],
    _user: Annotated[User, Depends(require_admin)],
) -> FlagUpdateResponse:
    return FlagUpdateResponse(agents_updated=await resume_scanning(session))


@router.post("/scan/reset", response_model=OkResponse)
async def reset_scan(
    session: Annotated[AsyncSession, Depends(get_session)],
    _user: Annotated[User, Depends(require_admin)],
) -> OkResponse:
    """Clear a stuck scan: idle request, no checkpoint or progress, no flags."""
    await reset_scan_state(session)
    return OkResponse()


@router.post("/path-test", response_model=PathTestRequest, status_code=201)
async def create_path_test(
    body: PathTestCreateRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    _user: Annotated[User, Depends(require_admin)],
) -> PathTestRequest:
    """Ask the next bridge heartbeat to verify the configured scan paths."""
    return await request_path_test(
        session, body.host_path, body.container_mount_root, body.scan_roots
    )


@router.get("/path-test", response_model=PathTestStateResponse)
async def get_path_test(
    session: Annotated[AsyncSession, Depends(get_session)],
    _user: Annotated[User, Depends(require_admin)],
) -> PathTestStateResponse:
    return PathTestStateResponse(**await path_test_state(session))


# ── Config ───────────────────────────────────────────────────────────


@router.get("/config/{key}", response_model=ConfigValueResponse)
async def get_config(
    key: str,
    session: Annotated[AsyncSession, Depends(get_session)],
    _user: Annotated[User, Depends(require_admin)],
) -> ConfigValueResponse:
    record_model(key)
    record = await load_record(session, ConfigKey(key))
    return ConfigValueResponse(key=key, value=redact_record(record))


@router.put("/config/{key}", response_model=ConfigValueResponse)
async def put_config(
    key: str,
    body: Annotated[dict[str, Any], Body()],
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    _user: Annotated[User, Depends(require_admin)],
) -> ConfigValueResponse:
    """Replace a typed config record. Invalid values are rejected with 422."""
    record_model(key)
    record = await save_record(session, ConfigKey(key), body, settings.secret_key)
    return ConfigValueResponse(key=key, value=redact_record(record))


# ── Processing queue ─────────────────────────────────────────────────


@router.get("/jobs/stats", response_model=QueueStatsResponse)
async def get_job_stats(
    session: Annotated[AsyncSession, Depends(get_session)],
    _user: Annotated[User, Depends(require_admin)],
) -> QueueStatsResponse:
    return QueueStatsResponse(counts=await processing_queue_stats(session))


@router.post("/jobs/reset-stale", response_model=CountResponse)
async def reset_stale(
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    _user: Annotated[User, Depends(require_admin)],
) -> CountResponse:
    count = await reset_stale_jobs(session, settings.job_stale_timeout_minutes)
    return CountResponse(count=count)


@router.post("/jobs/retry-failed", response_model=CountResponse)
async def retry_failed(
    session: Annotated[AsyncSession, Depends(get_session)],
    _user: Annotated[User, Depends(require_admin)],
) -> CountResponse:
    return CountResponse(count=await retry_failed_jobs(session))


@router.post("/jobs/clear-completed", response_model=CountResponse)
async def clear_completed(
    session: Annotated[AsyncSession, Depends(get_session)],
    _user: Annotated[User, Depends(require_admin)],
) -> CountResponse:
    return CountResponse(count=await clear_completed_jobs(session))


# ── Render queue ─────────────────────────────────────────────────────


@router.get("/renders/stats", response_model=QueueStatsResponse)
async def get_render_stats(
    session: Annotated[AsyncSession, Depends(get_session)],
    _user: Annotated[User, Depends(require_admin)],
) -> QueueStatsResponse:
    return QueueStatsResponse(counts=await render_queue_stats(session))


@router.post("/renders/{job_id}/requeue", response_model=JobStatusResponse)
async def requeue_render(
    job_id: str,
    session: Annotated[AsyncSession, Depends(get_session)],
    _user: Annotated[User, Depends(require_admin)],
) -> JobStatusResponse:
    job = await requeue_render_job(session, job_id)
    return JobStatusResponse(job_id=job.id, status=job.status, error_message=job.error_message)


@router.post("/renders/clear-failed", response_model=CountResponse)
async def clear_failed(
    session: Annotated[AsyncSession, Depends(get_session)],
    _user: Annotated[User, Depends(require_admin)],
) -> CountResponse:
    return CountResponse(count=await clear_failed_renders(session))


# ── Maintenance ──────────────────────────────────────────────────────


@router.post("/maintenance/purge", response_model=BatchResponse)
async def purge(
    body: PurgeRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    _user: Annotated[User, Depends(require_admin)],
) -> BatchResponse:
    """Permanently delete one page of assets whose file date is before the cutoff."""
    limit = min(body.limit or settings.batch_limit, settings.batch_limit)
    return _batch_response(await purge_assets_before(session, body.cutoff_date, limit))


@router.post("/maintenance/reclassify", response_model=BatchResponse)
async def reclassify(
    body: MaintenanceRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    lookup: Annotated[NameLookup, Depends(get_name_lookup)],
    _user: Annotated[User, Depends(require_admin)],
) -> BatchResponse:
    """Re-derive path metadata and SKU names for one page of assets."""
    limit = min(body.limit or settings.batch_limit, settings.batch_limit)
    stored = await get_raw(session, ConfigKey.WORKFLOW_FOLDERS.value)
    folders = parse_record(WorkflowFolderMap, stored)
    result = await reclassify_assets(session, body.offset, limit, folders.as_mapping(), lookup)
    return _batch_response(result)


@router.post("/maintenance/rebuild-style-groups", response_model=BatchResponse)
async def rebuild_groups(
    body: MaintenanceRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    _user: Annotated[User, Depends(require_admin)],
) -> BatchResponse:
    """Rebuild style groups page by page; offset 0 starts from scratch."""
    limit = min(body.limit or settings.batch_limit, settings.batch_limit)
    return _batch_response(await rebuild_all_style_groups(session, body.offset, limit))
