"""Agent-facing endpoints: pairing, heartbeat, ingestion, queues, scan reports.

Every endpoint except ``/pair`` requires the ``X-Agent-Key`` header.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import TYPE_CHECKING, Annotated, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.api.auth import check_rate_limit, get_client_ip, record_failure_and_check
from coordinator.api.deps import get_name_lookup, get_session, get_settings, require_agent
from coordinator.config import Settings
from coordinator.database import run_with_retry
from coordinator.exceptions import ConflictError, NotFoundError
from coordinator.models.agent import AgentRegistration, AgentType
from coordinator.models.asset import Asset
from coordinator.schemas.agent import (
    HeartbeatRequest,
    HeartbeatResponse,
    IngestionProgressRequest,
    OkResponse,
    PairRequest,
    PairResponse,
    PathTestReport,
    ScanProgressRequest,
)
from coordinator.schemas.ingest import (
    AssetResponse,
    CheckChangedRequest,
    CheckChangedResponse,
    IngestBatchItem,
    IngestBatchRequest,
    IngestBatchResponse,
    IngestRequest,
    IngestResponse,
    MoveAssetRequest,
    UpdateAssetRequest,
)
from coordinator.schemas.jobs import (
    ClaimedJobResponse,
    ClaimedRenderResponse,
    JobClaimRequest,
    JobClaimResponse,
    JobCompleteRequest,
    JobStatusResponse,
    RenderClaimRequest,
    RenderClaimResponse,
    RenderCompleteRequest,
    RenderQueueRequest,
)
from coordinator.services.agent_service import FLAG_FORCE_STOP, FLAG_SCAN_ABORT, pair_agent
from coordinator.services.heartbeat_service import process_heartbeat
from coordinator.services.ingest_service import (
    check_changed,
    ingest_file,
    load_ingest_context,
    move_asset,
    update_asset_fields,
)
from coordinator.services.lookup_service import NameLookup
from coordinator.services.queue_service import (
    claim_jobs,
    claim_render_jobs,
    complete_job,
    complete_render,
    enqueue_render,
)
from coordinator.services.rate_limit_service import InMemoryRateLimiter
from coordinator.services.scan_service import (
    report_ingestion_progress,
    report_path_test,
    report_scan_progress,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")

router = APIRouter(prefix="/api/agent", tags=["agent"])

SCANNING_STOPPED_DETAIL = (
    "Scanning is stopped for this agent. Resume scanning from the admin console to ingest files."
)
BATCH_STORAGE_ERROR = "Database temporarily unavailable, retry this file"


async def _with_retry(
    session: AsyncSession, settings: Settings, operation: Callable[[AsyncSession], Awaitable[T]]
) -> T:
    return await run_with_retry(
        session,
        operation,
        attempts=settings.db_retry_attempts,
        base_delay=settings.db_retry_base_delay_seconds,
    )


def _require_scanning_allowed(agent: AgentRegistration) -> None:
    state = agent.state or {}
    if state.get(FLAG_FORCE_STOP) or state.get(FLAG_SCAN_ABORT):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=SCANNING_STOPPED_DETAIL)


def _require_render_agent(agent: AgentRegistration) -> None:
    if agent.agent_type != AgentType.RENDER.value:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Render jobs can only be claimed by render agents",
        )


# ── Pairing & heartbeat ──────────────────────────────────────────────


@router.post("/pair", response_model=PairResponse, status_code=201)
async def pair(
    body: PairRequest,
    request: Request,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> PairResponse:
    """Exchange a pairing code for an agent key."""
    limiter: InMemoryRateLimiter = request.app.state.pairing_limiter
    client_key = f"pair:{get_client_ip(request)}"
    check_rate_limit(limiter, client_key, "Too many failed pairing attempts")

    try:
        agent, agent_key = await pair_agent(session, body.pairing_code, body.agent_name)
    except (NotFoundError, ConflictError):
        record_failure_and_check(limiter, client_key, "Too many failed pairing attempts")
        raise

    limiter.clear(client_key)
    return PairResponse(
        agent_id=agent.id,
        agent_name=agent.agent_name,
        agent_type=AgentType(agent.agent_type),
        agent_key=agent_key,
    )


@router.post("/heartbeat", response_model=HeartbeatResponse)
async def heartbeat(
    body: HeartbeatRequest,
    agent: Annotated[AgentRegistration, Depends(require_agent)],
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> HeartbeatResponse:
    """Record agent health and return directives plus pending commands."""
    agent_id = agent.id
    return await _with_retry(
        session, settings, lambda s: process_heartbeat(s, agent_id, body, settings)
    )


# ── Ingestion ────────────────────────────────────────────────────────


@router.post("/ingest", response_model=IngestResponse)
async def ingest(
    body: IngestRequest,
    agent: Annotated[AgentRegistration, Depends(require_agent)],
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    lookup: Annotated[NameLookup, Depends(get_name_lookup)],
) -> IngestResponse:
    """Create, update or move the asset for one observed file."""
    _require_scanning_allowed(agent)
    context = await load_ingest_context(session, lookup, settings.ingest_max_attempts)
    result = await _with_retry(session, settings, lambda s: ingest_file(s, body, context))
    return IngestResponse(action=result.action, asset_id=result.asset_id, reason=result.reason)


@router.post("/ingest-batch", response_model=IngestBatchResponse)
async def ingest_batch(
    body: IngestBatchRequest,
    agent: Annotated[AgentRegistration, Depends(require_agent)],
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    lookup: Annotated[NameLookup, Depends(get_name_lookup)],
) -> IngestBatchResponse:
    """Ingest files one at a time; a bad file only fails its own entry."""
    agent_id = agent.id
    _require_scanning_allowed(agent)
    context = await load_ingest_context(session, lookup, settings.ingest_max_attempts)

    results: list[IngestBatchItem] = []
    counts: Counter[str] = Counter()
    for index, raw in enumerate(body.files):
        path = raw.get("relative_path") if isinstance(raw, dict) else None
        item = IngestBatchItem(index=index, relative_path=path if isinstance(path, str) else None)
        try:
            file = IngestRequest.model_validate(raw)
            item.relative_path = file.relative_path
            result = await _with_retry(
                session, settings, lambda s, f=file: ingest_file(s, f, context)
            )
        except ValidationError as exc:
            item.error = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'file'}: {err['msg']}"
                for err in exc.errors()
            )
        except (ValueError, ConflictError, NotFoundError) as exc:
            await session.rollback()
            item.error = str(exc)
        except OperationalError:
            await session.rollback()
            logger.warning("Storage error ingesting batch entry %d (%s)", index, item.relative_path)
            item.error = BATCH_STORAGE_ERROR
        else:
            item.action = result.action
            item.asset_id = result.asset_id
        counts[item.action.value if item.action is not None else "error"] += 1
        results.append(item)

    logger.info("Agent %s ingested batch of %d: %s", agent_id, len(results), dict(counts))
    return IngestBatchResponse(results=results, counts=dict(counts))


@router.post("/check-changed", response_model=CheckChangedResponse)
async def check_changed_files(
    body: CheckChangedRequest,
    agent: Annotated[AgentRegistration, Depends(require_agent)],
    session: Annotated[AsyncSession, Depends(get_session)],
) -> CheckChangedResponse:
    """Report which of the given files need to be (re)ingested."""
    changed = await check_changed(session, body.files)
    return CheckChangedResponse(changed=changed, unchanged_count=len(body.files) - len(changed))


@router.post("/move-asset", response_model=AssetResponse)
async def move_asset_endpoint(
    body: MoveAssetRequest,
    agent: Annotated[AgentRegistration, Depends(require_agent)],
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    lookup: Annotated[NameLookup, Depends(get_name_lookup)],
) -> AssetResponse:
    """Relocate an asset the agent saw moving on disk."""
    _require_scanning_allowed(agent)
    context = await load_ingest_context(session, lookup, settings.ingest_max_attempts)
    asset = await move_asset(session, body.asset_id, body.new_relative_path, context)
    return AssetResponse.model_validate(asset)


@router.post("/update-asset", response_model=AssetResponse)
async def update_asset(
    body: UpdateAssetRequest,
    agent: Annotated[AgentRegistration, Depends(require_agent)],
    session: Annotated[AsyncSession, Depends(get_session)],
) -> AssetResponse:
    """Patch allow-listed fields of an existing asset."""
    asset = await update_asset_fields(session, body.asset_id, body.fields)
    return AssetResponse.model_validate(asset)


# ── Scan reports ─────────────────────────────────────────────────────


@router.post("/scan-progress", response_model=OkResponse)
async def scan_progress(
    body: ScanProgressRequest,
    agent: Annotated[AgentRegistration, Depends(require_agent)],
    session: Annotated[AsyncSession, Depends(get_session)],
) -> OkResponse:
    await report_scan_progress(
        session, body.session_id, body.status, body.counters, body.current_path
    )
    return OkResponse()


@router.post("/ingestion-progress", response_model=OkResponse)
async def ingestion_progress(
    body: IngestionProgressRequest,
    agent: Annotated[AgentRegistration, Depends(require_agent)],
    session: Annotated[AsyncSession, Depends(get_session)],
) -> OkResponse:
    await report_ingestion_progress(session, body.processed, body.total)
    return OkResponse()


@router.post("/report-path-test", response_model=OkResponse)
async def report_path_test_endpoint(
    body: PathTestReport,
    agent: Annotated[AgentRegistration, Depends(require_agent)],
    session: Annotated[AsyncSession, Depends(get_session)],
) -> OkResponse:
    await report_path_test(session, body.request_id, body.results)
    return OkResponse()


# ── Processing jobs ──────────────────────────────────────────────────


@router.post("/jobs/claim", response_model=JobClaimResponse)
async def claim_processing_jobs(
    body: JobClaimRequest,
    agent: Annotated[AgentRegistration, Depends(require_agent)],
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> JobClaimResponse:
    """Claim pending post-processing jobs. An empty list means nothing to do."""
    agent_id = agent.id
    batch_size = min(body.batch_size, settings.job_claim_max_batch)
    jobs = await _with_retry(session, settings, lambda s: claim_jobs(s, agent_id, batch_size))
    return JobClaimResponse(
        jobs=[ClaimedJobResponse.model_validate(job, from_attributes=True) for job in jobs]
    )


@router.post("/jobs/complete", response_model=JobStatusResponse)
async def complete_processing_job(
    body: JobCompleteRequest,
    agent: Annotated[AgentRegistration, Depends(require_agent)],
    session: Annotated[AsyncSession, Depends(get_session)],
) -> JobStatusResponse:
    job = await complete_job(session, body.job_id, body.success, body.error_message)
    return JobStatusResponse(job_id=job.id, status=job.status, error_message=job.error_message)


# ── Render jobs ──────────────────────────────────────────────────────


@router.post("/renders/queue", response_model=JobStatusResponse)
async def queue_render(
    body: RenderQueueRequest,
    agent: Annotated[AgentRegistration, Depends(require_agent)],
    session: Annotated[AsyncSession, Depends(get_session)],
) -> JobStatusResponse:
    """Ask for a server-side render; returns the already active job if any."""
    asset = await session.get(Asset, body.asset_id)
    if asset is None or asset.is_deleted:
        raise NotFoundError(f"Asset {body.asset_id} not found")
    job = await enqueue_render(session, body.asset_id, body.reason)
    await session.commit()
    return JobStatusResponse(job_id=job.id, status=job.status, error_message=job.error_message)


@router.post("/renders/claim", response_model=RenderClaimResponse)
async def claim_renders(
    body: RenderClaimRequest,
    agent: Annotated[AgentRegistration, Depends(require_agent)],
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> RenderClaimResponse:
    """Lease render jobs. An empty list means nothing to do."""
    _require_render_agent(agent)
    agent_id = agent.id
    jobs = await _with_retry(
        session,
        settings,
        lambda s: claim_render_jobs(
            s,
            agent_id,
            body.batch_size,
            settings.render_lease_minutes,
            settings.render_max_attempts,
        ),
    )
    return RenderClaimResponse(
        jobs=[ClaimedRenderResponse.model_validate(job, from_attributes=True) for job in jobs]
    )


@router.post("/renders/complete", response_model=JobStatusResponse)
async def complete_render_job(
    body: RenderCompleteRequest,
    agent: Annotated[AgentRegistration, Depends(require_agent)],
    session: Annotated[AsyncSession, Depends(get_session)],
) -> JobStatusResponse:
    job = await complete_render(
        session, body.job_id, body.success, body.thumbnail_url, body.error_message
    )
    return JobStatusResponse(job_id=job.id, status=job.status, error_message=job.error_message)
