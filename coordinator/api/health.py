"""Health check endpoint: database reachability plus scan and queue backlog."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.api.deps import get_session
from coordinator.models.queue import QueueStatus
from coordinator.models.scan_request import SCAN_REQUEST_NAME, ScanRequest, ScanRequestStatus
from coordinator.services.queue_service import processing_queue_stats, render_queue_stats

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class QueueBacklog(BaseModel):
    pending: int
    failed: int


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    scan: str | None = None
    jobs: QueueBacklog | None = None
    renders: QueueBacklog | None = None


def _backlog(counts: dict[str, int]) -> QueueBacklog:
    return QueueBacklog(
        pending=counts.get(QueueStatus.PENDING.value, 0),
        failed=counts.get(QueueStatus.FAILED.value, 0),
    )


@router.get("/api/health", response_model=HealthResponse)
async def health_check(
    session: Annotated[AsyncSession, Depends(get_session)],
) -> HealthResponse:
    """Liveness, database round trip, scan request state and queue backlog.

    Read-only: a missing scan request reports ``idle`` without creating it.
    """
    try:
        scan = await session.scalar(
            select(ScanRequest.status).where(ScanRequest.name == SCAN_REQUEST_NAME)
        )
        jobs = await processing_queue_stats(session)
        renders = await render_queue_stats(session)
    except SQLAlchemyError:
        logger.warning("Health check database query failed", exc_info=True)
        return HealthResponse(status="degraded", version="0.1.0", database="error")

    return HealthResponse(
        status="ok",
        version="0.1.0",
        database="ok",
        scan=scan or ScanRequestStatus.IDLE.value,
        jobs=_backlog(jobs),
        renders=_backlog(renders),
    )
