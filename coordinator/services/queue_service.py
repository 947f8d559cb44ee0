"""Processing and render queues: enqueue, atomic claims, completion, sweeps."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from coordinator.database import supports_skip_locked
from coordinator.exceptions import NotFoundError
from coordinator.models.asset import Asset
from coordinator.models.queue import JobType, ProcessingJob, QueueStatus, RenderJob
from coordinator.services.datetime_service import format_datetime, now_utc
from coordinator.services.style_group_service import recompute_group

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy import ColumnElement
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

FINISHED_STATUSES = (QueueStatus.COMPLETED.value, QueueStatus.FAILED.value)
ACTIVE_RENDER_STATUSES = (QueueStatus.PENDING.value, QueueStatus.CLAIMED.value)


@dataclass(frozen=True)
class ClaimedJob:
    """A processing job handed to an agent, with what it needs to locate the file."""

    job_id: str
    asset_id: str
    job_type: str
    attempts: int
    relative_path: str
    filename: str
    file_type: str


@dataclass(frozen=True)
class ClaimedRender:
    """A leased render job with the asset fields a render agent needs."""

    job_id: str
    asset_id: str
    attempts: int
    lease_expires_at: str
    relative_path: str
    filename: str
    file_type: str
    reason: str | None


# ── Processing queue ─────────────────────────────────────────────────


async def enqueue_job(session: AsyncSession, asset_id: str, job_type: JobType) -> ProcessingJob:
    """Add a pending job. Flushes but does not commit."""
    job = ProcessingJob(
        asset_id=asset_id,
        job_type=job_type.value,
        status=QueueStatus.PENDING.value,
        attempts=0,
        created_at=format_datetime(now_utc()),
    )
    session.add(job)
    await session.flush()
    return job


async def claim_jobs(session: AsyncSession, agent_id: str, batch_size: int) -> list[ClaimedJob]:
    """Atomically claim up to ``batch_size`` pending jobs, oldest first.

    The claim is one conditional UPDATE, so concurrent callers never receive
    the same job. Commits.
    """
    now = format_datetime(now_utc())
    eligible = (
        select(ProcessingJob.id)
        .where(ProcessingJob.status == QueueStatus.PENDING.value)
        .order_by(ProcessingJob.created_at, ProcessingJob.id)
        .limit(batch_size)
    )
    if supports_skip_locked(session):
        eligible = eligible.with_for_update(skip_locked=True)

    result = await session.execute(
        update(ProcessingJob)
        .where(
            ProcessingJob.id.in_(eligible),
            ProcessingJob.status == QueueStatus.PENDING.value,
        )
        .values(
            status=QueueStatus.CLAIMED.value,
            agent_id=agent_id,
            claimed_at=now,
            attempts=ProcessingJob.attempts + 1,
        )
        .returning(ProcessingJob.id)
        .execution_options(synchronize_session=False)
    )
    claimed_ids = list(result.scalars().all())
    await session.commit()
    if not claimed_ids:
        return []

    rows = await session.execute(
        select(ProcessingJob, Asset)
        .join(Asset, Asset.id == ProcessingJob.asset_id)
        .where(ProcessingJob.id.in_(claimed_ids))
        .order_by(ProcessingJob.created_at, ProcessingJob.id)
        .execution_options(populate_existing=True)
    )
    claimed = [
        ClaimedJob(
            job_id=job.id,
            asset_id=job.asset_id,
            job_type=job.job_type,
            attempts=job.attempts,
            relative_path=asset.relative_path,
            filename=asset.filename,
            file_type=asset.file_type,
        )
        for job, asset in rows.tuples().all()
    ]
    logger.info("Agent %s claimed %d processing jobs", agent_id, len(claimed))
    return claimed


async def complete_job(
    session: AsyncSession, job_id: str, success: bool, error_message: str | None = None
) -> ProcessingJob:
    """Record the outcome of a processing job and commit.

    Completing a job that already finished is a no-op.
    """
    job = await session.get(ProcessingJob, job_id)
    if job is None:
        raise NotFoundError(f"Job {job_id} not found")
    if job.status in FINISHED_STATUSES:
        return job

    job.status = QueueStatus.COMPLETED.value if success else QueueStatus.FAILED.value
    job.completed_at = format_datetime(now_utc())
    job.error_message = None if success else (error_message or "Unknown error")
    await session.commit()
    return job


async def reset_stale_jobs(session: AsyncSession, timeout_minutes: int) -> int:
    """Return jobs claimed longer than ``timeout_minutes`` ago to pending."""
    cutoff = format_datetime(now_utc() - timedelta(minutes=timeout_minutes))
    result = await session.execute(
        update(ProcessingJob)
        .where(
            ProcessingJob.status.in_((QueueStatus.CLAIMED.value, QueueStatus.PROCESSING.value)),
            ProcessingJob.claimed_at < cutoff,
        )
        .values(status=QueueStatus.PENDING.value, agent_id=None, claimed_at=None)
    )
    await session.commit()
    if result.rowcount:
        logger.info("Reset %d stale processing jobs", result.rowcount)
    return result.rowcount


async def retry_failed_jobs(session: AsyncSession) -> int:
    """Requeue failed jobs of live assets, clearing the error and claim fields."""
    live_assets = select(Asset.id).where(Asset.is_deleted.is_(False))
    result = await session.execute(
        update(ProcessingJob)
        .where(
            ProcessingJob.status == QueueStatus.FAILED.value,
            ProcessingJob.asset_id.in_(live_assets),
        )
        .values(
            status=QueueStatus.PENDING.value,
            agent_id=None,
            claimed_at=None,
            completed_at=None,
            error_message=None,
        )
    )
    await session.commit()
    return result.rowcount


async def clear_completed_jobs(session: AsyncSession) -> int:
    result = await session.execute(
        delete(ProcessingJob).where(ProcessingJob.status == QueueStatus.COMPLETED.value)
    )
    await session.commit()
    return result.rowcount


# ── Render queue ─────────────────────────────────────────────────────


async def enqueue_render(
    session: AsyncSession, asset_id: str, reason: str | None = None
) -> RenderJob:
    """Queue a render for ``asset_id`` unless one is already pending or claimed.

    Returns the active job either way. Flushes but does not commit.
    """
    existing = await _active_render(session, asset_id)
    if existing is not None:
        return existing

    job = RenderJob(
        asset_id=asset_id,
        status=QueueStatus.PENDING.value,
        reason=reason,
        attempts=0,
        created_at=format_datetime(now_utc()),
    )
    try:
        async with session.begin_nested():
            session.add(job)
    except IntegrityError:
        # Raced with another enqueue for the same asset.
        existing = await _active_render(session, asset_id)
        if existing is None:
            raise
        return existing
    return job


async def _active_render(session: AsyncSession, asset_id: str) -> RenderJob | None:
    result = await session.execute(
        select(RenderJob).where(
            RenderJob.asset_id == asset_id, RenderJob.status.in_(ACTIVE_RENDER_STATUSES)
        )
    )
    return result.scalar_one_or_none()


def _attempt_ceiling(max_attempts: int) -> ColumnElement[int]:
    return max_attempts * (RenderJob.retries + 1)


def _claimable(now: str, max_attempts: int) -> ColumnElement[bool]:
    return and_(
        RenderJob.attempts < _attempt_ceiling(max_attempts),
        or_(
            RenderJob.status == QueueStatus.PENDING.value,
            and_(
                RenderJob.status == QueueStatus.CLAIMED.value,
                RenderJob.lease_expires_at.is_not(None),
                RenderJob.lease_expires_at < now,
            ),
        ),
    )


async def fail_exhausted_renders(session: AsyncSession, max_attempts: int, now: str) -> int:
    """Fail claimed jobs whose lease lapsed after the last allowed attempt."""
    result = await session.execute(
        update(RenderJob)
        .where(
            RenderJob.status == QueueStatus.CLAIMED.value,
            RenderJob.lease_expires_at < now,
            RenderJob.attempts >= _attempt_ceiling(max_attempts),
        )
        .values(
            status=QueueStatus.FAILED.value,
            lease_expires_at=None,
            completed_at=now,
            error_message="Lease expired on the last allowed attempt",
        )
    )
    if result.rowcount:
        logger.warning("Failed %d render jobs that exhausted their attempts", result.rowcount)
    return result.rowcount


async def claim_render_jobs(
    session: AsyncSession,
    agent_id: str,
    batch_size: int,
    lease_minutes: int,
    max_attempts: int,
    now: datetime | None = None,
) -> list[ClaimedRender]:
    """Lease up to ``batch_size`` render jobs, oldest first.

    Pending jobs and claimed jobs whose lease has expired are eligible while
    their attempt count is below ``max_attempts``. Every claim increments the
    attempt count. Commits.
    """
    current = now or now_utc()
    now_str = format_datetime(current)
    lease_until = format_datetime(current + timedelta(minutes=lease_minutes))

    await fail_exhausted_renders(session, max_attempts, now_str)

    eligible = (
        select(RenderJob.id)
        .where(_claimable(now_str, max_attempts))
        .order_by(RenderJob.created_at, RenderJob.id)
        .limit(batch_size)
    )
    if supports_skip_locked(session):
        eligible = eligible.with_for_update(skip_locked=True)

    result = await session.execute(
        update(RenderJob)
        .where(RenderJob.id.in_(eligible), _claimable(now_str, max_attempts))
        .values(
            status=QueueStatus.CLAIMED.value,
            claimed_by=agent_id,
            claimed_at=now_str,
            lease_expires_at=lease_until,
            attempts=RenderJob.attempts + 1,
        )
        .returning(RenderJob.id)
        .execution_options(synchronize_session=False)
    )
    claimed_ids = list(result.scalars().all())
    await session.commit()
    if not claimed_ids:
        return []

    rows = await session.execute(
        select(RenderJob, Asset)
        .join(Asset, Asset.id == RenderJob.asset_id)
        .where(RenderJob.id.in_(claimed_ids))
        .order_by(RenderJob.created_at, RenderJob.id)
        .execution_options(populate_existing=True)
    )
    leased = [
        ClaimedRender(
            job_id=job.id,
            asset_id=job.asset_id,
            attempts=job.attempts,
            lease_expires_at=lease_until,
            relative_path=asset.relative_path,
            filename=asset.filename,
            file_type=asset.file_type,
            reason=job.reason,
        )
        for job, asset in rows.tuples().all()
    ]
    logger.info("Render agent %s leased %d jobs", agent_id, len(leased))
    return leased


async def complete_render(
    session: AsyncSession,
    job_id: str,
    success: bool,
    thumbnail_url: str | None = None,
    error_message: str | None = None,
) -> RenderJob:
    """Record a render outcome and commit.

    On success with a thumbnail the asset's thumbnail is replaced, its error
    cleared and its style group refreshed. A job that already finished is
    left as it is.
    """
    job = await session.get(RenderJob, job_id)
    if job is None:
        raise NotFoundError(f"Render job {job_id} not found")
    if job.status in FINISHED_STATUSES:
        return job

    now = format_datetime(now_utc())
    job.status = QueueStatus.COMPLETED.value if success else QueueStatus.FAILED.value
    job.completed_at = now
    job.lease_expires_at = None
    job.error_message = None if success else (error_message or "Render failed")

    if success and thumbnail_url:
        asset = await session.get(Asset, job.asset_id)
        if asset is not None:
            asset.thumbnail_url = thumbnail_url
            asset.thumbnail_error = None
            asset.updated_at = now
            await session.flush()
            if asset.style_group_id is not None:
                await recompute_group(session, asset.style_group_id)
    await session.commit()
    return job


async def requeue_render_job(session: AsyncSession, job_id: str) -> RenderJob:
    """Put a finished or stuck render job back in the queue.

    Clears the error, the claim and the completion time. The attempt count is
    kept and the job gets a fresh allowance of attempts on top of it.
    """
    job = await session.get(RenderJob, job_id)
    if job is None:
        raise NotFoundError(f"Render job {job_id} not found")
    asset = await session.get(Asset, job.asset_id)
    if asset is None or asset.is_deleted:
        raise NotFoundError(f"Asset {job.asset_id} not found")
    if job.status == QueueStatus.PENDING.value:
        return job
    other = await _active_render(session, job.asset_id)
    if other is not None and other.id != job.id:
        # Another job already covers this asset.
        return other
    job.status = QueueStatus.PENDING.value
    job.error_message = None
    job.claimed_by = None
    job.claimed_at = None
    job.lease_expires_at = None
    job.completed_at = None
    job.retries += 1
    await session.commit()
    return job


async def clear_failed_renders(session: AsyncSession) -> int:
    result = await session.execute(
        delete(RenderJob).where(RenderJob.status == QueueStatus.FAILED.value)
    )
    await session.commit()
    return result.rowcount


async def _count_by_status(
    session: AsyncSession, model: type[ProcessingJob] | type[RenderJob]
) -> dict[str, int]:
    result = await session.execute(select(model.status, func.count()).group_by(model.status))
    counts = {status.value: 0 for status in QueueStatus}
    for status, count in result.tuples().all():
        counts[status] = count
    return counts


async def render_queue_stats(session: AsyncSession) -> dict[str, int]:
    counts = await _count_by_status(session, RenderJob)
    counts.pop(QueueStatus.PROCESSING.value, None)
    return counts


async def processing_queue_stats(session: AsyncSession) -> dict[str, int]:
    return await _count_by_status(session, ProcessingJob)
