"""Offset-paginated maintenance batches driven by operators.

Each call processes at most one page and reports ``(processed, next_offset,
done)`` so a client can loop until ``done`` without holding a long
transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time, timezone
from typing import TYPE_CHECKING

from sqlalchemy import delete, select, update

from coordinator.models.asset import Asset
from coordinator.models.queue import ProcessingJob, QueueStatus, RenderJob
from coordinator.models.style_group import StyleGroup
from coordinator.services.datetime_service import format_datetime, now_utc
from coordinator.services.ingest_service import classify_asset
from coordinator.services.style_group_service import (
    assign_style_group,
    rebuild_style_groups,
    recompute_group,
)

if TYPE_CHECKING:
    from collections.abc import Mapping
    from datetime import date

    from sqlalchemy.ext.asyncio import AsyncSession

    from coordinator.services.lookup_service import NameLookup

logger = logging.getLogger(__name__)

PURGED_ERROR = "Asset purged"
ACTIVE_JOB_STATUSES = (
    QueueStatus.PENDING.value,
    QueueStatus.CLAIMED.value,
    QueueStatus.PROCESSING.value,
)


@dataclass(frozen=True)
class BatchResult:
    processed: int
    next_offset: int
    done: bool


async def purge_assets_before(session: AsyncSession, cutoff: date, limit: int) -> BatchResult:
    """Soft-delete live assets whose file date is before ``cutoff``.

    Rows and path history stay; active jobs for purged assets are failed.
    Purged rows leave the result set, so every page starts at offset 0.
    Affected style groups are recomputed (and dropped when emptied).
    """
    threshold = format_datetime(datetime.combine(cutoff, time.min, tzinfo=timezone.utc))
    result = await session.execute(
        select(Asset.id, Asset.style_group_id)
        .where(Asset.is_deleted.is_(False), Asset.modified_at < threshold)
        .order_by(Asset.id)
        .limit(limit)
    )
    rows = list(result.tuples().all())
    if not rows:
        return BatchResult(processed=0, next_offset=0, done=True)

    now = format_datetime(now_utc())
    asset_ids = [asset_id for asset_id, _ in rows]
    group_ids = {group_id for _, group_id in rows if group_id is not None}
    await session.execute(
        update(Asset)
        .where(Asset.id.in_(asset_ids), Asset.is_deleted.is_(False))
        .values(is_deleted=True, style_group_id=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    for model in (ProcessingJob, RenderJob):
        await session.execute(
            update(model)
            .where(model.asset_id.in_(asset_ids), model.status.in_(ACTIVE_JOB_STATUSES))
            .values(status=QueueStatus.FAILED.value, completed_at=now, error_message=PURGED_ERROR)
            .execution_options(synchronize_session=False)
        )
    session.expunge_all()
    for group_id in sorted(group_ids):
        await recompute_group(session, group_id)
    await session.commit()
    logger.info("Purged %d assets modified before %s", len(asset_ids), cutoff.isoformat())
    return BatchResult(processed=len(asset_ids), next_offset=0, done=len(asset_ids) < limit)


async def reclassify_assets(
    session: AsyncSession,
    offset: int,
    limit: int,
    folder_map: Mapping[str, str],
    lookup: NameLookup,
) -> BatchResult:
    """Re-derive path metadata and SKU taxonomy for a page of live assets."""
    result = await session.execute(
        select(Asset)
        .where(Asset.is_deleted.is_(False))
        .order_by(Asset.id)
        .offset(offset)
        .limit(limit)
    )
    assets = list(result.scalars().all())
    now = format_datetime(now_utc())
    for asset in assets:
        values = await classify_asset(asset.relative_path, asset.filename, folder_map, lookup)
        for name, value in values.items():
            setattr(asset, name, value)
        asset.updated_at = now
        await assign_style_group(session, asset)
    await session.commit()
    return BatchResult(
        processed=len(assets), next_offset=offset + len(assets), done=len(assets) < limit
    )


async def rebuild_all_style_groups(session: AsyncSession, offset: int, limit: int) -> BatchResult:
    """Rebuild style groups from scratch, one page of assets per call.

    The first page (``offset == 0``) detaches every asset and drops every
    group before reassigning.
    """
    if offset == 0:
        await session.execute(
            update(Asset)
            .where(Asset.style_group_id.is_not(None))
            .values(style_group_id=None)
            .execution_options(synchronize_session=False)
        )
        await session.execute(delete(StyleGroup))
        await session.commit()
        session.expunge_all()
        logger.info("Cleared style groups for rebuild")

    processed, done = await rebuild_style_groups(session, offset, limit)
    return BatchResult(processed=processed, next_offset=offset + processed, done=done)
