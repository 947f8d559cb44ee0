"""Ingestion pipeline: scanner observations -> canonical asset rows.

Every observed file ends in exactly one of five outcomes: skipped (OS junk),
rejected (outside the allowed subfolders), moved (known content at a new
path), updated (known path) or created. Moves are applied with a
compare-and-set on the old path, and creation relies on the partial unique
index over live paths, so concurrent ingests of the same file converge on
one asset. Lost races are retried a bounded number of times.

Follow-up work (queue jobs, render requests, style group assignment) is
best-effort: it runs in a savepoint and a failure is logged without failing
the ingest.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from coordinator.exceptions import ConflictError, NotFoundError
from coordinator.models.asset import Asset, AssetPathHistory
from coordinator.models.queue import JobType
from coordinator.schemas.config import ConfigKey, ScanningConfig, WorkflowFolderMap
from coordinator.schemas.ingest import IngestAction
from coordinator.services.config_service import get_many, parse_record
from coordinator.services.datetime_service import format_datetime, now_utc
from coordinator.services.path_service import (
    DEFAULT_WORKFLOW_FOLDER_MAP,
    derive_path_metadata,
    is_in_allowed_subfolders,
    is_junk,
)
from coordinator.services.queue_service import enqueue_job, enqueue_render
from coordinator.services.sku_service import classify_filename, division_for
from coordinator.services.style_group_service import assign_style_group, recompute_group

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from coordinator.schemas.ingest import (
        AssetFieldsUpdate,
        ChangedFileEntry,
        IngestRequest,
    )
    from coordinator.services.lookup_service import NameLookup

logger = logging.getLogger(__name__)

RENDER_REASON_THUMBNAIL_ERROR = "thumbnail_error"


class _LostRace(Exception):
    """The row changed between read and conditional write."""


@dataclass(frozen=True)
class IngestContext:
    """Per-request inputs shared by every file of an ingest call."""

    lookup: NameLookup
    folder_map: Mapping[str, str] = field(default_factory=lambda: DEFAULT_WORKFLOW_FOLDER_MAP)
    allowed_subfolders: Sequence[str] = ()
    max_attempts: int = 3


@dataclass(frozen=True)
class IngestResult:
    action: IngestAction
    asset_id: str | None = None
    reason: str | None = None


async def load_ingest_context(
    session: AsyncSession, lookup: NameLookup, max_attempts: int
) -> IngestContext:
    """Read the scope and folder-map config once per request."""
    stored = await get_many(session, [ConfigKey.SCANNING.value, ConfigKey.WORKFLOW_FOLDERS.value])
    scanning = parse_record(ScanningConfig, stored.get(ConfigKey.SCANNING.value))
    folders = parse_record(WorkflowFolderMap, stored.get(ConfigKey.WORKFLOW_FOLDERS.value))
    return IngestContext(
        lookup=lookup,
        folder_map=folders.as_mapping(),
        allowed_subfolders=tuple(scanning.allowed_subfolders),
        max_attempts=max_attempts,
    )


async def classify_asset(
    relative_path: str, filename: str, folder_map: Mapping[str, str], lookup: NameLookup
) -> dict[str, Any]:
    """Column values derived from the path and the filename's SKU.

    The path decides licensing when it passes through a "Character Licensed"
    folder; otherwise the SKU lookup does. Names found in the path take
    precedence over names from the lookup.
    """
    path_meta = derive_path_metadata(relative_path, folder_map)
    parsed = await classify_filename(filename, lookup)

    values: dict[str, Any] = {
        "workflow_status": path_meta.workflow_status,
        "is_licensed": path_meta.is_licensed,
        "licensor_name": path_meta.licensor_name,
        "property_name": path_meta.property_name,
        "licensor_code": None,
        "property_code": None,
        "sku": None,
        "mg01_code": None,
        "mg01_name": None,
        "mg02_code": None,
        "mg02_name": None,
        "mg03_code": None,
        "mg03_name": None,
        "size_code": None,
        "size_name": None,
        "sku_sequence": None,
        "product_category": None,
        "division_code": None,
        "division_name": None,
    }
    if parsed is None:
        return values

    codes = parsed.codes
    is_licensed = path_meta.is_licensed or parsed.is_licensed
    division_code, division_name = division_for(codes.mg01_code, is_licensed)
    values.update(
        is_licensed=is_licensed,
        licensor_name=path_meta.licensor_name or parsed.licensor_name,
        property_name=path_meta.property_name or parsed.property_name,
        licensor_code=codes.licensor_code,
        property_code=codes.property_code,
        sku=codes.sku,
        mg01_code=codes.mg01_code,
        mg01_name=codes.mg01_name,
        mg02_code=codes.mg02_code,
        mg02_name=codes.mg02_name,
        mg03_code=codes.mg03_code,
        mg03_name=codes.mg03_name,
        size_code=codes.size_code,
        size_name=codes.size_name,
        sku_sequence=codes.sku_sequence,
        product_category=codes.product_category,
        division_code=division_code,
        division_name=division_name,
    )
    return values


def thumbnail_changes(
    current_url: str | None,
    incoming_url: str | None,
    incoming_error: str | None,
) -> dict[str, Any]:
    """Thumbnail columns to write; a good thumbnail is never replaced by an error."""
    if incoming_url:
        return {"thumbnail_url": incoming_url, "thumbnail_error": None}
    if incoming_error and not current_url:
        return {"thumbnail_error": incoming_error}
    return {}


def _file_values(request: IngestRequest, now: str) -> dict[str, Any]:
    modified_at = format_datetime(request.modified_at)
    created_at = request.file_created_at or request.modified_at
    return {
        "filename": request.filename,
        "file_type": request.file_type.value,
        "file_size": request.file_size,
        "width": request.width,
        "height": request.height,
        "modified_at": modified_at,
        "file_created_at": format_datetime(created_at),
        "quick_hash": request.quick_hash,
        "quick_hash_version": request.quick_hash_version,
        "last_seen_at": now,
        "updated_at": now,
    }


async def _live_asset_at(session: AsyncSession, relative_path: str) -> Asset | None:
    result = await session.execute(
        select(Asset)
        .where(Asset.relative_path == relative_path, Asset.is_deleted.is_(False))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _moved_from(session: AsyncSession, request: IngestRequest) -> Asset | None:
    result = await session.execute(
        select(Asset)
        .where(
            Asset.quick_hash == request.quick_hash,
            Asset.quick_hash_version == request.quick_hash_version,
            Asset.relative_path != request.relative_path,
            Asset.is_deleted.is_(False),
        )
        .order_by(Asset.created_at, Asset.id)
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _relocate(
    session: AsyncSession,
    asset: Asset,
    new_path: str,
    values: dict[str, Any],
    now: str,
) -> None:
    """Compare-and-set the path of ``asset`` and record the move."""
    old_path = asset.relative_path
    result = await session.execute(
        update(Asset)
        .where(
            Asset.id == asset.id,
            Asset.relative_path == old_path,
            Asset.is_deleted.is_(False),
        )
        .values(relative_path=new_path, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise _LostRace(f"asset {asset.id} no longer at {old_path}")
    session.add(
        AssetPathHistory(
            asset_id=asset.id,
            old_relative_path=old_path,
            new_relative_path=new_path,
            detected_at=now,
        )
    )
    await session.flush()
    await session.refresh(asset)
    logger.info("Asset %s moved: %s -> %s", asset.id, old_path, new_path)


async def _best_effort(
    session: AsyncSession, description: str, operation: Callable[[], Awaitable[object]]
) -> None:
    try:
        async with session.begin_nested():
            await operation()
    except Exception:
        logger.warning("%s failed; ingest continues", description, exc_info=True)


async def _follow_up(
    session: AsyncSession, asset: Asset, job_type: JobType | None
) -> None:
    """Queue jobs and reassign the style group after a write. Never raises."""
    asset_id = asset.id
    needs_render = not asset.thumbnail_url and bool(asset.thumbnail_error)
    if job_type is not None:
        await _best_effort(
            session,
            f"Queueing {job_type.value} job for {asset_id}",
            lambda: enqueue_job(session, asset_id, job_type),
        )
    if needs_render:
        await _best_effort(
            session,
            f"Queueing render for {asset_id}",
            lambda: enqueue_render(session, asset_id, RENDER_REASON_THUMBNAIL_ERROR),
        )
    await _best_effort(
        session,
        f"Style group assignment for {asset_id}",
        lambda: assign_style_group(session, asset),
    )


async def _ingest_once(
    session: AsyncSession, request: IngestRequest, context: IngestContext
) -> IngestResult:
    now = format_datetime(now_utc())
    path = request.relative_path
    file_values = _file_values(request, now)

    owner = await _live_asset_at(session, path)
    if owner is None:
        source = await _moved_from(session, request)
        if source is not None:
            classified = await classify_asset(
                path, request.filename, context.folder_map, context.lookup
            )
            incoming = request.thumbnail_url
            new_thumbnail = bool(incoming) and incoming != source.thumbnail_url
            thumb = thumbnail_changes(source.thumbnail_url, incoming, request.thumbnail_error)
            await _relocate(session, source, path, {**file_values, **classified, **thumb}, now)
            asset_id = source.id
            await _follow_up(session, source, JobType.AI_TAG if new_thumbnail else None)
            return IngestResult(IngestAction.MOVED, asset_id)

    if owner is not None:
        incoming = request.thumbnail_url
        new_thumbnail = bool(incoming) and incoming != owner.thumbnail_url
        thumb = thumbnail_changes(owner.thumbnail_url, incoming, request.thumbnail_error)
        for name, value in {**file_values, **thumb}.items():
            setattr(owner, name, value)
        await session.flush()
        asset_id = owner.id
        await _follow_up(session, owner, JobType.AI_TAG if new_thumbnail else None)
        return IngestResult(IngestAction.UPDATED, asset_id)

    classified = await classify_asset(path, request.filename, context.folder_map, context.lookup)
    asset = Asset(
        relative_path=path,
        **file_values,
        **classified,
        thumbnail_url=request.thumbnail_url,
        thumbnail_error=None if request.thumbnail_url else request.thumbnail_error,
        is_deleted=False,
        created_at=now,
    )
    session.add(asset)
    await session.flush()
    asset_id = asset.id
    logger.debug("Created asset %s at %s", asset_id, path)
    await _follow_up(
        session, asset, JobType.AI_TAG if request.thumbnail_url else JobType.THUMBNAIL
    )
    return IngestResult(IngestAction.CREATED, asset_id)


async def ingest_file(
    session: AsyncSession, request: IngestRequest, context: IngestContext
) -> IngestResult:
    """Run one observed file through the pipeline and commit.

    Raises ConflictError when concurrent writers keep winning past
    ``context.max_attempts``.
    """
    if is_junk(request.relative_path, request.filename):
        return IngestResult(IngestAction.SKIPPED, reason="junk file")
    if not is_in_allowed_subfolders(request.relative_path, context.allowed_subfolders):
        return IngestResult(IngestAction.REJECTED, reason="outside allowed subfolders")

    for attempt in range(1, context.max_attempts + 1):
        try:
            result = await _ingest_once(session, request, context)
            await session.commit()
        except (IntegrityError, _LostRace) as exc:
            await session.rollback()
            logger.info(
                "Concurrent change while ingesting %s (attempt %d/%d): %s",
                request.relative_path,
                attempt,
                context.max_attempts,
                exc,
            )
            continue
        return result

    raise ConflictError(
        f"Could not ingest {request.relative_path}: it keeps changing concurrently",
        action="Retry the ingest",
    )


async def check_changed(session: AsyncSession, entries: Sequence[ChangedFileEntry]) -> list[str]:
    """Paths among ``entries`` that are unknown or whose mtime or size differ."""
    if not entries:
        return []
    result = await session.execute(
        select(Asset.relative_path, Asset.modified_at, Asset.file_size).where(
            Asset.relative_path.in_([p.relative_path for p in entries]),
            Asset.is_deleted.is_(False),
        )
    )
    known = {path: (modified_at, size) for path, modified_at, size in result.tuples().all()}
    changed: list[str] = []
    for entry in entries:
        stored = known.get(entry.relative_path)
        if stored != (format_datetime(entry.modified_at), entry.file_size):
            changed.append(entry.relative_path)
    return changed


async def move_asset(
    session: AsyncSession, asset_id: str, new_path: str, context: IngestContext
) -> Asset:
    """Explicitly relocate an asset reported moved by an agent, then commit."""
    asset = await session.get(Asset, asset_id)
    if asset is None or asset.is_deleted:
        raise NotFoundError(f"Asset {asset_id} not found")
    if asset.relative_path == new_path:
        return asset
    if await _live_asset_at(session, new_path) is not None:
        raise ConflictError(
            f"Another asset already exists at {new_path}",
            action="Ingest the file at its new path instead",
        )

    now = format_datetime(now_utc())
    filename = new_path.rsplit("/", 1)[-1]
    classified = await classify_asset(new_path, filename, context.folder_map, context.lookup)
    try:
        await _relocate(
            session, asset, new_path, {"filename": filename, "updated_at": now, **classified}, now
        )
    except (IntegrityError, _LostRace) as exc:
        await session.rollback()
        raise ConflictError(
            f"Asset {asset_id} changed while being moved", action="Retry the move"
        ) from exc
    await _follow_up(session, asset, None)
    await session.commit()
    await session.refresh(asset)
    return asset


async def update_asset_fields(
    session: AsyncSession, asset_id: str, fields: AssetFieldsUpdate
) -> Asset:
    """Patch allow-listed asset fields and commit.

    Thumbnail fields follow the ingest rule: a thumbnail URL clears the error,
    and an error does not replace an existing thumbnail.
    """
    asset = await session.get(Asset, asset_id)
    if asset is None or asset.is_deleted:
        raise NotFoundError(f"Asset {asset_id} not found")

    patch = fields.model_dump(exclude_unset=True, exclude={"thumbnail_url", "thumbnail_error"})
    if "workflow_status" in patch and patch["workflow_status"] is not None:
        patch["workflow_status"] = patch["workflow_status"].value
    patch = {k: v for k, v in patch.items() if v is not None}
    patch.update(
        thumbnail_changes(asset.thumbnail_url, fields.thumbnail_url, fields.thumbnail_error)
    )
    if not patch:
        return asset

    for name, value in patch.items():
        setattr(asset, name, value)
    asset.updated_at = format_datetime(now_utc())
    await session.flush()
    if asset.style_group_id is not None:
        await recompute_group(session, asset.style_group_id)
    await session.commit()
    return asset
