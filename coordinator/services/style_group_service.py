"""Style groups: cluster-key extraction, primary selection and aggregates."""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from coordinator.models.asset import Asset, WorkflowStatus
from coordinator.models.style_group import StyleGroup
from coordinator.services.datetime_service import format_datetime, now_utc

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

SKU_FOLDER_PATTERN = re.compile(r"^[A-Za-z]{1,6}\d")
DESIGN_SOURCE_TYPES = frozenset({"ai", "psd"})

# Most advanced first.
WORKFLOW_PRIORITY: tuple[WorkflowStatus, ...] = (
    WorkflowStatus.LICENSOR_APPROVED,
    WorkflowStatus.CUSTOMER_ADOPTED,
    WorkflowStatus.IN_PROCESS,
    WorkflowStatus.IN_DEVELOPMENT,
    WorkflowStatus.CONCEPT_APPROVED,
    WorkflowStatus.FREELANCER_ART,
    WorkflowStatus.PRODUCT_IDEAS,
    WorkflowStatus.DISCONTINUED,
)

_TAXONOMY_FIELDS = (
    "is_licensed",
    "licensor_code",
    "licensor_name",
    "property_code",
    "property_name",
    "product_category",
    "division_code",
    "division_name",
    "mg01_code",
    "mg01_name",
    "mg02_code",
    "mg02_name",
    "mg03_code",
    "mg03_name",
    "size_code",
    "size_name",
)


class PrimaryCandidate(Protocol):
    id: str
    filename: str
    file_type: str
    created_at: str
    thumbnail_url: str | None
    thumbnail_error: str | None


def extract_sku_folder(relative_path: str) -> str | None:
    """Return the nearest ancestor folder that looks like a SKU, if any.

    Walks from the immediate parent upward so that intermediate folders such
    as ``ART/`` between the SKU folder and the file are skipped.
    """
    parts = relative_path.split("/")
    if len(parts) < 2:
        return None
    for segment in reversed(parts[:-1]):
        if SKU_FOLDER_PATTERN.match(segment):
            return segment
    return None


def sku_folder_path(relative_path: str, sku: str) -> str:
    """Path of the SKU folder itself, e.g. ``Decor/X/AB123`` for a file below it."""
    parts = relative_path.split("/")[:-1]
    for index in range(len(parts) - 1, -1, -1):
        if parts[index] == sku:
            return "/".join(parts[: index + 1])
    return "/".join(parts)


def _has_art(candidate: PrimaryCandidate) -> bool:
    return "art" in candidate.filename.lower()


def _is_design_source(candidate: PrimaryCandidate) -> bool:
    return candidate.file_type in DESIGN_SOURCE_TYPES


def _has_usable_thumbnail(candidate: PrimaryCandidate) -> bool:
    return bool(candidate.thumbnail_url) and not candidate.thumbnail_error


_PRIMARY_LADDER: tuple[Callable[[PrimaryCandidate], bool], ...] = (
    lambda a: _has_art(a) and _is_design_source(a) and _has_usable_thumbnail(a),
    lambda a: _is_design_source(a) and _has_usable_thumbnail(a),
    _has_usable_thumbnail,
    lambda a: _has_art(a) and _is_design_source(a) and not a.thumbnail_error,
    lambda a: _has_art(a) and _is_design_source(a),
    _is_design_source,
)


def select_primary_asset(members: Sequence[PrimaryCandidate]) -> str | None:
    """Choose the cover asset of a group.

    A usable thumbnail always outranks file-type and naming heuristics. Within
    a rung the earliest created member wins, so the result does not depend on
    the order of ``members``.
    """
    if not members:
        return None
    ordered = sorted(members, key=lambda a: (a.created_at, a.id))
    for rung in _PRIMARY_LADDER:
        for candidate in ordered:
            if rung(candidate):
                return candidate.id
    return ordered[0].id


def best_workflow_status(statuses: Iterable[str]) -> str:
    """Most advanced workflow status among ``statuses``, or ``other``."""
    present = set(statuses)
    for status in WORKFLOW_PRIORITY:
        if status.value in present:
            return status.value
    return WorkflowStatus.OTHER.value


def latest_file_date(members: Iterable[Asset]) -> str | None:
    """Latest modification (or creation) time across members."""
    dates = [m.modified_at or m.file_created_at for m in members]
    present = [d for d in dates if d]
    return max(present) if present else None


async def recompute_group(session: AsyncSession, group_id: str) -> StyleGroup | None:
    """Refresh cached aggregates of a group from its live members.

    Deletes the group when no live member remains and returns ``None``.
    Safe to call redundantly. Flushes but does not commit.
    """
    group = await session.get(StyleGroup, group_id)
    if group is None:
        return None

    result = await session.execute(
        select(Asset).where(Asset.style_group_id == group_id, Asset.is_deleted.is_(False))
    )
    members = list(result.scalars().all())
    if not members:
        logger.info("Deleting empty style group %s (%s)", group.sku, group.id)
        await session.delete(group)
        await session.flush()
        return None

    primary_id = select_primary_asset(members)
    primary = next(m for m in members if m.id == primary_id)

    group.asset_count = len(members)
    group.primary_asset_id = primary_id
    group.workflow_status = best_workflow_status(m.workflow_status for m in members)
    group.latest_file_date = latest_file_date(members)
    group.folder_path = sku_folder_path(primary.relative_path, group.sku)
    for field_name in _TAXONOMY_FIELDS:
        setattr(group, field_name, getattr(primary, field_name))
    group.updated_at = format_datetime(now_utc())
    await session.flush()
    return group


async def _get_or_create_group(session: AsyncSession, sku: str, asset: Asset) -> StyleGroup:
    result = await session.execute(select(StyleGroup).where(StyleGroup.sku == sku))
    group = result.scalar_one_or_none()
    if group is not None:
        return group

    now = format_datetime(now_utc())
    group = StyleGroup(
        sku=sku,
        folder_path=sku_folder_path(asset.relative_path, sku),
        created_at=now,
        updated_at=now,
    )
    try:
        async with session.begin_nested():
            session.add(group)
    except IntegrityError:
        # Another ingest created the group concurrently.
        result = await session.execute(select(StyleGroup).where(StyleGroup.sku == sku))
        return result.scalar_one()
    return group


async def assign_style_group(session: AsyncSession, asset: Asset) -> StyleGroup | None:
    """Place ``asset`` in the group named by its SKU folder.

    Recomputes the new group and, when membership changed, the previous one.
    Assets without a SKU folder are detached from any group. Flushes but does
    not commit.
    """
    previous_group_id = asset.style_group_id
    sku = extract_sku_folder(asset.relative_path)

    group: StyleGroup | None = None
    if sku is not None and not asset.is_deleted:
        group = await _get_or_create_group(session, sku, asset)
        asset.style_group_id = group.id
    else:
        asset.style_group_id = None
    await session.flush()

    if previous_group_id is not None and previous_group_id != asset.style_group_id:
        await recompute_group(session, previous_group_id)
    if group is not None:
        return await recompute_group(session, group.id)
    return None


async def rebuild_style_groups(
    session: AsyncSession, offset: int, limit: int
) -> tuple[int, bool]:
    """Reassign a page of live assets (ordered by id) to their groups.

    Returns ``(processed, done)``. Commits once per page.
    """
    result = await session.execute(
        select(Asset)
        .where(Asset.is_deleted.is_(False))
        .order_by(Asset.id)
        .offset(offset)
        .limit(limit)
    )
    assets = list(result.scalars().all())
    for asset in assets:
        await assign_style_group(session, asset)
    await session.commit()
    return len(assets), len(assets) < limit
