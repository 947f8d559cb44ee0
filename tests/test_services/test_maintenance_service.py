"""Tests for paginated maintenance batches."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import TYPE_CHECKING

import pytest
from sqlalchemy import func, select

from coordinator.exceptions import NotFoundError
from coordinator.models.asset import Asset, AssetPathHistory, WorkflowStatus
from coordinator.models.queue import JobType, ProcessingJob, QueueStatus, RenderJob
from coordinator.models.style_group import StyleGroup
from coordinator.schemas.ingest import IngestAction
from coordinator.services.datetime_service import format_datetime
from coordinator.services.maintenance_service import (
    PURGED_ERROR,
    purge_assets_before,
    rebuild_all_style_groups,
    reclassify_assets,
)
from coordinator.services.path_service import DEFAULT_WORKFLOW_FOLDER_MAP
from coordinator.services.queue_service import (
    enqueue_job,
    enqueue_render,
    requeue_render_job,
    retry_failed_jobs,
)
from coordinator.services.style_group_service import assign_style_group
from tests.test_services._factories import add_asset, ingest

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from coordinator.services.lookup_service import StaticNameLookup

OLD = format_datetime(datetime(2020, 1, 1, tzinfo=timezone.utc))
CUTOFF = date(2024, 1, 1)


async def _count(session: AsyncSession, model: type[Asset] | type[StyleGroup]) -> int:
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def _groups(session: AsyncSession) -> dict[str, int]:
    result = await session.execute(
        select(StyleGroup).execution_options(populate_existing=True)
    )
    return {g.sku: g.asset_count for g in result.scalars().all()}


class TestPurge:
    async def test_soft_deletes_old_assets(self, db_session: AsyncSession) -> None:
        old = await add_asset(db_session, "Decor/AB123/old.psd", modified_at=OLD)
        keep = await add_asset(db_session, "Decor/AB123/new.psd")
        lonely = await add_asset(db_session, "Decor/CD456/old.psd", modified_at=OLD)
        for asset in (old, keep, lonely):
            await assign_style_group(db_session, asset)
        await db_session.commit()
        old_id, keep_id = old.id, keep.id

        result = await purge_assets_before(db_session, CUTOFF, limit=10)
        assert result.processed == 2
        assert result.next_offset == 0
        assert result.done is True

        assert await _count(db_session, Asset) == 3
        purged = await db_session.get(Asset, old_id, populate_existing=True)
        assert purged is not None
        assert purged.is_deleted is True
        assert purged.style_group_id is None
        live = (
            await db_session.execute(select(Asset.id).where(Asset.is_deleted.is_(False)))
        ).scalars().all()
        assert live == [keep_id]
        assert await _groups(db_session) == {"AB123": 1}

    async def test_active_jobs_of_purged_assets_fail(self, db_session: AsyncSession) -> None:
        old = await add_asset(db_session, "Decor/AB123/old.psd", modified_at=OLD)
        job = await enqueue_job(db_session, old.id, JobType.THUMBNAIL)
        render = await enqueue_render(db_session, old.id, "manual")
        await db_session.commit()
        job_id, render_id = job.id, render.id

        await purge_assets_before(db_session, CUTOFF, limit=10)

        purged_job = await db_session.get(ProcessingJob, job_id, populate_existing=True)
        assert purged_job is not None
        assert purged_job.status == QueueStatus.FAILED.value
        assert purged_job.error_message == PURGED_ERROR
        purged_render = await db_session.get(RenderJob, render_id, populate_existing=True)
        assert purged_render is not None
        assert purged_render.status == QueueStatus.FAILED.value

        assert await retry_failed_jobs(db_session) == 0
        with pytest.raises(NotFoundError):
            await requeue_render_job(db_session, render_id)

    async def test_path_history_is_kept(self, db_session: AsyncSession) -> None:
        old = await add_asset(db_session, "Decor/AB123/old.psd", modified_at=OLD)
        db_session.add(
            AssetPathHistory(
                asset_id=old.id,
                old_relative_path="Decor/AB123/older.psd",
                new_relative_path="Decor/AB123/old.psd",
                detected_at=OLD,
            )
        )
        await db_session.commit()

        await purge_assets_before(db_session, CUTOFF, limit=10)
        history = (await db_session.execute(select(AssetPathHistory))).scalars().all()
        assert len(history) == 1

    async def test_purged_path_can_be_ingested_again(
        self, db_session: AsyncSession, lookup: StaticNameLookup
    ) -> None:
        old = await add_asset(db_session, "Decor/AB123/old.psd", modified_at=OLD)
        old_id = old.id
        await purge_assets_before(db_session, CUTOFF, limit=10)

        result = await ingest(db_session, lookup, "Decor/AB123/old.psd", quick_hash="fresh")
        assert result.action == IngestAction.CREATED
        assert result.asset_id != old_id

    async def test_pages_restart_at_zero(self, db_session: AsyncSession) -> None:
        for i in range(3):
            await add_asset(db_session, f"Decor/AB{i}/old.psd", modified_at=OLD)

        first = await purge_assets_before(db_session, CUTOFF, limit=2)
        assert (first.processed, first.next_offset, first.done) == (2, 0, False)
        second = await purge_assets_before(db_session, CUTOFF, limit=2)
        assert (second.processed, second.done) == (1, True)
        third = await purge_assets_before(db_session, CUTOFF, limit=2)
        assert (third.processed, third.done) == (0, True)

    async def test_nothing_to_purge(self, db_session: AsyncSession) -> None:
        await add_asset(db_session, "Decor/AB1/new.psd")
        result = await purge_assets_before(db_session, CUTOFF, limit=10)
        assert (result.processed, result.done) == (0, True)


class TestReclassify:
    async def test_rederives_taxonomy(
        self, db_session: AsyncSession, lookup: StaticNameLookup
    ) -> None:
        asset = await add_asset(
            db_session, "Decor/Concept Approved/ABC36DSMV01/ABC36DSMV01.psd"
        )
        asset_id = asset.id

        result = await reclassify_assets(
            db_session, 0, 10, DEFAULT_WORKFLOW_FOLDER_MAP, lookup
        )
        assert (result.processed, result.next_offset, result.done) == (1, 1, True)

        updated = await db_session.get(Asset, asset_id, populate_existing=True)
        assert updated is not None
        assert updated.sku == "ABC36DSMV01"
        assert updated.licensor_name == "Disney"
        assert updated.workflow_status == WorkflowStatus.CONCEPT_APPROVED.value
        assert updated.style_group_id is not None

    async def test_paging(self, db_session: AsyncSession, lookup: StaticNameLookup) -> None:
        for i in range(3):
            await add_asset(db_session, f"Decor/AB{i}/a.psd")
        first = await reclassify_assets(db_session, 0, 2, DEFAULT_WORKFLOW_FOLDER_MAP, lookup)
        assert (first.processed, first.next_offset, first.done) == (2, 2, False)
        second = await reclassify_assets(
            db_session, first.next_offset, 2, DEFAULT_WORKFLOW_FOLDER_MAP, lookup
        )
        assert (second.processed, second.next_offset, second.done) == (1, 3, True)


class TestRebuildStyleGroups:
    async def test_rebuild_from_scratch(self, db_session: AsyncSession) -> None:
        await add_asset(db_session, "Decor/AB123/a.psd")
        await add_asset(db_session, "Decor/AB123/ART/b.psd")
        await add_asset(db_session, "Decor/CD456/c.psd")
        stray = StyleGroup(
            sku="ZZ999",
            folder_path="Old/ZZ999",
            asset_count=4,
            created_at=OLD,
            updated_at=OLD,
        )
        db_session.add(stray)
        await db_session.commit()

        first = await rebuild_all_style_groups(db_session, 0, 2)
        assert (first.processed, first.next_offset, first.done) == (2, 2, False)
        second = await rebuild_all_style_groups(db_session, first.next_offset, 2)
        assert (second.processed, second.done) == (1, True)

        assert await _groups(db_session) == {"AB123": 2, "CD456": 1}
