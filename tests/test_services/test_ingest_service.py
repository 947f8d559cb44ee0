"""Tests for the ingestion pipeline."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from coordinator.exceptions import ConflictError, NotFoundError
from coordinator.models.asset import Asset, AssetPathHistory, WorkflowStatus
from coordinator.models.queue import JobType, ProcessingJob, RenderJob
from coordinator.models.style_group import StyleGroup
from coordinator.schemas.config import ConfigKey
from coordinator.schemas.ingest import AssetFieldsUpdate, ChangedFileEntry, IngestAction
from coordinator.services.config_service import set_raw
from coordinator.services.ingest_service import (
    RENDER_REASON_THUMBNAIL_ERROR,
    IngestContext,
    check_changed,
    ingest_file,
    load_ingest_context,
    move_asset,
    thumbnail_changes,
    update_asset_fields,
)
from coordinator.services.sku_service import POP_DIVISION
from tests.test_services._factories import MODIFIED_AT, ingest, make_ingest_request

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from coordinator.services.lookup_service import StaticNameLookup

SKU_PATH = "Decor/Florals/ABC36DSMV01/ABC36DSMV01.psd"


async def _live_assets(session: AsyncSession) -> list[Asset]:
    result = await session.execute(
        select(Asset).where(Asset.is_deleted.is_(False)).execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def _jobs(session: AsyncSession) -> list[ProcessingJob]:
    return list((await session.execute(select(ProcessingJob))).scalars().all())


class TestThumbnailChanges:
    def test_url_clears_error(self) -> None:
        assert thumbnail_changes(None, "https://cdn/a.jpg", "boom") == {
            "thumbnail_url": "https://cdn/a.jpg",
            "thumbnail_error": None,
        }

    def test_error_recorded_without_thumbnail(self) -> None:
        assert thumbnail_changes(None, None, "boom") == {"thumbnail_error": "boom"}

    def test_error_never_replaces_thumbnail(self) -> None:
        assert thumbnail_changes("https://cdn/a.jpg", None, "boom") == {}


class TestCreateAndUpdate:
    async def test_create_classifies_and_queues(
        self, db_session: AsyncSession, lookup: StaticNameLookup
    ) -> None:
        result = await ingest(db_session, lookup, SKU_PATH)
        assert result.action == IngestAction.CREATED
        assert result.asset_id is not None

        asset = await db_session.get(Asset, result.asset_id)
        assert asset is not None
        assert asset.sku == "ABC36DSMV01"
        assert asset.is_licensed is True
        assert asset.licensor_name == "Disney"
        assert asset.property_name == "Mickey Vintage"
        assert (asset.division_code, asset.division_name) == POP_DIVISION
        assert asset.workflow_status == WorkflowStatus.OTHER.value

        jobs = await _jobs(db_session)
        assert [(j.asset_id, j.job_type) for j in jobs] == [
            (asset.id, JobType.THUMBNAIL.value)
        ]

        group = await db_session.get(StyleGroup, asset.style_group_id)
        assert group is not None
        assert group.sku == "ABC36DSMV01"
        assert group.primary_asset_id == asset.id

    async def test_failed_style_group_assignment_keeps_asset(
        self, db_session: AsyncSession, lookup: StaticNameLookup
    ) -> None:
        failing = AsyncMock(side_effect=RuntimeError("grouping exploded"))
        with patch("coordinator.services.ingest_service.assign_style_group", failing):
            result = await ingest(db_session, lookup, SKU_PATH)

        assert failing.await_count == 1
        assert result.action == IngestAction.CREATED
        asset = await db_session.get(Asset, result.asset_id, populate_existing=True)
        assert asset is not None
        assert asset.sku == "ABC36DSMV01"
        assert asset.style_group_id is None
        assert [j.job_type for j in await _jobs(db_session)] == [JobType.THUMBNAIL.value]

    async def test_create_with_thumbnail_queues_tagging(
        self, db_session: AsyncSession, lookup: StaticNameLookup
    ) -> None:
        await ingest(db_session, lookup, SKU_PATH, thumbnail_url="https://cdn/a.jpg")
        jobs = await _jobs(db_session)
        assert [j.job_type for j in jobs] == [JobType.AI_TAG.value]

    async def test_reingest_same_path_updates(
        self, db_session: AsyncSession, lookup: StaticNameLookup
    ) -> None:
        first = await ingest(db_session, lookup, SKU_PATH)
        second = await ingest(db_session, lookup, SKU_PATH, quick_hash="hash-2", file_size=2048)

        assert second.action == IngestAction.UPDATED
        assert second.asset_id == first.asset_id
        assets = await _live_assets(db_session)
        assert len(assets) == 1
        assert assets[0].quick_hash == "hash-2"
        assert assets[0].file_size == 2048
        assert len(await _jobs(db_session)) == 1

    async def test_licensed_folder_without_sku(
        self, db_session: AsyncSession, lookup: StaticNameLookup
    ) -> None:
        result = await ingest(
            db_session,
            lookup,
            "Decor/Character Licensed/Disney/Mickey/Concept Approved/art.psd",
        )
        asset = await db_session.get(Asset, result.asset_id)
        assert asset is not None
        assert asset.sku is None
        assert asset.is_licensed is True
        assert asset.licensor_name == "Disney"
        assert asset.property_name == "Mickey"
        assert asset.workflow_status == WorkflowStatus.CONCEPT_APPROVED.value

    async def test_spaced_sku_under_licensed_folder(
        self, db_session: AsyncSession, lookup: StaticNameLookup
    ) -> None:
        result = await ingest(
            db_session,
            lookup,
            "Decor/Character Licensed/Disney/Mickey/AB1234DS/AB1234DS MVXX01_ART FILE.ai",
        )
        asset = await db_session.get(Asset, result.asset_id)
        assert asset is not None
        assert asset.mg01_code == "A"
        assert asset.licensor_code == "DS"
        assert asset.is_licensed is True
        assert asset.workflow_status == WorkflowStatus.OTHER.value

        group = await db_session.get(StyleGroup, asset.style_group_id)
        assert group is not None
        assert group.sku == "AB1234DS"

    async def test_folder_map_from_context(
        self, db_session: AsyncSession, lookup: StaticNameLookup
    ) -> None:
        context = IngestContext(
            lookup=lookup, folder_map={"signed off": WorkflowStatus.CUSTOMER_ADOPTED.value}
        )
        result = await ingest_file(
            db_session, make_ingest_request("Decor/Signed Off/a.psd"), context
        )
        asset = await db_session.get(Asset, result.asset_id)
        assert asset is not None
        assert asset.workflow_status == WorkflowStatus.CUSTOMER_ADOPTED.value


class TestSkipAndReject:
    async def test_junk_file_skipped(
        self, db_session: AsyncSession, lookup: StaticNameLookup
    ) -> None:
        result = await ingest(db_session, lookup, "Decor/._ABC36DSMV01.psd")
        assert result.action == IngestAction.SKIPPED
        assert result.asset_id is None
        assert await _live_assets(db_session) == []

    async def test_outside_allowed_subfolders(
        self, db_session: AsyncSession, lookup: StaticNameLookup
    ) -> None:
        context = IngestContext(lookup=lookup, allowed_subfolders=("decor",))
        result = await ingest_file(db_session, make_ingest_request("Archive/a.psd"), context)
        assert result.action == IngestAction.REJECTED
        assert await _live_assets(db_session) == []

    async def test_allowed_subfolders_loaded_from_config(
        self, db_session: AsyncSession, lookup: StaticNameLookup
    ) -> None:
        await set_raw(db_session, ConfigKey.SCANNING.value, {"allowed_subfolders": ["Decor"]})
        await db_session.commit()
        context = await load_ingest_context(db_session, lookup, max_attempts=2)
        assert context.allowed_subfolders == ("decor",)
        assert context.max_attempts == 2


class TestMoveDetection:
    async def test_same_content_at_new_path_is_a_move(
        self, db_session: AsyncSession, lookup: StaticNameLookup
    ) -> None:
        created = await ingest(db_session, lookup, "Decor/X/AB123/a.ai", quick_hash="h-move")
        moved = await ingest(
            db_session, lookup, "Decor/X/AB123/renamed/a.ai", quick_hash="h-move"
        )

        assert moved.action == IngestAction.MOVED
        assert moved.asset_id == created.asset_id
        assets = await _live_assets(db_session)
        assert [a.relative_path for a in assets] == ["Decor/X/AB123/renamed/a.ai"]

        history = (await db_session.execute(select(AssetPathHistory))).scalars().all()
        assert [(h.old_relative_path, h.new_relative_path) for h in history] == [
            ("Decor/X/AB123/a.ai", "Decor/X/AB123/renamed/a.ai")
        ]

    async def test_move_reclassifies_path(
        self, db_session: AsyncSession, lookup: StaticNameLookup
    ) -> None:
        await ingest(db_session, lookup, "Decor/Product Ideas/AB123/a.psd", quick_hash="h")
        moved = await ingest(db_session, lookup, "Decor/Discontinued/AB123/a.psd", quick_hash="h")
        asset = await db_session.get(Asset, moved.asset_id)
        assert asset is not None
        assert asset.workflow_status == WorkflowStatus.DISCONTINUED.value

    async def test_different_hash_version_is_not_a_move(
        self, db_session: AsyncSession, lookup: StaticNameLookup
    ) -> None:
        await ingest(db_session, lookup, "Decor/AB123/a.psd", quick_hash="h")
        result = await ingest(
            db_session, lookup, "Decor/AB123/b.psd", quick_hash="h", quick_hash_version=2
        )
        assert result.action == IngestAction.CREATED
        assert len(await _live_assets(db_session)) == 2

    async def test_known_path_wins_over_move(
        self, db_session: AsyncSession, lookup: StaticNameLookup
    ) -> None:
        await ingest(db_session, lookup, "Decor/AB123/a.psd", quick_hash="h1")
        target = await ingest(db_session, lookup, "Decor/AB123/b.psd", quick_hash="h2")
        result = await ingest(db_session, lookup, "Decor/AB123/b.psd", quick_hash="h1")
        assert result.action == IngestAction.UPDATED
        assert result.asset_id == target.asset_id
        assert len(await _live_assets(db_session)) == 2


class TestConcurrentIngest:
    async def test_move_and_create_race_leaves_one_asset(
        self,
        db_session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        lookup: StaticNameLookup,
    ) -> None:
        source = await ingest(db_session, lookup, "Decor/AB123/a.psd", quick_hash="h-race")

        async def _ingest() -> IngestAction:
            async with session_factory() as session:
                result = await ingest(session, lookup, "Decor/AB123/new/a.psd", quick_hash="h-race")
                assert result.asset_id == source.asset_id
                return result.action

        actions = await asyncio.gather(_ingest(), _ingest())
        assert sorted(a.value for a in actions) == ["moved", "updated"]

        assets = await _live_assets(db_session)
        assert [(a.id, a.relative_path) for a in assets] == [
            (source.asset_id, "Decor/AB123/new/a.psd")
        ]
        history = (await db_session.execute(select(AssetPathHistory))).scalars().all()
        assert len(history) == 1

    async def test_concurrent_creates_at_one_path_leave_one_asset(
        self,
        db_session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        lookup: StaticNameLookup,
    ) -> None:
        async def _ingest() -> IngestAction:
            async with session_factory() as session:
                return (await ingest(session, lookup, SKU_PATH, quick_hash="h-new")).action

        actions = await asyncio.gather(_ingest(), _ingest(), _ingest())
        assert sorted(a.value for a in actions) == ["created", "updated", "updated"]
        assert [a.relative_path for a in await _live_assets(db_session)] == [SKU_PATH]


class TestThumbnails:
    async def test_error_does_not_replace_thumbnail(
        self, db_session: AsyncSession, lookup: StaticNameLookup
    ) -> None:
        created = await ingest(db_session, lookup, SKU_PATH, thumbnail_url="https://cdn/a.jpg")
        await ingest(db_session, lookup, SKU_PATH, thumbnail_error="render failed")
        asset = await db_session.get(Asset, created.asset_id, populate_existing=True)
        assert asset is not None
        assert asset.thumbnail_url == "https://cdn/a.jpg"
        assert asset.thumbnail_error is None

    async def test_thumbnail_error_requests_render(
        self, db_session: AsyncSession, lookup: StaticNameLookup
    ) -> None:
        created = await ingest(db_session, lookup, SKU_PATH, thumbnail_error="PDF compat off")
        await ingest(db_session, lookup, SKU_PATH, thumbnail_error="PDF compat off")

        renders = (await db_session.execute(select(RenderJob))).scalars().all()
        assert len(renders) == 1
        assert renders[0].asset_id == created.asset_id
        assert renders[0].reason == RENDER_REASON_THUMBNAIL_ERROR

    async def test_new_thumbnail_on_update_queues_tagging(
        self, db_session: AsyncSession, lookup: StaticNameLookup
    ) -> None:
        await ingest(db_session, lookup, SKU_PATH)
        await ingest(db_session, lookup, SKU_PATH, thumbnail_url="https://cdn/a.jpg")
        await ingest(db_session, lookup, SKU_PATH, thumbnail_url="https://cdn/a.jpg")
        jobs = await _jobs(db_session)
        assert sorted(j.job_type for j in jobs) == [JobType.AI_TAG.value, JobType.THUMBNAIL.value]


class TestCheckChanged:
    async def test_reports_unknown_and_modified(
        self, db_session: AsyncSession, lookup: StaticNameLookup
    ) -> None:
        await ingest(db_session, lookup, "Decor/AB123/a.psd", file_size=100)
        await ingest(db_session, lookup, "Decor/AB123/b.psd", quick_hash="h2", file_size=100)

        entries = [
            ChangedFileEntry(
                relative_path="Decor/AB123/a.psd", modified_at=MODIFIED_AT, file_size=100
            ),
            ChangedFileEntry(
                relative_path="Decor/AB123/b.psd", modified_at=MODIFIED_AT, file_size=200
            ),
            ChangedFileEntry(
                relative_path="Decor/AB123/c.psd", modified_at=MODIFIED_AT, file_size=1
            ),
        ]
        assert await check_changed(db_session, entries) == [
            "Decor/AB123/b.psd",
            "Decor/AB123/c.psd",
        ]

    async def test_empty(self, db_session: AsyncSession) -> None:
        assert await check_changed(db_session, []) == []


class TestMoveAsset:
    async def test_explicit_move(self, db_session: AsyncSession, lookup: StaticNameLookup) -> None:
        created = await ingest(db_session, lookup, "Decor/AB123/a.psd")
        assert created.asset_id is not None
        asset = await move_asset(
            db_session, created.asset_id, "Decor/CD456/b.psd", IngestContext(lookup=lookup)
        )
        assert asset.relative_path == "Decor/CD456/b.psd"
        assert asset.filename == "b.psd"
        group = await db_session.get(StyleGroup, asset.style_group_id)
        assert group is not None and group.sku == "CD456"

    async def test_occupied_target(
        self, db_session: AsyncSession, lookup: StaticNameLookup
    ) -> None:
        created = await ingest(db_session, lookup, "Decor/AB123/a.psd", quick_hash="h1")
        await ingest(db_session, lookup, "Decor/AB123/b.psd", quick_hash="h2")
        assert created.asset_id is not None
        with pytest.raises(ConflictError, match="already exists"):
            await move_asset(
                db_session, created.asset_id, "Decor/AB123/b.psd", IngestContext(lookup=lookup)
            )

    async def test_unknown_asset(
        self, db_session: AsyncSession, lookup: StaticNameLookup
    ) -> None:
        with pytest.raises(NotFoundError):
            await move_asset(db_session, "missing", "Decor/a.psd", IngestContext(lookup=lookup))


class TestUpdateAssetFields:
    async def test_patch_fields(self, db_session: AsyncSession, lookup: StaticNameLookup) -> None:
        created = await ingest(db_session, lookup, SKU_PATH, thumbnail_error="boom")
        assert created.asset_id is not None
        asset = await update_asset_fields(
            db_session,
            created.asset_id,
            AssetFieldsUpdate(
                thumbnail_url="https://cdn/new.jpg",
                workflow_status=WorkflowStatus.IN_PROCESS,
                width=800,
            ),
        )
        assert asset.thumbnail_url == "https://cdn/new.jpg"
        assert asset.thumbnail_error is None
        assert asset.workflow_status == WorkflowStatus.IN_PROCESS.value
        assert asset.width == 800

        group = await db_session.get(StyleGroup, asset.style_group_id, populate_existing=True)
        assert group is not None
        assert group.workflow_status == WorkflowStatus.IN_PROCESS.value

    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(ValueError):
            AssetFieldsUpdate.model_validate({"relative_path": "x"})

    async def test_unknown_asset(self, db_session: AsyncSession) -> None:
        with pytest.raises(NotFoundError):
            await update_asset_fields(db_session, "missing", AssetFieldsUpdate(width=1))
