"""Asset and path-history models."""

from __future__ import annotations

import enum

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from coordinator.models.base import Base, new_uuid


class FileType(enum.StrEnum):
    """File kinds accepted for ingest."""

    PSD = "psd"
    AI = "ai"


class WorkflowStatus(enum.StrEnum):
    """Approval pipeline stage, derived from folder names."""

    PRODUCT_IDEAS = "product_ideas"
    CONCEPT_APPROVED = "concept_approved"
    IN_DEVELOPMENT = "in_development"
    FREELANCER_ART = "freelancer_art"
    DISCONTINUED = "discontinued"
    IN_PROCESS = "in_process"
    CUSTOMER_ADOPTED = "customer_adopted"
    LICENSOR_APPROVED = "licensor_approved"
    OTHER = "other"


class Asset(Base):
    """One physical design file on the shared storage."""

    __tablename__ = "assets"
    __table_args__ = (
        # At most one live asset per canonical path.
        Index(
            "uq_assets_live_path",
            "relative_path",
            unique=True,
            sqlite_where=text("NOT is_deleted"),
            postgresql_where=text("NOT is_deleted"),
        ),
        Index("ix_assets_quick_hash", "quick_hash"),
        Index("ix_assets_style_group_id", "style_group_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    relative_path: Mapped[str] = mapped_column(Text, nullable=False)
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    file_type: Mapped[str] = mapped_column(String(8), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    width: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    height: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    modified_at: Mapped[str] = mapped_column(Text, nullable=False)
    file_created_at: Mapped[str | None] = mapped_column(Text, nullable=True)
    quick_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    quick_hash_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    thumbnail_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    thumbnail_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    workflow_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=WorkflowStatus.OTHER.value
    )
    is_licensed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    licensor_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    licensor_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    property_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    property_name: Mapped[str | None] = mapped_column(Text, nullable=True)

    # SKU taxonomy
    sku: Mapped[str | None] = mapped_column(String(64), nullable=True)
    mg01_code: Mapped[str | None] = mapped_column(String(4), nullable=True)
    mg01_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    mg02_code: Mapped[str | None] = mapped_column(String(4), nullable=True)
    mg02_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    mg03_code: Mapped[str | None] = mapped_column(String(4), nullable=True)
    mg03_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    size_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    size_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    sku_sequence: Mapped[str | None] = mapped_column(String(8), nullable=True)
    product_category: Mapped[str | None] = mapped_column(String(32), nullable=True)
    division_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    division_name: Mapped[str | None] = mapped_column(Text, nullable=True)

    style_group_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("style_groups.id", ondelete="SET NULL"), nullable=True
    )
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_seen_at: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)

    @property
    def has_usable_thumbnail(self) -> bool:
        return bool(self.thumbnail_url) and not self.thumbnail_error


class AssetPathHistory(Base):
    """One detected move of an asset."""

    __tablename__ = "asset_path_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    asset_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("assets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    old_relative_path: Mapped[str] = mapped_column(Text, nullable=False)
    new_relative_path: Mapped[str] = mapped_column(Text, nullable=False)
    detected_at: Mapped[str] = mapped_column(Text, nullable=False)
