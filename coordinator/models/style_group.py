"""Style group model."""

from __future__ import annotations

from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from coordinator.models.asset import WorkflowStatus
from coordinator.models.base import Base, new_uuid


class StyleGroup(Base):
    """Cluster of assets sharing one SKU folder.

    Every column after ``sku`` is a cache recomputed from the live members by
    ``style_group_service.recompute_group``.
    """

    __tablename__ = "style_groups"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    sku: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    folder_path: Mapped[str] = mapped_column(Text, nullable=False)
    # Not a foreign key: assets already reference style_groups.
    primary_asset_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    asset_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    workflow_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=WorkflowStatus.OTHER.value
    )
    latest_file_date: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_licensed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    licensor_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    licensor_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    property_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    property_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    product_category: Mapped[str | None] = mapped_column(String(32), nullable=True)
    division_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    division_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    mg01_code: Mapped[str | None] = mapped_column(String(4), nullable=True)
    mg01_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    mg02_code: Mapped[str | None] = mapped_column(String(4), nullable=True)
    mg02_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    mg03_code: Mapped[str | None] = mapped_column(String(4), nullable=True)
    mg03_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    size_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    size_name: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)
