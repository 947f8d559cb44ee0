"""Ingestion request/response schemas."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from coordinator.models.asset import FileType, WorkflowStatus
from coordinator.services.path_service import normalize_relative_path

MAX_BATCH_FILES = 500


class IngestAction(enum.StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    MOVED = "moved"
    SKIPPED = "skipped"
    REJECTED = "rejected"


class IngestRequest(BaseModel):
    """One file observed by a scanning agent."""

    relative_path: str = Field(min_length=1, max_length=4096)
    filename: str = Field(min_length=1, max_length=1024)
    file_type: FileType
    file_size: int = Field(default=0, ge=0)
    width: int = Field(default=0, ge=0)
    height: int = Field(default=0, ge=0)
    modified_at: datetime
    file_created_at: datetime | None = None
    quick_hash: str = Field(min_length=1, max_length=128)
    quick_hash_version: int = Field(default=1, ge=1)
    thumbnail_url: str | None = Field(default=None, max_length=2048)
    thumbnail_error: str | None = Field(default=None, max_length=2000)

    @field_validator("relative_path")
    @classmethod
    def _normalize_path(cls, value: str) -> str:
        return normalize_relative_path(value)

    @field_validator("filename")
    @classmethod
    def _strip_filename(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("filename cannot be blank")
        return stripped


class IngestResponse(BaseModel):
    action: IngestAction
    asset_id: str | None = None
    reason: str | None = None


class IngestBatchRequest(BaseModel):
    """Files are validated one by one so a bad entry only fails itself."""

    files: list[dict[str, Any]] = Field(min_length=1, max_length=MAX_BATCH_FILES)


class IngestBatchItem(BaseModel):
    index: int
    relative_path: str | None = None
    action: IngestAction | None = None
    asset_id: str | None = None
    error: str | None = None


class IngestBatchResponse(BaseModel):
    results: list[IngestBatchItem]
    counts: dict[str, int]


class ChangedFileEntry(BaseModel):
    relative_path: str = Field(min_length=1, max_length=4096)
    modified_at: datetime
    file_size: int = Field(ge=0)

    @field_validator("relative_path")
    @classmethod
    def _normalize_path(cls, value: str) -> str:
        return normalize_relative_path(value)


class CheckChangedRequest(BaseModel):
    files: list[ChangedFileEntry] = Field(max_length=MAX_BATCH_FILES)


class CheckChangedResponse(BaseModel):
    """Paths that are unknown or differ from what is stored."""

    changed: list[str]
    unchanged_count: int


class MoveAssetRequest(BaseModel):
    asset_id: str = Field(min_length=1, max_length=36)
    new_relative_path: str = Field(min_length=1, max_length=4096)

    @field_validator("new_relative_path")
    @classmethod
    def _normalize_path(cls, value: str) -> str:
        return normalize_relative_path(value, "new_relative_path")


class AssetFieldsUpdate(BaseModel):
    """Fields an agent may patch on an existing asset."""

    model_config = {"extra": "forbid"}

    thumbnail_url: str | None = Field(default=None, max_length=2048)
    thumbnail_error: str | None = Field(default=None, max_length=2000)
    width: int | None = Field(default=None, ge=0)
    height: int | None = Field(default=None, ge=0)
    file_size: int | None = Field(default=None, ge=0)
    workflow_status: WorkflowStatus | None = None
    is_licensed: bool | None = None


class UpdateAssetRequest(BaseModel):
    asset_id: str = Field(min_length=1, max_length=36)
    fields: AssetFieldsUpdate


class AssetResponse(BaseModel):
    """Asset fields returned to agents after a move or patch."""

    id: str
    relative_path: str
    filename: str
    file_type: str
    thumbnail_url: str | None
    thumbnail_error: str | None
    workflow_status: str
    is_licensed: bool
    sku: str | None
    style_group_id: str | None

    model_config = {"from_attributes": True}
