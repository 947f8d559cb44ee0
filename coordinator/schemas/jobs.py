"""Queue schemas for processing and render jobs."""

from __future__ import annotations

from pydantic import BaseModel, Field


class JobClaimRequest(BaseModel):
    batch_size: int = Field(default=10, ge=1, le=200)


class ClaimedJobResponse(BaseModel):
    job_id: str
    asset_id: str
    job_type: str
    attempts: int
    relative_path: str
    filename: str
    file_type: str


class JobClaimResponse(BaseModel):
    jobs: list[ClaimedJobResponse]


class JobCompleteRequest(BaseModel):
    job_id: str = Field(min_length=1, max_length=36)
    success: bool
    error_message: str | None = Field(default=None, max_length=4000)


class JobStatusResponse(BaseModel):
    job_id: str
    status: str
    error_message: str | None = None


class RenderQueueRequest(BaseModel):
    asset_id: str = Field(min_length=1, max_length=36)
    reason: str | None = Field(default=None, max_length=64)


class RenderClaimRequest(BaseModel):
    batch_size: int = Field(default=1, ge=1, le=20)


class ClaimedRenderResponse(BaseModel):
    job_id: str
    asset_id: str
    attempts: int
    lease_expires_at: str
    relative_path: str
    filename: str
    file_type: str
    reason: str | None = None


class RenderClaimResponse(BaseModel):
    jobs: list[ClaimedRenderResponse]


class RenderCompleteRequest(BaseModel):
    job_id: str = Field(min_length=1, max_length=36)
    success: bool
    thumbnail_url: str | None = Field(default=None, max_length=2048)
    error_message: str | None = Field(default=None, max_length=4000)


class CountResponse(BaseModel):
    """Rows affected by a bulk queue operation."""

    count: int


class QueueStatsResponse(BaseModel):
    counts: dict[str, int]
