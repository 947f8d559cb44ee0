"""Admin API schemas."""

from __future__ import annotations

from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, Field


class AgentSummary(BaseModel):
    """Agent registration as shown to operators. The key hash is never exposed."""

    id: str
    agent_name: str
    agent_type: str
    last_heartbeat: str | None
    online: bool
    last_counters: dict[str, Any] = Field(default_factory=dict)
    last_error: str | None = None
    health: dict[str, Any] | None = None
    version_info: dict[str, Any] | None = None
    flags: dict[str, bool] = Field(default_factory=dict)
    created_at: str


class AgentListResponse(BaseModel):
    agents: list[AgentSummary]


class AgentUpdateRequest(BaseModel):
    """``check`` asks the agent to look for an update; ``apply`` installs it."""

    action: Literal["check", "apply"]


class ScanRequestCreate(BaseModel):
    target_agent_id: str | None = Field(default=None, min_length=1, max_length=36)


class ScanRequestResponse(BaseModel):
    request_id: str | None
    status: str
    target_agent_id: str | None
    requested_at: str | None
    claimed_by: str | None
    claimed_at: str | None
    completed_at: str | None
    updated_at: str

    model_config = {"from_attributes": True}


class ScanStatusResponse(BaseModel):
    request: ScanRequestResponse
    progress: dict[str, Any] | None
    stale: bool
    action: str | None = None
    ingestion: dict[str, Any] | None = None


class FlagUpdateResponse(BaseModel):
    agents_updated: int


class PathTestCreateRequest(BaseModel):
    host_path: str | None = Field(default=None, max_length=1000)
    container_mount_root: str | None = Field(default=None, max_length=1000)
    scan_roots: list[str] | None = Field(default=None, max_length=100)


class PathTestStateResponse(BaseModel):
    request: dict[str, Any] | None
    result: dict[str, Any] | None


class ConfigValueResponse(BaseModel):
    key: str
    value: dict[str, Any]


class MaintenanceRequest(BaseModel):
    offset: int = Field(default=0, ge=0)
    limit: int | None = Field(default=None, ge=1)


class PurgeRequest(BaseModel):
    cutoff_date: date
    limit: int | None = Field(default=None, ge=1)


class BatchResponse(BaseModel):
    processed: int
    next_offset: int
    done: bool
