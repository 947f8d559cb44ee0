"""Agent-facing request/response schemas: pairing, heartbeat, scan progress."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from coordinator.models.agent import AgentType


class PairingCodeCreateRequest(BaseModel):
    agent_type: AgentType = AgentType.BRIDGE
    agent_name: str | None = Field(default=None, min_length=1, max_length=100)


class PairingCodeResponse(BaseModel):
    pairing_code: str
    agent_type: AgentType
    expires_at: str


class PairRequest(BaseModel):
    pairing_code: str = Field(min_length=8, max_length=32)
    agent_name: str | None = Field(default=None, min_length=1, max_length=100)


class PairResponse(BaseModel):
    """The agent key is returned exactly once, at pairing time."""

    agent_id: str
    agent_name: str
    agent_type: AgentType
    agent_key: str


class HeartbeatRequest(BaseModel):
    counters: dict[str, int | float] = Field(default_factory=dict, max_length=100)
    last_error: str | None = Field(default=None, max_length=4000)
    health: dict[str, Any] | None = None
    version_info: dict[str, Any] | None = None


class SpacesDirectives(BaseModel):
    bucket: str
    region: str
    endpoint: str
    public_base_url: str
    access_key_id: str
    secret_access_key: str


class AdaptivePolling(BaseModel):
    idle_seconds: int
    active_seconds: int


class ScanningDirectives(BaseModel):
    container_mount_root: str
    roots: list[str]
    batch_size: int
    adaptive_polling: AdaptivePolling
    scan_min_date: str | None = None


class DateCutoffDirectives(BaseModel):
    scan_min_date: str | None = None
    thumbnail_min_date: str | None = None


class ResourceDirectives(BaseModel):
    cpu_percentage_limit: int
    memory_limit_mb: int
    concurrency: int


class AutoScanDirectives(BaseModel):
    enabled: bool
    interval_hours: int


class HeartbeatConfig(BaseModel):
    do_spaces: SpacesDirectives
    scanning: ScanningDirectives
    date_cutoffs: DateCutoffDirectives
    resource_guard: ResourceDirectives
    auto_scan: AutoScanDirectives


class PathTestCommand(BaseModel):
    request_id: str
    container_mount_root: str
    scan_roots: list[str]
    host_path: str | None = None


class CommandsBlock(BaseModel):
    force_scan: bool = False
    scan_session_id: str | None = None
    abort_scan: bool = False
    test_paths: PathTestCommand | None = None
    check_update: bool = False
    apply_update: bool = False


class HeartbeatResponse(BaseModel):
    ok: bool = True
    config: HeartbeatConfig
    commands: CommandsBlock


class ScanProgressRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=64)
    status: Literal["running", "completed", "failed"]
    counters: dict[str, int | float] = Field(default_factory=dict, max_length=100)
    current_path: str | None = Field(default=None, max_length=4096)


class IngestionProgressRequest(BaseModel):
    processed: int = Field(ge=0)
    total: int = Field(ge=0)


class PathTestReport(BaseModel):
    request_id: str = Field(min_length=1, max_length=64)
    results: dict[str, Any]


class OkResponse(BaseModel):
    ok: bool = True
