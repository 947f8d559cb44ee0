"""Typed operator configuration records kept in the config store."""

from __future__ import annotations

import enum
from datetime import date
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from coordinator.models.asset import WorkflowStatus
from coordinator.services.path_service import DEFAULT_WORKFLOW_FOLDER_MAP


class ConfigKey(enum.StrEnum):
    """Keys operators may read and write through the admin API."""

    SPACES = "SPACES_CONFIG"
    SCANNING = "SCANNING_CONFIG"
    POLLING = "POLLING_CONFIG"
    RESOURCE_GUARD = "RESOURCE_GUARD"
    AUTO_SCAN = "AUTO_SCAN_CONFIG"
    DATE_CUTOFFS = "DATE_CUTOFFS"
    WORKFLOW_FOLDERS = "WORKFLOW_FOLDERS"


# Keys written by the coordinator itself; never accepted from the admin API.
SCAN_PROGRESS_KEY = "SCAN_PROGRESS"
SCAN_CHECKPOINT_KEY = "SCAN_CHECKPOINT"
PATH_TEST_REQUEST_KEY = "PATH_TEST_REQUEST"
PATH_TEST_RESULT_KEY = "PATH_TEST_RESULT"
INGESTION_PROGRESS_KEY = "INGESTION_PROGRESS"


class _Record(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SpacesConfig(_Record):
    """Object storage where agents upload thumbnails.

    ``secret_access_key`` is stored encrypted; the admin API never returns it.
    """

    bucket_name: str = Field(default="popdam", min_length=1, max_length=100)
    region: str = Field(default="nyc3", min_length=1, max_length=50)
    endpoint: str = Field(default="https://nyc3.digitaloceanspaces.com", max_length=500)
    public_base_url: str = Field(
        default="https://popdam.nyc3.digitaloceanspaces.com", max_length=500
    )
    access_key_id: str = Field(default="", max_length=200)
    secret_access_key: str = Field(default="", max_length=1000)


class ScanningConfig(_Record):
    """Where the scanning agent looks and what it may ingest."""

    container_mount_root: str = Field(default="", max_length=1000)
    roots: list[str] = Field(default_factory=list, max_length=100)
    allowed_subfolders: list[str] = Field(default_factory=list, max_length=100)

    @field_validator("allowed_subfolders")
    @classmethod
    def _normalize_subfolders(cls, value: list[str]) -> list[str]:
        return [v.strip().lower() for v in value if v.strip()]


class PollingConfig(_Record):
    batch_size: int = Field(default=100, ge=1, le=1000)
    idle_seconds: int = Field(default=30, ge=1, le=3600)
    active_seconds: int = Field(default=5, ge=1, le=3600)


class ScheduleWindow(_Record):
    """Resource override active on ``days`` between ``start_hour`` and ``end_hour`` (UTC).

    Days use 0 for Sunday through 6 for Saturday. The hour range is half open.
    """

    days: list[int] = Field(min_length=1)
    start_hour: int = Field(ge=0, le=23)
    end_hour: int = Field(ge=1, le=24)
    cpu_shares: int | None = Field(default=None, ge=1, le=100)
    memory_limit_mb: int | None = Field(default=None, ge=64)
    thumb_concurrency: int | None = Field(default=None, ge=1, le=64)

    @field_validator("days")
    @classmethod
    def _check_days(cls, value: list[int]) -> list[int]:
        if any(d < 0 or d > 6 for d in value):
            raise ValueError("days must be between 0 (Sunday) and 6 (Saturday)")
        return value

    @model_validator(mode="after")
    def _check_hours(self) -> ScheduleWindow:
        if self.start_hour >= self.end_hour:
            raise ValueError("start_hour must be before end_hour")
        return self


class ResourceGuardConfig(_Record):
    default_cpu_shares: int = Field(default=50, ge=1, le=100)
    default_memory_limit_mb: int = Field(default=512, ge=64)
    default_thumb_concurrency: int = Field(default=2, ge=1, le=64)
    schedules: list[ScheduleWindow] = Field(default_factory=list, max_length=50)


class AutoScanConfig(_Record):
    enabled: bool = False
    interval_hours: int = Field(default=6, ge=1, le=24 * 30)


class DateCutoffs(_Record):
    """Files modified before these dates are skipped by agents."""

    scan_min_date: date | None = None
    thumbnail_min_date: date | None = None


class WorkflowFolderMap(_Record):
    """Folder name fragment (lower case) -> workflow status."""

    folders: dict[str, WorkflowStatus] = Field(
        default_factory=lambda: {
            k: WorkflowStatus(v) for k, v in DEFAULT_WORKFLOW_FOLDER_MAP.items()
        }
    )

    @field_validator("folders")
    @classmethod
    def _normalize_keys(cls, value: dict[str, WorkflowStatus]) -> dict[str, WorkflowStatus]:
        normalized = {k.strip().lower(): v for k, v in value.items() if k.strip()}
        if not normalized:
            raise ValueError("folders must contain at least one entry")
        return normalized

    def as_mapping(self) -> dict[str, str]:
        return {k: v.value for k, v in self.folders.items()}


ConfigRecord = (
    SpacesConfig
    | ScanningConfig
    | PollingConfig
    | ResourceGuardConfig
    | AutoScanConfig
    | DateCutoffs
    | WorkflowFolderMap
)

CONFIG_RECORDS: dict[ConfigKey, type[ConfigRecord]] = {
    ConfigKey.SPACES: SpacesConfig,
    ConfigKey.SCANNING: ScanningConfig,
    ConfigKey.POLLING: PollingConfig,
    ConfigKey.RESOURCE_GUARD: ResourceGuardConfig,
    ConfigKey.AUTO_SCAN: AutoScanConfig,
    ConfigKey.DATE_CUTOFFS: DateCutoffs,
    ConfigKey.WORKFLOW_FOLDERS: WorkflowFolderMap,
}


class PathTestRequest(BaseModel):
    """Operator request for the scanning agent to validate its scan roots.

    ``container_mount_root`` and ``scan_roots`` override the stored scanning
    config for this test only.
    """

    request_id: str
    status: Literal["pending", "completed"] = "pending"
    requested_at: str | None = None
    host_path: str | None = None
    container_mount_root: str | None = None
    scan_roots: list[str] | None = None
