"""SQLAlchemy ORM models for the coordinator."""

from coordinator.models.agent import AgentPairing, AgentRegistration
from coordinator.models.asset import Asset, AssetPathHistory
from coordinator.models.base import Base
from coordinator.models.config_entry import ConfigEntry
from coordinator.models.queue import ProcessingJob, RenderJob
from coordinator.models.scan_request import ScanRequest
from coordinator.models.style_group import StyleGroup
from coordinator.models.user import User

__all__ = [
    "AgentPairing",
    "AgentRegistration",
    "Asset",
    "AssetPathHistory",
    "Base",
    "ConfigEntry",
    "ProcessingJob",
    "RenderJob",
    "ScanRequest",
    "StyleGroup",
    "User",
]
