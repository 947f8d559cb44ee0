"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Coordinator settings.

    Static process settings only. Operator-tunable values that agents receive on
    heartbeat (scan roots, resource guard, polling) live in the config store,
    see ``coordinator.services.config_service``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    secret_key: str = "change-me-in-production"
    debug: bool = False
    expose_docs: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///data/db/coordinator.db"
    db_retry_attempts: int = Field(default=3, ge=1, le=10)
    db_retry_base_delay_seconds: float = Field(default=0.2, ge=0)

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)

    # Operator auth
    access_token_expire_minutes: int = Field(default=60, ge=1)
    auth_login_max_failures: int = Field(default=5, ge=1)
    auth_rate_limit_window_seconds: int = Field(default=300, ge=1)

    # Admin bootstrap
    admin_username: str = "admin"
    admin_password: str = "admin"

    # Agent pairing
    pairing_code_ttl_minutes: int = Field(default=15, ge=1, le=24 * 60)
    pairing_max_failures: int = Field(default=10, ge=1)

    # Coordination
    heartbeat_history_limit: int = Field(default=60, ge=1, le=10_000)
    agent_offline_after_seconds: int = Field(default=120, ge=1)
    scan_stale_seconds: int = Field(default=120, ge=1)
    job_stale_timeout_minutes: int = Field(default=30, ge=1)
    job_claim_max_batch: int = Field(default=50, ge=1)
    render_lease_minutes: int = Field(default=5, ge=1)
    render_max_attempts: int = Field(default=5, ge=1)
    ingest_max_attempts: int = Field(default=3, ge=1, le=10)
    batch_limit: int = Field(default=200, ge=1, le=5000)

    # External name lookup (merch-group descriptions)
    lookup_enabled: bool = False
    lookup_base_url: str = "http://localhost:9000/api"
    lookup_company_code: str = "EDGEHOME"
    lookup_api_key: str = ""
    lookup_timeout_seconds: float = Field(default=5.0, gt=0)

    def validate_runtime_security(self) -> None:
        """Validate security-critical production settings."""
        if self.debug:
            return

        violations: list[str] = []
        if self.secret_key == "change-me-in-production" or len(self.secret_key) < 32:
            violations.append(
                "SECRET_KEY must be overridden with a high-entropy value (>=32 chars)"
            )
        if self.admin_password == "admin" or len(self.admin_password) < 12:
            violations.append("ADMIN_PASSWORD must be overridden with a strong value (>=12 chars)")
        if self.lookup_enabled and not self.lookup_api_key:
            violations.append("LOOKUP_API_KEY must be set when LOOKUP_ENABLED is true")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Insecure production configuration: {joined}")
