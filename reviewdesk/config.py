"""ReviewDesk configuration: all tuneable settings in one place."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field

from reviewdesk.models import DeadlineSettings


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_csv(name: str, default: list[str]) -> list[str]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    vals = [v.strip() for v in raw.split(",") if v.strip()]
    return vals if vals else default


def _default_data_dir() -> Path:
    """Resolve the data directory: $REVIEWDESK_DATA or ./data."""
    env = os.environ.get("REVIEWDESK_DATA")
    if env:
        return Path(env)
    return Path(__file__).resolve().parent.parent / "data"


class DeadlineConfig(BaseModel):
    """Fallback deadline lengths used until an admin saves their own."""

    invitation_days: int = Field(default_factory=lambda: _env_int("REVIEWDESK_INVITATION_DAYS", 7), ge=1)
    review_days: int = Field(default_factory=lambda: _env_int("REVIEWDESK_REVIEW_DAYS", 30), ge=1)
    re_review_days: int = Field(default_factory=lambda: _env_int("REVIEWDESK_RE_REVIEW_DAYS", 2), ge=1)
    revision_days: int = Field(default_factory=lambda: _env_int("REVIEWDESK_REVISION_DAYS", 14), ge=1)
    finalization_days: int = Field(
        default_factory=lambda: _env_int("REVIEWDESK_FINALIZATION_DAYS", 5), ge=1
    )

    def as_settings(self) -> DeadlineSettings:
        return DeadlineSettings(**self.model_dump())


class WorkflowConfig(BaseModel):
    """Knobs for the review workflow."""

    max_write_attempts: int = Field(
        default_factory=lambda: _env_int("REVIEWDESK_MAX_WRITE_ATTEMPTS", 3),
        ge=1,
        description="Read-recompute-write attempts before a concurrent modification is surfaced",
    )
    max_review_file_bytes: int = Field(
        default=30 * 1024 * 1024, ge=1, description="Largest review attachment accepted"
    )


class SecurityConfig(BaseModel):
    """Authentication settings."""

    require_api_key: bool = Field(
        default_factory=lambda: _env_bool("REVIEWDESK_REQUIRE_API_KEY", False),
        description="If false, the X-Actor-Id header is trusted (development only)",
    )
    api_keys_json: str = Field(
        default_factory=lambda: os.environ.get("REVIEWDESK_API_KEYS_JSON", ""),
        description='JSON list of key records: [{"key":"...","user_id":"..."}]',
    )


class RateLimitConfig(BaseModel):
    enabled: bool = Field(default_factory=lambda: _env_bool("REVIEWDESK_RATE_LIMIT_ENABLED", True))
    requests_per_minute: int = Field(
        default_factory=lambda: _env_int("REVIEWDESK_RATE_LIMIT_RPM", 240),
        ge=1,
    )


class ServerConfig(BaseModel):
    """Network and transport settings."""

    host: str = Field(default_factory=lambda: os.environ.get("REVIEWDESK_HOST", "127.0.0.1"))
    rest_port: int = Field(default_factory=lambda: _env_int("REVIEWDESK_PORT", 8000))
    mcp_transport: str = Field(
        default_factory=lambda: os.environ.get("REVIEWDESK_MCP_TRANSPORT", "stdio"),
        description="stdio | sse | streamable-http",
    )
    cors_origins: list[str] = Field(
        default_factory=lambda: _env_csv("REVIEWDESK_CORS_ORIGINS", []),
    )
    max_request_bytes: int = Field(
        default_factory=lambda: _env_int("REVIEWDESK_MAX_REQUEST_BYTES", 45_000_000),
        ge=1_024,
    )
    log_level: str = Field(default_factory=lambda: os.environ.get("REVIEWDESK_LOG_LEVEL", "info"))


class Config(BaseModel):
    """Top-level ReviewDesk configuration."""

    environment: str = Field(default_factory=lambda: os.environ.get("REVIEWDESK_ENV", "development"))
    data_dir: Path = Field(default_factory=_default_data_dir)
    db_filename: str = Field(default="reviewdesk.db")
    files_dir_name: str = Field(default="files")
    deadlines: DeadlineConfig = Field(default_factory=DeadlineConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_filename

    @property
    def files_path(self) -> Path:
        return self.data_dir / self.files_dir_name

    def ensure_dirs(self) -> None:
        """Create data directories if they don't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.files_path.mkdir(parents=True, exist_ok=True)


# Singleton: importable everywhere as `from reviewdesk.config import settings`
settings = Config()
