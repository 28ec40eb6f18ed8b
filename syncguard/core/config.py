"""
syncguard Configuration

Configuration management with environment variable support.
Implements defaults and validation for cache, retry, undo and audit settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from typing import Dict, Optional
from functools import lru_cache
from dotenv import load_dotenv

from ..constants import (
    DEFAULT_ACTOR_ID,
    DEFAULT_AUDIT_WRITE_TIMEOUT_SECONDS,
    DEFAULT_CACHE_TTL_SECONDS,
    DEFAULT_FETCH_TIMEOUT_SECONDS,
    DEFAULT_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_RETRY_MAX_DELAY_SECONDS,
    DEFAULT_UNDO_WINDOW_SECONDS,
    DEFAULT_WRITE_TIMEOUT_SECONDS,
    MAX_RETRIES_CREATE_UPDATE,
    MAX_RETRIES_DELETE,
)
from ..domain.sync.value_objects import TTL, RetryPolicy

# Load environment variables from .env file
load_dotenv()


class Settings(BaseSettings):
    """Synchronization layer settings with validation and defaults."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )

    # Environment settings
    ENVIRONMENT: str = Field(
        default="development", description="Application environment"
    )
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    # Cache partitions
    CACHE_DEFAULT_TTL_SECONDS: int = Field(
        default=DEFAULT_CACHE_TTL_SECONDS,
        ge=1,
        le=86400,
        description="Default freshness window for a domain partition",
    )
    CACHE_DOMAIN_TTL_SECONDS: Dict[str, int] = Field(
        default_factory=dict,
        description="Per-domain TTL overrides in seconds (JSON object)",
    )

    # Remote deadlines
    REMOTE_FETCH_TIMEOUT_SECONDS: float = Field(
        default=DEFAULT_FETCH_TIMEOUT_SECONDS,
        gt=0,
        le=300,
        description="Deadline for a domain fetch",
    )
    REMOTE_WRITE_TIMEOUT_SECONDS: float = Field(
        default=DEFAULT_WRITE_TIMEOUT_SECONDS,
        gt=0,
        le=300,
        description="Deadline for a single remote write attempt",
    )

    # Retry policy
    RETRY_BASE_DELAY_SECONDS: float = Field(
        default=DEFAULT_RETRY_BASE_DELAY_SECONDS,
        ge=0.0,
        le=60.0,
        description="Base delay for exponential backoff",
    )
    RETRY_MAX_DELAY_SECONDS: float = Field(
        default=DEFAULT_RETRY_MAX_DELAY_SECONDS,
        ge=0.0,
        le=3600.0,
        description="Backoff delay cap",
    )
    RETRY_JITTER_FACTOR: float = Field(
        default=0.0, ge=0.0, le=1.0, description="Jitter ratio applied to delays"
    )
    MAX_RETRIES_CREATE_UPDATE: int = Field(
        default=MAX_RETRIES_CREATE_UPDATE,
        ge=0,
        le=10,
        description="Retries for create and update mutations",
    )
    MAX_RETRIES_DELETE: int = Field(
        default=MAX_RETRIES_DELETE,
        ge=0,
        le=10,
        description="Retries for delete mutations",
    )

    # Undo
    UNDO_WINDOW_SECONDS: float = Field(
        default=DEFAULT_UNDO_WINDOW_SECONDS,
        gt=0,
        le=600,
        description="How long a destructive mutation stays undoable",
    )

    # Audit
    AUDIT_WRITE_TIMEOUT_SECONDS: float = Field(
        default=DEFAULT_AUDIT_WRITE_TIMEOUT_SECONDS,
        gt=0,
        le=60,
        description="Upper bound for a single audit write",
    )
    AUDIT_LOG_PATH: Optional[str] = Field(
        default=None, description="JSON-lines audit file (in-memory when unset)"
    )
    DEFAULT_ACTOR_ID: str = Field(
        default=DEFAULT_ACTOR_ID, description="Actor recorded when none is given"
    )

    # Remote store
    REMOTE_BASE_URL: str = Field(
        default="http://localhost:8000/api", description="Remote store base URL"
    )

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment value."""
        allowed = ["development", "test", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"ENVIRONMENT must be one of: {allowed}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of: {allowed}")
        return v.upper()

    @field_validator("CACHE_DOMAIN_TTL_SECONDS")
    @classmethod
    def validate_domain_ttls(cls, v):
        """Validate per-domain TTL overrides."""
        for domain, seconds in v.items():
            if seconds <= 0:
                raise ValueError(f"TTL for domain '{domain}' must be positive")
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    def ttl_for(self, domain: str) -> TTL:
        """TTL configured for a domain, falling back to the default."""
        seconds = self.CACHE_DOMAIN_TTL_SECONDS.get(
            domain, self.CACHE_DEFAULT_TTL_SECONDS
        )
        return TTL(seconds)

    def domain_ttls(self) -> Dict[str, TTL]:
        """All per-domain TTL overrides as value objects."""
        return {
            domain: TTL(seconds)
            for domain, seconds in self.CACHE_DOMAIN_TTL_SECONDS.items()
        }

    def retry_policy(self) -> RetryPolicy:
        """Build the mutation retry policy from settings."""
        return RetryPolicy(
            base_delay_seconds=self.RETRY_BASE_DELAY_SECONDS,
            max_delay_seconds=self.RETRY_MAX_DELAY_SECONDS,
            jitter_factor=self.RETRY_JITTER_FACTOR,
            max_retries_create_update=self.MAX_RETRIES_CREATE_UPDATE,
            max_retries_delete=self.MAX_RETRIES_DELETE,
        )

    # Alias properties for snake_case usage
    @property
    def environment(self) -> str:
        """Alias for ENVIRONMENT."""
        return self.ENVIRONMENT

    @property
    def log_level(self) -> str:
        """Alias for LOG_LEVEL."""
        return self.LOG_LEVEL

    @property
    def fetch_timeout_seconds(self) -> float:
        """Alias for REMOTE_FETCH_TIMEOUT_SECONDS."""
        return self.REMOTE_FETCH_TIMEOUT_SECONDS

    @property
    def write_timeout_seconds(self) -> float:
        """Alias for REMOTE_WRITE_TIMEOUT_SECONDS."""
        return self.REMOTE_WRITE_TIMEOUT_SECONDS

    @property
    def undo_window_seconds(self) -> float:
        """Alias for UNDO_WINDOW_SECONDS."""
        return self.UNDO_WINDOW_SECONDS


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
