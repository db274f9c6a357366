"""Orchestration core configuration using pydantic-settings.

This module defines the FabricationSettings class that reads configuration
from environment variables with the FABRICATION_ prefix. Only the GitHub
token is required; every other setting has a working default.
"""

from typing import Any, Dict, List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_REDACTED = "***"


class FabricationSettings(BaseSettings):
    """Orchestration core configuration from environment variables.

    All environment variables are prefixed with FABRICATION_ (e.g.,
    FABRICATION_GITHUB_TOKEN).

    Required fields (must be set via environment variables):
    - github_token: GitHub API token for search, issue creation and
      workflow dispatch
    """

    model_config = SettingsConfigDict(
        env_prefix="FABRICATION_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # GitHub Configuration
    # -------------------------------------------------------------------------
    github_token: str

    # Base URL for GitHub API (supports GitHub Enterprise)
    github_base_url: str = "https://api.github.com"

    # Comma-separated "owner/repo" or "owner/*" entries; empty allows all
    allowed_repositories: str = ""

    # Per-request timeout for every GitHub call
    request_timeout_seconds: float = 30.0

    # -------------------------------------------------------------------------
    # Retry Configuration (poll and ingest reads)
    # -------------------------------------------------------------------------
    max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0

    # -------------------------------------------------------------------------
    # Dispatch Configuration
    # -------------------------------------------------------------------------
    # Bounded attempts to locate a run after the trigger was accepted
    dispatch_lookup_attempts: int = 5

    # Fixed delay between lookup attempts
    dispatch_lookup_delay_seconds: float = 2.0

    # Runs created earlier than dispatch time minus this margin are ignored
    dispatch_lookup_margin_seconds: float = 10.0

    # Overall deadline for one dispatch call
    dispatch_timeout_seconds: float = 120.0

    # Workflow input that carries the per-dispatch correlation token
    correlation_input_name: str = "correlation_id"

    # Accept the most recent run on the ref when no run echoes the token
    allow_most_recent_fallback: bool = True

    default_workflow_id: str = "ci.yml"
    default_ref: str = "main"

    # -------------------------------------------------------------------------
    # Orchestration Configuration
    # -------------------------------------------------------------------------
    # What a FAILED or CANCELLED run proposes: "hold" or "stay"
    failure_policy: str = "hold"

    poll_interval_seconds: float = 15.0
    poll_timeout_seconds: float = 3600.0

    # -------------------------------------------------------------------------
    # Database Configuration
    # -------------------------------------------------------------------------
    # PostgreSQL connection string; in-memory stores are used when unset
    database_url: Optional[str] = None

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"
    port: int = 8080

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("github_token")
    @classmethod
    def validate_github_token(cls, v: str) -> str:
        """Validate that GitHub token is not empty."""
        if not v or not v.strip():
            raise ValueError("github_token cannot be empty")
        return v

    @field_validator("github_base_url")
    @classmethod
    def validate_github_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("github_base_url must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate the database URL format when one is given."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator(
        "request_timeout_seconds",
        "dispatch_timeout_seconds",
        "poll_interval_seconds",
        "poll_timeout_seconds",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts and intervals must be positive")
        return v

    @field_validator(
        "max_retries",
        "retry_base_delay_seconds",
        "retry_max_delay_seconds",
        "dispatch_lookup_delay_seconds",
        "dispatch_lookup_margin_seconds",
    )
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("retry and lookup settings cannot be negative")
        return v

    @field_validator("dispatch_lookup_attempts")
    @classmethod
    def validate_lookup_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("dispatch_lookup_attempts must be at least 1")
        return v

    @field_validator("correlation_input_name")
    @classmethod
    def validate_correlation_input_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("correlation_input_name cannot be empty")
        return v.strip()

    @field_validator("failure_policy")
    @classmethod
    def validate_failure_policy(cls, v: str) -> str:
        normalized = v.strip().lower()
        if normalized not in ("hold", "stay"):
            raise ValueError("failure_policy must be 'hold' or 'stay'")
        return normalized

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @property
    def allowed_repository_list(self) -> List[str]:
        """Parse allowed_repositories into a list of entries."""
        return [
            entry.strip()
            for entry in self.allowed_repositories.split(",")
            if entry.strip()
        ]

    def redacted(self) -> Dict[str, Any]:
        """Return the settings as a dict with secrets masked, for logging."""
        values = self.model_dump()
        values["github_token"] = _REDACTED
        if values.get("database_url"):
            values["database_url"] = _REDACTED
        return values


def get_settings() -> FabricationSettings:
    """Create and return a FabricationSettings instance.

    Returns:
        FabricationSettings: Configured settings instance.

    Raises:
        pydantic.ValidationError: If required fields are missing or invalid.
    """
    return FabricationSettings()
