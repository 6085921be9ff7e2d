"""
Report Service Configuration Module

Centralized configuration management with Pydantic validation.
All environment variables are validated at startup to catch misconfigurations early.
"""

import logging
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServiceSettings(BaseSettings):
    """
    Report service configuration with validation.

    All settings can be overridden via environment variables
    (exact upper-case names, e.g. MAX_ENGINE_INSTANCES).
    """

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False, extra="ignore")

    # === Engine Pool ===
    max_engine_instances: int = Field(
        default=1,
        ge=1,
        le=8,
        description="Maximum concurrent Chromium processes (1-8)"
    )
    max_contexts_per_instance: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Maximum open render contexts per Chromium process (1-32)"
    )
    backpressure_policy: str = Field(
        default="block",
        description="What to do when the pool is full: 'block' or 'fail_fast'"
    )
    acquire_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=120,
        description="How long a job may wait for a free render context"
    )
    engine_start_attempts: int = Field(
        default=2,
        ge=1,
        le=5,
        description="Launch attempts before reporting the engine unavailable"
    )
    engine_prewarm: bool = Field(
        default=False,
        description="Launch the first Chromium process at startup instead of on first use"
    )
    playwright_headless: bool = Field(default=True)

    # === Deadlines ===
    render_timeout_seconds: float = Field(default=30.0, gt=0, le=300)
    render_load_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=300,
        description="Upper bound on waiting for network quiescence after loading HTML"
    )
    upload_timeout_seconds: float = Field(default=15.0, gt=0, le=300)
    overall_deadline_seconds: float = Field(default=45.0, gt=0, le=600)
    shutdown_grace_seconds: float = Field(default=10.0, ge=0, le=120)

    # === Artifacts ===
    serving_window_seconds: float = Field(
        default=60.0,
        ge=0,
        le=3600,
        description="How long a generated PDF stays fetchable after upload"
    )
    serving_dir: str = Field(default="public", description="Directory holding served artifacts")
    serving_path: str = Field(default="/public", description="URL prefix the serving layer exposes")
    public_base_url: str = Field(
        default="http://localhost:3000",
        description="Externally reachable base URL of this service"
    )
    max_html_bytes: int = Field(default=5 * 1024 * 1024, ge=1)

    # === Security ===
    internal_auth_token: Optional[str] = Field(
        default=None,
        min_length=16,
        description="Shared secret expected in the X-Auth-Token header (min 16 chars)"
    )
    environment: str = Field(
        default="development",
        description="Environment: development, staging, production"
    )

    # === Airtable ===
    airtable_api_key: Optional[str] = Field(default=None)
    airtable_base_id: Optional[str] = Field(default=None)
    airtable_table_name: str = Field(default="Patrolling Report")
    airtable_attachment_field: str = Field(default="Approval Attachment")
    airtable_api_url: str = Field(default="https://api.airtable.com/v0")

    # === Logging ===
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="simple")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is a known value."""
        allowed = {"development", "staging", "production"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"environment must be one of: {', '.join(sorted(allowed))}")
        return v_lower

    @field_validator("backpressure_policy")
    @classmethod
    def validate_backpressure_policy(cls, v: str) -> str:
        v_lower = v.lower().replace("-", "_")
        if v_lower not in {"block", "fail_fast"}:
            raise ValueError("backpressure_policy must be 'block' or 'fail_fast'")
        return v_lower

    @field_validator("internal_auth_token")
    @classmethod
    def validate_secret_strength(cls, v: Optional[str]) -> Optional[str]:
        """Validate the shared secret has minimum entropy."""
        if v is None:
            return None
        weak_secrets = {"secret", "password", "changeme", "0123456789abcdef"}
        if v.lower() in weak_secrets or len(set(v)) < 4:
            raise ValueError("Auth token is too weak - use a secure random string")
        return v

    @field_validator("public_base_url", "airtable_api_url")
    @classmethod
    def validate_url_format(cls, v: str) -> str:
        """Basic URL format validation."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Invalid URL format: {v}")
        return v

    @field_validator("serving_path")
    @classmethod
    def normalize_serving_path(cls, v: str) -> str:
        """Normalize to a single leading slash and no trailing slash."""
        return "/" + v.strip("/") if v.strip("/") else ""

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v.lower() not in {"simple", "json"}:
            raise ValueError("log_format must be 'simple' or 'json'")
        return v.lower()

    @model_validator(mode="after")
    def validate_deadline_ordering(self) -> "ServiceSettings":
        """Stage budgets must fit inside the overall request deadline."""
        if self.upload_timeout_seconds >= self.overall_deadline_seconds:
            raise ValueError("upload_timeout_seconds must be shorter than overall_deadline_seconds")
        return self

    @property
    def max_total_contexts(self) -> int:
        return self.max_engine_instances * self.max_contexts_per_instance

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    @property
    def auth_required(self) -> bool:
        """Auth required in production OR if a token is configured."""
        return self.is_production or self.internal_auth_token is not None

    @property
    def airtable_configured(self) -> bool:
        return bool(self.airtable_api_key and self.airtable_base_id)

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration is suitable for production.

        Returns list of warning/error messages.
        """
        issues = []

        if self.is_production:
            if not self.internal_auth_token:
                issues.append("CRITICAL: INTERNAL_AUTH_TOKEN required in production")
            if not self.airtable_configured:
                issues.append("CRITICAL: AIRTABLE_API_KEY and AIRTABLE_BASE_ID required in production")
            if "localhost" in self.public_base_url:
                issues.append("WARNING: PUBLIC_BASE_URL points at localhost; Airtable cannot fetch artifacts")
        elif not self.airtable_configured:
            issues.append("WARNING: Airtable credentials not configured; uploads will be rejected")

        if self.serving_window_seconds < 10:
            issues.append("WARNING: SERVING_WINDOW_SECONDS below 10s may expire before Airtable fetches the file")

        return issues


@lru_cache()
def get_settings() -> ServiceSettings:
    """
    Get cached settings instance.

    Settings are loaded once and cached for performance.
    """
    return ServiceSettings()


def validate_config_on_startup(settings: Optional[ServiceSettings] = None) -> ServiceSettings:
    """
    Validate configuration at application startup.

    Raises ValueError with details if config is invalid.
    Logs warnings for non-critical issues.
    """
    logger = logging.getLogger(__name__)

    try:
        settings = settings or get_settings()
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}")

    for issue in settings.validate_production_config():
        if issue.startswith("CRITICAL"):
            raise ValueError(issue)
        logger.warning(issue)

    # Log loaded configuration (redact secrets)
    logger.info(f"Configuration loaded: environment={settings.environment}")
    logger.info(
        f"  engine pool: instances={settings.max_engine_instances}, "
        f"contexts/instance={settings.max_contexts_per_instance}, "
        f"backpressure={settings.backpressure_policy}"
    )
    logger.info(
        f"  deadlines: overall={settings.overall_deadline_seconds}s, "
        f"render={settings.render_timeout_seconds}s, upload={settings.upload_timeout_seconds}s"
    )
    logger.info(f"  serving: {settings.public_base_url}{settings.serving_path} (window={settings.serving_window_seconds}s)")
    logger.info(f"  airtable: table={settings.airtable_table_name!r}, key={'*****' if settings.airtable_api_key else None}")
    logger.info(f"  auth_required={settings.auth_required}")
    return settings
