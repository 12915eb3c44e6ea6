"""
Profile Engine - Configuration Management

Centralized configuration for the identity provider, the domain record store,
retry/timeout tuning and observability. This module ensures:
- No hardcoded secrets
- Missing credentials are reported before the first request
- Environment-specific settings (dev/staging/prod)
"""

from typing import Dict, List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(
        default="development",
        description="Runtime environment: development, staging, production"
    )

    # ==================== IDENTITY PROVIDER ====================
    IDP_DOMAIN: str = Field(
        default="",
        description="Identity provider tenant domain (e.g. tenant.us.auth0.com)"
    )
    IDP_CLIENT_ID: str = Field(default="", description="Management API client id")
    IDP_CLIENT_SECRET: str = Field(default="", description="Management API client secret")
    IDP_AUDIENCE: str = Field(
        default="",
        description="Management API audience (defaults to https://<domain>/api/v2/)"
    )
    IDP_TOKEN_SAFETY_MARGIN_SECONDS: int = Field(
        default=300,
        description="Treat the management token as expired this long before its TTL ends"
    )
    IDP_LISTING_PAGE_SIZE: int = Field(
        default=100,
        description="Page size of the last-resort user listing scan"
    )

    # ==================== RECORD STORE ====================
    RECORD_STORE_API_KEY: str = Field(default="", description="Record store personal access token")
    RECORD_STORE_BASE_ID: str = Field(default="", description="Record store base id")
    RECORD_STORE_API_URL: str = Field(
        default="https://api.airtable.com/v0",
        description="Record store REST API root"
    )
    RECORD_STORE_TABLE_CONTACTS: str = Field(default="Contacts")
    RECORD_STORE_TABLE_EDUCATION: str = Field(default="Education")
    RECORD_STORE_TABLE_INSTITUTIONS: str = Field(default="Institutions")
    RECORD_STORE_TABLE_PROGRAMS: str = Field(default="Programs")
    RECORD_STORE_TABLE_PARTICIPATION: str = Field(default="Participation")
    RECORD_STORE_TABLE_TEAMS: str = Field(default="Teams")
    RECORD_STORE_TABLE_COHORTS: str = Field(default="Cohorts")
    RECORD_STORE_TABLE_INITIATIVES: str = Field(default="Initiatives")

    # ==================== RECONCILIATION ====================
    MAJOR_RELEVANT_ALIASES: str = Field(
        default="University of Maryland,UMD,Maryland",
        description="Comma-separated institution names/aliases for which major is shown and required"
    )
    METADATA_BOOLEAN_KEYS: str = Field(
        default="onboardingCompleted",
        description="Comma-separated metadata keys coerced to strict booleans"
    )
    REFERENCE_CACHE_TTL_SECONDS: int = Field(
        default=24 * 60 * 60,
        description="TTL for cached Institution/Program/Initiative records"
    )
    REFERENCE_CACHE_MAX_ENTRIES: int = Field(default=5000)
    DEGRADED_CACHE_MAX_ENTRIES: int = Field(default=1000)
    DEGRADED_CACHE_TTL_SECONDS: int = Field(default=6 * 60 * 60)

    # ==================== RETRY & TIMEOUTS ====================
    TOKEN_RETRY_ATTEMPTS: int = Field(default=3)
    METADATA_RETRY_ATTEMPTS: int = Field(default=3)
    METADATA_RETRY_BASE_DELAY_MS: int = Field(default=500)
    RECORD_STORE_RETRY_ATTEMPTS: int = Field(default=5)
    RECORD_STORE_RETRY_BASE_DELAY_MS: int = Field(default=1000)
    HTTP_TIMEOUT_SECONDS: float = Field(default=10.0)
    PROFILE_TIMEOUT_MINIMAL_SECONDS: float = Field(default=3.0)
    PROFILE_TIMEOUT_FULL_SECONDS: float = Field(default=9.0)

    # ==================== OBSERVABILITY ====================
    SENTRY_DSN: str = Field(
        default="",
        description="Sentry DSN for error tracking"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def idp_audience(self) -> str:
        return self.IDP_AUDIENCE or f"https://{self.IDP_DOMAIN}/api/v2/"

    @property
    def record_store_base_url(self) -> str:
        return f"{self.RECORD_STORE_API_URL.rstrip('/')}/{self.RECORD_STORE_BASE_ID}"

    @property
    def major_relevant_aliases_list(self) -> List[str]:
        return [a.strip() for a in self.MAJOR_RELEVANT_ALIASES.split(",") if a.strip()]

    @property
    def metadata_boolean_keys_list(self) -> List[str]:
        return [k.strip() for k in self.METADATA_BOOLEAN_KEYS.split(",") if k.strip()]

    @property
    def table_ids(self) -> Dict[str, str]:
        """Logical table key -> configured table id/name."""
        return {
            "CONTACTS": self.RECORD_STORE_TABLE_CONTACTS,
            "EDUCATION": self.RECORD_STORE_TABLE_EDUCATION,
            "INSTITUTIONS": self.RECORD_STORE_TABLE_INSTITUTIONS,
            "PROGRAMS": self.RECORD_STORE_TABLE_PROGRAMS,
            "PARTICIPATION": self.RECORD_STORE_TABLE_PARTICIPATION,
            "TEAMS": self.RECORD_STORE_TABLE_TEAMS,
            "COHORTS": self.RECORD_STORE_TABLE_COHORTS,
            "INITIATIVES": self.RECORD_STORE_TABLE_INITIATIVES,
        }

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        required = [
            ("IDP_DOMAIN", self.IDP_DOMAIN),
            ("IDP_CLIENT_ID", self.IDP_CLIENT_ID),
            ("IDP_CLIENT_SECRET", self.IDP_CLIENT_SECRET),
            ("RECORD_STORE_API_KEY", self.RECORD_STORE_API_KEY),
            ("RECORD_STORE_BASE_ID", self.RECORD_STORE_BASE_ID),
        ]
        for name, value in required:
            if not value:
                errors.append(f"{name} is required")

        if self.IDP_DOMAIN.startswith(("http://", "https://")):
            errors.append("IDP_DOMAIN must be a bare host name, without scheme")

        if self.PROFILE_TIMEOUT_MINIMAL_SECONDS > self.PROFILE_TIMEOUT_FULL_SECONDS:
            errors.append("PROFILE_TIMEOUT_MINIMAL_SECONDS should not exceed PROFILE_TIMEOUT_FULL_SECONDS")

        if self.is_production and not self.SENTRY_DSN:
            errors.append("SENTRY_DSN is required in production")

        return errors


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")

    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings


# ==================== ENVIRONMENT VALIDATION ====================

def validate_environment(settings: Settings = None) -> dict:
    """
    Validate all required environment variables.

    Returns a status dict with validation results.
    """
    settings = settings or get_settings()

    status = {
        "valid": True,
        "environment": settings.ENVIRONMENT,
        "errors": [],
        "warnings": [],
        "variables": {}
    }

    required_vars = [
        ("IDP_DOMAIN", settings.IDP_DOMAIN),
        ("IDP_CLIENT_ID", settings.IDP_CLIENT_ID),
        ("IDP_CLIENT_SECRET", settings.IDP_CLIENT_SECRET),
        ("RECORD_STORE_API_KEY", settings.RECORD_STORE_API_KEY),
        ("RECORD_STORE_BASE_ID", settings.RECORD_STORE_BASE_ID),
    ]
    for name, value in required_vars:
        if not value:
            status["errors"].append(f"{name} is not set")
            status["valid"] = False
        else:
            status["variables"][name] = "set"

    optional_vars = [
        ("SENTRY_DSN", settings.SENTRY_DSN, "Error tracking disabled"),
        ("IDP_AUDIENCE", settings.IDP_AUDIENCE, "Management API audience derived from IDP_DOMAIN"),
    ]
    for name, value, warning in optional_vars:
        if not value:
            status["warnings"].append(warning)
            status["variables"][name] = "not set"
        else:
            status["variables"][name] = "set"

    for error in settings.validate_production_config():
        if error not in status["errors"] and not error.endswith("is required"):
            status["errors"].append(error)
            status["valid"] = False

    return status
