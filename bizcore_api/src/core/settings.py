from __future__ import annotations

from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.query.context import QueryConfig


class AppSettings(BaseSettings):
    """
    Application-level settings for the FastAPI service.

    This is separate from src.db.config.Settings, which focuses on the database layer.
    """

    # FastAPI metadata
    APP_NAME: str = Field(default="BizCore API")
    APP_DESCRIPTION: str = Field(
        default=(
            "Backend API for a multi-tenant business platform. Every listing endpoint "
            "shares one tenant-scoped query, filter, pagination and caching engine."
        )
    )
    APP_VERSION: str = Field(default="0.1.0")

    # CORS
    CORS_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"],
        description="Comma-separated list or JSON array of allowed origins. Default: *",
    )
    CORS_ALLOW_CREDENTIALS: bool = Field(default=True)
    CORS_ALLOW_METHODS: List[str] = Field(default_factory=lambda: ["*"])
    CORS_ALLOW_HEADERS: List[str] = Field(default_factory=lambda: ["*"])

    # Startup behavior
    RUN_MIGRATIONS_ON_STARTUP: bool = Field(
        default=True,
        description="If true, run Alembic migrations (upgrade head) at app startup.",
    )

    # Tokens
    JWT_SECRET_KEY: str = Field(default="change-me", description="HMAC key for bearer tokens")
    JWT_ALGORITHM: str = Field(default="HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(default=30)
    REQUIRE_AUTH: bool = Field(
        default=True,
        description="If false, requests without a bearer token are served with an anonymous actor.",
    )

    # Query engine
    QUERY_MAX_LIMIT: int = Field(default=1000, description="Largest page size a client may request")
    QUERY_DEFAULT_LIMIT: int = Field(default=50)
    QUERY_MAX_OR_CLAUSES: int = Field(default=20)
    QUERY_MAX_NESTED_DEPTH: int = Field(default=3)
    QUERY_CACHE_ENABLED: bool = Field(default=True)
    QUERY_CACHE_TTL_SECONDS: int = Field(default=300)
    QUERY_CACHE_MAX_ENTRIES: int = Field(default=10_000, description="Capacity of the process-local cache")
    QUERY_CACHE_URL: Optional[str] = Field(
        default=None, description="Redis URL for a cache shared by all workers; unset keeps it process-local"
    )
    QUERY_TIMEOUT_SECONDS: Optional[float] = Field(
        default=30.0, description="Per datastore call; unset to disable"
    )

    # Logging
    LOG_LEVEL: str = Field(default="INFO")

    # Environment label
    ENVIRONMENT: Optional[str] = Field(
        default=None, description="Environment label (dev/test/prod)"
    )

    # Automatically load from .env at runtime. The orchestrator will provide these.
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, v):
        """
        Accept both JSON array format and comma-separated formats for CORS origins.
        """
        if v is None:
            return ["*"]
        if isinstance(v, str):
            parts = [p.strip() for p in v.split(",") if p.strip()]
            return parts or ["*"]
        if isinstance(v, list):
            return v or ["*"]
        return ["*"]


# PUBLIC_INTERFACE
def get_app_settings() -> AppSettings:
    """
    Return a new AppSettings instance populated from environment variables.

    Note:
      A new instance is built on each call so tests can change the environment.
    """
    return AppSettings()


# PUBLIC_INTERFACE
def get_query_config(settings: Optional[AppSettings] = None) -> QueryConfig:
    """
    Build the query engine configuration from application settings.

    Raises:
        pydantic.ValidationError: the configured limits are inconsistent
            (e.g. default limit above the maximum).
    """
    settings = settings or get_app_settings()
    return QueryConfig(
        max_limit=settings.QUERY_MAX_LIMIT,
        default_limit=settings.QUERY_DEFAULT_LIMIT,
        max_or_clauses=settings.QUERY_MAX_OR_CLAUSES,
        max_nested_depth=settings.QUERY_MAX_NESTED_DEPTH,
        enable_cache=settings.QUERY_CACHE_ENABLED,
        cache_ttl=settings.QUERY_CACHE_TTL_SECONDS,
        timeout=settings.QUERY_TIMEOUT_SECONDS,
    )
