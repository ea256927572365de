from __future__ import annotations

import re
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_SCHEME_RE = re.compile(r"^postgres(ql)?(\+\w+)?://")


def _with_driver(url: str, driver: Optional[str]) -> str:
    """Rewrite the URL scheme to postgresql[+driver]://, whatever driver it carried."""
    scheme = f"postgresql+{driver}://" if driver else "postgresql://"
    return _SCHEME_RE.sub(scheme, url, count=1)


class Settings(BaseSettings):
    """
    Database connection and pool settings.

    The connection URL comes from DATABASE_URL, then POSTGRES_URL, then the
    individual POSTGRES_* variables. Pool and timeout options apply to the
    async engine used by the API; Alembic uses the same URL.
    """

    DATABASE_URL: Optional[str] = Field(default=None, description="Full PostgreSQL connection URL")
    POSTGRES_URL: Optional[str] = Field(default=None, description="Alternative name for DATABASE_URL")
    POSTGRES_USER: Optional[str] = Field(default=None)
    POSTGRES_PASSWORD: Optional[str] = Field(default=None)
    POSTGRES_DB: Optional[str] = Field(default=None)
    POSTGRES_HOST: str = Field(default="localhost")
    POSTGRES_PORT: int = Field(default=5432)

    SQL_ECHO: bool = Field(default=False, description="Log every SQL statement")
    DB_POOL_SIZE: int = Field(default=5, ge=1)
    DB_MAX_OVERFLOW: int = Field(default=10, ge=0)
    DB_POOL_RECYCLE_SECONDS: int = Field(default=1800, description="Recycle pooled connections older than this")
    DB_STATEMENT_TIMEOUT_MS: Optional[int] = Field(
        default=30_000,
        description="Server-side statement_timeout; bounds statements whose client gave up waiting.",
    )
    DB_APPLICATION_NAME: str = Field(default="bizcore_api", description="Reported in pg_stat_activity")

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def database_url(self) -> str:
        """
        The configured URL exactly as given (or assembled from POSTGRES_*).

        Raises:
            ValueError: no URL and incomplete POSTGRES_* variables.
        """
        url = self.DATABASE_URL or self.POSTGRES_URL
        if url:
            return url
        if not (self.POSTGRES_USER and self.POSTGRES_PASSWORD and self.POSTGRES_DB):
            raise ValueError(
                "Database configuration missing: set DATABASE_URL (or POSTGRES_URL), or "
                "POSTGRES_USER, POSTGRES_PASSWORD and POSTGRES_DB."
            )
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def async_database_url(self) -> str:
        """URL for the AsyncEngine (asyncpg driver)."""
        return _with_driver(self.database_url, "asyncpg")

    @property
    def sync_database_url(self) -> str:
        """Driver-less URL, enough for Alembic offline mode."""
        return _with_driver(self.database_url, None)


# PUBLIC_INTERFACE
def get_settings() -> Settings:
    """Return database settings read from the environment (a new instance per call)."""
    return Settings()
