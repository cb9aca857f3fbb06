"""
StagePilot - Configuration
==========================

Settings come from the environment (or a local .env file) and are read
once per process. The agent gateway block decides whether stage replies
come from the external agent service or from the built-in canned agent.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service settings; field names double as environment variable names."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Service
    # ==========================================================================
    APP_NAME: str = "StagePilot"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    # Lowers the log level to DEBUG (agent call traces)
    DEBUG: bool = False

    API_PREFIX: str = "/api"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173", "http://localhost:5005"]

    # ==========================================================================
    # Storage
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./stagepilot.db"
    # Pool sizing applies to server databases only
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    # ==========================================================================
    # Agent Gateway
    # ==========================================================================
    AGENT_GATEWAY_MODE: Literal["http", "simulated"] = "simulated"
    AGENT_SERVICE_URL: str = "http://localhost:8000"
    AGENT_DEFAULT_ENDPOINT: str = "/api/pipeline/chat"
    AGENT_MODEL_NAME: str = "gpt-4"
    AGENT_TIMEOUT_SECONDS: float = Field(default=60.0, gt=0)

    # Scan reply text for [APPROVAL_NEEDED] when the agent sends no flag
    APPROVAL_SENTINEL_FALLBACK: bool = True

    # One writer per stage at a time within this process
    SERIALIZE_STAGE_WRITES: bool = True

    @field_validator("AGENT_SERVICE_URL")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("API_PREFIX")
    @classmethod
    def normalize_prefix(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if v and not v.startswith("/"):
            v = f"/{v}"
        return v

    # ==========================================================================
    # Derived
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
