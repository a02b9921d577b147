from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service configuration, read from CATALOG_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CATALOG_",
        case_sensitive=False,
        extra="ignore",
    )

    database_url: str = Field("sqlite:///./catalog.db", description="SQLModel database URL")
    storage_root: Path = Field(Path("./data"), description="Directory holding revision content")
    session_id_required: bool = Field(False, description="Require a sessionID header on resource routes")
    session_ttl_minutes: int = Field(60, ge=1, description="Lifetime of a login token")
    admin_username: str = "admin"
    admin_password: str = "password"
    log_level: str = Field("INFO", description="Root logging level")


@lru_cache
def get_settings() -> Settings:
    return Settings()
