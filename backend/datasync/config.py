from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

root_dir = Path(__file__).resolve().parent.parent


class DatabaseCredential(BaseModel):
    """One explicit login for a (server, database) pair."""

    server_ip: str = Field(alias="serverIp")
    db_name: str = Field(alias="dbName")
    user_id: str = Field(alias="userId")
    password: str

    model_config = {"populate_by_name": True}


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "DataSync Copy Engine"
    DEBUG: bool = False
    CORS_ORIGINS: list[str] = ["http://localhost:8080", "http://127.0.0.1:8080"]

    # Internal store (configurations, jobs, logs, dead letters)
    INTERNAL_DB_PATH: Path = root_dir / "datasync" / "db" / "internal.db"

    # Copy endpoints
    COPY_BACKEND: Literal["postgres", "sqlite"] = "postgres"
    DATABASE_CREDENTIALS: list[DatabaseCredential] = []

    # Gateway timeouts (seconds)
    PROBE_TIMEOUT_SECONDS: int = 30
    BULK_TIMEOUT_SECONDS: int = 120

    # Scheduling
    SCHEDULER_ENABLED: bool = True

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str | None = None

    model_config = SettingsConfigDict(
        env_file=root_dir / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=True,
    )


settings = Settings()
