"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Herald configuration. All values come from environment variables."""

    # Database
    database_path: Path = Field(default=Path("data/herald.db"))

    # Turso (hosted libSQL). When set, overrides local database_path
    turso_database_url: str = Field(default="")
    turso_auth_token: str = Field(default="")

    # Scheduler
    scheduler_timezone: str = Field(default="UTC")
    # Longest single timer wait; longer delays are split into hops.
    # Default is the 32-bit millisecond ceiling (~24.8 days).
    scheduler_max_wait_seconds: int = Field(default=2_147_483, gt=0)
    scheduler_retention_days: int = Field(default=30, ge=0)
    # How long stop() waits for in-flight deliveries.
    scheduler_shutdown_timeout_seconds: float = Field(default=10.0, ge=0)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)


settings = Settings()
