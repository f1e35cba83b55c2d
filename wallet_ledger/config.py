from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-wide settings, read from the environment or ``.env``."""

    ENVIRONMENT: Literal["local", "development", "production"] = "local"
    LOG_LEVEL: str = "INFO"

    # Empty means the in-process store; set a SQLAlchemy URL for a shared database.
    DATABASE_URL: Optional[str] = None
    DB_ECHO: bool = False

    # Used for the daily spin when an account carries no timezone of its own
    DEFAULT_TIMEZONE: str = "UTC"

    # JSON file holding a RewardsConfig; built-in tables are used when unset
    REWARDS_CONFIG_PATH: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("DATABASE_URL")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return None
        if v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+psycopg://", 1)
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()
