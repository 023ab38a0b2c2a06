from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from pathlib import Path
from typing import Optional
import pydantic


class Settings(BaseSettings):
    """
    Manages all application settings and secrets.
    Reads from CONVOY_* environment variables (and .env file).
    """

    # --- Core Application Configuration ---
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # --- Execution Limits ---
    MAX_PARALLELISM: int = pydantic.Field(default=4, ge=1)
    RESOURCE_UNITS: int = pydantic.Field(default=16, ge=1)
    # No built-in default: pipelines must set a timeout per task
    # or operators must configure one here.
    DEFAULT_TASK_TIMEOUT: Optional[float] = None
    CANCEL_GRACE_SECONDS: float = 10.0

    # --- Storage ---
    STATE_DIR: Path = Path(".convoy/runs")
    ARTIFACTS_DIR: Path = Path(".convoy/artifacts")

    # Optional S3-compatible artifact bucket
    ARTIFACT_BUCKET: Optional[str] = None
    AWS_ENDPOINT_URL: Optional[str] = None
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None
    AWS_REGION: str = "us-east-1"

    # --- API Security (operator tokens) ---
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 12

    # --- Integrations ---
    NOTIFICATION_WEBHOOK_URL: Optional[str] = None

    @pydantic.computed_field
    @property
    def USE_S3_STORAGE(self) -> bool:
        return bool(self.ARTIFACT_BUCKET)

    model_config = SettingsConfigDict(
        env_prefix="CONVOY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Returns a cached instance of the Settings object.
    Using @lru_cache ensures the .env file is read only once.
    """
    return Settings()


settings = get_settings()
