"""
Configuration
Engine settings read from environment variables (.env loaded for local profiles)
"""
import logging
import os
from typing import Optional
from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, using %s", name, raw, default)
        return default


class Settings(BaseModel):
    site_id: str = "default-site"
    db_path: str = "cooling.db"
    sweep_interval_seconds: float = 10.0
    remote_url: str = ""
    remote_api_key: str = ""
    sync_max_retries: int = 3
    sync_retry_delay_seconds: float = 5.0
    log_level: str = "INFO"

    @field_validator("sweep_interval_seconds")
    @classmethod
    def _positive_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("sweep interval must be positive")
        return v

    @field_validator("sync_max_retries")
    @classmethod
    def _at_least_one_retry(cls, v: int) -> int:
        return max(1, v)

    @field_validator("remote_url", "remote_api_key", "site_id", mode="after")
    @classmethod
    def _strip(cls, v: str) -> str:
        return (v or "").strip()

    @property
    def sync_enabled(self) -> bool:
        return bool(self.remote_url)


def load_settings(profile: Optional[str] = None) -> Settings:
    """
    Build Settings from the environment

    .env is loaded only when PROFILE is unset or "local".
    """
    profile = os.getenv("PROFILE", "") if profile is None else profile
    if profile in ("", "local"):
        load_dotenv()

    return Settings(
        site_id=os.getenv("COOLING_SITE_ID", "default-site"),
        db_path=os.getenv("COOLING_DB_PATH", "cooling.db"),
        sweep_interval_seconds=_env_float("COOLING_SWEEP_INTERVAL_SECONDS", 10.0),
        remote_url=os.getenv("COOLING_REMOTE_URL", ""),
        remote_api_key=os.getenv("COOLING_REMOTE_API_KEY", ""),
        sync_max_retries=_env_int("COOLING_SYNC_MAX_RETRIES", 3),
        sync_retry_delay_seconds=_env_float("COOLING_SYNC_RETRY_DELAY_SECONDS", 5.0),
        log_level=os.getenv("COOLING_LOG_LEVEL", "INFO").upper(),
    )
