"""
Runtime settings for the booking server and the client cache.
Values come from the environment (HERD_* / HERD_CLIENT_*) or a local .env file.
"""
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).parent


class Settings(BaseSettings):
    db_path: Path = BASE_DIR / "herd.db"
    fee_rate: float = 0.05
    display_timezone: str = "America/New_York"
    app_origin: str = "http://localhost:5173"

    resend_api_key: str = ""
    email_from: str = "HERD <onboarding@resend.dev>"
    email_redirect_to: str = ""

    # Off: capacity is advisory and concurrent approvals may overbook.
    enforce_capacity: bool = False
    settlement_delay_seconds: float = 0.0

    model_config = SettingsConfigDict(env_prefix="HERD_", env_file=".env", extra="ignore")


class ClientSettings(BaseSettings):
    api_base_url: str = "http://127.0.0.1:8000"
    cache_dir: Path = Path.home() / ".herd"
    cache_quota_bytes: int = 5 * 1024 * 1024

    base_timeout: float = 10.0
    timeout_step: float = 5.0
    classes_timeout: float = 20.0
    max_retries: int = 2
    backoff_base: float = 3.0
    backoff_factor: float = 1.5
    backoff_cap: float = 8.0

    model_config = SettingsConfigDict(env_prefix="HERD_CLIENT_", env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
