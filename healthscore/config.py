"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "HealthScore"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Postgres ---
    database_url: str = "postgresql://localhost:5432/healthscore"
    db_pool_min_size: int = 2
    db_pool_max_size: int = 20
    db_command_timeout: float = 30.0
    db_acquire_timeout: float = 10.0  # seconds to wait for a free pool connection
    auto_create_schema: bool = False

    # --- Webhook ingress ---
    terra_webhook_secret: str = ""  # empty = signature verification disabled
    payload_soft_limit_bytes: int = 30 * 1024 * 1024  # 30 MB, enrichment-only mode above
    payload_hard_limit_bytes: int = 50 * 1024 * 1024  # 50 MB, rejected above

    # --- Aggregation / backfill ---
    aggregation_advisory_lock: bool = True
    backfill_max_concurrent: int = 4

    # --- Admin ---
    admin_api_token: str = ""  # empty = admin routes unguarded (local dev only)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
