"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Exercise Sync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database ---
    database_url: str = "postgresql://localhost:5432/exercises"
    db_pool_min_size: int = 2
    db_pool_max_size: int = 10

    # --- Fitness platform API ---
    trainerize_api_url: str = "https://api.trainerize.com/v03"
    trainerize_group_id: str = ""
    trainerize_api_token: str = ""  # server-side only

    # --- Gateway ---
    requests_per_second: float = 2
    max_retries: int = 3
    retry_delay_ms: int = 1000

    # --- Bulk add defaults ---
    skip_existing: bool = True
    check_for_duplicates: bool = True

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
