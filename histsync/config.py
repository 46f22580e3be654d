"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file).

    Engine tuning (rate limits, batch sizes, backoffs) lives in
    ``histsync/sync/sync_config.yaml`` instead.
    """

    # --- App ---
    app_name: str = "HistSync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Remote source ---
    remote_base_url: str = "https://www.strava.com"
    remote_timeout_seconds: float = 30.0
    current_athlete_id: int | None = None  # athlete whose activities come from the paged API

    # --- Local state ---
    state_dir: str = ".histsync"  # persisted rate limiter ledgers
    sync_config_path: str | None = None  # override for the bundled sync_config.yaml

    # --- Worker pool ---
    worker_pool_size: int | None = None  # default: 2x cpu count
    worker_idle_timeout_seconds: float = 30.0

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
