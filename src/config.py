from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings

ROOT_DIR = Path(__file__).parent.parent


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 3000
    environment: str = "production"  # "development" adds stack traces to 500s

    # Storage (SQLite db + uploaded icons live under data_dir)
    data_dir: Path = ROOT_DIR / "data"
    static_dir: Path = ROOT_DIR / "static"
    seed_examples: bool = True

    # Uploads
    max_upload_bytes: int = 8 * 1024 * 1024
    max_upload_files: int = 10

    # App health checks
    health_timeout_ms: int = 7_000  # per attempt, per redirect hop
    health_max_redirects: int = 3
    health_user_agent: str = "TablooHealth/1.0 (+https://tabloo)"

    # Background poller (off by default; dashboards poll /api/apps/health/check)
    health_poll_enabled: bool = False
    health_poll_interval_ms: int = 60_000

    # Logging
    log_level: str = "INFO"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "app.db"

    @property
    def uploads_dir(self) -> Path:
        return self.data_dir / "uploads"

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"


settings = Settings()
