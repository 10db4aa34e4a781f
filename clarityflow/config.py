from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
  model_config = SettingsConfigDict(env_file=".env", extra="ignore")

  database_url: str = "postgresql+asyncpg://clarityflow:clarityflow@db:5432/clarityflow"
  redis_url: str | None = None
  kv_namespace: str = "clarityflow"
  app_version: str = "v2026-10-17"

  log_level: str = "INFO"
  log_dir: str = ".local/clarityflow"
  default_timezone: str = "UTC"
  background_jobs_enabled: bool = True

  deadline_check_interval_minutes: int = 60
  notification_feed_limit: int = 50

  rate_limit_per_hour: int = 1000
  rate_limit_window_seconds: int = 3600
  rate_limit_sweep_seconds: int = 3600

  push_provider: str = "local"  # local | pushover
  pushover_app_token: str | None = None
  pushover_user_key: str | None = None

  smtp_host: str | None = None
  smtp_port: int = 587
  smtp_username: str | None = None
  smtp_password: str | None = None
  smtp_from: str | None = None
  smtp_to: str | None = None
  smtp_starttls: bool = True

  weekly_goal: int = 7
  monthly_goal: int = 30


settings = Settings()
