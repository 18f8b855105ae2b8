import logging

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="BLOODMATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = "INFO"

    # periodic cascade sweep
    scheduler_enabled: bool = True
    cascade_interval_minutes: int = 60
    cooldown_sweep_hour: int = 3
    timezone: str = "UTC"

    otp_length: int = 6
    location_freshness_hours: int = 24
    min_candidate_score: int = 30


settings = Settings()


def configure_logging(level: str | int | None = None) -> None:
    logging.basicConfig(
        level=level or settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
