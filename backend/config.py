from pydantic_settings import BaseSettings
from pathlib import Path

from apscheduler.triggers.cron import CronTrigger


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"  # development | test | staging | production
    APP_NAME: str = "Health Tracker"
    SECRET_KEY: str = "change-me-in-production"
    DATABASE_URL: str = "sqlite:///data/health_tracker.db"
    DATA_DIR: Path = Path("data")
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRY_HOURS: int = 72
    LOG_LEVEL: str = "INFO"
    SCHEDULER_ENABLED: bool = True
    MED_RESET_CRON: str = "5 0 * * *"
    MED_REMINDER_CRON: str = "*/15 * * * *"
    MED_REMINDER_LOOKAHEAD_MINUTES: int = 15
    HEALTH_SCORE_CRON: str = "0 6 * * *"
    NOTIFICATION_CLEANUP_CRON: str = "0 2 * * *"
    NOTIFICATION_RETENTION_DAYS: int = 30
    JOB_DEADLINE_SECONDS: int = 300

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def is_production_like(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() in {"production", "prod", "staging"}

    def cron_settings(self) -> dict[str, str]:
        return {
            "MED_RESET_CRON": self.MED_RESET_CRON,
            "MED_REMINDER_CRON": self.MED_REMINDER_CRON,
            "HEALTH_SCORE_CRON": self.HEALTH_SCORE_CRON,
            "NOTIFICATION_CLEANUP_CRON": self.NOTIFICATION_CLEANUP_CRON,
        }

    def validate_configuration(self) -> None:
        errors: list[str] = []
        for name, expr in self.cron_settings().items():
            try:
                CronTrigger.from_crontab(expr)
            except ValueError as exc:
                errors.append(f"{name} is not a valid cron expression ({exc})")
        if self.MED_REMINDER_LOOKAHEAD_MINUTES < 1:
            errors.append("MED_REMINDER_LOOKAHEAD_MINUTES must be at least 1")
        if self.NOTIFICATION_RETENTION_DAYS < 1:
            errors.append("NOTIFICATION_RETENTION_DAYS must be at least 1")
        if self.JOB_DEADLINE_SECONDS < 1:
            errors.append("JOB_DEADLINE_SECONDS must be at least 1")
        if self.is_production_like and self.SECRET_KEY == "change-me-in-production":
            errors.append("SECRET_KEY must be changed from the default value")
        if errors:
            joined = "; ".join(errors)
            raise RuntimeError(f"Invalid configuration: {joined}")


settings = Settings()
settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
