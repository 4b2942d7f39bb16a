from pydantic_settings import BaseSettings
from pydantic import validator
from datetime import date
from typing import Optional
import logging


class Settings(BaseSettings):
    # Application settings
    APP_NAME: str = "Attendance Ledger"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # Database settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./attendance_ledger.db"
    DATABASE_ECHO: bool = False

    # Term window for ledger writes
    TERM_START_DATE: Optional[date] = None
    TERM_END_DATE: Optional[date] = None
    MAX_FUTURE_DAYS: int = 0
    MAX_PAST_DAYS: Optional[int] = None

    # Summary settings
    LOW_ATTENDANCE_THRESHOLD: float = 75.0
    LOW_ATTENDANCE_MIN_SESSIONS: int = 5

    # Audit settings
    AUDIT_WRITE_RETRIES: int = 2

    # Migration settings
    VALIDATION_SAMPLE_SIZE: int = 100
    BACKUP_DIR: str = "./backups"
    REPORT_DIR: str = "./reports"

    @validator("DATABASE_URL")
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        return v

    @validator("TERM_END_DATE")
    def validate_term_window(cls, v, values):
        start = values.get("TERM_START_DATE")
        if v is not None and start is not None and v < start:
            raise ValueError("TERM_END_DATE must not be before TERM_START_DATE")
        return v

    @validator("LOG_LEVEL")
    def validate_log_level(cls, v):
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown LOG_LEVEL: {v}")
        return level

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for the app and the migration CLI."""
    logging.basicConfig(
        level=level or settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
