from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    DATABASE_URL: str = Field(
        "sqlite:///data/sheetflow.db",
        description="SQLAlchemy URL of the backing store"
    )
    DB_TIMEOUT_SECONDS: float = Field(
        15.0,
        description="Persistence call timeout; a timed-out call fails the whole transition"
    )
    LOG_LEVEL: str = Field("INFO", description="Root log level")

    ENTRY_MAX_HOURS: float = Field(24.0, description="Upper bound for a single time entry")
    DAILY_MIN_HOURS: float = Field(8.0, description="Minimum hours per weekday under normal policy")
    DAILY_MAX_HOURS: float = Field(10.0, description="Maximum hours logged per user per day")
    REQUIRE_FULL_WEEKDAYS: bool = Field(
        True,
        description="Refuse submission unless every Monday-Friday carries DAILY_MIN_HOURS"
    )

    TRANSITION_MAX_ATTEMPTS: int = Field(
        3,
        description="Attempts for a transition that loses an optimistic version check"
    )
    REPAIR_CHUNK_SIZE: int = Field(
        500,
        description="Records loaded per batch by maintenance procedures"
    )

# Singleton instance
settings = Settings()
