from __future__ import annotations

import logging
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Round rules
    GAME_DURATION: int = 60  # seconds
    MAX_ATTEMPTS: int = 3
    WINNING_POINTS: int = 10
    MIN_PLAYERS: int = 2
    MAX_PLAYERS: int = 30
    SESSION_CLEANUP_DELAY: int = 5000  # ms between round end and reset
    TICK_INTERVAL: float = 1.0  # seconds
    ENFORCE_MASTER_QUESTION: bool = True

    EVENT_LOG_LIMIT: int = 500
    SEND_TIMEOUT: float = 2.0  # seconds per pushed frame
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:5000"
    LOG_LEVEL: str = "INFO"
    HOST: str = "0.0.0.0"
    PORT: int = 5000

    @property
    def cleanup_delay_seconds(self) -> float:
        return self.SESSION_CLEANUP_DELAY / 1000.0


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
