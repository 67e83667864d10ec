"""
Mirai Assistant — Centralized configuration.

Loads all settings from .env and validates required keys.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from src/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram
    TELEGRAM_BOT_TOKEN: str

    # LLM: gemini, anthropic, openai or cohere
    LLM_PROVIDER: str = "gemini"
    LLM_MODEL: str = ""          # empty → smart default per provider
    LLM_API_KEY: str

    # SQLite
    DATABASE_PATH: str = "data/mirai.db"

    # Security
    ALLOWED_USER_IDS: list[int] = []

    # Display
    TIMEZONE: str = "Asia/Tokyo"
    ASSISTANT_NAME: str = "Mirai"

    # Conversation lanes
    SESSION_KEY_SALT: str = "mirai"
    CHAT_HISTORY_LIMIT: int = 20

    # Reminders
    REMINDER_POLL_SECONDS: int = 20
    REMINDER_SWEEP_SECONDS: int = 3600
    REMINDER_RECHECK_SECONDS: float = 1.0
    REMINDER_WINDOW_MINUTES: int = 10

    @field_validator("ALLOWED_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator(
        "CHAT_HISTORY_LIMIT",
        "REMINDER_POLL_SECONDS",
        "REMINDER_SWEEP_SECONDS",
        "REMINDER_WINDOW_MINUTES",
        mode="before",
    )
    @classmethod
    def parse_positive_int(cls, v: str | int) -> int:
        value = int(v)
        if value <= 0:
            raise ValueError(f"must be positive, got {value}")
        return value


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")
    llm_api_key = os.getenv("LLM_API_KEY", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    if not llm_api_key or llm_api_key.startswith("your-"):
        print("ERROR: LLM_API_KEY is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        LLM_PROVIDER=os.getenv("LLM_PROVIDER", "gemini"),
        LLM_MODEL=os.getenv("LLM_MODEL", ""),
        LLM_API_KEY=llm_api_key,
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/mirai.db"),
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
        TIMEZONE=os.getenv("TIMEZONE", "Asia/Tokyo"),
        ASSISTANT_NAME=os.getenv("ASSISTANT_NAME", "Mirai"),
        SESSION_KEY_SALT=os.getenv("SESSION_KEY_SALT", "mirai"),
        CHAT_HISTORY_LIMIT=os.getenv("CHAT_HISTORY_LIMIT", "20"),
        REMINDER_POLL_SECONDS=os.getenv("REMINDER_POLL_SECONDS", "20"),
        REMINDER_SWEEP_SECONDS=os.getenv("REMINDER_SWEEP_SECONDS", "3600"),
        REMINDER_RECHECK_SECONDS=float(os.getenv("REMINDER_RECHECK_SECONDS", "1")),
        REMINDER_WINDOW_MINUTES=os.getenv("REMINDER_WINDOW_MINUTES", "10"),
    )


# Singleton, imported by all other modules as:
#   from src.config import settings
settings = _load_settings()
