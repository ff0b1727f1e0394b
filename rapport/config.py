"""Runtime configuration.

Values come from the process environment, with a ``.env`` file at the
repository root loaded first. The engine constants below are not configurable
per deployment except for the per-turn decay.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

ROOT = Path(__file__).parent.parent

INITIAL_ENGAGEMENT = 30
ENGAGEMENT_DECAY_PER_TURN = 2  # engagement lost per AI turn to simulate time passing
MAX_ZERO_ENGAGEMENT_STREAK = 3
MAX_HISTORY_FOR_PROMPT = 10  # most recent records sent with each turn request

SILENT_USER_ACTION_TOKEN = "[[USER_CONTINUES_SILENTLY]]"
FAST_FORWARD_NOTE = "[User fast-forwarded the action]"

DEFAULT_TURN_SERVICE_URL = "http://localhost:8700"
DEFAULT_IMAGE_SERVICE_URL = "http://localhost:8701"


class ConfigError(RuntimeError):
    """Raised when required configuration is missing or invalid."""


class Settings(BaseModel):
    api_key: str
    turn_service_url: str = DEFAULT_TURN_SERVICE_URL
    image_service_url: str = DEFAULT_IMAGE_SERVICE_URL
    service_timeout: float = Field(default=120.0, gt=0)
    engagement_decay: int = Field(default=ENGAGEMENT_DECAY_PER_TURN, ge=0)


def load_settings(env_file: Path | None = None) -> Settings:
    """Build Settings from the environment.

    Raises ConfigError if the backend API key is missing: without credentials
    no turn can ever be submitted, so this is fatal at startup.
    """
    load_dotenv(env_file or ROOT / ".env")

    api_key = os.getenv("RAPPORT_API_KEY", "")
    if not api_key:
        raise ConfigError("RAPPORT_API_KEY is not set")

    try:
        return Settings(
            api_key=api_key,
            turn_service_url=os.getenv("TURN_SERVICE_URL", DEFAULT_TURN_SERVICE_URL),
            image_service_url=os.getenv("IMAGE_SERVICE_URL", DEFAULT_IMAGE_SERVICE_URL),
            service_timeout=float(os.getenv("SERVICE_TIMEOUT", "120")),
            engagement_decay=int(os.getenv("ENGAGEMENT_DECAY", str(ENGAGEMENT_DECAY_PER_TURN))),
        )
    except ValueError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
