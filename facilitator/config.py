"""
config.py -- Environment-driven settings.

Reads .env from the project root (if present) and then the process
environment. Every value has a development default except API keys.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent


class Settings(BaseModel):
    """Runtime configuration for the facilitation service."""

    anthropic_api_key: str = ""
    claude_model: str = "claude-sonnet-4-6"
    completion_max_retries: int = Field(default=3, ge=1)
    google_ai_api_key: str = ""
    image_model: str = "gemini-2.5-flash-image"
    sessions_dir: Path = PROJECT_ROOT / "data" / "sessions"
    images_dir: Path = PROJECT_ROOT / "data" / "images"
    port: int = 3000
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


def _split_origins(raw: str) -> list[str]:
    origins = [o.strip() for o in raw.split(",") if o.strip()]
    return origins or ["*"]


def load_settings(env_file: Path | None = None) -> Settings:
    """Build Settings from .env plus the environment (environment wins)."""
    load_dotenv(env_file or PROJECT_ROOT / ".env")
    return Settings(
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", ""),
        claude_model=os.getenv("CLAUDE_MODEL", "claude-sonnet-4-6"),
        completion_max_retries=int(os.getenv("COMPLETION_MAX_RETRIES", "3")),
        google_ai_api_key=os.getenv("GOOGLE_AI_API_KEY", ""),
        image_model=os.getenv("IMAGE_MODEL", "gemini-2.5-flash-image"),
        sessions_dir=Path(os.getenv("SESSIONS_DIR", str(PROJECT_ROOT / "data" / "sessions"))),
        images_dir=Path(os.getenv("IMAGES_DIR", str(PROJECT_ROOT / "data" / "images"))),
        port=int(os.getenv("PORT", "3000")),
        cors_origins=_split_origins(os.getenv("CORS_ORIGINS", "*")),
    )
