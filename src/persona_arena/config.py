#!/usr/bin/env python3
"""
Runtime configuration for the arena
"My parents won't let me use scissors!" - Ralph Wiggum

Settings come from the environment (optionally a .env file). Nothing here
fails when the API key is missing; the backends raise BackendError instead.
"""

import os
import logging
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

DEFAULT_API_BASE_URL = "https://generativelanguage.googleapis.com"

logger = logging.getLogger(__name__)


class ArenaSettings(BaseModel):
    """Everything the service needs to talk to Gemini and serve clients"""
    api_key: Optional[str] = Field(None, description="Gemini API key")
    api_base_url: str = Field(DEFAULT_API_BASE_URL, description="Generative Language API root")
    text_model: str = Field("gemini-2.5-flash", description="Model used by debaters and direct chat")
    summary_model: str = Field("gemini-2.5-pro", description="Model used for the end-of-debate summary")
    tts_model: str = Field("gemini-2.5-flash-preview-tts", description="Speech synthesis model")
    live_model: str = Field(
        "gemini-2.5-flash-native-audio-preview-09-2025",
        description="Native-audio model for live voice sessions"
    )
    host: str = "localhost"
    port: int = Field(8080, ge=1, le=65535)
    log_level: str = "INFO"
    log_file: Optional[str] = "persona_arena.log"

    class Config:
        json_schema_extra = {
            "example": {
                "api_key": "AIza...",
                "text_model": "gemini-2.5-flash",
                "host": "0.0.0.0",
                "port": 8080
            }
        }


def load_settings(env_file: Optional[str] = None) -> ArenaSettings:
    """Read settings from the environment, loading a .env file first"""
    load_dotenv(env_file)

    log_file = os.getenv('ARENA_LOG_FILE', 'persona_arena.log')

    settings = ArenaSettings(
        api_key=os.getenv('GEMINI_API_KEY') or os.getenv('GOOGLE_API_KEY'),
        api_base_url=os.getenv('ARENA_API_BASE_URL', DEFAULT_API_BASE_URL),
        text_model=os.getenv('ARENA_TEXT_MODEL', 'gemini-2.5-flash'),
        summary_model=os.getenv('ARENA_SUMMARY_MODEL', 'gemini-2.5-pro'),
        tts_model=os.getenv('ARENA_TTS_MODEL', 'gemini-2.5-flash-preview-tts'),
        live_model=os.getenv('ARENA_LIVE_MODEL', 'gemini-2.5-flash-native-audio-preview-09-2025'),
        host=os.getenv('HOST', 'localhost'),
        port=int(os.getenv('PORT', 8080)),
        log_level=os.getenv('ARENA_LOG_LEVEL', 'INFO').upper(),
        log_file=log_file or None,
    )

    if not settings.api_key:
        logger.warning("⚠️ GEMINI_API_KEY is not set - backend calls will fail")

    return settings


def setup_logging(settings: ArenaSettings):
    """Configure logging for the application"""
    handlers = [logging.StreamHandler()]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file))

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )
