#!/usr/bin/env python3
"""
Pydantic Models for the Persona Debate Arena
"I'm learnding!" - Ralph Wiggum

Personas, debate settings, transcript records and the small value types the
audio and chat layers pass around.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Literal

from pydantic import BaseModel, ConfigDict, Field


class Persona(BaseModel):
    """An immutable configured identity that can take either debate slot"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Stable identifier (the English name)")
    name: str = Field(..., description="Display name")
    description: str = Field(..., description="Public one-line description")
    biography: str = Field(..., description="Private background the persona draws on")
    voice: str = Field(..., description="Prebuilt TTS voice name (e.g. 'Puck')")
    instruction: str = Field(..., description="Composed in-character system instruction")


class DebateSettings(BaseModel):
    """What the user picked before pressing start"""
    topic: str = Field(..., description="The debate topic/question")
    mode: str = Field(default="Formal Debate", description="Debate format, e.g. 'Formal Debate'")
    length: str = Field(default="short", description="Answer length: short, medium or long")
    language: str = Field(default="English", description="Language both debaters must answer in")
    model: Optional[str] = Field(None, description="Override for the debaters' text model")

    class Config:
        json_schema_extra = {
            "example": {
                "topic": "Is remote work better?",
                "mode": "Formal Debate",
                "length": "short",
                "language": "English"
            }
        }


class TurnRole(str, Enum):
    FIRST_SPEAKER = "first_speaker"
    SECOND_SPEAKER = "second_speaker"
    SUMMARY = "summary"
    ERROR = "error"

    @classmethod
    def for_speaker(cls, speaker_index: int) -> "TurnRole":
        return cls.FIRST_SPEAKER if speaker_index == 0 else cls.SECOND_SPEAKER


class TurnRecord(BaseModel):
    """One rendered entry in the debate transcript"""
    id: str = Field(..., description="Addresses the UI node and its speak button")
    role: TurnRole
    text: str = ""
    speaker_index: Optional[int] = None
    persona_id: Optional[str] = None
    speaker_name: Optional[str] = None
    completed: bool = False
    interrupted: bool = Field(default=False, description="Streaming was cut short; text is partial")


class ContextMessage(BaseModel):
    """One entry of the alternating-context log fed back to the sessions"""
    role: Literal["user", "model"]
    text: str
    speaker_index: Optional[int] = None


class SpeakerState(str, Enum):
    THINKING = "thinking"
    SPEAKING = "speaking"
    IDLE = "idle"


class EnginePhase(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    SPEAKING = "speaking"
    VOCALIZING = "vocalizing"
    SCHEDULED = "scheduled"
    PAUSED = "paused"
    SUMMARIZING = "summarizing"
    STOPPED = "stopped"


@dataclass
class EngineState:
    """Session-scoped control state owned by one TurnEngine"""
    running: bool = False
    paused: bool = False
    interrupted: bool = False
    turn_index: int = 0
    phase: EnginePhase = EnginePhase.IDLE
    run_epoch: int = 0
    turn_epoch: int = 0
    timer: Optional[asyncio.TimerHandle] = None

    @property
    def speaker_index(self) -> int:
        return self.turn_index % 2


class PlaybackOutcome(str, Enum):
    COMPLETED = "completed"
    STOPPED = "stopped"
    SUPERSEDED = "superseded"
    FAILED = "failed"


class SpeechAudio(BaseModel):
    """Raw synthesis result: 16-bit mono PCM"""
    audio_bytes: bytes
    sample_rate: int = 24000
    mime_type: str = "audio/L16;codec=pcm;rate=24000"


class Attachment(BaseModel):
    """Inline file sent along with a direct chat prompt"""
    data: str = Field(..., description="Base64 payload")
    mime_type: str
    filename: Optional[str] = None


class GenerationResult(BaseModel):
    text: str
    sources: List[str] = Field(default_factory=list, description="Grounding source URIs")


class ChatMessage(BaseModel):
    role: Literal["user", "model"]
    text: str
    attachment: Optional[Attachment] = None
    sources: List[str] = Field(default_factory=list)
    is_error: bool = False


class LiveTranscriptEntry(BaseModel):
    speaker: Literal["user", "model"]
    text: str
