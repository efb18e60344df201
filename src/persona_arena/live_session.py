#!/usr/bin/env python3
"""
Live voice session over the Gemini Live WebSocket
"I found a moon rock in my nose!" - Ralph Wiggum

Microphone PCM (16 kHz) goes up as realtimeInput frames; model audio (24 kHz)
and transcription fragments come back as serverContent messages. Audio
chunks are laid end to end on a single timeline so playback is gapless.
"""

import asyncio
import base64
import json
import logging
from typing import Callable, Dict, List, Optional, Tuple

import aiohttp

from .config import DEFAULT_API_BASE_URL
from .errors import BackendError
from .events import EventEmitter
from .models import LiveTranscriptEntry, Persona
from .personas import DEFAULT_LIVE_INSTRUCTION

logger = logging.getLogger(__name__)

LIVE_ENDPOINT = "/ws/google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
LIVE_INPUT_MIME = "audio/pcm;rate=16000"
LIVE_OUTPUT_RATE = 24000
LIVE_ERROR_MESSAGE = "The live conversation was interrupted. Please try again."
SETUP_TIMEOUT_SECONDS = 15.0


def live_url(base_url: str) -> str:
    if base_url.startswith("https://"):
        base_url = "wss://" + base_url[len("https://"):]
    elif base_url.startswith("http://"):
        base_url = "ws://" + base_url[len("http://"):]
    return base_url.rstrip("/") + LIVE_ENDPOINT


class LiveTranscript:
    """Input text is replaced as recognition refines it; output text accumulates"""

    def __init__(self):
        self.input = ""
        self.output = ""
        self.history: List[LiveTranscriptEntry] = []

    def on_input(self, text: str):
        self.input = text

    def on_output(self, text: str):
        self.output += text

    def complete(self) -> List[LiveTranscriptEntry]:
        added = []
        for speaker, text in (("user", self.input), ("model", self.output)):
            if text and text.strip():
                entry = LiveTranscriptEntry(speaker=speaker, text=text)
                self.history.append(entry)
                added.append(entry)
        self.input = ""
        self.output = ""
        return added


class LiveAudioScheduler:
    def __init__(self, clock: Callable[[], float], sample_rate: int = LIVE_OUTPUT_RATE):
        self._clock = clock
        self.sample_rate = sample_rate
        self.next_start = 0.0

    def schedule(self, pcm: bytes) -> Tuple[float, float]:
        """Return (start, duration) for the chunk and push the timeline forward"""
        start = max(self.next_start, self._clock())
        duration = len(pcm) / (2.0 * self.sample_rate)
        self.next_start = start + duration
        return start, duration

    def reset(self):
        self.next_start = 0.0


class LiveSession(EventEmitter):
    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        base_url: str = DEFAULT_API_BASE_URL,
        persona: Optional[Persona] = None
    ):
        super().__init__()
        self.api_key = api_key
        self.model = model
        self.url = live_url(base_url)
        self.persona = persona
        self.system_instruction = persona.instruction if persona else DEFAULT_LIVE_INSTRUCTION

        self.status = "disconnected"
        self.transcript = LiveTranscript()
        self.scheduler: Optional[LiveAudioScheduler] = None

        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False

    def _event_context(self) -> Dict:
        return {"persona_id": self.persona.id if self.persona else None}

    @property
    def connected(self) -> bool:
        return self.status == "connected"

    async def _set_status(self, status: str):
        self.status = status
        await self._notify("live_status", {"status": status})

    def _setup_frame(self) -> Dict:
        return {
            "setup": {
                "model": f"models/{self.model}",
                "generationConfig": {"responseModalities": ["AUDIO"]},
                "systemInstruction": {"parts": [{"text": self.system_instruction}]},
                "inputAudioTranscription": {},
                "outputAudioTranscription": {},
            }
        }

    @staticmethod
    def _decode(message: aiohttp.WSMessage) -> Optional[Dict]:
        if message.type == aiohttp.WSMsgType.TEXT:
            return json.loads(message.data)
        if message.type == aiohttp.WSMsgType.BINARY:
            return json.loads(message.data.decode('utf-8'))
        return None

    async def connect(self):
        """Open the socket, send setup and wait for setupComplete"""
        if self._ws is not None:
            return
        if not self.api_key:
            raise BackendError("Gemini API key is not configured", status=401)

        self._closing = False
        self.transcript = LiveTranscript()
        await self._set_status("connecting")

        loop = asyncio.get_running_loop()
        origin = loop.time()
        self.scheduler = LiveAudioScheduler(lambda: loop.time() - origin)

        try:
            self._session = aiohttp.ClientSession()
            self._ws = await self._session.ws_connect(self.url, params={"key": self.api_key}, heartbeat=30)
            await self._ws.send_json(self._setup_frame())
            await asyncio.wait_for(self._await_setup(), timeout=SETUP_TIMEOUT_SECONDS)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            await self._teardown()
            await self._set_status("disconnected")
            raise BackendError(f"Live session failed to connect: {e}") from e
        except BackendError:
            await self._teardown()
            await self._set_status("disconnected")
            raise

        self._reader = asyncio.ensure_future(self._read_loop())
        logger.info(f"🎙️ Live session connected ({self.model})")
        await self._set_status("connected")

    async def _await_setup(self):
        while True:
            payload = self._decode(await self._ws.receive())
            if payload is None:
                raise BackendError("Live session closed during setup")
            if "setupComplete" in payload:
                return

    async def _read_loop(self):
        try:
            async for message in self._ws:
                if message.type == aiohttp.WSMsgType.ERROR:
                    raise aiohttp.ClientError(str(self._ws.exception()))
                payload = self._decode(message)
                if payload is not None:
                    await self._handle(payload)
        except (aiohttp.ClientError, ValueError) as e:
            logger.error(f"Live session error: {e}")
            await self._notify("playback_failed", {"message": LIVE_ERROR_MESSAGE})
        finally:
            if not self._closing:
                await self.close()

    async def _handle(self, payload: Dict):
        content = payload.get("serverContent") or {}

        if "inputTranscription" in content:
            self.transcript.on_input((content["inputTranscription"] or {}).get("text", ""))
            await self._notify("live_transcript", {"input": self.transcript.input, "output": self.transcript.output})
        if "outputTranscription" in content:
            self.transcript.on_output((content["outputTranscription"] or {}).get("text", ""))
            await self._notify("live_transcript", {"input": self.transcript.input, "output": self.transcript.output})

        for part in (content.get("modelTurn") or {}).get("parts") or []:
            data = (part.get("inlineData") or {}).get("data")
            if not data:
                continue
            start, duration = self.scheduler.schedule(base64.b64decode(data))
            await self._notify("live_audio", {
                "audio_data": data,
                "sample_rate": LIVE_OUTPUT_RATE,
                "start_at": start,
                "duration": duration
            })

        if content.get("turnComplete"):
            added = self.transcript.complete()
            await self._notify("live_transcript", {
                "input": "",
                "output": "",
                "added": [entry.model_dump() for entry in added],
                "history": [entry.model_dump() for entry in self.transcript.history]
            })

    async def send_audio(self, pcm: bytes):
        """Forward one chunk of 16 kHz 16-bit mono microphone audio"""
        if not self.connected or self._ws is None:
            logger.debug("Dropping microphone audio: live session not connected")
            return
        frame = {
            "realtimeInput": {
                "audio": {"data": base64.b64encode(pcm).decode('utf-8'), "mimeType": LIVE_INPUT_MIME}
            }
        }
        try:
            await self._ws.send_json(frame)
        except (aiohttp.ClientError, ConnectionResetError) as e:
            logger.error(f"Live audio send failed: {e}")
            await self._notify("playback_failed", {"message": LIVE_ERROR_MESSAGE})
            await self.close()

    async def _teardown(self):
        ws, self._ws = self._ws, None
        session, self._session = self._session, None
        if ws is not None and not ws.closed:
            await ws.close()
        if session is not None:
            await session.close()

    async def close(self):
        """Safe to call any number of times"""
        if self._closing or self.status == "disconnected":
            return
        self._closing = True

        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
        await self._teardown()
        if self.scheduler is not None:
            self.scheduler.reset()

        logger.info("🔌 Live session closed")
        await self._set_status("disconnected")
