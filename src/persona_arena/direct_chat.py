#!/usr/bin/env python3
"""
Direct single-user chat
"Me fail English? That's unpossible!" - Ralph Wiggum

One prompt in, one non-streaming reply out, optionally grounded with Google
Search and carrying an inline attachment. Replies are spoken on the shared
speech slot, so a chat reply preempts debate speech and vice versa.
"""

import asyncio
import base64
import logging
from typing import Dict, List, Optional

from .errors import BackendError, ValidationError
from .events import EventEmitter
from .gemini_rest import GeminiRestClient
from .models import Attachment, ChatMessage, Persona
from .personas import DEFAULT_ASSISTANT_INSTRUCTION
from .playback import SpeechChannel

logger = logging.getLogger(__name__)

AUDIO_INPUT_LABEL = "[Audio Input]"
AUDIO_PROMPT = "Transcribe this audio and respond to it."
DEFAULT_CHAT_VOICE = "Kore"


class DirectChat(EventEmitter):
    def __init__(self, client: GeminiRestClient, speech: SpeechChannel, model: str = "gemini-2.5-flash"):
        super().__init__()
        self.client = client
        self.speech = speech
        self.model = model
        self.persona: Optional[Persona] = None
        self.system_instruction = DEFAULT_ASSISTANT_INSTRUCTION
        self.history: List[ChatMessage] = []
        self.speech_task: Optional[asyncio.Future] = None
        self._tasks = set()

    def _event_context(self) -> Dict:
        return {"chat": "direct"}

    def reinitialize(self, model: Optional[str] = None, persona: Optional[Persona] = None):
        """Start over with a fresh history; a persona replaces the plain assistant instruction"""
        if model:
            self.model = model
        self.persona = persona
        self.system_instruction = persona.instruction if persona else DEFAULT_ASSISTANT_INSTRUCTION
        self.history = []
        logger.info(f"💬 Direct chat reset (model={self.model}, persona={persona.id if persona else 'default'})")

    async def _add(self, message: ChatMessage) -> ChatMessage:
        self.history.append(message)
        await self._notify("chat_message", {"message": message.model_dump(mode="json")})
        return message

    async def submit(
        self,
        prompt: str,
        attachment: Optional[Attachment] = None,
        search: bool = False,
        voice: str = DEFAULT_CHAT_VOICE
    ) -> ChatMessage:
        """Send one prompt; failures come back as an error message rather than an exception"""
        prompt = (prompt or "").strip()
        if not prompt and attachment is None:
            raise ValidationError("Type a message or attach a file first.")

        await self._add(ChatMessage(role="user", text=prompt, attachment=attachment))

        parts = []
        if attachment is not None:
            parts.append({"inlineData": {"data": attachment.data, "mimeType": attachment.mime_type}})
        parts.append({"text": prompt})

        try:
            result = await self.client.generate_text(
                self.model, parts, system_instruction=self.system_instruction, search=search
            )
        except BackendError as e:
            logger.error(f"Direct chat failed: {e}")
            return await self._add(ChatMessage(role="model", text=f"Error: {e}", is_error=True))

        reply = await self._add(ChatMessage(role="model", text=result.text, sources=result.sources))
        if reply.text:
            self._speak(reply.text, voice)
        return reply

    def _speak(self, text: str, voice: str):
        task = asyncio.ensure_future(
            self.speech.speak(text, voice, turn_id=f"direct-msg-{len(self.history)}")
        )
        self.speech_task = task
        self._tasks.add(task)
        task.add_done_callback(self._speech_done)

    def _speech_done(self, task: asyncio.Future):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Chat reply playback crashed: {task.exception()!r}")

    async def submit_audio(self, audio_bytes: bytes, mime_type: str = "audio/webm") -> ChatMessage:
        """Send a recorded clip for transcription and a reply"""
        if not audio_bytes:
            raise ValidationError("The recording is empty.")

        data = base64.b64encode(audio_bytes).decode('utf-8')
        attachment = Attachment(data=data, mime_type=mime_type, filename="recording.webm")
        await self._add(ChatMessage(role="user", text=AUDIO_INPUT_LABEL, attachment=attachment))

        parts = [
            {"inlineData": {"data": data, "mimeType": mime_type}},
            {"text": AUDIO_PROMPT},
        ]
        try:
            result = await self.client.generate_text(self.model, parts, system_instruction=self.system_instruction)
        except BackendError as e:
            logger.error(f"Audio chat failed: {e}")
            return await self._add(ChatMessage(role="model", text=f"Error processing audio: {e}", is_error=True))

        return await self._add(ChatMessage(role="model", text=result.text, sources=result.sources))
