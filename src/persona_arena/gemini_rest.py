#!/usr/bin/env python3
"""
Direct REST calls to the Gemini API
"This snowflake tastes like fishsticks!" - Ralph Wiggum

Speech synthesis and the single-shot direct-chat generation (inline
attachments, Google Search grounding) go straight to generateContent.
"""

import base64
import logging
import re
from typing import Any, Dict, List, Optional

import aiohttp

from .config import DEFAULT_API_BASE_URL
from .errors import BackendError
from .models import GenerationResult, SpeechAudio

logger = logging.getLogger(__name__)

DEFAULT_TTS_MODEL = "gemini-2.5-flash-preview-tts"
DEFAULT_SAMPLE_RATE = 24000

_RATE_PATTERN = re.compile(r"rate=(\d+)")


def parse_sample_rate(mime_type: Optional[str], default: int = DEFAULT_SAMPLE_RATE) -> int:
    if mime_type:
        match = _RATE_PATTERN.search(mime_type)
        if match:
            return int(match.group(1))
    return default


def _first_part(result: Dict) -> Dict:
    try:
        return result['candidates'][0]['content']['parts'][0]
    except (KeyError, IndexError, TypeError):
        return {}


class GeminiRestClient:
    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = DEFAULT_API_BASE_URL,
        tts_model: str = DEFAULT_TTS_MODEL
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.tts_model = tts_model

    def _url(self, model: str) -> str:
        return f"{self.base_url}/v1beta/models/{model}:generateContent"

    async def generate_content(
        self,
        model: str,
        parts: List[Dict[str, Any]],
        system_instruction: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        generation_config: Optional[Dict[str, Any]] = None
    ) -> Dict:
        """POST one generateContent request and return the decoded JSON body"""
        if not self.api_key:
            raise BackendError("Gemini API key is not configured", status=401)

        data: Dict[str, Any] = {"contents": [{"parts": parts}]}
        if system_instruction:
            data["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        if tools:
            data["tools"] = tools
        if generation_config:
            data["generationConfig"] = generation_config

        params = {"key": self.api_key}

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(self._url(model), json=data, params=params) as response:
                    if response.status == 200:
                        return await response.json()
                    error_text = await response.text()
                    logger.error(f"Gemini HTTP {response.status}: {error_text[:200]}")
                    raise BackendError(f"Gemini API error: {response.status}", status=response.status)
        except aiohttp.ClientError as e:
            raise BackendError(f"Gemini request failed: {e}") from e

    async def generate_text(
        self,
        model: str,
        parts: List[Dict[str, Any]],
        system_instruction: Optional[str] = None,
        search: bool = False
    ) -> GenerationResult:
        tools = [{"google_search": {}}] if search else None
        result = await self.generate_content(model, parts, system_instruction=system_instruction, tools=tools)

        candidates = result.get('candidates') or []
        if not candidates:
            raise BackendError("Gemini returned no candidates")

        content_parts = (candidates[0].get('content') or {}).get('parts') or []
        text = "".join(part.get('text', '') for part in content_parts)

        sources: List[str] = []
        grounding = candidates[0].get('groundingMetadata') or {}
        for chunk in grounding.get('groundingChunks') or []:
            uri = (chunk.get('web') or {}).get('uri')
            if uri and uri not in sources:
                sources.append(uri)

        return GenerationResult(text=text, sources=sources)

    async def synthesize_speech(self, text: str, voice: str) -> SpeechAudio:
        generation_config = {
            "responseModalities": ["AUDIO"],
            "speechConfig": {
                "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": voice}}
            }
        }
        result = await self.generate_content(
            self.tts_model, [{"text": text}], generation_config=generation_config
        )

        inline = _first_part(result).get('inlineData') or {}
        audio_b64 = inline.get('data')
        if not audio_b64:
            raise BackendError("No audio data received from TTS API.")

        try:
            audio_bytes = base64.b64decode(audio_b64)
        except ValueError as e:
            raise BackendError(f"Malformed audio payload: {e}") from e

        mime_type = inline.get('mimeType', f"audio/L16;codec=pcm;rate={DEFAULT_SAMPLE_RATE}")
        return SpeechAudio(
            audio_bytes=audio_bytes,
            sample_rate=parse_sample_rate(mime_type),
            mime_type=mime_type
        )
