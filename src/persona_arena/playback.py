#!/usr/bin/env python3
"""
Audio Playback Sequencer
"Slow down, Bart! My legs don't know how to be as long as yours!" - Ralph Wiggum

A SpeechChannel owns one logical speech slot: at most one synthesis request
is current and at most one source plays. Every request gets a generation id
when it is issued; a result whose id is no longer current is dropped on
arrival instead of being played. The AudioRouter ties the debate/chat slot
and the voice-preview slot together so only one source plays system-wide.
"""

import asyncio
import base64
import io
import logging
import uuid
import wave
from typing import Awaitable, Callable, Dict, List, Optional

from .errors import BackendError, PlaybackError
from .events import EventEmitter
from .models import Persona, PlaybackOutcome, SpeakerState, SpeechAudio

logger = logging.getLogger(__name__)

SAMPLE_WIDTH = 2  # 16-bit PCM
TTS_ERROR_MESSAGE = "Sorry, the voice could not be generated. Please try again."


class AudioClip:
    """Decoded 16-bit mono PCM ready for a sink"""

    def __init__(self, pcm: bytes, sample_rate: int, channels: int = 1):
        self.pcm = pcm
        self.sample_rate = sample_rate
        self.channels = channels

    @property
    def frames(self) -> int:
        return len(self.pcm) // (SAMPLE_WIDTH * self.channels)

    @property
    def duration(self) -> float:
        return self.frames / float(self.sample_rate)

    def to_wav(self) -> bytes:
        buffer = io.BytesIO()
        with wave.open(buffer, "wb") as wav:
            wav.setnchannels(self.channels)
            wav.setsampwidth(SAMPLE_WIDTH)
            wav.setframerate(self.sample_rate)
            wav.writeframes(self.pcm)
        return buffer.getvalue()


def decode_audio(audio: SpeechAudio) -> AudioClip:
    if not audio.audio_bytes:
        raise PlaybackError("No audio data to play")
    if len(audio.audio_bytes) % SAMPLE_WIDTH:
        raise PlaybackError("Audio payload is not 16-bit PCM")
    if audio.sample_rate <= 0:
        raise PlaybackError(f"Invalid sample rate: {audio.sample_rate}")
    return AudioClip(audio.audio_bytes, audio.sample_rate)


class AudioSource:
    """One playback of one clip: start once, stop any number of times, await the end"""

    def __init__(self, clip: AudioClip):
        self.clip = clip
        self.id = uuid.uuid4().hex[:12]
        self.started = False
        self.stopped = False
        self._ended = asyncio.Event()

    @property
    def ended(self) -> bool:
        return self._ended.is_set()

    def start(self):
        if self.started:
            raise PlaybackError("Audio source already started")
        self.started = True
        self._begin()

    def stop(self):
        # Stopping an already finished source is a no-op
        if self._ended.is_set():
            return
        self.stopped = True
        self._halt()
        self._ended.set()

    def finish(self):
        """Natural end of playback"""
        if not self._ended.is_set():
            self._ended.set()

    async def wait_ended(self):
        await self._ended.wait()

    def _begin(self):
        pass

    def _halt(self):
        pass


class AudioSink:
    def create_source(self, clip: AudioClip) -> AudioSource:
        raise NotImplementedError


class BroadcastAudioSource(AudioSource):
    def __init__(self, clip: AudioClip, sink: "BroadcastAudioSink"):
        super().__init__(clip)
        self._sink = sink
        self._timer: Optional[asyncio.TimerHandle] = None

    def _begin(self):
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.clip.duration, self.finish)
        self._sink._publish({
            "type": "audio_play",
            "source_id": self.id,
            "sample_rate": self.clip.sample_rate,
            "duration": self.clip.duration,
            "audio_data": base64.b64encode(self.clip.to_wav()).decode('utf-8')
        })

    def _halt(self):
        self._cancel_timer()
        self._sink._sources.pop(self.id, None)
        self._sink._publish({"type": "audio_stop", "source_id": self.id})

    def finish(self):
        self._cancel_timer()
        self._sink._sources.pop(self.id, None)
        super().finish()

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class BroadcastAudioSink(AudioSink):
    """
    Plays clips on the connected browser clients.

    A source ends when its duration elapses, when a client reports
    `audio_ended` for it, or when it is stopped.
    """

    def __init__(self, publish: Callable[[Dict], Awaitable]):
        self._publish_fn = publish
        self._sources: Dict[str, BroadcastAudioSource] = {}
        self._tasks = set()

    def create_source(self, clip: AudioClip) -> AudioSource:
        source = BroadcastAudioSource(clip, self)
        self._sources[source.id] = source
        return source

    def notify_ended(self, source_id: str):
        source = self._sources.get(source_id)
        if source is not None:
            source.finish()

    def _publish(self, message: Dict):
        task = asyncio.ensure_future(self._publish_fn(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


class SpeechChannel(EventEmitter):
    """Single-slot speak/stop with generation ids; the newest request always wins"""

    name = "speech"
    # A superseded request leaves its markers to whoever replaced it
    idle_when_superseded = False

    def __init__(self, synthesizer, sink: AudioSink):
        super().__init__()
        self._synthesizer = synthesizer
        self._sink = sink
        self._generation = 0
        self._latest_request = 0
        self._active: Optional[AudioSource] = None
        self.router: Optional["AudioRouter"] = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_playing(self) -> bool:
        return self._active is not None and not self._active.ended

    def _event_context(self) -> Dict:
        return {"channel": self.name}

    def _clear_slot(self):
        self._generation += 1
        source, self._active = self._active, None
        if source is not None:
            source.stop()

    def stop(self):
        """Stop the playing source and invalidate any synthesis still in flight"""
        self._clear_slot()

    async def speak(
        self,
        text: str,
        voice: str,
        turn_id: Optional[str] = None,
        speaker_index: Optional[int] = None
    ) -> PlaybackOutcome:
        """Synthesize and play `text`; resolves when playback ends, is stopped or is superseded"""
        self._clear_slot()
        generation = self._generation
        self._latest_request = generation
        owner = {"turn_id": turn_id, "speaker_index": speaker_index}

        await self._mark(owner, SpeakerState.THINKING)

        try:
            audio = await self._synthesizer.synthesize_speech(text, voice)
        except BackendError as e:
            logger.error(f"TTS Error: {e}")
            return await self._fail(owner, generation, TTS_ERROR_MESSAGE)

        if generation != self._generation:
            logger.debug(f"Discarding stale {self.name} result (generation {generation})")
            outcome = self._abandoned(generation)
            if outcome == PlaybackOutcome.STOPPED or self.idle_when_superseded:
                await self._mark(owner, SpeakerState.IDLE)
            return outcome

        try:
            clip = decode_audio(audio)
            source = self._sink.create_source(clip)
        except PlaybackError as e:
            logger.error(f"Audio decode failed: {e}")
            return await self._fail(owner, generation, TTS_ERROR_MESSAGE)

        if self.router is not None:
            self.router.claim(self)
        self._active = source
        try:
            source.start()
        except PlaybackError as e:
            logger.error(f"Audio start failed: {e}")
            self._active = None
            return await self._fail(owner, generation, TTS_ERROR_MESSAGE)

        await self._mark(owner, SpeakerState.SPEAKING)
        await source.wait_ended()

        if self._active is source:
            self._active = None

        if generation != self._generation:
            outcome = self._abandoned(generation)
        else:
            outcome = PlaybackOutcome.STOPPED if source.stopped else PlaybackOutcome.COMPLETED

        if outcome != PlaybackOutcome.SUPERSEDED or self.idle_when_superseded:
            await self._mark(owner, SpeakerState.IDLE)
        return outcome

    def _abandoned(self, generation: int) -> PlaybackOutcome:
        if self._latest_request != generation:
            return PlaybackOutcome.SUPERSEDED
        return PlaybackOutcome.STOPPED

    async def _fail(self, owner: Dict, generation: int, message: str) -> PlaybackOutcome:
        await self._notify("playback_failed", {"message": message, "turn_id": owner["turn_id"]})
        if generation == self._generation:
            await self._mark(owner, SpeakerState.IDLE)
        return PlaybackOutcome.FAILED

    async def _mark(self, owner: Dict, state: SpeakerState):
        await self._notify("speaker_state_changed", {
            "turn_id": owner["turn_id"],
            "speaker_index": owner["speaker_index"],
            "state": state.value
        })


class PreviewChannel(SpeechChannel):
    """Voice audition for the persona grid; clicking the playing persona again stops it"""

    name = "preview"
    idle_when_superseded = True

    PREVIEW_STATES = {
        SpeakerState.THINKING: "loading",
        SpeakerState.SPEAKING: "playing",
        SpeakerState.IDLE: "default",
    }

    def __init__(self, synthesizer, sink: AudioSink):
        super().__init__(synthesizer, sink)
        self.active_persona_id: Optional[str] = None

    def stop(self):
        self.active_persona_id = None
        self._clear_slot()

    async def preview(self, persona: Persona) -> PlaybackOutcome:
        if self.active_persona_id == persona.id:
            self.stop()
            return PlaybackOutcome.STOPPED

        self.active_persona_id = persona.id
        text = f"Hello. My name is {persona.name}. {persona.description}"
        outcome = await self.speak(text, persona.voice, turn_id=persona.id)

        if outcome != PlaybackOutcome.SUPERSEDED and self.active_persona_id == persona.id:
            self.active_persona_id = None
        return outcome

    async def _mark(self, owner: Dict, state: SpeakerState):
        await self._notify("preview_state_changed", {
            "persona_id": owner["turn_id"],
            "state": self.PREVIEW_STATES[state]
        })


class AudioRouter:
    """Owns both playback slots; starting playback on one slot silences the other"""

    def __init__(self, speech: SpeechChannel, preview: PreviewChannel):
        self.speech = speech
        self.preview = preview
        self.channels: List[SpeechChannel] = [speech, preview]
        for channel in self.channels:
            channel.router = self

    def claim(self, channel: SpeechChannel):
        for other in self.channels:
            if other is not channel:
                other.stop()

    def stop_all(self):
        for channel in self.channels:
            channel.stop()

    @property
    def playing_count(self) -> int:
        return sum(1 for channel in self.channels if channel.is_playing)

    def add_listener(self, callback: Callable):
        for channel in self.channels:
            channel.add_listener(callback)
