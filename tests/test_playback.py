#!/usr/bin/env python3
"""
Unit Tests for the Audio Playback Sequencer
"Slow down, Bart! My legs don't know how to be as long as yours!" - Ralph
"""

import asyncio
import json
import base64
import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from conftest import FakeSynthesizer, ManualAudioSink, SILENT_PCM, wait_until
from persona_arena.errors import BackendError, PlaybackError
from persona_arena.models import PlaybackOutcome, SpeechAudio
from persona_arena.personas import PERSONAS
from persona_arena.playback import (
    AudioClip,
    AudioRouter,
    BroadcastAudioSink,
    PreviewChannel,
    SpeechChannel,
    decode_audio,
)


def manual_router(synthesizer, recorder):
    sink = ManualAudioSink(auto_finish=False)
    router = AudioRouter(SpeechChannel(synthesizer, sink), PreviewChannel(synthesizer, sink))
    router.add_listener(recorder)
    return router, sink


class TestRalphWiggumAudioDecoding:
    """
    Turning bytes into clips
    "I found a moon rock in my nose!" - Ralph
    """

    def test_clip_duration_and_wav_header(self):
        """480 bytes at 24 kHz is 10 ms - I'm learnding!"""
        clip = decode_audio(SpeechAudio(audio_bytes=SILENT_PCM, sample_rate=24000))

        assert clip.frames == 240
        assert clip.duration == pytest.approx(0.01)
        wav = clip.to_wav()
        assert wav[:4] == b"RIFF"
        assert wav[8:12] == b"WAVE"

    def test_empty_audio_is_a_playback_error(self):
        """Nothing to play - That's unpossible!"""
        with pytest.raises(PlaybackError):
            decode_audio(SpeechAudio(audio_bytes=b""))

    def test_odd_length_audio_is_a_playback_error(self):
        """Half a sample - I bent my Wookie."""
        with pytest.raises(PlaybackError):
            decode_audio(SpeechAudio(audio_bytes=b"\x00\x01\x02"))

    def test_stopping_a_stopped_source_is_fine(self):
        """Stop, stop again - Go banana!"""
        sink = ManualAudioSink(auto_finish=False)
        source = sink.create_source(AudioClip(SILENT_PCM, 24000))
        source.stop()
        source.stop()
        assert source.stopped and source.ended


class TestRalphWiggumSpeechChannel:
    """
    One slot, newest request wins
    "I choo-choo-choose you!" - Ralph
    """

    @pytest.mark.asyncio
    async def test_speak_completes_and_marks_states(self, router, recorder, synthesizer):
        """thinking, speaking, idle - I'm a pop sensation!"""
        outcome = await router.speech.speak("Hello.", "Puck", turn_id="t1", speaker_index=1)

        assert outcome == PlaybackOutcome.COMPLETED
        states = [e["state"] for e in recorder.of("speaker_state_changed")]
        assert states == ["thinking", "speaking", "idle"]
        assert all(e["speaker_index"] == 1 and e["turn_id"] == "t1" for e in recorder.of("speaker_state_changed"))
        assert synthesizer.requests == [("Hello.", "Puck")]

    @pytest.mark.asyncio
    async def test_second_speak_supersedes_the_first(self, router, sink, synthesizer):
        """Only the newest voice is heard - Hi, Super Nintendo Chalmers!"""
        gate = asyncio.Event()
        synthesizer.gates = [gate]

        first = asyncio.ensure_future(router.speech.speak("First.", "Puck"))
        await wait_until(lambda: synthesizer.requests)
        second = await router.speech.speak("Second.", "Kore")

        gate.set()
        assert await first == PlaybackOutcome.SUPERSEDED
        assert second == PlaybackOutcome.COMPLETED
        assert len(sink.sources) == 1

    @pytest.mark.asyncio
    async def test_new_speak_replaces_playing_audio(self, synthesizer, recorder):
        """The old clip stops when the new one starts - Miss Hoover, I glued my head to my shoulder!"""
        router, sink = manual_router(synthesizer, recorder)

        first = asyncio.ensure_future(router.speech.speak("First.", "Puck"))
        await wait_until(lambda: sink.playing)
        second = asyncio.ensure_future(router.speech.speak("Second.", "Kore"))

        assert await first == PlaybackOutcome.SUPERSEDED
        await wait_until(lambda: len(sink.playing) == 1 and sink.playing[0] is sink.sources[1])
        assert sink.sources[0].stopped

        router.stop_all()
        assert await second == PlaybackOutcome.STOPPED

    @pytest.mark.asyncio
    async def test_stop_during_synthesis_drops_the_late_result(self, router, sink, synthesizer):
        """The answer comes back too late - Sleep! That's where I'm a Viking!"""
        gate = asyncio.Event()
        synthesizer.gates = [gate]

        pending = asyncio.ensure_future(router.speech.speak("Late.", "Puck"))
        await wait_until(lambda: synthesizer.requests)
        router.speech.stop()
        gate.set()

        assert await pending == PlaybackOutcome.STOPPED
        assert sink.sources == []

    @pytest.mark.asyncio
    async def test_synthesis_failure_resolves_failed_with_toast(self, sink, recorder):
        """The voice broke - It tastes like burning!"""
        speech = SpeechChannel(FakeSynthesizer(error=BackendError("503")), sink)
        speech.add_listener(recorder)

        outcome = await speech.speak("Hello.", "Puck", speaker_index=0)

        assert outcome == PlaybackOutcome.FAILED
        assert recorder.of("playback_failed")
        assert recorder.of("speaker_state_changed")[-1]["state"] == "idle"
        assert sink.sources == []

    @pytest.mark.asyncio
    async def test_undecodable_audio_resolves_failed(self, sink, recorder):
        """Half a sample again - My cat's breath smells like cat food."""
        synth = AsyncMock()
        synth.synthesize_speech.return_value = SpeechAudio(audio_bytes=b"\x01")
        speech = SpeechChannel(synth, sink)
        speech.add_listener(recorder)

        assert await speech.speak("Hello.", "Puck") == PlaybackOutcome.FAILED
        assert recorder.of("playback_failed")

    def test_stop_all_when_idle_is_safe(self, router):
        """Nothing to stop - What's a battle?"""
        router.stop_all()
        router.stop_all()
        assert router.playing_count == 0


class TestRalphWiggumPreviewChannel:
    """
    Voice auditions
    "I'm Idaho!" - Ralph
    """

    @pytest.mark.asyncio
    async def test_preview_says_hello(self, router, recorder, synthesizer):
        """Introduce yourself - Hi, Super Nintendo Chalmers!"""
        persona = PERSONAS[3]
        outcome = await router.preview.preview(persona)

        assert outcome == PlaybackOutcome.COMPLETED
        text, voice = synthesizer.requests[0]
        assert text == f"Hello. My name is {persona.name}. {persona.description}"
        assert voice == persona.voice
        states = [e["state"] for e in recorder.of("preview_state_changed")]
        assert states == ["loading", "playing", "default"]
        assert router.preview.active_persona_id is None

    @pytest.mark.asyncio
    async def test_clicking_the_playing_persona_stops_it(self, synthesizer, recorder):
        """Click again to stop - Daddy, I'm scared. Too scared to wet my pants!"""
        router, sink = manual_router(synthesizer, recorder)
        persona = PERSONAS[0]

        playing = asyncio.ensure_future(router.preview.preview(persona))
        await wait_until(lambda: sink.playing)

        assert await router.preview.preview(persona) == PlaybackOutcome.STOPPED
        assert await playing == PlaybackOutcome.STOPPED
        assert recorder.of("preview_state_changed")[-1]["state"] == "default"
        assert router.preview.active_persona_id is None

    @pytest.mark.asyncio
    async def test_other_persona_replaces_the_preview(self, synthesizer, recorder):
        """A new audition replaces the old - I choo-choo-choose you!"""
        router, sink = manual_router(synthesizer, recorder)

        first = asyncio.ensure_future(router.preview.preview(PERSONAS[0]))
        await wait_until(lambda: sink.playing)
        second = asyncio.ensure_future(router.preview.preview(PERSONAS[1]))

        assert await first == PlaybackOutcome.SUPERSEDED
        await wait_until(lambda: sink.playing and sink.playing[0] is sink.sources[-1])
        assert router.preview.active_persona_id == PERSONAS[1].id

        router.stop_all()
        assert await second == PlaybackOutcome.STOPPED


class TestRalphWiggumAudioRouter:
    """
    Only one source plays at a time
    "The strong must protect the sweet." - Ralph
    """

    @pytest.mark.asyncio
    async def test_speech_starting_silences_preview(self, synthesizer, recorder):
        """Debate talk beats the audition - That's my sandbox!"""
        router, sink = manual_router(synthesizer, recorder)

        preview = asyncio.ensure_future(router.preview.preview(PERSONAS[2]))
        await wait_until(lambda: sink.playing)
        assert router.playing_count == 1

        speech = asyncio.ensure_future(router.speech.speak("Order!", "Charon"))
        assert await preview == PlaybackOutcome.STOPPED
        await wait_until(lambda: router.speech.is_playing)
        assert router.playing_count == 1
        assert len(sink.playing) == 1

        router.stop_all()
        assert await speech == PlaybackOutcome.STOPPED
        assert router.playing_count == 0

    @pytest.mark.asyncio
    async def test_preview_starting_silences_speech(self, synthesizer, recorder):
        """The audition cuts in - This is my swing! You stole my swing!"""
        router, sink = manual_router(synthesizer, recorder)

        speech = asyncio.ensure_future(router.speech.speak("Order!", "Charon"))
        await wait_until(lambda: sink.playing)

        preview = asyncio.ensure_future(router.preview.preview(PERSONAS[4]))
        assert await speech == PlaybackOutcome.STOPPED
        await wait_until(lambda: router.preview.is_playing)
        assert router.playing_count == 1

        router.stop_all()
        assert await preview == PlaybackOutcome.STOPPED


class TestRalphWiggumBroadcastSink:
    """
    Clips go out over the WebSocket
    "Look big Daddy, it's Regular Daddy!" - Ralph
    """

    @pytest.mark.asyncio
    async def test_start_publishes_wav_and_client_ack_ends_it(self):
        """The browser says it's done - I'm learnding!"""
        publish = AsyncMock()
        sink = BroadcastAudioSink(publish)
        source = sink.create_source(AudioClip(SILENT_PCM * 100, 24000))

        source.start()
        await asyncio.sleep(0)

        message = publish.call_args[0][0]
        assert message["type"] == "audio_play"
        assert message["source_id"] == source.id
        assert base64.b64decode(message["audio_data"])[:4] == b"RIFF"
        json.dumps(message)

        sink.notify_ended(source.id)
        assert source.ended and not source.stopped

    @pytest.mark.asyncio
    async def test_source_ends_when_duration_elapses(self):
        """10 ms later it's over - Go banana!"""
        sink = BroadcastAudioSink(AsyncMock())
        source = sink.create_source(AudioClip(SILENT_PCM, 24000))

        source.start()
        await asyncio.wait_for(source.wait_ended(), timeout=1.0)
        assert not source.stopped

    @pytest.mark.asyncio
    async def test_stop_publishes_audio_stop(self):
        """Tell the browser to hush - I bent my Wookie."""
        publish = AsyncMock()
        sink = BroadcastAudioSink(publish)
        source = sink.create_source(AudioClip(SILENT_PCM * 100, 24000))

        source.start()
        source.stop()
        source.stop()
        await asyncio.sleep(0)

        kinds = [call[0][0]["type"] for call in publish.call_args_list]
        assert kinds == ["audio_play", "audio_stop"]
        assert source.stopped

    @pytest.mark.asyncio
    async def test_stopped_sources_are_forgotten(self):
        """Hushed clips don't pile up - My cat's breath smells like cat food."""
        sink = BroadcastAudioSink(AsyncMock())

        for _ in range(5):
            source = sink.create_source(AudioClip(SILENT_PCM * 100, 24000))
            source.start()
            source.stop()
        await asyncio.sleep(0)

        assert sink._sources == {}
        sink.notify_ended(source.id)
        assert source.stopped
