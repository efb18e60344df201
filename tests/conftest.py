#!/usr/bin/env python3
"""
Pytest Configuration
"What's a battle?" - Ralph Wiggum

Fakes for the hosted backends live here: a scripted conversation backend,
a synthesizer that returns a short silent clip, and an audio sink whose
sources end when the test says so.
"""

import asyncio
import random
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Add src to path for all tests
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from persona_arena.models import GenerationResult, SpeechAudio
from persona_arena.personas import PERSONAS
from persona_arena.playback import AudioRouter, AudioSink, AudioSource, PreviewChannel, SpeechChannel
from persona_arena.turn_engine import TurnEngine

SILENT_PCM = b"\x00\x00" * 240  # 10 ms at 24 kHz


def pytest_configure(config):
    """Configure pytest with custom markers - I'm learnding!"""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )


class Reply:
    """One scripted answer; optionally blocks on `gate` after `gate_after` fragments"""

    def __init__(self, fragments=None, gate: Optional[asyncio.Event] = None, gate_after: int = 0, error=None):
        self.fragments = list(fragments or [])
        self.gate = gate
        self.gate_after = gate_after
        self.error = error


class ScriptedSession:
    def __init__(self, system_instruction: str, replies: List):
        self.system_instruction = system_instruction
        self.replies = [r if isinstance(r, Reply) else Reply(r) for r in replies]
        self.sent: List[str] = []

    async def send(self, message: str):
        self.sent.append(message)
        reply = self.replies.pop(0) if self.replies else Reply([f"Reply {len(self.sent)}."])

        for index, fragment in enumerate(reply.fragments):
            if reply.gate is not None and index == reply.gate_after:
                await reply.gate.wait()
            await asyncio.sleep(0)
            yield fragment

        if reply.gate is not None and reply.gate_after >= len(reply.fragments):
            await reply.gate.wait()
        if reply.error is not None:
            raise reply.error


class FakeConversationBackend:
    """Hands out ScriptedSessions; scripts[0] feeds the first speaker, scripts[1] the second"""

    def __init__(self, scripts: Optional[Dict[int, List]] = None, summary: str = "A fine summary.", summary_error=None):
        self.scripts = scripts or {}
        self.sessions: List[ScriptedSession] = []
        self.models: List = []
        self.summary = summary
        self.summary_error = summary_error
        self.summary_prompts: List[str] = []

    def create_session(self, model, system_instruction: str) -> ScriptedSession:
        slot = len(self.sessions) % 2
        session = ScriptedSession(system_instruction, list(self.scripts.get(slot, [])))
        self.sessions.append(session)
        self.models.append(model)
        return session

    async def generate_once(self, model, prompt: str) -> str:
        self.summary_prompts.append(prompt)
        await asyncio.sleep(0)
        if self.summary_error is not None:
            raise self.summary_error
        return self.summary


class FakeSynthesizer:
    """Returns a short silent clip; `gates` are consumed one per request"""

    def __init__(self, error=None):
        self.error = error
        self.gates: List[asyncio.Event] = []
        self.requests: List = []

    async def synthesize_speech(self, text: str, voice: str) -> SpeechAudio:
        self.requests.append((text, voice))
        gate = self.gates.pop(0) if self.gates else None
        await asyncio.sleep(0)
        if gate is not None:
            await gate.wait()
        if self.error is not None:
            raise self.error
        return SpeechAudio(audio_bytes=SILENT_PCM, sample_rate=24000)


class FakeRestClient(FakeSynthesizer):
    def __init__(self, reply: str = "Sure thing.", sources=None, error=None, text_error=None):
        super().__init__(error=error)
        self.reply = reply
        self.sources = sources or []
        self.text_error = text_error
        self.text_calls: List[Dict] = []

    async def generate_text(self, model, parts, system_instruction=None, search=False) -> GenerationResult:
        self.text_calls.append({
            "model": model,
            "parts": parts,
            "system_instruction": system_instruction,
            "search": search
        })
        await asyncio.sleep(0)
        if self.text_error is not None:
            raise self.text_error
        return GenerationResult(text=self.reply, sources=self.sources)


class ManualSource(AudioSource):
    def __init__(self, clip, auto_finish: bool):
        super().__init__(clip)
        self.auto_finish = auto_finish

    def _begin(self):
        if self.auto_finish:
            asyncio.get_running_loop().call_soon(self.finish)


class ManualAudioSink(AudioSink):
    def __init__(self, auto_finish: bool = True):
        self.auto_finish = auto_finish
        self.sources: List[ManualSource] = []

    def create_source(self, clip) -> AudioSource:
        source = ManualSource(clip, self.auto_finish)
        self.sources.append(source)
        return source

    @property
    def playing(self) -> List[ManualSource]:
        return [s for s in self.sources if s.started and not s.ended]


class EventRecorder:
    def __init__(self):
        self.events: List[Dict] = []

    def __call__(self, event: Dict):
        self.events.append(event)

    def names(self) -> List[str]:
        return [e["event"] for e in self.events]

    def of(self, name: str) -> List[Dict]:
        return [e for e in self.events if e["event"] == name]

    async def wait_for(self, name: str, count: int = 1, timeout: float = 2.0) -> List[Dict]:
        async def _poll():
            while len(self.of(name)) < count:
                await asyncio.sleep(0.002)
        await asyncio.wait_for(_poll(), timeout=timeout)
        return self.of(name)


async def wait_until(predicate, timeout: float = 2.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.002)
    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture
def personas():
    return [PERSONAS[0], PERSONAS[1]]


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def sink():
    return ManualAudioSink()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def router(synthesizer, sink, recorder):
    speech = SpeechChannel(synthesizer, sink)
    preview = PreviewChannel(synthesizer, sink)
    audio_router = AudioRouter(speech, preview)
    audio_router.add_listener(recorder)
    return audio_router


@pytest.fixture
def backend():
    return FakeConversationBackend()


@pytest.fixture
def engine(backend, router, recorder):
    turn_engine = TurnEngine(backend, router, model="test-model", summary_model="test-summary", turn_delay=0.01)
    turn_engine.add_listener(recorder)
    return turn_engine


@pytest.fixture
def ralph_quote():
    """Get a random Ralph Wiggum quote - My cat's breath smells like cat food!"""
    quotes = [
        "I'm learnding!",
        "Me fail English? That's unpossible!",
        "My cat's breath smells like cat food.",
        "I bent my Wookie.",
        "Hi, Super Nintendo Chalmers!",
        "I choo-choo-choose you!",
        "It tastes like burning!",
        "Sleep! That's where I'm a Viking!",
        "Go banana!",
        "I'm Idaho!",
        "I found a moon rock in my nose!",
        "What's a battle?",
    ]
    return random.choice(quotes)


def pytest_report_header(config):
    """Add Ralph Wiggum header to test output"""
    return [
        "",
        "🎭 Persona Debate Arena Test Suite",
        "━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━",
        '"I\'m learnding!" - Ralph Wiggum',
        "",
    ]


def pytest_terminal_summary(terminalreporter, exitstatus, config):
    """Add Ralph Wiggum footer to test output"""
    quotes = [
        "That's unpossible!",
        "I bent my Wookie testing this!",
        "It tastes like burning!",
        "Go banana!",
        "I'm a unitard!",
    ]

    if exitstatus == 0:
        terminalreporter.write_line("")
        terminalreporter.write_line("✅ All tests passed! \"I'm learnding!\" - Ralph", green=True)
    else:
        terminalreporter.write_line("")
        terminalreporter.write_line(f"❌ Some tests failed! \"{random.choice(quotes)}\" - Ralph", red=True)
