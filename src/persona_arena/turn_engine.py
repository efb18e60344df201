#!/usr/bin/env python3
"""
Persona Debate Turn Engine
"When I grow up, I want to be a principal or a caterpillar!" - Ralph Wiggum

Two personas, two conversation sessions, one shared turn index. Each turn
streams the due speaker's reply, commits it to the alternating-context log,
speaks it, then schedules the next turn after a short cancelable delay.
Hold and stop can land at any await point; every async step re-checks the
flags and its epoch token before touching shared state.
"""

import asyncio
import logging
import time
import uuid
from contextlib import aclosing
from typing import Dict, List, Optional

from .conversation import ConversationBackend, ConversationSession
from .errors import BackendError, ValidationError
from .events import EventEmitter
from .models import (
    ContextMessage,
    DebateSettings,
    EnginePhase,
    EngineState,
    Persona,
    SpeakerState,
    TurnRecord,
    TurnRole,
)
from .personas import build_speaker_instruction, opening_prompt
from .playback import AudioRouter

logger = logging.getLogger(__name__)

TURN_DELAY_SECONDS = 0.5
SUMMARY_ERROR_TEXT = "Error: Could not generate summary."


def build_summary_prompt(personas: List[Persona], topic: str, context_log: List[ContextMessage]) -> str:
    history_text = "\n\n".join(
        f"{personas[message.speaker_index].name}: {message.text}"
        for message in context_log
        if message.role == "model"
    )
    return (
        f"Please provide a concise summary of the following debate between {personas[0].name} "
        f'and {personas[1].name}. The topic was: "{topic}". Highlight the key arguments from '
        f"each participant.\n\nDEBATE LOG:\n{history_text}"
    )


class TurnEngine(EventEmitter):
    """
    Finite-state controller for one two-persona debate at a time.

    The speaker for turn n is personas[n % 2]. start() on a running engine
    restarts it; stop() on a stopped engine does nothing.
    """

    def __init__(
        self,
        backend: ConversationBackend,
        router: AudioRouter,
        model: Optional[str] = None,
        summary_model: Optional[str] = None,
        turn_delay: float = TURN_DELAY_SECONDS
    ):
        super().__init__()
        if turn_delay <= 0:
            raise ValueError("Inter-turn delay must be positive")

        self.backend = backend
        self.router = router
        self.speech = router.speech
        self.model = model
        self.summary_model = summary_model
        self.turn_delay = turn_delay

        self.state = EngineState()
        self.debate_id: Optional[str] = None
        self.settings: Optional[DebateSettings] = None
        self.personas: List[Persona] = []
        self.sessions: List[ConversationSession] = []
        self.transcript: List[TurnRecord] = []
        self.context_log: List[ContextMessage] = []
        self.committed_turns = 0
        self.summary: Optional[str] = None

        self._turn_task: Optional[asyncio.Task] = None
        self._tasks = set()

    def _event_context(self) -> Dict:
        return {"debate_id": self.debate_id}

    @property
    def running(self) -> bool:
        return self.state.running

    @property
    def paused(self) -> bool:
        return self.state.paused

    @property
    def turn_task(self) -> Optional[asyncio.Task]:
        return self._turn_task

    def get_state(self) -> Dict:
        st = self.state
        return {
            "debate_id": self.debate_id,
            "running": st.running,
            "paused": st.paused,
            "interrupted": st.interrupted,
            "phase": st.phase.value,
            "turn_index": st.turn_index,
            "speaker_index": st.speaker_index,
            "committed_turns": self.committed_turns,
            "settings": self.settings.model_dump() if self.settings else None,
            "personas": [p.id for p in self.personas],
            "transcript": [record.model_dump(mode="json") for record in self.transcript],
            "summary": self.summary,
        }

    async def start(self, settings: DebateSettings, personas: List[Persona]) -> str:
        """Validate, build both sessions, seed the opening prompt and launch turn 0"""
        if not settings.topic or not settings.topic.strip():
            raise ValidationError("Please enter a debate topic.")
        if len(personas) != 2:
            raise ValidationError("You can only select two characters for a debate.")

        if self.state.running:
            logger.info(f"🔁 Restarting debate {self.debate_id}")
            await self.stop(with_summary=False)

        model = settings.model or self.model
        sessions = [
            self.backend.create_session(model, build_speaker_instruction(personas[0], personas[1], settings)),
            self.backend.create_session(model, build_speaker_instruction(personas[1], personas[0], settings)),
        ]

        # Preview audio never overlaps a starting debate
        self.router.preview.stop()

        st = self.state
        st.run_epoch += 1
        st.turn_epoch += 1
        st.running = True
        st.paused = False
        st.interrupted = False
        st.turn_index = 0
        st.timer = None
        st.phase = EnginePhase.STARTING

        self.debate_id = f"debate_{int(time.time())}_{uuid.uuid4().hex[:6]}"
        self.settings = settings
        self.personas = list(personas)
        self.sessions = sessions
        self.transcript = []
        self.context_log = [ContextMessage(role="user", text=opening_prompt(settings), speaker_index=0)]
        self.committed_turns = 0
        self.summary = None

        logger.info(f"🎤 Debate {self.debate_id} started: {personas[0].name} vs {personas[1].name} on '{settings.topic}'")
        await self._notify("debate_started", {
            "topic": settings.topic,
            "mode": settings.mode,
            "length": settings.length,
            "language": settings.language,
            "personas": [{"id": p.id, "name": p.name, "voice": p.voice} for p in personas]
        })

        self._launch_turn()
        return self.debate_id

    def _launch_turn(self):
        task = asyncio.ensure_future(self.take_turn())
        self._turn_task = task
        self._tasks.add(task)
        task.add_done_callback(self._turn_done)

    def _turn_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Turn task crashed: {task.exception()!r}")

    def _is_stale(self, turn_epoch: int, run_epoch: int) -> bool:
        st = self.state
        return st.turn_epoch != turn_epoch or st.run_epoch != run_epoch

    async def take_turn(self):
        """One turn of the loop; returns at once while paused or interrupted"""
        st = self.state
        if not st.running or st.paused or st.interrupted:
            return

        st.turn_epoch += 1
        turn_epoch, run_epoch = st.turn_epoch, st.run_epoch
        self._cancel_timer()

        index = st.turn_index
        speaker = index % 2
        listener = 1 - speaker
        persona = self.personas[speaker]
        session = self.sessions[speaker]
        message = self.context_log[-1].text

        record = TurnRecord(
            id=f"turn-{index}-{uuid.uuid4().hex[:8]}",
            role=TurnRole.for_speaker(speaker),
            speaker_index=speaker,
            persona_id=persona.id,
            speaker_name=persona.name
        )
        self.transcript.append(record)
        st.phase = EnginePhase.SPEAKING

        await self._notify("turn_started", {
            "turn_id": record.id,
            "turn_index": index,
            "speaker_index": speaker,
            "persona_id": persona.id,
            "speaker_name": persona.name
        })
        await self._set_speaker_state(speaker, SpeakerState.THINKING)
        await self._set_speaker_state(listener, SpeakerState.IDLE)

        try:
            async with aclosing(session.send(message)) as stream:
                async for fragment in stream:
                    if st.interrupted or self._is_stale(turn_epoch, run_epoch):
                        record.interrupted = True
                        break
                    record.text += fragment
                    await self._notify("turn_text_updated", {"turn_id": record.id, "text": record.text})
        except BackendError as e:
            if self._is_stale(turn_epoch, run_epoch) or st.interrupted:
                logger.debug(f"Ignoring error from superseded turn {record.id}: {e}")
                await self._finalize_partial(record)
                return
            await self._fail_turn(record, e)
            return

        if record.interrupted or st.interrupted or self._is_stale(turn_epoch, run_epoch):
            await self._finalize_partial(record)
            return

        record.completed = True
        self.context_log.append(ContextMessage(role="model", text=record.text, speaker_index=speaker))
        self.context_log.append(ContextMessage(role="user", text=record.text, speaker_index=listener))
        self.committed_turns = index + 1

        await self._notify("turn_completed", {
            "turn_id": record.id,
            "speaker_index": speaker,
            "text": record.text,
            "interrupted": False
        })

        if st.paused:
            logger.info(f"⏸️ Turn {index} finished while on hold; not advancing")
            await self._set_speaker_state(speaker, SpeakerState.IDLE)
            return

        st.phase = EnginePhase.VOCALIZING
        outcome = await self.speech.speak(record.text, persona.voice, turn_id=record.id, speaker_index=speaker)
        logger.debug(f"Turn {index} playback settled: {outcome.value}")

        if st.paused or st.interrupted or self._is_stale(turn_epoch, run_epoch):
            return

        st.turn_index = self.committed_turns
        self._schedule_next()

    async def _finalize_partial(self, record: TurnRecord):
        record.interrupted = True
        record.completed = True
        await self._notify("turn_completed", {
            "turn_id": record.id,
            "speaker_index": record.speaker_index,
            "text": record.text,
            "interrupted": True
        })

    async def _fail_turn(self, record: TurnRecord, error: BackendError):
        logger.error(f"❌ Turn {record.id} failed: {error}")
        record.completed = True
        record.interrupted = True

        error_record = TurnRecord(
            id=f"error-{uuid.uuid4().hex[:8]}",
            role=TurnRole.ERROR,
            text=f"Error: {error}",
            completed=True
        )
        self.transcript.append(error_record)
        await self._notify("turn_error", {
            "turn_id": error_record.id,
            "failed_turn_id": record.id,
            "message": error_record.text,
            "status": error.status
        })
        await self.stop(with_summary=False)

    def _schedule_next(self):
        st = self.state
        loop = asyncio.get_running_loop()
        st.phase = EnginePhase.SCHEDULED
        st.timer = loop.call_later(self.turn_delay, self._on_timer, st.run_epoch)

    def _on_timer(self, run_epoch: int):
        self.state.timer = None
        if run_epoch != self.state.run_epoch:
            return
        self._launch_turn()

    def _cancel_timer(self):
        if self.state.timer is not None:
            self.state.timer.cancel()
            self.state.timer = None

    async def _set_speaker_state(self, speaker_index: int, speaker_state: SpeakerState):
        await self._notify("speaker_state_changed", {
            "speaker_index": speaker_index,
            "state": speaker_state.value
        })

    async def _set_all_idle(self):
        for index in range(len(self.personas)):
            await self._set_speaker_state(index, SpeakerState.IDLE)

    async def hold(self):
        """Pause auto-advance; rendered text stays, audio and the pending timer go"""
        st = self.state
        if not st.running or st.paused:
            return
        st.paused = True
        self._cancel_timer()
        self.router.stop_all()
        st.phase = EnginePhase.PAUSED
        logger.info(f"⏸️ Debate {self.debate_id} on hold at turn {st.turn_index}")
        await self._notify("debate_paused", {"turn_index": st.turn_index})
        await self._set_all_idle()

    async def resume(self):
        """
        Leave hold and take the due turn immediately.

        The turn index only moves once playback settles, so a turn whose
        speech had not finished before the hold is taken again by the same
        speaker with the latest message. Any turn still in flight is stale
        from here on.
        """
        st = self.state
        if not st.running or not st.paused:
            return
        st.paused = False
        st.turn_epoch += 1
        logger.info(f"▶️ Debate {self.debate_id} resumed at turn {st.turn_index}")
        await self._notify("debate_resumed", {"turn_index": st.turn_index})
        self._launch_turn()

    async def toggle_hold(self) -> bool:
        if self.state.paused:
            await self.resume()
        else:
            await self.hold()
        return self.state.paused

    async def stop(self, with_summary: bool = False):
        """Terminal stop for the current run, optionally followed by a summary"""
        st = self.state
        if not st.running:
            return

        st.running = False
        st.interrupted = True
        st.paused = False
        self._cancel_timer()
        self.router.stop_all()
        st.phase = EnginePhase.STOPPED
        logger.info(f"🛑 Debate {self.debate_id} stopped after {self.committed_turns} turns")
        await self._set_all_idle()

        if with_summary and self.committed_turns > 0:
            await self._summarize(st.run_epoch)

        await self._notify("debate_stopped", {"turns": self.committed_turns})

    async def _summarize(self, run_epoch: int):
        st = self.state
        st.phase = EnginePhase.SUMMARIZING

        record = TurnRecord(id=f"summary-{uuid.uuid4().hex[:8]}", role=TurnRole.SUMMARY)
        self.transcript.append(record)
        await self._notify("summary_started", {"turn_id": record.id})

        prompt = build_summary_prompt(self.personas, self.settings.topic, self.context_log)
        try:
            text = await self.backend.generate_once(self.summary_model, prompt)
        except BackendError as e:
            logger.error(f"Summary failed: {e}")
            if st.run_epoch != run_epoch:
                return
            record.text = SUMMARY_ERROR_TEXT
            record.completed = True
            st.phase = EnginePhase.STOPPED
            await self._notify("summary_failed", {"turn_id": record.id, "message": SUMMARY_ERROR_TEXT})
            return

        if st.run_epoch != run_epoch:
            logger.debug("Discarding summary for a superseded debate")
            return

        record.text = text
        record.completed = True
        self.summary = text
        st.phase = EnginePhase.STOPPED
        await self._notify("summary_ready", {"turn_id": record.id, "text": text})

    def get_turn(self, turn_id: str) -> Optional[TurnRecord]:
        for record in self.transcript:
            if record.id == turn_id:
                return record
        return None

    async def speak_again(self, turn_id: str):
        """Replay a transcript entry on the speech slot"""
        record = self.get_turn(turn_id)
        if record is None:
            raise ValidationError(f"Unknown turn: {turn_id}")
        if not record.text:
            raise ValidationError("Nothing to speak yet for this turn.")

        if record.speaker_index is not None and record.speaker_index < len(self.personas):
            voice = self.personas[record.speaker_index].voice
        else:
            voice = self.personas[0].voice if self.personas else "Kore"
        return await self.speech.speak(record.text, voice, turn_id=record.id)
