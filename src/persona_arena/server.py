#!/usr/bin/env python3
"""
Persona Debate Arena Server
"Hi, Super Nintendo Chalmers!" - Ralph Wiggum

REST commands drive the debate, the direct chat and the voice preview; every
event the core emits is pushed to all connected WebSockets. The WebSocket
also carries playback acknowledgements and live-session microphone audio.
"""

import asyncio
import json
import logging
import weakref
from typing import Optional

from aiohttp import web, WSMsgType
from pydantic import ValidationError as ModelValidationError

from .config import ArenaSettings, load_settings, setup_logging
from .conversation import ConversationBackend
from .direct_chat import DirectChat
from .errors import BackendError, ValidationError
from .gemini_rest import GeminiRestClient
from .live_session import LiveSession
from .models import Attachment, DebateSettings, Persona
from .personas import get_persona, random_pair, resolve_pair, search_personas
from .playback import AudioRouter, BroadcastAudioSink, PreviewChannel, SpeechChannel
from .turn_engine import TurnEngine

logger = logging.getLogger(__name__)


def persona_json(persona: Persona) -> dict:
    return {
        "id": persona.id,
        "name": persona.name,
        "description": persona.description,
        "biography": persona.biography,
        "voice": persona.voice
    }


class StreamManager:
    """Manages WebSocket connections for real-time updates"""

    def __init__(self):
        self.connections = weakref.WeakSet()

    def add(self, ws):
        self.connections.add(ws)

    def remove(self, ws):
        self.connections.discard(ws)

    def __len__(self):
        return len(self.connections)

    async def broadcast(self, data: dict):
        message = json.dumps(data)
        dead = []

        for ws in list(self.connections):
            try:
                await ws.send_str(message)
            except (ConnectionResetError, RuntimeError):
                dead.append(ws)

        for ws in dead:
            self.remove(ws)


class ArenaServer:
    """One arena per process: a debate engine, a direct chat, a preview slot and a live session"""

    def __init__(
        self,
        settings: ArenaSettings,
        backend: Optional[ConversationBackend] = None,
        rest_client: Optional[GeminiRestClient] = None
    ):
        self.settings = settings
        self.host = settings.host
        self.port = settings.port
        self.app = web.Application()
        self.streams = StreamManager()

        self.rest = rest_client or GeminiRestClient(settings.api_key, settings.api_base_url, settings.tts_model)
        self.backend = backend or ConversationBackend(settings.api_key, settings.text_model)

        self.sink = BroadcastAudioSink(self.streams.broadcast)
        self.speech = SpeechChannel(self.rest, self.sink)
        self.preview = PreviewChannel(self.rest, self.sink)
        self.router = AudioRouter(self.speech, self.preview)

        self.engine = TurnEngine(
            self.backend,
            self.router,
            model=settings.text_model,
            summary_model=settings.summary_model
        )
        self.chat = DirectChat(self.rest, self.speech, model=settings.text_model)
        self.live: Optional[LiveSession] = None
        self._tasks = set()

        self.engine.add_listener(self.streams.broadcast)
        self.chat.add_listener(self.streams.broadcast)
        self.router.add_listener(self.streams.broadcast)

        self._setup_routes()
        self.app.on_shutdown.append(self._on_shutdown)

    def _setup_routes(self):
        # WebSocket
        self.app.router.add_get('/ws', self._handle_websocket)

        # API Routes
        self.app.router.add_get('/health', self._health)
        self.app.router.add_get('/api/personas', self._list_personas)
        self.app.router.add_get('/api/personas/random', self._random_personas)
        self.app.router.add_post('/api/debate/start', self._start_debate)
        self.app.router.add_post('/api/debate/hold', self._hold_debate)
        self.app.router.add_post('/api/debate/stop', self._stop_debate)
        self.app.router.add_post('/api/debate/speak/{turn_id}', self._speak_turn)
        self.app.router.add_get('/api/debate', self._get_debate)
        self.app.router.add_post('/api/audio/stop', self._stop_audio)
        self.app.router.add_post('/api/preview/{persona_id}', self._preview_voice)
        self.app.router.add_post('/api/chat', self._chat)
        self.app.router.add_post('/api/chat/audio', self._chat_audio)
        self.app.router.add_post('/api/chat/reset', self._chat_reset)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task failed: {task.exception()!r}")

    async def _read_json(self, request) -> dict:
        if not request.can_read_body:
            return {}
        try:
            data = await request.json()
        except json.JSONDecodeError:
            raise ValidationError("Request body must be JSON")
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        return data

    async def _handle_websocket(self, request):
        """Handle WebSocket connections"""
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.streams.add(ws)
        logger.info(f"🔌 Client connected ({len(self.streams)} total)")

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except json.JSONDecodeError:
                        continue
                    if not isinstance(data, dict):
                        continue
                    await self._handle_ws_message(ws, data)

                elif msg.type == WSMsgType.BINARY:
                    if self.live is not None:
                        await self.live.send_audio(msg.data)

                elif msg.type == WSMsgType.ERROR:
                    break

        finally:
            self.streams.remove(ws)

        return ws

    async def _handle_ws_message(self, ws, data: dict):
        kind = data.get("type")

        if kind == "ping":
            await ws.send_str(json.dumps({"type": "pong"}))

        elif kind == "audio_ended":
            self.sink.notify_ended(data.get("source_id", ""))

        elif kind == "live_start":
            persona = get_persona(data["persona_id"]) if data.get("persona_id") else None
            await self._start_live(persona)

        elif kind == "live_stop":
            await self._stop_live()

    async def _start_live(self, persona: Optional[Persona]):
        await self._stop_live()
        live = LiveSession(
            self.settings.api_key,
            self.settings.live_model,
            base_url=self.settings.api_base_url,
            persona=persona
        )
        live.add_listener(self.streams.broadcast)
        self.live = live
        try:
            await live.connect()
        except BackendError as e:
            logger.error(f"Live session could not start: {e}")
            self.live = None
            await self.streams.broadcast({
                "event": "playback_failed",
                "message": "Could not start the live conversation. Please try again."
            })

    async def _stop_live(self):
        live, self.live = self.live, None
        if live is not None:
            await live.close()

    async def _health(self, request):
        return web.json_response({
            "status": "healthy",
            "version": "0.1.0",
            "debate_running": self.engine.running,
            "connections": len(self.streams),
            "api_key_configured": bool(self.settings.api_key)
        })

    async def _list_personas(self, request):
        query = request.query.get('q', '')
        return web.json_response({"personas": [persona_json(p) for p in search_personas(query)]})

    async def _random_personas(self, request):
        return web.json_response({"personas": [persona_json(p) for p in random_pair()]})

    async def _start_debate(self, request):
        """Start (or restart) the debate"""
        try:
            data = await self._read_json(request)
            personas = resolve_pair(data.get("persona_ids") or [])
            settings = DebateSettings(**{k: v for k, v in data.items() if k in DebateSettings.model_fields})
            debate_id = await self.engine.start(settings, personas)
        except ModelValidationError as e:
            return web.json_response({"error": e.errors(include_url=False, include_context=False)}, status=400)
        except ValidationError as e:
            return web.json_response({"error": str(e)}, status=400)
        except BackendError as e:
            logger.error(f"Start debate failed: {e}")
            return web.json_response({"error": str(e)}, status=502)

        return web.json_response({
            "debate_id": debate_id,
            "personas": [persona_json(p) for p in personas],
            "status": "started"
        })

    async def _hold_debate(self, request):
        if not self.engine.running:
            return web.json_response({"error": "No debate in progress"}, status=409)
        paused = await self.engine.toggle_hold()
        return web.json_response({"debate_id": self.engine.debate_id, "paused": paused})

    async def _stop_debate(self, request):
        """Stop the debate; the summary, if requested, arrives over the WebSocket"""
        try:
            data = await self._read_json(request)
        except ValidationError as e:
            return web.json_response({"error": str(e)}, status=400)

        was_running = self.engine.running
        self._spawn(self.engine.stop(with_summary=bool(data.get("summary", False))))
        return web.json_response({
            "debate_id": self.engine.debate_id,
            "status": "stopping" if was_running else "stopped"
        })

    async def _speak_turn(self, request):
        turn_id = request.match_info['turn_id']
        record = self.engine.get_turn(turn_id)
        if record is None:
            return web.json_response({"error": "Turn not found"}, status=404)
        if not record.text:
            return web.json_response({"error": "Nothing to speak yet for this turn"}, status=400)

        self._spawn(self.engine.speak_again(turn_id))
        return web.json_response({"turn_id": turn_id, "status": "speaking"})

    async def _get_debate(self, request):
        return web.json_response(self.engine.get_state())

    async def _stop_audio(self, request):
        self.router.stop_all()
        return web.json_response({"status": "stopped"})

    async def _preview_voice(self, request):
        persona = get_persona(request.match_info['persona_id'])
        if persona is None:
            return web.json_response({"error": "Persona not found"}, status=404)

        self._spawn(self.preview.preview(persona))
        return web.json_response({"persona_id": persona.id, "status": "toggled"})

    async def _chat(self, request):
        try:
            data = await self._read_json(request)
            attachment = Attachment.model_validate(data["attachment"]) if data.get("attachment") else None
            kwargs = {"attachment": attachment, "search": bool(data.get("search", False))}
            if data.get("voice"):
                kwargs["voice"] = data["voice"]
            reply = await self.chat.submit(data.get("prompt", ""), **kwargs)
        except ModelValidationError as e:
            return web.json_response({"error": e.errors(include_url=False, include_context=False)}, status=400)
        except ValidationError as e:
            return web.json_response({"error": str(e)}, status=400)

        return web.json_response({"reply": reply.model_dump(mode="json")})

    async def _chat_audio(self, request):
        audio = await request.read()
        mime_type = request.content_type or "audio/webm"
        try:
            reply = await self.chat.submit_audio(audio, mime_type)
        except ValidationError as e:
            return web.json_response({"error": str(e)}, status=400)
        return web.json_response({"reply": reply.model_dump(mode="json")})

    async def _chat_reset(self, request):
        try:
            data = await self._read_json(request)
        except ValidationError as e:
            return web.json_response({"error": str(e)}, status=400)

        persona = None
        persona_id = data.get("persona_id")
        if persona_id and persona_id != "default":
            persona = get_persona(persona_id)
            if persona is None:
                return web.json_response({"error": "Persona not found"}, status=404)

        self.chat.reinitialize(model=data.get("model"), persona=persona)
        return web.json_response({
            "model": self.chat.model,
            "persona_id": persona.id if persona else None,
            "status": "reset"
        })

    async def _on_shutdown(self, app):
        await self.engine.stop(with_summary=False)
        await self._stop_live()
        self.router.stop_all()

    async def start(self):
        """Start the server"""
        runner = web.AppRunner(self.app)
        await runner.setup()

        site = web.TCPSite(runner, self.host, self.port)
        await site.start()

        logger.info(f"🎭 Persona Debate Arena running at http://{self.host}:{self.port}")
        return runner


async def main(settings: Optional[ArenaSettings] = None):
    settings = settings or load_settings()
    setup_logging(settings)

    server = ArenaServer(settings)
    runner = await server.start()

    logger.info("💡 Pick two personas and start a debate!")

    try:
        while True:
            await asyncio.sleep(1)
    finally:
        logger.info("🛑 Shutting down server...")
        await runner.cleanup()
        logger.info("✅ Server shutdown complete")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n👋 Goodbye!")
