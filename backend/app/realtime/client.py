"""
Headless voice client.

Talks to the relay over ``/mcp-proxy`` and to the OpenAI realtime API over a
second websocket, and drives a ``TurnCoordinator`` with the events from both.
Capture streams a WAV file instead of a microphone; playback writes each
assembled assistant WAV into an output directory.
"""
from __future__ import annotations

import asyncio
import base64
import json
import logging
import time
from pathlib import Path
from typing import Any, AsyncIterator, Callable
from urllib.parse import urlencode

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from app.errors import LocalResourceFailure, TransportFailure
from app.turn import audio
from app.turn.coordinator import TurnCoordinator
from core.config import REALTIME_API_URL, REALTIME_KEEPALIVE_SEC, REALTIME_MODEL
from core.state import TurnEvent, TurnPhase

logger = logging.getLogger("realtime.client")

# appended after the file so server VAD sees the end of speech
TRAILING_SILENCE_MS = 1000


def relay_ws_url(relay_url: str) -> str:
    base = relay_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/mcp-proxy"


def realtime_ws_url(model: str = REALTIME_MODEL, api_url: str = REALTIME_API_URL) -> str:
    base = api_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    return f"{base}?{urlencode({'model': model})}"


async def fetch_ephemeral_token(relay_url: str, http_client: httpx.AsyncClient | None = None, timeout_sec: float = 15.0) -> str:
    url = f"{relay_url.rstrip('/')}/session-token"
    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(timeout=timeout_sec)
    try:
        response = await client.get(url)
    except httpx.HTTPError as exc:
        raise TransportFailure(f"Token fetch failed: {exc}", code="connection_error") from exc
    finally:
        if owns_client:
            await client.aclose()

    if response.status_code != 200:
        raise TransportFailure(f"Token fetch failed: {response.status_code}", status=response.status_code)
    try:
        data = response.json()
    except ValueError as exc:
        raise TransportFailure("Invalid token response.") from exc
    secret = (data.get("client_secret") or {}).get("value") if isinstance(data, dict) else None
    if not secret:
        raise TransportFailure("Invalid token response.")
    logger.info("Ephemeral token received")
    return str(secret)


class _JsonSocket:
    """Websocket with an ordered outbox; ``post`` is safe from sync code."""

    name = "socket"

    def __init__(self, ws: Any):
        self._ws = ws
        self._outbox: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._writer = asyncio.create_task(self._write_loop())
        self.last_sent_ts = time.monotonic()
        self.closed = False

    def post(self, payload: dict[str, Any]) -> None:
        if self.closed:
            logger.warning("%s closed; dropping %s", self.name, payload.get("type"))
            return
        self._outbox.put_nowait(payload)

    async def send(self, payload: dict[str, Any]) -> None:
        await self._ws.send(json.dumps(payload))
        self.last_sent_ts = time.monotonic()

    async def _write_loop(self) -> None:
        while True:
            payload = await self._outbox.get()
            if payload is None:
                return
            try:
                await self.send(payload)
            except ConnectionClosed:
                logger.warning("%s closed while sending %s", self.name, payload.get("type"))
                return

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        try:
            async for raw in self._ws:
                try:
                    data = json.loads(raw)
                except (TypeError, json.JSONDecodeError):
                    logger.error("Bad %s message: %s", self.name, str(raw)[:200])
                    continue
                if isinstance(data, dict):
                    yield data
        except ConnectionClosed as exc:
            logger.info("%s closed | code=%s reason=%s", self.name, exc.code, exc.reason)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._outbox.put_nowait(None)
        try:
            await asyncio.wait_for(self._writer, timeout=2.0)
        except asyncio.TimeoutError:
            self._writer.cancel()
        await self._ws.close()


class RealtimeTransport(_JsonSocket):
    name = "realtime"

    def __init__(self, ws: Any, keepalive_sec: float = REALTIME_KEEPALIVE_SEC):
        super().__init__(ws)
        self.keepalive_sec = keepalive_sec
        self._keepalive = asyncio.create_task(self._keepalive_loop())

    @classmethod
    async def connect(cls, token: str, model: str = REALTIME_MODEL, url: str | None = None) -> "RealtimeTransport":
        target = url or realtime_ws_url(model)
        headers = {"Authorization": f"Bearer {token}", "OpenAI-Beta": "realtime=v1"}
        try:
            ws = await websockets.connect(target, additional_headers=headers, max_size=None, open_timeout=20)
        except (OSError, InvalidHandshake, asyncio.TimeoutError) as exc:
            raise TransportFailure(f"Realtime connection failed: {exc}", code="connection_error") from exc
        logger.info("Realtime websocket connected | model=%s", model)
        return cls(ws)

    def send_event(self, event: dict[str, Any]) -> None:
        self.post(event)

    async def _keepalive_loop(self) -> None:
        while not self.closed:
            await asyncio.sleep(self.keepalive_sec / 2)
            if not self.closed and time.monotonic() - self.last_sent_ts >= self.keepalive_sec:
                self.post({"type": "ping"})

    async def close(self) -> None:
        self._keepalive.cancel()
        await super().close()


class RelayChannel(_JsonSocket):
    name = "relay"

    @classmethod
    async def connect(cls, relay_url: str) -> "RelayChannel":
        target = relay_ws_url(relay_url)
        try:
            ws = await websockets.connect(target, open_timeout=20)
        except (OSError, InvalidHandshake, asyncio.TimeoutError) as exc:
            raise TransportFailure(f"Relay connection failed: {exc}", code="connection_error") from exc
        logger.info("Relay websocket connected | url=%s", target)
        return cls(ws)

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        async for data in super().messages():
            if data.get("type") == "ping":
                self.post({"type": "pong", "sessionId": data.get("sessionId")})
                continue
            yield data


StatusCallback = Callable[[str, bool], None]


class VoiceClient:
    """Runs voice turns from a WAV file through the relay and realtime API."""

    def __init__(
        self,
        relay_url: str,
        input_wav: str | Path,
        output_dir: str | Path,
        model: str = REALTIME_MODEL,
        on_status: StatusCallback | None = None,
        turn_timeout_sec: float = 60.0,
    ):
        self.relay_url = relay_url
        self.input_wav = Path(input_wav)
        self.output_dir = Path(output_dir)
        self.model = model
        self.on_status = on_status
        self.turn_timeout_sec = turn_timeout_sec

        self.coordinator = TurnCoordinator(self)
        self.relay: RelayChannel | None = None
        self.realtime: RealtimeTransport | None = None

        self._tasks: set[asyncio.Task] = set()
        self._capture_task: asyncio.Task | None = None
        self._playback_timer: asyncio.TimerHandle | None = None
        self._session_ready = asyncio.Event()
        self._idle = asyncio.Event()
        self._closed = asyncio.Event()
        self._turn_index = 0
        self.saved_files: list[Path] = []
        self.teardown_reason: str | None = None

    # -------------------------
    # LIFECYCLE
    # -------------------------

    async def connect(self, ready_timeout_sec: float = 20.0) -> str:
        self.relay = await RelayChannel.connect(self.relay_url)
        self._spawn(self._pump(self.relay.messages(), self.coordinator.handle_relay_message, "relay_closed"))
        try:
            await asyncio.wait_for(self._session_ready.wait(), timeout=ready_timeout_sec)
        except asyncio.TimeoutError as exc:
            await self.close()
            raise TransportFailure("Relay did not issue a session id.", code="connection_error") from exc
        if self._closed.is_set():
            raise TransportFailure("Session closed during setup.", code="connection_error")

        token = await fetch_ephemeral_token(self.relay_url)
        self.realtime = await RealtimeTransport.connect(token, model=self.model)
        self._spawn(self._pump(self.realtime.messages(), self.coordinator.handle_realtime_event, "realtime_closed"))
        return str(self.coordinator.state.session_id)

    async def run(self, turns: int = 1) -> list[Path]:
        await self.connect()
        try:
            for _ in range(max(1, turns)):
                if self._closed.is_set():
                    break
                await self.run_turn()
        finally:
            await self.close()
        return self.saved_files

    async def run_turn(self) -> TurnPhase:
        self._idle.clear()
        self.coordinator.start_capture()
        if self.coordinator.phase != TurnPhase.RECORDING:
            return self.coordinator.phase

        capture = self._capture_task
        if capture is not None:
            await asyncio.wait([capture])
        if self.coordinator.phase == TurnPhase.RECORDING:
            self.coordinator.stop_capture()

        if self.coordinator.phase != TurnPhase.IDLE:
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=self.turn_timeout_sec)
            except asyncio.TimeoutError:
                logger.warning("Turn did not finish within %.1fs | phase=%s", self.turn_timeout_sec, self.coordinator.phase.value)
        return self.coordinator.phase

    async def close(self) -> None:
        self._closed.set()
        self._idle.set()
        if self._playback_timer is not None:
            self._playback_timer.cancel()
            self._playback_timer = None
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current and not task.done():
                task.cancel()
        for channel in (self.realtime, self.relay):
            if channel is None:
                continue
            try:
                await channel.close()
            except (ConnectionClosed, OSError) as exc:
                logger.warning("%s close failed: %s", channel.name, exc)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _pump(self, messages: AsyncIterator[dict[str, Any]], handle: Callable[[dict[str, Any]], TurnPhase], closed_reason: str) -> None:
        async for data in messages:
            handle(data)
            self._after_event()
        if not self._closed.is_set():
            self.coordinator.dispatch(TurnEvent.DISCONNECT, {"reason": closed_reason})

    def _dispatch_later(self, event: TurnEvent, payload: dict[str, Any] | None = None) -> None:
        self.coordinator.dispatch(event, payload)
        self._after_event()

    def _after_event(self) -> None:
        if self.coordinator.state.session_id:
            self._session_ready.set()
        if self.coordinator.phase == TurnPhase.IDLE:
            self._idle.set()

    # -------------------------
    # TURN PORTS
    # -------------------------

    def start_capture(self) -> None:
        try:
            pcm, rate = audio.read_pcm16(str(self.input_wav))
        except (OSError, EOFError, ValueError) as exc:
            raise LocalResourceFailure(f"Cannot read {self.input_wav}: {exc}") from exc
        if rate != audio.SAMPLE_RATE:
            raise LocalResourceFailure(f"{self.input_wav}: expected {audio.SAMPLE_RATE} Hz, got {rate} Hz")
        if self.realtime is None or self.realtime.closed:
            raise LocalResourceFailure("Realtime connection is not open")
        silence = b"\x00" * (audio.SAMPLE_RATE * audio.SAMPLE_WIDTH * TRAILING_SILENCE_MS // 1000)
        self._capture_task = self._spawn(self._stream_audio(pcm + silence))

    async def _stream_audio(self, pcm: bytes) -> None:
        sent = 0
        for chunk in audio.iter_chunks(pcm):
            self.realtime.send_event({
                "type": "input_audio_buffer.append",
                "audio": base64.b64encode(chunk).decode("ascii"),
            })
            sent += len(chunk)
            await asyncio.sleep(0)
        logger.info("Streamed input audio | bytes=%s", sent)

    def stop_capture(self) -> None:
        task, self._capture_task = self._capture_task, None
        if task is not None and not task.done():
            task.cancel()

    def submit_user_transcript(self, text: str) -> None:
        self.relay.post({"type": "user_transcript", "content": text, "sessionId": self.coordinator.state.session_id})

    def store_assistant_transcript(self, text: str) -> None:
        self.relay.post({"type": "store_assistant_transcript", "content": text, "sessionId": self.coordinator.state.session_id})

    def speak_text(self, text: str) -> None:
        self._turn_index += 1
        path = self.output_dir / f"turn-{self._turn_index:03d}.txt"
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")
        except OSError as exc:
            logger.error("Cannot write assistant text: %s", exc)
            return
        self.saved_files.append(path)
        logger.info("Assistant text saved | path=%s chars=%s", path, len(text))

    def play_audio(self, wav: bytes) -> None:
        self._turn_index += 1
        path = self.output_dir / f"turn-{self._turn_index:03d}.wav"
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(wav)
        except OSError as exc:
            raise LocalResourceFailure(f"Cannot write {path}: {exc}") from exc
        self.saved_files.append(path)
        duration = max(0, len(wav) - 44) / float(audio.SAMPLE_RATE * audio.SAMPLE_WIDTH)
        logger.info("Assistant audio saved | path=%s duration_sec=%.2f", path, duration)
        # playback_ended fires once the audio duration has elapsed
        loop = asyncio.get_running_loop()
        self._playback_timer = loop.call_later(duration, self._dispatch_later, TurnEvent.PLAYBACK_ENDED)

    def stop_playback(self) -> None:
        if self._playback_timer is not None:
            self._playback_timer.cancel()
            self._playback_timer = None

    def teardown(self, reason: str) -> None:
        self.teardown_reason = reason
        logger.warning("Tearing down voice session | reason=%s", reason)
        if not self._closed.is_set():
            self._spawn(self.close())

    def status(self, message: str, is_error: bool = False) -> None:
        if is_error:
            logger.error("Status: %s", message)
        else:
            logger.info("Status: %s", message)
        if self.on_status is not None:
            self.on_status(message, is_error)
