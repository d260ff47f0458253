"""
Turn coordinator.

Serializes one conversation turn at a time: capture, transcript
finalization, assistant response, playback. Every input is an event
dispatched through a table keyed by (phase, event). User commands with no
entry raise IllegalTransition; transport, relay and playback events with no
entry are stale and dropped.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from app.errors import IllegalTransition, LocalResourceFailure
from app.turn.audio import build_wav, decode_audio_delta
from app.turn.events import (
    FATAL_ERROR_CODES,
    REALTIME_STATUS_EVENTS,
    translate_realtime_event,
    translate_relay_message,
)
from core.config import TRANSCRIPT_QUIET_PERIOD_SEC
from core.state import USER_COMMANDS, TurnEvent, TurnPhase

logger = logging.getLogger("turn")

# the safety timeout after capture stops is this many quiet periods
SAFETY_TIMEOUT_FACTOR = 4


class TurnPorts(Protocol):
    def start_capture(self) -> None: ...
    def stop_capture(self) -> None: ...
    def submit_user_transcript(self, text: str) -> None: ...
    def store_assistant_transcript(self, text: str) -> None: ...
    def speak_text(self, text: str) -> None: ...
    def play_audio(self, wav: bytes) -> None: ...
    def stop_playback(self) -> None: ...
    def teardown(self, reason: str) -> None: ...
    def status(self, message: str, is_error: bool = False) -> None: ...


@dataclass
class TurnState:
    phase: TurnPhase = TurnPhase.IDLE
    connected: bool = False
    session_id: str | None = None
    transcript_buffer: str = ""
    completed_pending: bool = False
    last_user_transcript_sent: str = ""
    expecting_response: bool = False
    realtime_handled_response: bool = False
    response_item_id: str | None = None
    assistant_text: str = ""
    audio_frames: list[bytes] = field(default_factory=list)


Handler = Callable[[dict[str, Any]], None]


class TurnCoordinator:

    def __init__(self, ports: TurnPorts, quiet_period_sec: float = TRANSCRIPT_QUIET_PERIOD_SEC):
        self.ports = ports
        self.quiet_period_sec = max(0.0, float(quiet_period_sec))
        self.state = TurnState()
        self._timer: asyncio.TimerHandle | None = None
        self._table = self._build_table()

    @property
    def phase(self) -> TurnPhase:
        return self.state.phase

    # -------------------------
    # DISPATCH
    # -------------------------

    def _build_table(self) -> dict[tuple[TurnPhase, TurnEvent], Handler]:
        P, E = TurnPhase, TurnEvent
        table: dict[tuple[TurnPhase, TurnEvent], Handler] = {
            (P.IDLE, E.START_CAPTURE): self._on_start_capture,
            (P.RECORDING, E.STOP_CAPTURE): self._on_stop_capture,
            (P.RECORDING, E.TRANSCRIPT_DELTA): self._on_delta_while_recording,
            (P.RECORDING, E.TRANSCRIPT_COMPLETED): self._on_completed_while_recording,
            (P.PROCESSING_TRANSCRIPT, E.TRANSCRIPT_DELTA): self._on_delta_while_processing,
            (P.PROCESSING_TRANSCRIPT, E.TRANSCRIPT_COMPLETED): self._on_transcript_completed,
            (P.PROCESSING_TRANSCRIPT, E.SILENCE_TIMEOUT): self._on_silence_timeout,
            (P.PROCESSING_TRANSCRIPT, E.RESPONSE_STARTED): self._on_response_before_final,
            (P.AWAITING_ASSISTANT, E.RESPONSE_STARTED): self._on_response_started,
            (P.AWAITING_ASSISTANT, E.AUDIO_DELTA): self._on_audio_delta,
            (P.AWAITING_ASSISTANT, E.AUDIO_DONE): self._on_audio_done,
            (P.AWAITING_ASSISTANT, E.RESPONSE_DONE): self._on_response_done,
            (P.AWAITING_ASSISTANT, E.RESPONSE_CANCELLED): self._on_response_cancelled,
            (P.AWAITING_ASSISTANT, E.RELAY_RESPONSE): self._on_relay_response,
            (P.PLAYING_AUDIO, E.RESPONSE_DONE): self._on_response_done,
            (P.PLAYING_AUDIO, E.RESPONSE_CANCELLED): self._on_response_cancelled,
            (P.PLAYING_AUDIO, E.PLAYBACK_ENDED): self._on_playback_ended,
            (P.PLAYING_AUDIO, E.PLAYBACK_FAILED): self._on_playback_failed,
        }
        for phase in (P.AWAITING_ASSISTANT, P.PLAYING_AUDIO):
            table[(phase, E.TEXT_DELTA)] = self._on_text_delta
            table[(phase, E.TEXT_DONE)] = self._on_text_done
        for phase in TurnPhase:
            table[(phase, E.SESSION_READY)] = self._on_session_ready
            table[(phase, E.TRANSPORT_ERROR)] = self._on_transport_error
            table[(phase, E.RELAY_ERROR)] = self._on_relay_error
            table[(phase, E.DISCONNECT)] = self._on_disconnect
        return table

    def dispatch(self, event: TurnEvent, payload: dict[str, Any] | None = None) -> TurnPhase:
        before = self.state.phase
        handler = self._table.get((before, event))
        if handler is None:
            if event in USER_COMMANDS:
                raise IllegalTransition(before.value, event.value)
            logger.info("Discarding stale event | phase=%s event=%s", before.value, event.value)
            return before

        handler(payload or {})

        after = self.state.phase
        if after != before:
            logger.info("Transition %s → %s | event=%s", before.value, after.value, event.value)
        return after

    def start_capture(self) -> TurnPhase:
        return self.dispatch(TurnEvent.START_CAPTURE)

    def stop_capture(self) -> TurnPhase:
        return self.dispatch(TurnEvent.STOP_CAPTURE)

    def handle_realtime_event(self, data: dict[str, Any]) -> TurnPhase:
        event_type = str(data.get("type") or "")
        if event_type in REALTIME_STATUS_EVENTS:
            message = REALTIME_STATUS_EVENTS[event_type]
            if message:
                self.ports.status(message)
            return self.state.phase
        translated = translate_realtime_event(data)
        if translated is None:
            logger.debug("Unhandled realtime event type: %s", event_type)
            return self.state.phase
        event, payload = translated
        return self.dispatch(event, payload)

    def handle_relay_message(self, data: dict[str, Any]) -> TurnPhase:
        if data.get("type") == "status_update":
            self.ports.status(f"Backend: {data.get('message') or ''}")
            return self.state.phase
        translated = translate_relay_message(data)
        if translated is None:
            return self.state.phase
        event, payload = translated
        return self.dispatch(event, payload)

    # -------------------------
    # TIMERS
    # -------------------------

    def _arm_timer(self, delay_sec: float) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay_sec, self._on_timer_fired)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer_fired(self) -> None:
        self._timer = None
        self.dispatch(TurnEvent.SILENCE_TIMEOUT)

    # -------------------------
    # CAPTURE
    # -------------------------

    def _on_start_capture(self, payload: dict[str, Any]) -> None:
        if not self.state.connected or not self.state.session_id:
            raise IllegalTransition(self.state.phase.value, "start_capture without an active session")

        self.state.transcript_buffer = ""
        self.state.completed_pending = False
        self.state.last_user_transcript_sent = ""
        self.state.realtime_handled_response = False
        self.state.audio_frames = []
        self._cancel_timer()

        try:
            self.ports.start_capture()
        except LocalResourceFailure as exc:
            logger.warning("Recording start error: %s", exc)
            self.ports.status(f"Mic/Recording error: {exc}", is_error=True)
            return
        self.state.phase = TurnPhase.RECORDING
        self.ports.status("Listening...")

    def _on_stop_capture(self, payload: dict[str, Any]) -> None:
        try:
            self.ports.stop_capture()
        except LocalResourceFailure as exc:
            logger.warning("Error stopping capture: %s", exc)
        self.state.phase = TurnPhase.PROCESSING_TRANSCRIPT
        self.ports.status("Processing...")

        if self.state.completed_pending:
            self._finalize(self.state.transcript_buffer)
            return
        self._arm_timer(self.quiet_period_sec * SAFETY_TIMEOUT_FACTOR)

    # -------------------------
    # USER TRANSCRIPT
    # -------------------------

    def _on_delta_while_recording(self, payload: dict[str, Any]) -> None:
        self.state.transcript_buffer += str(payload.get("delta") or "")

    def _on_completed_while_recording(self, payload: dict[str, Any]) -> None:
        self.state.transcript_buffer = str(payload.get("transcript") or self.state.transcript_buffer)
        self.state.completed_pending = True

    def _on_delta_while_processing(self, payload: dict[str, Any]) -> None:
        self.state.transcript_buffer += str(payload.get("delta") or "")
        self._arm_timer(self.quiet_period_sec)

    def _on_transcript_completed(self, payload: dict[str, Any]) -> None:
        self._cancel_timer()
        transcript = payload.get("transcript")
        self._finalize(transcript if isinstance(transcript, str) else self.state.transcript_buffer)

    def _on_silence_timeout(self, payload: dict[str, Any]) -> None:
        if self.state.transcript_buffer.strip():
            logger.warning("Quiet-period timeout: treating partial transcript as final")
            self._finalize(self.state.transcript_buffer)
            return
        self.state.transcript_buffer = ""
        self.state.phase = TurnPhase.IDLE
        self.ports.status("Idle (no speech detected?).")

    def _submit_if_new(self, text: str) -> bool:
        trimmed = str(text or "").strip()
        self.state.transcript_buffer = ""
        self.state.completed_pending = False
        if not trimmed:
            logger.info("Ignoring empty transcript")
            return False
        if trimmed == self.state.last_user_transcript_sent:
            logger.info("Skipping duplicate transcript send")
            return False
        self.ports.submit_user_transcript(trimmed)
        self.state.last_user_transcript_sent = trimmed
        return True

    def _finalize(self, text: str) -> None:
        self._cancel_timer()
        if self._submit_if_new(text):
            self.state.expecting_response = True
            self.state.phase = TurnPhase.AWAITING_ASSISTANT
            self.ports.status("Sent transcript, waiting for assistant...")
            return
        self.state.phase = TurnPhase.IDLE
        self.ports.status("Idle (no speech detected?)." if not str(text or "").strip() else "Idle.")

    # -------------------------
    # ASSISTANT RESPONSE
    # -------------------------

    def _on_response_before_final(self, payload: dict[str, Any]) -> None:
        # the realtime API may answer before transcription completes; commit what is buffered
        self._cancel_timer()
        self._submit_if_new(self.state.transcript_buffer)
        self.state.expecting_response = True
        self.state.phase = TurnPhase.AWAITING_ASSISTANT
        self._on_response_started(payload)

    def _on_response_started(self, payload: dict[str, Any]) -> None:
        self.state.realtime_handled_response = True
        self.state.response_item_id = payload.get("item_id")
        self.state.assistant_text = ""
        self.state.audio_frames = []
        self.ports.stop_playback()
        self.ports.status("Assistant preparing response...")

    def _on_text_delta(self, payload: dict[str, Any]) -> None:
        self.state.assistant_text += str(payload.get("delta") or "")

    def _on_text_done(self, payload: dict[str, Any]) -> None:
        text = str(payload.get("text") or "")
        if text:
            self.state.assistant_text = text

    def _on_audio_delta(self, payload: dict[str, Any]) -> None:
        chunk = decode_audio_delta(str(payload.get("delta") or ""))
        if chunk:
            self.state.audio_frames.append(chunk)

    def _on_audio_done(self, payload: dict[str, Any]) -> None:
        frames, self.state.audio_frames = self.state.audio_frames, []
        if not frames:
            logger.info("Audio done, but no audio buffered")
            return
        self.ports.status("Preparing audio playback...")
        wav = build_wav(frames)
        try:
            self.ports.play_audio(wav)
        except LocalResourceFailure as exc:
            logger.error("Audio playback rejected: %s", exc)
            self.ports.status("Error playing audio (autoplay blocked?).", is_error=True)
            self.state.expecting_response = False
            self.state.phase = TurnPhase.IDLE
            return
        self.state.phase = TurnPhase.PLAYING_AUDIO
        self.ports.status("Assistant speaking...")

    def _store_assistant_text(self) -> None:
        text = self.state.assistant_text.strip()
        self.state.assistant_text = ""
        if text and self.state.realtime_handled_response:
            self.ports.store_assistant_transcript(text)

    def _on_response_done(self, payload: dict[str, Any]) -> None:
        self._store_assistant_text()
        self.state.expecting_response = False
        self.state.response_item_id = None
        if self.state.phase == TurnPhase.AWAITING_ASSISTANT:
            self.state.phase = TurnPhase.IDLE
            self.ports.status("Idle.")

    def _on_response_cancelled(self, payload: dict[str, Any]) -> None:
        self.ports.status(f"Idle (Response cancelled: {payload.get('reason') or 'unknown reason'}).")
        self._reset_turn()

    def _on_relay_response(self, payload: dict[str, Any]) -> None:
        if self.state.realtime_handled_response:
            logger.warning("Relay sent text, but the realtime API handled this turn; ignoring it for speech")
            return
        text = str(payload.get("content") or "")
        self.ports.speak_text(text)
        self.ports.store_assistant_transcript(text)
        self.state.expecting_response = False
        self.state.phase = TurnPhase.IDLE
        self.ports.status("Received response, synthesizing speech...")

    # -------------------------
    # PLAYBACK
    # -------------------------

    def _on_playback_ended(self, payload: dict[str, Any]) -> None:
        self.state.phase = TurnPhase.IDLE
        self.ports.status("Idle.")

    def _on_playback_failed(self, payload: dict[str, Any]) -> None:
        logger.error("Audio player error: %s", payload.get("reason") or "unknown")
        self.state.phase = TurnPhase.IDLE
        self.ports.status("Error playing assistant audio.", is_error=True)

    # -------------------------
    # SESSION / ERRORS
    # -------------------------

    def _on_session_ready(self, payload: dict[str, Any]) -> None:
        self._cancel_timer()
        self.state = TurnState(connected=True, session_id=str(payload.get("session_id") or "") or None)
        self.ports.status("Session active.")

    def _on_transport_error(self, payload: dict[str, Any]) -> None:
        code = str(payload.get("code") or "N/A")
        self.ports.status(f"Realtime Error: {payload.get('message') or 'Unknown error'} (Code: {code})", is_error=True)
        if code in FATAL_ERROR_CODES:
            logger.warning("Realtime API error %s is fatal; tearing down", code)
            self._teardown(f"realtime_error:{code}")
            return
        logger.warning("Realtime API error %s; resetting turn and continuing session", code)
        self._reset_turn()

    def _on_relay_error(self, payload: dict[str, Any]) -> None:
        self.ports.status(f"Backend error: {payload.get('message') or ''}", is_error=True)
        self._reset_turn()

    def _on_disconnect(self, payload: dict[str, Any]) -> None:
        self._teardown(str(payload.get("reason") or "disconnect"))

    def _reset_turn(self) -> None:
        self._cancel_timer()
        if self.state.phase == TurnPhase.RECORDING:
            try:
                self.ports.stop_capture()
            except LocalResourceFailure as exc:
                logger.warning("Error stopping capture during reset: %s", exc)
        if self.state.phase != TurnPhase.IDLE:
            self.ports.stop_playback()
        self.state.phase = TurnPhase.IDLE
        self.state.transcript_buffer = ""
        self.state.completed_pending = False
        self.state.expecting_response = False
        self.state.response_item_id = None
        self.state.assistant_text = ""
        self.state.audio_frames = []

    def _teardown(self, reason: str) -> None:
        self._cancel_timer()
        self.state = TurnState()
        self.ports.teardown(reason)
