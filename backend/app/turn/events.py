from __future__ import annotations

from typing import Any

from core.state import TurnEvent

# realtime API error codes that end the whole session
FATAL_ERROR_CODES = frozenset({
    "session_not_found",
    "auth_error",
    "connection_error",
    "rate_limit_exceeded",
})

REALTIME_EVENT_MAP: dict[str, TurnEvent] = {
    "conversation.item.input_audio_transcription.delta": TurnEvent.TRANSCRIPT_DELTA,
    "conversation.item.input_audio_transcription.completed": TurnEvent.TRANSCRIPT_COMPLETED,
    "response.output_item.added": TurnEvent.RESPONSE_STARTED,
    "response.text.delta": TurnEvent.TEXT_DELTA,
    "response.text.done": TurnEvent.TEXT_DONE,
    "response.audio_transcript.delta": TurnEvent.TEXT_DELTA,
    "response.audio_transcript.done": TurnEvent.TEXT_DONE,
    "response.audio.delta": TurnEvent.AUDIO_DELTA,
    "response.audio.done": TurnEvent.AUDIO_DONE,
    "response.done": TurnEvent.RESPONSE_DONE,
    "response.cancelled": TurnEvent.RESPONSE_CANCELLED,
    "error": TurnEvent.TRANSPORT_ERROR,
}

REALTIME_STATUS_EVENTS: dict[str, str] = {
    "input_audio_buffer.speech_started": "Speech detected...",
    "input_audio_buffer.speech_stopped": "Speech stopped...",
    "input_audio_buffer.committed": "Audio committed, transcribing...",
    "pong": "",
}

RELAY_EVENT_MAP: dict[str, TurnEvent] = {
    "sessionId": TurnEvent.SESSION_READY,
    "assistant_response": TurnEvent.RELAY_RESPONSE,
    "error": TurnEvent.RELAY_ERROR,
}


def translate_realtime_event(data: dict[str, Any]) -> tuple[TurnEvent, dict[str, Any]] | None:
    event_type = str(data.get("type") or "")
    event = REALTIME_EVENT_MAP.get(event_type)
    if event is None:
        return None

    if event == TurnEvent.RESPONSE_STARTED:
        item = data.get("item") or {}
        if item.get("type") != "message" or item.get("role") != "assistant":
            return None
        return event, {"item_id": item.get("id")}

    if event in {TurnEvent.TRANSCRIPT_DELTA, TurnEvent.TEXT_DELTA, TurnEvent.AUDIO_DELTA}:
        delta = data.get("delta")
        if not delta:
            return None
        return event, {"delta": str(delta)}

    if event == TurnEvent.TRANSCRIPT_COMPLETED:
        return event, {"transcript": str(data.get("transcript") or "")}

    if event == TurnEvent.TEXT_DONE:
        return event, {"text": str(data.get("text") or data.get("transcript") or "")}

    if event == TurnEvent.RESPONSE_CANCELLED:
        details = ((data.get("response") or {}).get("status_details") or {})
        return event, {"reason": str(details.get("reason") or "unknown reason")}

    if event == TurnEvent.TRANSPORT_ERROR:
        error = data.get("error") or {}
        return event, {
            "code": str(error.get("code") or "N/A"),
            "message": str(error.get("message") or "Unknown error"),
        }

    return event, {}


def translate_relay_message(data: dict[str, Any]) -> tuple[TurnEvent, dict[str, Any]] | None:
    message_type = str(data.get("type") or "")
    event = RELAY_EVENT_MAP.get(message_type)
    if event is None:
        return None
    if event == TurnEvent.SESSION_READY:
        session_id = str(data.get("sessionId") or "").strip()
        return (event, {"session_id": session_id}) if session_id else None
    if event == TurnEvent.RELAY_RESPONSE:
        content = str(data.get("content") or "")
        return (event, {"content": content}) if content else None
    return event, {"message": str(data.get("message") or "")}
