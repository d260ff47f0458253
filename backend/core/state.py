# backend/core/state.py

from enum import Enum


class TurnPhase(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PROCESSING_TRANSCRIPT = "processing_transcript"
    AWAITING_ASSISTANT = "awaiting_assistant"
    PLAYING_AUDIO = "playing_audio"


class TurnEvent(str, Enum):
    # user actions
    START_CAPTURE = "start_capture"
    STOP_CAPTURE = "stop_capture"
    # realtime transport
    TRANSCRIPT_DELTA = "transcript_delta"
    TRANSCRIPT_COMPLETED = "transcript_completed"
    SILENCE_TIMEOUT = "silence_timeout"
    RESPONSE_STARTED = "response_started"
    TEXT_DELTA = "text_delta"
    TEXT_DONE = "text_done"
    AUDIO_DELTA = "audio_delta"
    AUDIO_DONE = "audio_done"
    RESPONSE_DONE = "response_done"
    RESPONSE_CANCELLED = "response_cancelled"
    TRANSPORT_ERROR = "transport_error"
    # relay
    SESSION_READY = "session_ready"
    RELAY_RESPONSE = "relay_response"
    RELAY_ERROR = "relay_error"
    # playback
    PLAYBACK_ENDED = "playback_ended"
    PLAYBACK_FAILED = "playback_failed"
    DISCONNECT = "disconnect"


USER_COMMANDS = frozenset({TurnEvent.START_CAPTURE, TurnEvent.STOP_CAPTURE})
