from __future__ import annotations


class VoiceRelayError(Exception):
    """Base class for every error raised by the relay, the bridge and the turn coordinator."""


class TranscriptStoreError(VoiceRelayError):
    pass


class SessionNotFound(TranscriptStoreError):
    def __init__(self, session_id: str):
        super().__init__(f"Session with ID {session_id} not found.")
        self.session_id = session_id


class CorruptTranscript(TranscriptStoreError):
    def __init__(self, session_id: str, reason: str):
        super().__init__(f"Transcript for session {session_id} is unreadable: {reason}")
        self.session_id = session_id
        self.reason = reason


class InvalidInput(VoiceRelayError):
    pass


class InvalidSessionId(InvalidInput):
    def __init__(self, session_id: str):
        super().__init__("Invalid session ID format.")
        self.session_id = session_id


class TransportFailure(VoiceRelayError):
    """Third-party realtime API unreachable, rejected the request, or rate limited."""

    def __init__(self, message: str, code: str | None = None, status: int | None = None):
        super().__init__(message)
        self.code = code
        self.status = status


class LocalResourceFailure(VoiceRelayError):
    """Capture device unavailable or playback rejected."""


class BridgeCallFailed(VoiceRelayError):
    def __init__(self, tool: str, message: str):
        super().__init__(f"{tool}: {message}")
        self.tool = tool
        self.message = message


class IllegalTransition(VoiceRelayError):
    def __init__(self, phase: str, event: str):
        super().__init__(f"'{event}' is not allowed while {phase}")
        self.phase = phase
        self.event = event
