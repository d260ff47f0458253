import asyncio
import base64

import pytest

from app.errors import IllegalTransition, LocalResourceFailure
from app.turn.coordinator import TurnCoordinator
from core.state import TurnEvent, TurnPhase

SESSION_ID = "3f2b8c1e-9a4d-4e1f-8b7a-2c5d6e7f8a9b"


class FakePorts:
    def __init__(self):
        self.calls = []
        self.submitted = []
        self.stored = []
        self.spoken = []
        self.played = []
        self.statuses = []
        self.fail_capture = False
        self.fail_playback = False

    def start_capture(self):
        self.calls.append("start_capture")
        if self.fail_capture:
            raise LocalResourceFailure("no microphone")

    def stop_capture(self):
        self.calls.append("stop_capture")

    def submit_user_transcript(self, text):
        self.submitted.append(text)

    def store_assistant_transcript(self, text):
        self.stored.append(text)

    def speak_text(self, text):
        self.spoken.append(text)

    def play_audio(self, wav):
        if self.fail_playback:
            raise LocalResourceFailure("autoplay blocked")
        self.played.append(wav)

    def stop_playback(self):
        self.calls.append("stop_playback")

    def teardown(self, reason):
        self.calls.append(f"teardown:{reason}")

    def status(self, message, is_error=False):
        self.statuses.append((message, is_error))


def _ready(quiet=0.01):
    ports = FakePorts()
    coordinator = TurnCoordinator(ports, quiet_period_sec=quiet)
    coordinator.handle_relay_message({"type": "sessionId", "sessionId": SESSION_ID})
    return coordinator, ports


def _assistant_item():
    return {
        "type": "response.output_item.added",
        "item": {"id": "item_1", "type": "message", "role": "assistant"},
    }


def _speak(coordinator, text):
    coordinator.start_capture()
    coordinator.handle_realtime_event({"type": "conversation.item.input_audio_transcription.completed", "transcript": text})
    return coordinator.stop_capture()


@pytest.mark.asyncio
async def test_start_capture_requires_session():
    coordinator = TurnCoordinator(FakePorts())
    with pytest.raises(IllegalTransition):
        coordinator.start_capture()
    assert coordinator.phase == TurnPhase.IDLE


@pytest.mark.asyncio
async def test_user_commands_illegal_outside_their_phase():
    coordinator, _ = _ready()
    with pytest.raises(IllegalTransition):
        coordinator.stop_capture()

    assert coordinator.start_capture() == TurnPhase.RECORDING
    with pytest.raises(IllegalTransition):
        coordinator.start_capture()


@pytest.mark.asyncio
async def test_completed_transcript_is_trimmed_and_submitted():
    coordinator, ports = _ready()
    coordinator.start_capture()
    coordinator.handle_realtime_event({"type": "conversation.item.input_audio_transcription.delta", "delta": "hel"})
    coordinator.handle_realtime_event({"type": "conversation.item.input_audio_transcription.completed", "transcript": "  hello there "})

    assert coordinator.stop_capture() == TurnPhase.AWAITING_ASSISTANT
    assert ports.submitted == ["hello there"]
    assert coordinator.state.expecting_response is True


@pytest.mark.asyncio
async def test_partial_transcript_finalized_after_quiet_period():
    coordinator, ports = _ready(quiet=0.01)
    coordinator.start_capture()
    coordinator.stop_capture()
    assert coordinator.phase == TurnPhase.PROCESSING_TRANSCRIPT

    coordinator.handle_realtime_event({"type": "conversation.item.input_audio_transcription.delta", "delta": "what time "})
    coordinator.handle_realtime_event({"type": "conversation.item.input_audio_transcription.delta", "delta": "is it"})
    await asyncio.sleep(0.1)

    assert ports.submitted == ["what time is it"]
    assert coordinator.phase == TurnPhase.AWAITING_ASSISTANT


@pytest.mark.asyncio
async def test_silence_without_speech_returns_to_idle():
    coordinator, ports = _ready(quiet=0.01)
    coordinator.start_capture()
    coordinator.stop_capture()
    await asyncio.sleep(0.1)

    assert coordinator.phase == TurnPhase.IDLE
    assert ports.submitted == []


@pytest.mark.asyncio
async def test_overlapping_transcript_signals_submit_once():
    coordinator, ports = _ready()
    coordinator.start_capture()
    coordinator.handle_realtime_event({"type": "conversation.item.input_audio_transcription.delta", "delta": "hello"})
    coordinator.stop_capture()
    coordinator.handle_realtime_event(_assistant_item())

    coordinator.handle_realtime_event({"type": "conversation.item.input_audio_transcription.completed", "transcript": "hello"})

    assert ports.submitted == ["hello"]
    assert coordinator.phase == TurnPhase.AWAITING_ASSISTANT


@pytest.mark.asyncio
async def test_same_answer_in_next_turn_is_submitted_and_answered():
    coordinator, ports = _ready()
    _speak(coordinator, "yes")
    coordinator.handle_realtime_event(_assistant_item())
    coordinator.handle_realtime_event({"type": "response.done"})
    assert coordinator.phase == TurnPhase.IDLE

    assert _speak(coordinator, "yes ") == TurnPhase.AWAITING_ASSISTANT
    assert ports.submitted == ["yes", "yes"]

    coordinator.handle_realtime_event(_assistant_item())
    coordinator.handle_realtime_event({"type": "response.audio.delta", "delta": base64.b64encode(b"\x00\x01" * 10).decode()})
    assert coordinator.handle_realtime_event({"type": "response.audio.done"}) == TurnPhase.PLAYING_AUDIO
    assert len(ports.played) == 1


@pytest.mark.asyncio
async def test_audio_response_plays_then_stores_transcript():
    coordinator, ports = _ready()
    _speak(coordinator, "hi")

    pcm = b"\x01\x00" * 100
    coordinator.handle_realtime_event(_assistant_item())
    coordinator.handle_realtime_event({"type": "response.audio_transcript.delta", "delta": "Hello "})
    coordinator.handle_realtime_event({"type": "response.audio.delta", "delta": base64.b64encode(pcm[:100]).decode()})
    coordinator.handle_realtime_event({"type": "response.audio.delta", "delta": base64.b64encode(pcm[100:]).decode()})
    assert coordinator.handle_realtime_event({"type": "response.audio.done"}) == TurnPhase.PLAYING_AUDIO

    assert len(ports.played) == 1
    assert ports.played[0][:4] == b"RIFF"
    assert ports.played[0][44:] == pcm

    coordinator.handle_realtime_event({"type": "response.audio_transcript.done", "transcript": "Hello there"})
    coordinator.handle_realtime_event({"type": "response.done"})
    assert coordinator.phase == TurnPhase.PLAYING_AUDIO
    assert ports.stored == ["Hello there"]

    assert coordinator.dispatch(TurnEvent.PLAYBACK_ENDED) == TurnPhase.IDLE


@pytest.mark.asyncio
async def test_text_only_response_goes_idle_on_done():
    coordinator, ports = _ready()
    _speak(coordinator, "hi")

    coordinator.handle_realtime_event(_assistant_item())
    coordinator.handle_realtime_event({"type": "response.text.delta", "delta": "Sure."})
    coordinator.handle_realtime_event({"type": "response.audio.done"})
    assert coordinator.phase == TurnPhase.AWAITING_ASSISTANT

    assert coordinator.handle_realtime_event({"type": "response.done"}) == TurnPhase.IDLE
    assert ports.stored == ["Sure."]
    assert ports.played == []


@pytest.mark.asyncio
async def test_relay_response_spoken_when_realtime_did_not_answer():
    coordinator, ports = _ready()
    _speak(coordinator, "hi")

    assert coordinator.handle_relay_message({"type": "assistant_response", "content": "Hi!", "sessionId": SESSION_ID}) == TurnPhase.IDLE
    assert ports.spoken == ["Hi!"]
    assert ports.stored == ["Hi!"]


@pytest.mark.asyncio
async def test_relay_response_ignored_when_realtime_answered():
    coordinator, ports = _ready()
    _speak(coordinator, "hi")
    coordinator.handle_realtime_event(_assistant_item())

    coordinator.handle_relay_message({"type": "assistant_response", "content": "Hi!", "sessionId": SESSION_ID})
    assert ports.spoken == []
    assert coordinator.phase == TurnPhase.AWAITING_ASSISTANT

    coordinator.handle_realtime_event({"type": "response.text.done", "text": "Hello from realtime"})
    coordinator.handle_realtime_event({"type": "response.done"})
    assert ports.stored == ["Hello from realtime"]


@pytest.mark.asyncio
async def test_response_started_before_transcription_completes():
    coordinator, ports = _ready()
    coordinator.start_capture()
    coordinator.handle_realtime_event({"type": "conversation.item.input_audio_transcription.delta", "delta": "quick question"})
    coordinator.stop_capture()

    assert coordinator.handle_realtime_event(_assistant_item()) == TurnPhase.AWAITING_ASSISTANT
    assert ports.submitted == ["quick question"]
    assert coordinator.state.realtime_handled_response is True


@pytest.mark.asyncio
async def test_fatal_transport_error_tears_down():
    coordinator, ports = _ready()
    coordinator.start_capture()

    coordinator.handle_realtime_event({"type": "error", "error": {"code": "auth_error", "message": "bad key"}})

    assert coordinator.phase == TurnPhase.IDLE
    assert coordinator.state.connected is False
    assert coordinator.state.session_id is None
    assert "teardown:realtime_error:auth_error" in ports.calls
    with pytest.raises(IllegalTransition):
        coordinator.start_capture()


@pytest.mark.asyncio
async def test_recoverable_error_resets_turn_and_keeps_session():
    coordinator, ports = _ready()
    coordinator.start_capture()

    coordinator.handle_realtime_event({"type": "error", "error": {"code": "invalid_value", "message": "oops"}})

    assert coordinator.phase == TurnPhase.IDLE
    assert coordinator.state.session_id == SESSION_ID
    assert ports.calls.count("stop_capture") == 1
    assert coordinator.start_capture() == TurnPhase.RECORDING


@pytest.mark.asyncio
async def test_relay_error_resets_turn():
    coordinator, ports = _ready()
    _speak(coordinator, "hi")

    coordinator.handle_relay_message({"type": "error", "message": "Failed to process message and get AI response."})
    assert coordinator.phase == TurnPhase.IDLE
    assert coordinator.state.connected is True
    assert ports.statuses[-1][1] is True


@pytest.mark.asyncio
async def test_stale_events_are_discarded():
    coordinator, ports = _ready()
    assert coordinator.handle_realtime_event({"type": "response.audio.delta", "delta": "AAAA"}) == TurnPhase.IDLE
    assert coordinator.handle_realtime_event({"type": "response.done"}) == TurnPhase.IDLE
    assert coordinator.dispatch(TurnEvent.PLAYBACK_ENDED) == TurnPhase.IDLE

    _speak(coordinator, "hi")
    coordinator.handle_realtime_event({"type": "conversation.item.input_audio_transcription.completed", "transcript": "late"})
    assert ports.submitted == ["hi"]
    assert ports.stored == []


@pytest.mark.asyncio
async def test_capture_failure_stays_idle():
    coordinator, ports = _ready()
    ports.fail_capture = True

    assert coordinator.start_capture() == TurnPhase.IDLE
    assert ports.statuses[-1][1] is True


@pytest.mark.asyncio
async def test_playback_rejected_returns_idle():
    coordinator, ports = _ready()
    ports.fail_playback = True
    _speak(coordinator, "hi")

    coordinator.handle_realtime_event(_assistant_item())
    coordinator.handle_realtime_event({"type": "response.audio.delta", "delta": base64.b64encode(b"\x00\x00").decode()})
    assert coordinator.handle_realtime_event({"type": "response.audio.done"}) == TurnPhase.IDLE


@pytest.mark.asyncio
async def test_cancelled_response_resets():
    coordinator, ports = _ready()
    _speak(coordinator, "hi")
    coordinator.handle_realtime_event(_assistant_item())

    cancelled = {"type": "response.cancelled", "response": {"status_details": {"reason": "turn_detected"}}}
    assert coordinator.handle_realtime_event(cancelled) == TurnPhase.IDLE
    assert coordinator.state.expecting_response is False


@pytest.mark.asyncio
async def test_status_only_events_do_not_change_phase():
    coordinator, ports = _ready()
    coordinator.start_capture()
    coordinator.handle_realtime_event({"type": "input_audio_buffer.speech_started"})
    coordinator.handle_realtime_event({"type": "pong"})
    assert coordinator.phase == TurnPhase.RECORDING
    assert ("Speech detected...", False) in ports.statuses


@pytest.mark.asyncio
async def test_disconnect_tears_down_from_any_phase():
    coordinator, ports = _ready()
    _speak(coordinator, "hi")
    assert coordinator.dispatch(TurnEvent.DISCONNECT, {"reason": "relay_closed"}) == TurnPhase.IDLE
    assert "teardown:relay_closed" in ports.calls
    assert coordinator.state.connected is False
