import asyncio
import base64
import wave

import httpx
import pytest

from app.errors import TransportFailure
from app.realtime import client as realtime_client
from app.realtime.client import VoiceClient, fetch_ephemeral_token, realtime_ws_url, relay_ws_url
from core.state import TurnPhase

SESSION_ID = "5a6b7c8d-9e0f-4a1b-8c2d-3e4f5a6b7c8d"


class FakeChannel:
    def __init__(self, name):
        self.name = name
        self.posted = []
        self.closed = False

    def post(self, payload):
        self.posted.append(payload)

    def send_event(self, event):
        self.post(event)

    async def close(self):
        self.closed = True


def _write_wav(path, seconds=0.2, rate=24000):
    with wave.open(str(path), "wb") as out:
        out.setnchannels(1)
        out.setsampwidth(2)
        out.setframerate(rate)
        out.writeframes(b"\x10\x00" * int(rate * seconds))
    return path


def _voice_client(tmp_path, **kwargs):
    statuses = []
    voice = VoiceClient(
        relay_url="http://relay.test",
        input_wav=kwargs.pop("input_wav", _write_wav(tmp_path / "in.wav")),
        output_dir=tmp_path / "out",
        on_status=lambda message, is_error: statuses.append((message, is_error)),
        **kwargs,
    )
    voice.relay = FakeChannel("relay")
    voice.realtime = FakeChannel("realtime")
    voice.coordinator.handle_relay_message({"type": "sessionId", "sessionId": SESSION_ID})
    return voice, statuses


def test_url_helpers():
    assert relay_ws_url("http://localhost:3000/") == "ws://localhost:3000/mcp-proxy"
    assert relay_ws_url("https://relay.example") == "wss://relay.example/mcp-proxy"
    assert realtime_ws_url("m1", "https://api.openai.com/v1/realtime") == "wss://api.openai.com/v1/realtime?model=m1"


@pytest.mark.asyncio
async def test_fetch_ephemeral_token():
    def handler(request: httpx.Request):
        assert request.url.path == "/session-token"
        return httpx.Response(200, json={"client_secret": {"value": "ek_abc"}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        assert await fetch_ephemeral_token("http://relay.test/", http_client=http) == "ek_abc"


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(500, json={"error": "Failed token create."}),
    httpx.Response(200, json={"id": "sess"}),
    httpx.Response(200, text="not json"),
])
async def test_fetch_ephemeral_token_failures(response):
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: response)) as http:
        with pytest.raises(TransportFailure):
            await fetch_ephemeral_token("http://relay.test", http_client=http)


@pytest.mark.asyncio
async def test_capture_streams_audio_and_submits_transcript(tmp_path):
    voice, _ = _voice_client(tmp_path)

    voice.coordinator.start_capture()
    assert voice.coordinator.phase == TurnPhase.RECORDING
    await voice._capture_task

    appends = [event for event in voice.realtime.posted if event["type"] == "input_audio_buffer.append"]
    streamed = b"".join(base64.b64decode(event["audio"]) for event in appends)
    silence = 24000 * 2 * realtime_client.TRAILING_SILENCE_MS // 1000
    assert len(streamed) == int(24000 * 0.2) * 2 + silence

    voice.coordinator.handle_realtime_event({"type": "conversation.item.input_audio_transcription.completed", "transcript": "hello"})
    voice.coordinator.stop_capture()
    assert voice.relay.posted == [{"type": "user_transcript", "content": "hello", "sessionId": SESSION_ID}]


@pytest.mark.asyncio
async def test_missing_input_file_keeps_idle(tmp_path):
    voice, statuses = _voice_client(tmp_path, input_wav=tmp_path / "missing.wav")

    assert voice.coordinator.start_capture() == TurnPhase.IDLE
    assert statuses[-1][1] is True
    assert voice.realtime.posted == []


@pytest.mark.asyncio
async def test_wrong_sample_rate_rejected(tmp_path):
    voice, statuses = _voice_client(tmp_path, input_wav=_write_wav(tmp_path / "16k.wav", rate=16000))
    assert voice.coordinator.start_capture() == TurnPhase.IDLE
    assert "16000" in statuses[-1][0]


@pytest.mark.asyncio
async def test_assistant_audio_saved_then_playback_ends(tmp_path):
    voice, _ = _voice_client(tmp_path)
    coordinator = voice.coordinator
    coordinator.start_capture()
    coordinator.handle_realtime_event({"type": "conversation.item.input_audio_transcription.completed", "transcript": "hi"})
    coordinator.stop_capture()

    coordinator.handle_realtime_event({"type": "response.output_item.added", "item": {"id": "i1", "type": "message", "role": "assistant"}})
    coordinator.handle_realtime_event({"type": "response.audio.delta", "delta": base64.b64encode(b"\x00\x01" * 120).decode()})
    coordinator.handle_realtime_event({"type": "response.audio_transcript.done", "transcript": "Hello!"})
    coordinator.handle_realtime_event({"type": "response.audio.done"})
    coordinator.handle_realtime_event({"type": "response.done"})
    assert coordinator.phase == TurnPhase.PLAYING_AUDIO

    await asyncio.sleep(0.05)

    assert coordinator.phase == TurnPhase.IDLE
    saved = tmp_path / "out" / "turn-001.wav"
    assert voice.saved_files == [saved]
    assert saved.read_bytes()[:4] == b"RIFF"
    assert {"type": "store_assistant_transcript", "content": "Hello!", "sessionId": SESSION_ID} in voice.relay.posted


@pytest.mark.asyncio
async def test_relay_text_saved_when_realtime_silent(tmp_path):
    voice, _ = _voice_client(tmp_path)
    coordinator = voice.coordinator
    coordinator.start_capture()
    coordinator.handle_realtime_event({"type": "conversation.item.input_audio_transcription.completed", "transcript": "hi"})
    coordinator.stop_capture()

    coordinator.handle_relay_message({"type": "assistant_response", "content": "Hello from chat", "sessionId": SESSION_ID})

    saved = tmp_path / "out" / "turn-001.txt"
    assert saved.read_text(encoding="utf-8") == "Hello from chat"


@pytest.mark.asyncio
async def test_fatal_error_closes_both_channels(tmp_path):
    voice, _ = _voice_client(tmp_path)

    voice.coordinator.handle_realtime_event({"type": "error", "error": {"code": "session_not_found", "message": "gone"}})
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert voice.teardown_reason == "realtime_error:session_not_found"
    assert voice.relay.closed is True
    assert voice.realtime.closed is True
