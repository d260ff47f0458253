import base64
import binascii
import io
import logging
import wave
from typing import Iterable, Iterator

logger = logging.getLogger("turn.audio")

SAMPLE_RATE = 24000
CHANNELS = 1
SAMPLE_WIDTH = 2  # pcm16


def decode_audio_delta(delta: str) -> bytes | None:
    """Base64 PCM chunk from a realtime audio delta; None when undecodable."""
    try:
        return base64.b64decode(delta, validate=True)
    except (binascii.Error, ValueError) as exc:
        logger.error("Audio base64 decode error: %s | delta=%s...", exc, str(delta)[:50])
        return None


def build_wav(chunks: Iterable[bytes], sample_rate: int = SAMPLE_RATE, channels: int = CHANNELS, sample_width: int = SAMPLE_WIDTH) -> bytes:
    """Wraps already-decoded PCM frames in a RIFF/WAVE container."""
    pcm = b"".join(chunks)
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(channels)
        wav.setsampwidth(sample_width)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm)
    logger.info("Created WAV | pcm_bytes=%s wav_bytes=%s", len(pcm), buffer.tell())
    return buffer.getvalue()


def read_pcm16(path: str) -> tuple[bytes, int]:
    """PCM frames and sample rate of a mono 16-bit WAV file."""
    with wave.open(path, "rb") as wav:
        if wav.getsampwidth() != SAMPLE_WIDTH or wav.getnchannels() != CHANNELS:
            raise ValueError(f"{path}: expected mono 16-bit PCM")
        return wav.readframes(wav.getnframes()), wav.getframerate()


def iter_chunks(pcm: bytes, sample_rate: int = SAMPLE_RATE, chunk_ms: int = 100) -> Iterator[bytes]:
    step = max(SAMPLE_WIDTH, int(sample_rate * SAMPLE_WIDTH * chunk_ms / 1000))
    step -= step % SAMPLE_WIDTH
    for offset in range(0, len(pcm), step):
        yield pcm[offset:offset + step]
