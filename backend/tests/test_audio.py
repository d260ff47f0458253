import base64
import struct
import wave

from app.turn import audio


def test_build_wav_header_matches_pcm16_mono_24k():
    pcm = b"\x01\x00" * 480
    wav = audio.build_wav([pcm[:400], pcm[400:]])

    assert wav[:4] == b"RIFF"
    assert wav[8:12] == b"WAVE"
    channels, rate, byte_rate, block_align, bits = struct.unpack("<HIIHH", wav[22:36])
    assert (channels, rate, bits) == (1, 24000, 16)
    assert byte_rate == 24000 * 2
    assert block_align == 2
    assert wav[36:40] == b"data"
    assert struct.unpack("<I", wav[40:44])[0] == len(pcm)
    assert wav[44:] == pcm


def test_decode_audio_delta():
    assert audio.decode_audio_delta(base64.b64encode(b"\x00\x01").decode()) == b"\x00\x01"
    assert audio.decode_audio_delta("***") is None


def test_read_pcm16_and_iter_chunks(tmp_path):
    path = tmp_path / "in.wav"
    pcm = b"\x02\x00" * 24000
    with wave.open(str(path), "wb") as out:
        out.setnchannels(1)
        out.setsampwidth(2)
        out.setframerate(24000)
        out.writeframes(pcm)

    frames, rate = audio.read_pcm16(str(path))
    assert rate == 24000
    assert frames == pcm

    chunks = list(audio.iter_chunks(frames, rate, chunk_ms=100))
    assert len(chunks) == 10
    assert all(len(chunk) == 4800 for chunk in chunks)
    assert b"".join(chunks) == pcm
