import logging
from typing import Any

import httpx

from app.errors import TransportFailure
from core.config import (
    OPENAI_API_KEY,
    REALTIME_MODEL,
    REALTIME_SESSIONS_URL,
    REALTIME_VOICE,
    TRANSCRIPTION_MODEL,
    VAD_PREFIX_PADDING_MS,
    VAD_SILENCE_DURATION_MS,
    VAD_THRESHOLD,
)

logger = logging.getLogger("app.services.realtime_token")


def build_session_config() -> dict[str, Any]:
    return {
        "model": REALTIME_MODEL,
        "voice": REALTIME_VOICE,
        "modalities": ["audio", "text"],
        "input_audio_format": "pcm16",
        "output_audio_format": "pcm16",
        "input_audio_transcription": {"model": TRANSCRIPTION_MODEL},
        "turn_detection": {
            "type": "server_vad",
            "threshold": VAD_THRESHOLD,
            "prefix_padding_ms": VAD_PREFIX_PADDING_MS,
            "silence_duration_ms": VAD_SILENCE_DURATION_MS,
        },
    }


async def create_ephemeral_session(
    api_key: str | None = None,
    http_client: httpx.AsyncClient | None = None,
    timeout_sec: float = 15.0,
) -> dict[str, Any]:
    """
    Exchanges the long-lived API key for a short-lived realtime credential.
    The third-party JSON response is returned unchanged.
    """
    key = str(api_key or OPENAI_API_KEY or "").strip()
    if not key:
        raise TransportFailure("OPENAI_API_KEY is not configured", code="auth_error")

    headers = {
        "Authorization": f"Bearer {key}",
        "Content-Type": "application/json",
    }
    body = build_session_config()

    try:
        if http_client is not None:
            response = await http_client.post(REALTIME_SESSIONS_URL, json=body, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=timeout_sec) as client:
                response = await client.post(REALTIME_SESSIONS_URL, json=body, headers=headers)
    except httpx.HTTPError as exc:
        logger.warning("Realtime session request failed | err=%s", exc)
        raise TransportFailure(f"Realtime API unreachable: {exc}", code="connection_error") from exc

    if response.status_code >= 400:
        logger.error("Realtime API error (%s): %s", response.status_code, response.text[:500])
        code = "rate_limit_exceeded" if response.status_code == 429 else "auth_error" if response.status_code in {401, 403} else None
        raise TransportFailure(f"API fail: {response.status_code}", code=code, status=response.status_code)

    try:
        payload = response.json()
    except ValueError as exc:
        raise TransportFailure("Realtime API returned non-JSON body") from exc
    logger.info("Got realtime session token | model=%s", REALTIME_MODEL)
    return payload
