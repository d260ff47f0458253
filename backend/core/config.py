import os
from pathlib import Path
from dotenv import load_dotenv

_BACKEND_ROOT = Path(__file__).resolve().parents[1]
_BACKEND_ENV_PATH = _BACKEND_ROOT / ".env"
load_dotenv(dotenv_path=_BACKEND_ENV_PATH, override=False)


def _env_flag(name: str, default: str) -> bool:
    return str(os.getenv(name, default)).strip().lower() in {"1", "true", "yes", "on"}


OPENAI_API_KEY = str(os.getenv("OPENAI_API_KEY") or "").strip()
PORT = max(1, int(os.getenv("PORT", "3000")))
SESSIONS_DIR = Path(os.getenv("SESSIONS_DIR") or (_BACKEND_ROOT / "sessions")).resolve()

REALTIME_API_URL = str(os.getenv("REALTIME_API_URL") or "https://api.openai.com/v1/realtime").strip()
REALTIME_SESSIONS_URL = str(os.getenv("REALTIME_SESSIONS_URL") or "https://api.openai.com/v1/realtime/sessions").strip()
REALTIME_MODEL = str(os.getenv("REALTIME_MODEL") or "gpt-4o-mini-realtime-preview-2024-12-17").strip()
REALTIME_VOICE = str(os.getenv("REALTIME_VOICE") or "alloy").strip()
TRANSCRIPTION_MODEL = str(os.getenv("TRANSCRIPTION_MODEL") or "gpt-4o-mini-transcribe").strip()
CHAT_COMPLETIONS_MODEL = str(os.getenv("CHAT_COMPLETIONS_MODEL") or "gpt-4o-mini-2024-07-18").strip()
CHAT_RESPONDER_ENABLED = _env_flag("CHAT_RESPONDER_ENABLED", "true")
CHAT_MAX_TOOL_ROUNDS = max(1, int(os.getenv("CHAT_MAX_TOOL_ROUNDS", "5")))

# server-side voice activity detection passed through when minting a realtime session
VAD_THRESHOLD = min(1.0, max(0.0, float(os.getenv("VAD_THRESHOLD", "0.5"))))
VAD_PREFIX_PADDING_MS = max(0, int(os.getenv("VAD_PREFIX_PADDING_MS", "300")))
VAD_SILENCE_DURATION_MS = max(100, int(os.getenv("VAD_SILENCE_DURATION_MS", "500")))

RELAY_HEARTBEAT_INTERVAL_SEC = max(5.0, float(os.getenv("RELAY_HEARTBEAT_INTERVAL_SEC", "30")))
RELAY_HEARTBEAT_TIMEOUT_SEC = max(10.0, float(os.getenv("RELAY_HEARTBEAT_TIMEOUT_SEC", "75")))
RELAY_MAX_TEXT_BYTES = max(1024, int(os.getenv("RELAY_MAX_TEXT_BYTES", "65536")))
BRIDGE_END_SESSION_TIMEOUT_SEC = max(0.5, float(os.getenv("BRIDGE_END_SESSION_TIMEOUT_SEC", "2.0")))

# quiet period before a partial transcript is treated as final; tunable, not a guarantee
TRANSCRIPT_QUIET_PERIOD_SEC = max(0.05, float(os.getenv("TRANSCRIPT_QUIET_PERIOD_SEC", "0.5")))
REALTIME_KEEPALIVE_SEC = max(5.0, float(os.getenv("REALTIME_KEEPALIVE_SEC", "25")))
