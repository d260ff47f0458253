import os
import sys
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# config is read at import time
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("CHAT_RESPONDER_ENABLED", "false")


@pytest.fixture(autouse=True)
def _test_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")


@pytest.fixture
def store(tmp_path: Path):
    from app.transcript.store import TranscriptStore

    return TranscriptStore(tmp_path / "sessions")
