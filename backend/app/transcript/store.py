from __future__ import annotations

import json
import logging
import re
import uuid
from pathlib import Path

from app.errors import CorruptTranscript, InvalidSessionId, SessionNotFound
from app.transcript.models import StoredMessage

logger = logging.getLogger("transcript.store")

_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class TranscriptStore:
    """File-backed transcripts: one JSON array per session id.

    Every mutation is a full read-modify-write of the session file. There is
    no locking; concurrent writers on the same id race and the last write wins.
    """

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def ensure_root(self) -> None:
        if not self.root.exists():
            logger.info("Sessions directory not found. Creating: %s", self.root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, session_id: str) -> Path:
        sid = str(session_id or "")
        if not _SESSION_ID_PATTERN.match(sid):
            raise InvalidSessionId(sid)
        return self.root / f"{sid}.json"

    def _write(self, session_id: str, messages: list[StoredMessage]) -> None:
        path = self._path(session_id)
        self.ensure_root()
        temp_path = path.with_suffix(".tmp")
        payload = json.dumps([m.to_dict() for m in messages], ensure_ascii=False, indent=2)
        temp_path.write_text(payload, encoding="utf-8")
        temp_path.replace(path)

    def exists(self, session_id: str) -> bool:
        return self._path(session_id).exists()

    def create_empty(self, session_id: str | None = None) -> str:
        sid = str(session_id or uuid.uuid4())
        if self.exists(sid):
            logger.info("Session %s already exists; keeping its transcript", sid)
            return sid
        self._write(sid, [])
        logger.info("Session started and file created: %s", sid)
        return sid

    def read_raw(self, session_id: str) -> str:
        path = self._path(session_id)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise SessionNotFound(session_id) from exc

    def read(self, session_id: str) -> list[StoredMessage]:
        raw = self.read_raw(session_id)
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CorruptTranscript(session_id, "invalid JSON") from exc
        if not isinstance(parsed, list):
            raise CorruptTranscript(session_id, "not an array")
        try:
            return [StoredMessage.from_dict(item) for item in parsed]
        except ValueError as exc:
            raise CorruptTranscript(session_id, str(exc)) from exc

    def append(self, session_id: str, message: StoredMessage) -> int:
        transcript = self.read(session_id)
        transcript.append(message)
        self._write(session_id, transcript)
        logger.info(
            "Message added to session %s | role=%s chars=%s total=%s",
            session_id,
            message.role.value,
            len(message.content),
            len(transcript),
        )
        return len(transcript)

    def list_ids(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(path.stem for path in self.root.glob("*.json") if path.is_file())
