"""
Tool-call bridge server.

Exposes the transcript store as MCP tools over stdio. One process is spawned
per relay connection. stdout carries the protocol; every log line goes to
stderr.
"""
import json
import logging
import re
from typing import Annotated, Literal

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from pydantic import Field

from app.errors import InvalidInput, SessionNotFound, TranscriptStoreError
from app.transcript.models import Role, StoredMessage
from app.transcript.store import TranscriptStore
from core.config import SESSIONS_DIR
from core.logger import configure_logging

logger = logging.getLogger("bridge.server")

UUID_PATTERN = r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"

SessionIdArg = Annotated[str, Field(pattern=UUID_PATTERN, description="The unique ID of the chat session.")]

mcp = FastMCP("chatbot-session-manager")
store = TranscriptStore(SESSIONS_DIR)


def _not_found(session_id: str) -> ToolError:
    logger.error("Session file not found for ID: %s", session_id)
    return ToolError(f"Error: Session with ID {session_id} not found.")


def _require_session_id(session_id: str) -> str:
    if not isinstance(session_id, str) or not re.match(UUID_PATTERN, session_id):
        raise ToolError("Error: Invalid session ID format.")
    return session_id


def _require_text(value: str, field_name: str) -> str:
    if not isinstance(value, str) or not value:
        raise ToolError(f"Error: '{field_name}' must be a non-empty string.")
    return value


def _append(session_id: str, message: StoredMessage, failure: str) -> None:
    try:
        store.append(session_id, message)
    except SessionNotFound:
        raise _not_found(session_id)
    except InvalidInput as exc:
        raise ToolError(f"Error: {exc}")
    except (TranscriptStoreError, OSError) as exc:
        logger.exception("Append failed for session %s: %s", session_id, exc)
        raise ToolError(failure)


@mcp.tool()
def start_session() -> str:
    """Starts a new chat session, creates its persistent file, and returns its unique ID."""
    try:
        return store.create_empty()
    except (TranscriptStoreError, OSError) as exc:
        logger.exception("Failed to create session file: %s", exc)
        raise ToolError("Error: Failed to initialize session storage.")


@mcp.tool()
def add_message(
    session_id: SessionIdArg,
    role: Literal["user", "assistant"],
    content: Annotated[str, Field(min_length=1)],
) -> str:
    """Adds a USER or ASSISTANT message to the specified chat session transcript file."""
    _require_session_id(session_id)
    _require_text(content, "content")
    if role not in (Role.USER.value, Role.ASSISTANT.value):
        raise ToolError("Error: role must be 'user' or 'assistant'.")
    _append(session_id, StoredMessage(role=Role(role), content=content), "Error: Failed to add message to session storage.")
    return "Message added successfully."


@mcp.tool()
def add_system_note(
    session_id: SessionIdArg,
    note: Annotated[str, Field(min_length=1)],
) -> str:
    """Adds a SYSTEM message (a note or instruction) to the specified chat session transcript file.
    Use this to add context or guidance."""
    _require_session_id(session_id)
    _require_text(note, "note")
    _append(session_id, StoredMessage.system(note), "Error: Failed to add system note.")
    return "System note added successfully."


@mcp.tool()
def get_transcript(session_id: SessionIdArg) -> str:
    """Retrieves the full message transcript JSON string from the specified chat session file."""
    _require_session_id(session_id)
    try:
        messages = store.read(session_id)
    except SessionNotFound:
        raise _not_found(session_id)
    except (TranscriptStoreError, OSError) as exc:
        logger.exception("Error reading transcript for session %s: %s", session_id, exc)
        raise ToolError("Error: Failed to read session transcript.")
    logger.info("Transcript retrieved for session %s | messages=%s", session_id, len(messages))
    return json.dumps([m.to_dict() for m in messages], ensure_ascii=False, indent=2)


@mcp.tool()
def list_sessions() -> str:
    """Lists the IDs of all currently stored chat sessions."""
    try:
        store.ensure_root()
        session_ids = store.list_ids()
    except OSError as exc:
        logger.exception("Error listing sessions in %s: %s", store.root, exc)
        raise ToolError("Error: Failed to list sessions.")
    logger.info("Listed sessions | count=%s", len(session_ids))
    return json.dumps(session_ids)


@mcp.tool()
def end_session(session_id: SessionIdArg) -> str:
    """Signals that the user wants to end the current chat session. The client will handle disconnection."""
    _require_session_id(session_id)
    logger.info("Received request to end session: %s. Client should now disconnect.", session_id)
    return f"Session {session_id} marked for termination by client."


def main() -> None:
    configure_logging()
    store.ensure_root()
    logger.info("Transcript tool bridge running on stdio | sessions_dir=%s", store.root)
    mcp.run()


if __name__ == "__main__":
    main()
