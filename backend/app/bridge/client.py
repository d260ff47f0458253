from __future__ import annotations

import json
import logging
import os
import sys
from contextlib import AsyncExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.types import CallToolResult, TextContent

from app.errors import BridgeCallFailed
from app.transcript.models import StoredMessage
from core.config import SESSIONS_DIR

logger = logging.getLogger("bridge.client")

_BACKEND_ROOT = Path(__file__).resolve().parents[2]


class ToolCaller(Protocol):
    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> CallToolResult:
        ...


@dataclass
class ToolOutcome:
    ok: bool
    text: str


def default_server_params() -> StdioServerParameters:
    env = dict(os.environ)
    env.setdefault("SESSIONS_DIR", str(SESSIONS_DIR))
    return StdioServerParameters(
        command=sys.executable,
        args=["-m", "app.bridge.server"],
        env=env,
        cwd=str(_BACKEND_ROOT),
    )


def extract_text(result: CallToolResult | None) -> str | None:
    if result is None:
        logger.error("Null result from tool call")
        return None
    if result.isError:
        error_text = _first_text(result) or "Unknown error"
        logger.error("Tool call failed on server: %s", error_text)
        return None
    text = _first_text(result)
    if text is None:
        logger.error("Unexpected tool result format: %s", result)
    return text


def _first_text(result: CallToolResult) -> str | None:
    content = list(result.content or [])
    if not content or not isinstance(content[0], TextContent):
        return None
    return content[0].text


def parse_transcript(json_text: str | None) -> list[StoredMessage] | None:
    if not json_text:
        logger.error("Cannot parse empty transcript text")
        return None
    try:
        parsed = json.loads(json_text)
    except json.JSONDecodeError as exc:
        logger.error("Failed to parse transcript JSON: %s", exc)
        return None
    if not isinstance(parsed, list):
        logger.error("Transcript payload is not an array")
        return None
    try:
        return [StoredMessage.from_dict(item) for item in parsed]
    except ValueError as exc:
        logger.error("Invalid transcript entry: %s", exc)
        return None


class BridgeClient:
    """Client side of the transcript tool bridge.

    Wraps an MCP ``ClientSession`` (or anything with ``call_tool``). Tool
    error results never raise out of ``call``; the typed helpers turn them
    into ``BridgeCallFailed`` in the caller's process.
    """

    def __init__(self, session: ToolCaller, exit_stack: AsyncExitStack | None = None):
        self._session = session
        self._exit_stack = exit_stack
        self.closed = False

    @classmethod
    async def open(cls, params: StdioServerParameters | None = None) -> "BridgeClient":
        stack = AsyncExitStack()
        try:
            read_stream, write_stream = await stack.enter_async_context(stdio_client(params or default_server_params()))
            session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
            await session.initialize()
        except BaseException:
            await stack.aclose()
            raise
        logger.info("Connected to transcript tool bridge")
        return cls(session, exit_stack=stack)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._exit_stack is not None:
            await self._exit_stack.aclose()
        logger.info("Transcript tool bridge closed")

    async def call(self, name: str, arguments: dict[str, Any] | None = None) -> ToolOutcome:
        result = await self._session.call_tool(name, arguments or {})
        if result is not None and result.isError:
            return ToolOutcome(ok=False, text=_first_text(result) or "Unknown error")
        text = extract_text(result)
        if text is None:
            return ToolOutcome(ok=False, text="Malformed tool result")
        return ToolOutcome(ok=True, text=text)

    async def _require(self, name: str, arguments: dict[str, Any] | None = None) -> str:
        outcome = await self.call(name, arguments)
        if not outcome.ok:
            raise BridgeCallFailed(name, outcome.text)
        return outcome.text

    async def start_session(self) -> str:
        session_id = (await self._require("start_session")).strip()
        if not session_id:
            raise BridgeCallFailed("start_session", "empty session id")
        return session_id

    async def add_message(self, session_id: str, role: str, content: str) -> str:
        return await self._require("add_message", {"session_id": session_id, "role": role, "content": content})

    async def add_system_note(self, session_id: str, note: str) -> str:
        return await self._require("add_system_note", {"session_id": session_id, "note": note})

    async def get_transcript(self, session_id: str) -> list[StoredMessage]:
        text = await self._require("get_transcript", {"session_id": session_id})
        transcript = parse_transcript(text)
        if transcript is None:
            raise BridgeCallFailed("get_transcript", "unparseable transcript")
        return transcript

    async def list_sessions(self) -> list[str]:
        text = await self._require("list_sessions")
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise BridgeCallFailed("list_sessions", f"unparseable session list: {exc}") from exc
        return [str(item) for item in parsed] if isinstance(parsed, list) else []

    async def end_session(self, session_id: str) -> str:
        return await self._require("end_session", {"session_id": session_id})
