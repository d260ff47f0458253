from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from openai import AsyncOpenAI

from app.bridge.client import BridgeClient
from app.transcript.models import StoredMessage
from core.config import CHAT_COMPLETIONS_MODEL, CHAT_MAX_TOOL_ROUNDS, OPENAI_API_KEY

logger = logging.getLogger("chat.engine")

FALLBACK_REPLY = "I seem to have finished processing but have nothing more to say."
END_SESSION_REPLY = "Okay, ending the session now."

CHAT_TOOLS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "add_system_note",
            "description": (
                "Adds a SYSTEM message (a note or instruction) to the current chat session transcript. "
                "Use this to add context, summarize points, or provide guidance for future interactions."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "note": {"type": "string", "description": "The content of the system note to add."},
                },
                "required": ["note"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "list_sessions",
            "description": "Lists the IDs of all previously stored chat sessions.",
            "parameters": {"type": "object", "properties": {}},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "end_session",
            "description": (
                "Ends the current chat session and disconnects the client. Use when the user explicitly "
                "asks to quit, stop, exit, or indicates they are finished."
            ),
            "parameters": {"type": "object", "properties": {}},
        },
    },
]


@dataclass
class ChatReply:
    text: str
    end_session: bool = False
    rounds: int = 0


class ChatResponder:
    """Chat-completions loop whose tools are served by the transcript bridge."""

    def __init__(self, client: AsyncOpenAI | None = None, model: str = CHAT_COMPLETIONS_MODEL, max_rounds: int = CHAT_MAX_TOOL_ROUNDS):
        self.client = client or AsyncOpenAI(api_key=OPENAI_API_KEY or None)
        self.model = model
        self.max_rounds = max(1, int(max_rounds))

    async def respond(self, session_id: str, bridge: BridgeClient, transcript: list[StoredMessage] | None = None) -> ChatReply:
        history = transcript if transcript is not None else await bridge.get_transcript(session_id)
        messages: list[dict[str, Any]] = [m.to_dict() for m in history]

        final_text: str | None = None
        should_end = False
        rounds = 0

        for rounds in range(1, self.max_rounds + 1):
            logger.info("Calling chat completions | session_id=%s round=%s", session_id, rounds)
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                tools=CHAT_TOOLS,
                tool_choice="auto",
            )
            message = response.choices[0].message
            tool_calls = list(message.tool_calls or [])
            messages.append(_assistant_entry(message.content, tool_calls))

            if not tool_calls:
                final_text = message.content or None
                break

            logger.info("Model requested tools | session_id=%s tools=%s", session_id, [tc.function.name for tc in tool_calls])
            for tool_call in tool_calls:
                result_text, ends = await self._run_tool(session_id, bridge, tool_call.function.name, tool_call.function.arguments)
                messages.append({"role": "tool", "tool_call_id": tool_call.id, "content": result_text})
                if ends:
                    should_end = True
                    break

            if should_end:
                final_text = message.content or END_SESSION_REPLY
                break

        if final_text is None:
            logger.warning("Chat turn finished without final text | session_id=%s", session_id)
            final_text = FALLBACK_REPLY
        return ChatReply(text=final_text, end_session=should_end, rounds=rounds)

    async def _run_tool(self, session_id: str, bridge: BridgeClient, name: str, raw_arguments: str | None) -> tuple[str, bool]:
        try:
            arguments = json.loads(raw_arguments) if raw_arguments else {}
        except json.JSONDecodeError as exc:
            logger.warning("Bad JSON arguments for %s: %s", name, exc)
            return "Error: Invalid arguments.", False
        if not isinstance(arguments, dict):
            return "Error: Invalid arguments.", False

        if name == "add_system_note":
            outcome = await bridge.call("add_system_note", {"session_id": session_id, "note": str(arguments.get("note") or "")})
        elif name == "list_sessions":
            outcome = await bridge.call("list_sessions", {})
        elif name == "end_session":
            outcome = await bridge.call("end_session", {"session_id": session_id})
            return outcome.text if outcome.ok else "Session termination acknowledged.", True
        else:
            logger.warning("Unknown tool requested by model: %s", name)
            return f"Error: Unknown tool '{name}' requested.", False

        if not outcome.ok:
            return f"Error: {outcome.text}", False
        return outcome.text or f"Tool {name} completed (no text result).", False


def _assistant_entry(content: str | None, tool_calls: list) -> dict[str, Any]:
    entry: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        entry["tool_calls"] = [
            {
                "id": tc.id,
                "type": "function",
                "function": {"name": tc.function.name, "arguments": tc.function.arguments},
            }
            for tc in tool_calls
        ]
    return entry
