from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from pydantic import BaseModel
from starlette.websockets import WebSocketState

from app.bridge.client import BridgeClient
from app.chat.engine import ChatResponder
from core.logger import log_event

logger = logging.getLogger("relay")


@dataclass
class ConnectionContext:
    """Everything one relay websocket owns.

    Created when the socket is accepted and released by the relay handler
    when it returns; nothing here is shared across connections.
    """
    websocket: Any
    connection_id: str
    bridge: BridgeClient | None = None
    session_id: str | None = None
    responder: ChatResponder | None = None
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    stop_reason: str = "other"
    last_seen_ts: float = field(default_factory=time.time)
    tasks: list[asyncio.Task] = field(default_factory=list)
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def ready(self) -> bool:
        return self.bridge is not None and bool(self.session_id)

    def touch(self) -> None:
        self.last_seen_ts = time.time()

    def create_task(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self.tasks.append(task)
        return task

    def request_stop(self, reason: str) -> None:
        if self.stop_event.is_set():
            return
        self.stop_reason = str(reason or "other")
        logger.info("STOP requested | connection_id=%s reason=%s", self.connection_id, self.stop_reason)
        self.log("stop_requested", reason=self.stop_reason)
        self.stop_event.set()

    async def cancel_tasks(self) -> None:
        current = asyncio.current_task()
        pending = [task for task in self.tasks if task is not current]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self.tasks.clear()

    def log(self, event: str, **fields) -> None:
        log_event("relay", event, self.session_id or "", connection_id=self.connection_id, **fields)

    async def send(self, payload: dict | BaseModel) -> bool:
        if self.websocket.client_state != WebSocketState.CONNECTED:
            return False
        body = payload.model_dump(by_alias=True) if isinstance(payload, BaseModel) else payload
        try:
            encoded = json.dumps(body)
        except (TypeError, ValueError) as exc:
            logger.warning("ws payload encode failed | connection_id=%s err=%s", self.connection_id, exc)
            return False
        try:
            async with self.send_lock:
                await self.websocket.send_text(encoded)
        except Exception as exc:
            logger.warning("ws send failed | connection_id=%s err=%s", self.connection_id, exc)
            return False
        self.log("message_sent", message_type=str(body.get("type") or "unknown"), bytes=len(encoded.encode("utf-8")))
        return True


MessageHandler = Callable[[ConnectionContext, Any], Awaitable[None]]
