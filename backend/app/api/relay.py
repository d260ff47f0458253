from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid

from fastapi import APIRouter, WebSocket
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from app.api.relay_components import ConnectionContext, MessageHandler
from app.bridge.client import BridgeClient
from app.chat.engine import ChatResponder
from app.errors import BridgeCallFailed, TransportFailure
from app.schemas import (
    AssistantResponseMessage,
    ClientMessage,
    ErrorMessage,
    SessionIdMessage,
    StatusUpdateMessage,
)
from app.services import realtime_token
from app.system_metrics import (
    decrement_metric,
    increment_metric,
    observe_response_latency_ms,
    record_ws_disconnect,
)
from core.config import (
    BRIDGE_END_SESSION_TIMEOUT_SEC,
    CHAT_RESPONDER_ENABLED,
    RELAY_HEARTBEAT_INTERVAL_SEC,
    RELAY_MAX_TEXT_BYTES,
)

logger = logging.getLogger("relay")

router = APIRouter()


class RelayDependencyProvider:
    async def open_bridge(self) -> BridgeClient:
        return await BridgeClient.open()

    def create_responder(self) -> ChatResponder | None:
        if not CHAT_RESPONDER_ENABLED:
            return None
        return ChatResponder()


dependency_provider = RelayDependencyProvider()


@router.get("/session-token")
async def session_token():
    logger.info("Requesting realtime session token...")
    try:
        payload = await realtime_token.create_ephemeral_session()
    except TransportFailure as exc:
        logger.error("Error getting token: %s", exc)
        increment_metric("token_failures")
        return JSONResponse(status_code=500, content={"error": "Failed token create."})
    increment_metric("tokens_issued")
    return payload


# ================= INBOUND HANDLERS =================

async def handle_user_transcript(ctx: ConnectionContext, message: ClientMessage) -> None:
    content = str(message.content or "").strip()
    if not content:
        await ctx.send(ErrorMessage(message="Missing transcript content."))
        return

    started = time.perf_counter()
    try:
        await ctx.bridge.add_message(ctx.session_id, "user", content)
        increment_metric("transcripts_stored")
        ctx.log("user_transcript_stored", content=content)

        if ctx.responder is None:
            return

        reply = await ctx.responder.respond(ctx.session_id, ctx.bridge)
        await ctx.send(AssistantResponseMessage(content=reply.text, session_id=ctx.session_id))
        increment_metric("assistant_responses_sent")
        observe_response_latency_ms((time.perf_counter() - started) * 1000.0)

        if reply.end_session:
            # the socket closes before the client can report this reply back
            await ctx.bridge.add_message(ctx.session_id, "assistant", reply.text)
            increment_metric("transcripts_stored")
            logger.info("Instructing client to disconnect | session_id=%s", ctx.session_id)
            if ctx.websocket.client_state == WebSocketState.CONNECTED:
                await ctx.websocket.close(code=1000, reason="Session ended by assistant request.")
            ctx.request_stop("session_ended")
    except BridgeCallFailed as exc:
        increment_metric("bridge_failures")
        logger.warning("Bridge call failed | session_id=%s tool=%s err=%s", ctx.session_id, exc.tool, exc.message)
        await ctx.send(ErrorMessage(message="Failed to process message and get AI response."))
    except Exception as exc:
        logger.exception("Error processing user transcript | session_id=%s err=%s", ctx.session_id, exc)
        await ctx.send(ErrorMessage(message="Failed to process message and get AI response."))


async def handle_assistant_transcript(ctx: ConnectionContext, message: ClientMessage) -> None:
    content = str(message.content or "").strip()
    if not content:
        await ctx.send(ErrorMessage(message="Missing transcript content."))
        return
    try:
        await ctx.bridge.add_message(ctx.session_id, "assistant", content)
    except BridgeCallFailed as exc:
        increment_metric("bridge_failures")
        logger.warning("Bridge call failed | session_id=%s tool=%s err=%s", ctx.session_id, exc.tool, exc.message)
        await ctx.send(ErrorMessage(message="Failed to store assistant transcript."))
        return
    increment_metric("transcripts_stored")
    ctx.log("assistant_transcript_stored", content=content)


async def handle_ping(ctx: ConnectionContext, message: ClientMessage) -> None:
    await ctx.send({"type": "pong", "sessionId": ctx.session_id, "ts": time.time()})


async def handle_pong(ctx: ConnectionContext, message: ClientMessage) -> None:
    ctx.touch()


MESSAGE_HANDLERS: dict[str, MessageHandler] = {
    "user_transcript": handle_user_transcript,
    "store_assistant_transcript": handle_assistant_transcript,
    "ping": handle_ping,
    "pong": handle_pong,
}

# answered even before a session id has been issued
_SESSIONLESS_TYPES = {"ping", "pong"}


async def dispatch_text(ctx: ConnectionContext, text_payload: str) -> None:
    try:
        raw = json.loads(text_payload)
        message = ClientMessage.model_validate(raw)
    except (json.JSONDecodeError, ValidationError) as exc:
        logger.warning("Bad WS message | connection_id=%s err=%s", ctx.connection_id, exc)
        await ctx.send(ErrorMessage(message="Invalid format."))
        return

    message_type = message.type.strip().lower()
    ctx.log("message_received", message_type=message_type or "unknown", text_bytes=len(text_payload.encode("utf-8")))

    if not ctx.ready and message_type not in _SESSIONLESS_TYPES:
        logger.warning("WS message for inactive session | connection_id=%s", ctx.connection_id)
        await ctx.send(ErrorMessage(message="Backend session inactive."))
        return

    handler = MESSAGE_HANDLERS.get(message_type)
    if handler is None:
        logger.warning("Unhandled WebSocket message type: %s", message_type)
        await ctx.send(StatusUpdateMessage(message=f"Unsupported message type '{message_type}'."))
        return
    await handler(ctx, message)


# ================= CONNECTION LIFECYCLE =================

async def open_session(ctx: ConnectionContext) -> bool:
    try:
        ctx.bridge = await dependency_provider.open_bridge()
        ctx.session_id = await ctx.bridge.start_session()
        ctx.responder = dependency_provider.create_responder()
    except Exception as exc:
        logger.exception("Bridge setup/start error | connection_id=%s err=%s", ctx.connection_id, exc)
        await ctx.send(ErrorMessage(message="Backend init fail."))
        return False

    await ctx.send(SessionIdMessage(session_id=ctx.session_id))
    logger.info("Sent session ID %s to client", ctx.session_id)
    return True


async def receive_loop(ctx: ConnectionContext) -> None:
    websocket = ctx.websocket
    try:
        while not ctx.stop_event.is_set():
            msg = await websocket.receive()
            ctx.touch()

            if msg["type"] == "websocket.disconnect":
                ctx.request_stop("client_disconnect")
                break

            text_payload = msg.get("text")
            if not text_payload:
                continue
            if len(text_payload.encode("utf-8")) > RELAY_MAX_TEXT_BYTES:
                logger.warning("WS message too large | connection_id=%s bytes=%s", ctx.connection_id, len(text_payload.encode("utf-8")))
                ctx.request_stop("message_too_large")
                break
            await dispatch_text(ctx, text_payload)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.warning("receive loop ended | connection_id=%s err=%s", ctx.connection_id, exc)
        ctx.request_stop("client_disconnect")


async def heartbeat(ctx: ConnectionContext) -> None:
    while not ctx.stop_event.is_set():
        await asyncio.sleep(RELAY_HEARTBEAT_INTERVAL_SEC)
        if ctx.websocket.client_state != WebSocketState.CONNECTED:
            ctx.request_stop("client_disconnect")
            return
        # unresponsive peers are caught by protocol pings (uvicorn ws_ping_interval / ws_ping_timeout)
        if not await ctx.send({"type": "ping", "sessionId": ctx.session_id, "ts": time.time()}):
            idle_sec = round(time.time() - ctx.last_seen_ts, 1)
            logger.info("Heartbeat fail. Terminating WS | connection_id=%s idle_sec=%s", ctx.connection_id, idle_sec)
            ctx.log("heartbeat_timeout", idle_sec=idle_sec)
            ctx.request_stop("heartbeat_timeout")
            return


async def release(ctx: ConnectionContext) -> None:
    await ctx.cancel_tasks()
    bridge = ctx.bridge
    if bridge is not None:
        if ctx.session_id:
            try:
                await asyncio.wait_for(bridge.end_session(ctx.session_id), timeout=BRIDGE_END_SESSION_TIMEOUT_SEC)
            except asyncio.TimeoutError:
                logger.warning("end_session timeout | session_id=%s", ctx.session_id)
            except BridgeCallFailed as exc:
                logger.warning("end_session failed | session_id=%s err=%s", ctx.session_id, exc.message)
        try:
            await bridge.close()
        except Exception as exc:
            logger.warning("Bridge cleanup error | session_id=%s err=%s", ctx.session_id, exc)
        ctx.bridge = None

    if ctx.websocket.application_state == WebSocketState.CONNECTED and ctx.websocket.client_state == WebSocketState.CONNECTED:
        try:
            await ctx.websocket.close(code=1001 if ctx.stop_reason == "heartbeat_timeout" else 1000)
        except Exception as exc:
            logger.warning("WS close failed | connection_id=%s err=%s", ctx.connection_id, exc)


@router.websocket("/mcp-proxy")
async def relay_ws(websocket: WebSocket):
    await websocket.accept()
    ctx = ConnectionContext(websocket=websocket, connection_id=str(uuid.uuid4()))
    logger.info("WebSocket client connected | connection_id=%s", ctx.connection_id)
    increment_metric("ws_connections_active", 1)
    ctx.log("connect")

    try:
        if not await open_session(ctx):
            ctx.request_stop("init_failed")
            return
        ctx.create_task(receive_loop(ctx))
        ctx.create_task(heartbeat(ctx))
        await ctx.stop_event.wait()
    finally:
        await release(ctx)
        decrement_metric("ws_connections_active", 1)
        record_ws_disconnect(ctx.stop_reason)
        ctx.log("disconnect", reason=ctx.stop_reason)
        logger.info("WS client disconnected | connection_id=%s reason=%s", ctx.connection_id, ctx.stop_reason)
