import argparse
import asyncio
import logging
import sys
from typing import Callable

from app.bridge.client import BridgeClient
from app.chat.engine import ChatResponder
from app.errors import BridgeCallFailed, TransportFailure, VoiceRelayError
from core.config import PORT, RELAY_HEARTBEAT_INTERVAL_SEC, RELAY_HEARTBEAT_TIMEOUT_SEC, SESSIONS_DIR
from core.logger import configure_logging

logger = logging.getLogger("cli")

QUIT_WORDS = {"quit", "exit"}


async def run_chat(
    bridge: BridgeClient,
    responder: ChatResponder,
    read_line: Callable[[str], str] = input,
    write_line: Callable[[str], None] = print,
) -> str:
    """Text chat over the bridge. Returns the session id it used."""
    session_id = await bridge.start_session()
    write_line(f"Session started: {session_id}")
    write_line("Type your message, or 'quit' to exit.")

    while True:
        try:
            line = read_line("You: ")
        except EOFError:
            break
        text = line.strip()
        if not text:
            continue
        if text.lower() in QUIT_WORDS:
            break

        try:
            await bridge.add_message(session_id, "user", text)
            reply = await responder.respond(session_id, bridge)
            await bridge.add_message(session_id, "assistant", reply.text)
        except BridgeCallFailed as exc:
            write_line(f"[error] {exc.tool}: {exc.message}")
            continue

        write_line(f"Assistant: {reply.text}")
        if reply.end_session:
            write_line("Session ended by assistant.")
            break

    return session_id


async def _chat_command(args: argparse.Namespace) -> int:
    bridge = await BridgeClient.open()
    try:
        await run_chat(bridge, ChatResponder())
    finally:
        await bridge.close()
    return 0


async def _voice_command(args: argparse.Namespace) -> int:
    from app.realtime.client import VoiceClient

    def _print_status(message: str, is_error: bool) -> None:
        print(f"[{'error' if is_error else 'status'}] {message}", file=sys.stderr if is_error else sys.stdout)

    client = VoiceClient(
        relay_url=args.relay_url,
        input_wav=args.input,
        output_dir=args.output,
        on_status=_print_status,
        turn_timeout_sec=args.turn_timeout,
    )
    saved = await client.run(turns=args.turns)
    for path in saved:
        print(path)
    if client.teardown_reason and client.teardown_reason.startswith("realtime_error"):
        return 1
    return 0


async def _sessions_command(args: argparse.Namespace) -> int:
    from app.transcript.store import TranscriptStore

    store = TranscriptStore(args.sessions_dir)
    for session_id in store.list_ids():
        if args.verbose:
            print(f"{session_id}\t{len(store.read(session_id))}")
        else:
            print(session_id)
    return 0


def _serve_command(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level.lower(),
        ws_ping_interval=RELAY_HEARTBEAT_INTERVAL_SEC,
        ws_ping_timeout=RELAY_HEARTBEAT_TIMEOUT_SEC,
    )
    return 0


def _bridge_command(args: argparse.Namespace) -> int:
    from app.bridge import server

    server.main()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="voice-relay", description="Voice session relay and tools")
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the relay server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=PORT)

    sub.add_parser("bridge", help="Run the transcript tool bridge on stdio")
    sub.add_parser("chat", help="Text chat through the tool bridge")

    voice = sub.add_parser("voice", help="Run voice turns from a WAV file")
    voice.add_argument("--input", required=True, help="24 kHz mono 16-bit WAV file")
    voice.add_argument("--output", default="voice-output", help="Directory for assistant audio")
    voice.add_argument("--relay-url", default=f"http://127.0.0.1:{PORT}")
    voice.add_argument("--turns", type=int, default=1)
    voice.add_argument("--turn-timeout", type=float, default=60.0)

    sessions = sub.add_parser("sessions", help="List stored sessions")
    sessions.add_argument("--sessions-dir", default=str(SESSIONS_DIR))
    sessions.add_argument("-v", "--verbose", action="store_true", help="Show message counts")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level.upper())

    if args.command == "serve":
        return _serve_command(args)
    if args.command == "bridge":
        return _bridge_command(args)

    handlers = {
        "chat": _chat_command,
        "voice": _voice_command,
        "sessions": _sessions_command,
    }
    try:
        return asyncio.run(handlers[args.command](args))
    except KeyboardInterrupt:
        return 130
    except (TransportFailure, BridgeCallFailed) as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1
    except VoiceRelayError as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
