"""Command line entry points: offline frame simulation and a live tail."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Dict, Iterable, List, TextIO

from inbox_sync.config import DEFAULT_SETTINGS_FILE, SyncConfig
from inbox_sync.engine import ReconciliationEngine
from inbox_sync.events import parse_frame
from inbox_sync.records import Conversation, Message, PresenceState
from inbox_sync.session import Notice, SyncSession

logger = logging.getLogger(__name__)


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def conversation_to_dict(entry: Conversation) -> Dict[str, object]:
    return {
        "key": entry.key,
        "number": entry.number,
        "name": entry.display_name,
        "preview": entry.last_message_preview,
        "last_activity_at": _iso(entry.last_activity_at),
        "unread": entry.unread_count,
        "origin": entry.origin,
    }


def message_to_dict(message: Message) -> Dict[str, object]:
    return {
        "id": message.id,
        "conversation": message.conversation_key,
        "direction": message.direction,
        "body": message.body,
        "status": message.status,
        "sent_at": _iso(message.sent_at),
        "channel": message.channel,
        "deleted": message.deleted,
        "media_url": message.media_url,
    }


def presence_to_dict(state: PresenceState) -> Dict[str, object]:
    return {
        "key": state.key,
        "online": state.online,
        "last_seen_at": _iso(state.last_seen_at),
        "typing": state.typing,
    }


def simulate(frames: Iterable[object], own_number: str, output: TextIO, focus: str | None = None) -> int:
    """Feed push frames through a fresh engine and dump the resulting state.

    Returns the number of frames that were dropped as malformed or unknown.
    """

    engine = ReconciliationEngine(own_number)
    if focus:
        engine.focus(focus)
        engine.presence.subscribe(focus)
    dropped = 0
    for frame in frames:
        event = parse_frame(frame, own_number)
        if event is None:
            dropped += 1
            continue
        engine.dispatch(event)

    conversations = engine.conversations()
    state = {
        "conversations": [conversation_to_dict(entry) for entry in conversations],
        "messages": {
            entry.key: [message_to_dict(message) for message in engine.messages(entry.key)]
            for entry in conversations
        },
        "presence": [presence_to_dict(engine.presence.lookup(key)) for key in engine.presence.subscribed()],
        "total_unread": engine.total_unread(),
        "dropped": dropped,
    }
    output.write(json.dumps(state, indent=2) + "\n")
    return dropped


def _load_frames(handle: TextIO) -> List[object]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: List[object] = []
        for line in content.splitlines():
            if line.strip():
                # Unparseable lines are passed through and dropped by the parser.
                frames.append(line)
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    simulate(frames, args.own_number, output, focus=args.focus)
    return 0


async def _tail(config: SyncConfig, output: TextIO) -> None:
    session = SyncSession(config)

    def _on_change(scope: str, key: str) -> None:
        if scope == "conversations":
            entry = session.engine.conversation(key) if key else None
            payload = conversation_to_dict(entry) if entry is not None else {"key": key}
        else:
            payload = {"key": key, "count": len(session.engine.messages(key))}
        output.write(json.dumps({"t": scope, "body": payload}) + "\n")
        output.flush()

    def _on_notice(notice: Notice) -> None:
        output.write(json.dumps({"t": "notice", "body": {"kind": notice.kind, "message": notice.message}}) + "\n")
        output.flush()

    def _on_presence(state: PresenceState) -> None:
        output.write(json.dumps({"t": "presence", "body": presence_to_dict(state)}) + "\n")
        output.flush()

    session.engine.add_listener(_on_change)
    session.presence.add_listener(_on_presence)
    session.add_notice_listener(_on_notice)
    async with session:
        await session.run_channel()


def _run_tail(args: argparse.Namespace, output: TextIO) -> int:
    config = SyncConfig.load(args.config)
    if args.own_number:
        config.own_number = args.own_number
    if args.api:
        config.api_base_url = args.api
    if args.ws:
        config.ws_url = args.ws
    if not config.own_number:
        logger.error("an own number is required (settings file or --own-number)")
        return 2
    try:
        asyncio.run(_tail(config, output))
    except KeyboardInterrupt:
        pass
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Conversation sync CLI")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, ...)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay push frames through the engine")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )
    simulate_parser.add_argument("--own-number", required=True, help="Number of the local account")
    simulate_parser.add_argument("--focus", default=None, help="Conversation treated as focused")

    tail_parser = subparsers.add_parser("tail", help="Run a live session and print state changes")
    tail_parser.add_argument("--config", default=str(DEFAULT_SETTINGS_FILE), help="Path to settings JSON")
    tail_parser.add_argument("--own-number", default=None, help="Override the configured own number")
    tail_parser.add_argument("--api", default=None, help="Override the REST base URL")
    tail_parser.add_argument("--ws", default=None, help="Override the websocket URL")

    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_tail(args, output or sys.stdout)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
