"""Persist conversations started locally before any server round-trip."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List

from inbox_sync.identity import same_party
from inbox_sync.normalize import normalize_conversation
from inbox_sync.records import ORIGIN_LOCAL, Conversation

DEFAULT_CACHE_PATH = Path.home() / ".inbox_sync" / "local_conversations.json"


def _atomic_write_json(path: Path, payload: object) -> None:
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    content = json.dumps(payload, indent=2, sort_keys=True)

    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def load_raw_entries(path: Path = DEFAULT_CACHE_PATH) -> List[Dict[str, Any]]:
    try:
        data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    except FileNotFoundError:
        return []
    except (json.JSONDecodeError, ValueError):
        return []
    if not isinstance(data, list):
        return []
    return [entry for entry in data if isinstance(entry, dict)]


def load_local_conversations(path: Path = DEFAULT_CACHE_PATH) -> List[Conversation]:
    conversations: List[Conversation] = []
    for entry in load_raw_entries(path):
        conversation = normalize_conversation(entry, origin=ORIGIN_LOCAL)
        if conversation is not None:
            conversations.append(conversation)
    return conversations


def save_local_conversations(conversations: List[Conversation], path: Path = DEFAULT_CACHE_PATH) -> None:
    payload = [
        {
            "number": conversation.number,
            "name": conversation.display_name,
            "lastMessage": conversation.last_message_preview,
            "time": conversation.last_activity_at.isoformat(),
        }
        for conversation in conversations
    ]
    _atomic_write_json(Path(path), payload)


def remember_conversation(conversation: Conversation, path: Path = DEFAULT_CACHE_PATH) -> bool:
    """Append ``conversation`` unless an entry for the same party exists.

    Returns True when the cache file was updated.
    """

    existing = load_local_conversations(path)
    if any(same_party(entry.number, conversation.number) for entry in existing):
        return False
    existing.append(conversation)
    save_local_conversations(existing, path)
    return True


def forget_conversation(number: str, path: Path = DEFAULT_CACHE_PATH) -> bool:
    existing = load_local_conversations(path)
    kept = [entry for entry in existing if not same_party(entry.number, number)]
    if len(kept) == len(existing):
        return False
    save_local_conversations(kept, path)
    return True
