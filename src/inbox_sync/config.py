from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict

from inbox_sync.local_cache import DEFAULT_CACHE_PATH

DEFAULT_SETTINGS_FILE = Path.home() / ".inbox_sync" / "settings.json"


def load_settings(path: Path | str = DEFAULT_SETTINGS_FILE) -> Dict[str, Any]:
    """Load persisted settings from disk if present."""

    try:
        data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            return {}
        return data
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError:
        return {}


@dataclass
class SyncConfig:
    api_base_url: str = "http://127.0.0.1:3001/api"
    ws_url: str = "ws://127.0.0.1:3001/ws"
    auth_token: str = ""
    own_number: str = ""
    typing_window_ms: int = 2000
    sweeper_interval_seconds: float = 0.5
    presence_poll_seconds: float = 30.0
    reconnect_backoff_max_s: float = 5.0
    request_timeout_s: float = 15.0
    default_country_code: str = "91"
    default_channel: str = "whatsapp"
    cache_path: Path = field(default_factory=lambda: DEFAULT_CACHE_PATH)

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> "SyncConfig":
        known = {item.name for item in fields(cls)}
        values = {key: value for key, value in settings.items() if key in known and value is not None}
        if "cache_path" in values:
            values["cache_path"] = Path(str(values["cache_path"])).expanduser()
        return cls(**values)

    @classmethod
    def load(cls, path: Path | str = DEFAULT_SETTINGS_FILE) -> "SyncConfig":
        return cls.from_settings(load_settings(path))

    def auth_headers(self) -> Dict[str, str]:
        if not self.auth_token:
            return {}
        return {"Authorization": f"Bearer {self.auth_token}"}
