import json
import os
import stat
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from inbox_sync.config import SyncConfig, load_settings
from inbox_sync.local_cache import (
    forget_conversation,
    load_local_conversations,
    remember_conversation,
    save_local_conversations,
)
from inbox_sync.records import ORIGIN_LOCAL, Conversation


class LocalCacheTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.path = Path(self.tmpdir.name) / "nested" / "local_conversations.json"

    def _conversation(self, number: str, name: str = "") -> Conversation:
        return Conversation(
            key=number[-10:],
            number=number,
            display_name=name,
            last_message_preview="hello",
            last_activity_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            origin=ORIGIN_LOCAL,
        )

    def test_missing_or_corrupt_cache_reads_empty(self):
        self.assertEqual(load_local_conversations(self.path), [])

        self.path.parent.mkdir(parents=True)
        self.path.write_text("{broken", encoding="utf-8")
        self.assertEqual(load_local_conversations(self.path), [])

        self.path.write_text(json.dumps({"number": "9876543210"}), encoding="utf-8")
        self.assertEqual(load_local_conversations(self.path), [])

    def test_save_writes_expected_shape_with_private_mode(self):
        save_local_conversations([self._conversation("+919876543210", "Asha")], self.path)

        payload = json.loads(self.path.read_text(encoding="utf-8"))
        self.assertEqual(
            payload,
            [{"number": "+919876543210", "name": "Asha", "lastMessage": "hello", "time": "2024-01-01T00:00:00+00:00"}],
        )
        self.assertEqual(stat.S_IMODE(os.stat(self.path).st_mode), 0o600)
        self.assertFalse(self.path.with_suffix(".json.tmp").exists())

    def test_remember_skips_same_party_and_forget_removes(self):
        self.assertTrue(remember_conversation(self._conversation("+919876543210", "Asha"), self.path))
        self.assertFalse(remember_conversation(self._conversation("9876543210", "Dup"), self.path))
        self.assertTrue(remember_conversation(self._conversation("+919999999999"), self.path))

        loaded = load_local_conversations(self.path)
        self.assertEqual([entry.key for entry in loaded], ["9876543210", "9999999999"])
        self.assertEqual(loaded[0].display_name, "Asha")
        self.assertEqual(loaded[0].origin, ORIGIN_LOCAL)

        self.assertTrue(forget_conversation("09876543210", self.path))
        self.assertFalse(forget_conversation("09876543210", self.path))
        self.assertEqual([entry.key for entry in load_local_conversations(self.path)], ["9999999999"])


class SettingsTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.path = Path(self.tmpdir.name) / "settings.json"

    def test_load_settings_tolerates_missing_and_corrupt_files(self):
        self.assertEqual(load_settings(self.path), {})
        self.path.write_text("not json", encoding="utf-8")
        self.assertEqual(load_settings(self.path), {})
        self.path.write_text("[1, 2]", encoding="utf-8")
        self.assertEqual(load_settings(self.path), {})

    def test_config_from_settings_ignores_unknown_keys(self):
        self.path.write_text(
            json.dumps(
                {
                    "api_base_url": "https://inbox.example/api",
                    "own_number": "+911111111111",
                    "auth_token": "tok",
                    "typing_window_ms": 1500,
                    "cache_path": str(Path(self.tmpdir.name) / "cache.json"),
                    "theme": "dark",
                }
            ),
            encoding="utf-8",
        )

        config = SyncConfig.load(self.path)

        self.assertEqual(config.api_base_url, "https://inbox.example/api")
        self.assertEqual(config.typing_window_ms, 1500)
        self.assertEqual(config.cache_path, Path(self.tmpdir.name) / "cache.json")
        self.assertEqual(config.auth_headers(), {"Authorization": "Bearer tok"})
        self.assertEqual(config.reconnect_backoff_max_s, 5.0)

    def test_defaults(self):
        config = SyncConfig()
        self.assertEqual(config.typing_window_ms, 2000)
        self.assertEqual(config.default_country_code, "91")
        self.assertEqual(config.auth_headers(), {})


if __name__ == "__main__":
    unittest.main()
