import json
import os
import sys
import tempfile
import unittest


sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))


from gst.config import load_config  # noqa: E402
from gst.notify.discord import DiscordWebhookSink  # noqa: E402
from gst.notify.sinks import LogSink  # noqa: E402
from gst.tracker import build_tracker  # noqa: E402


class TestConfigAndBuild(unittest.TestCase):
    def _write(self, td: str, cfg: dict) -> str:
        path = os.path.join(td, "config.json")
        with open(path, "w", encoding="utf-8") as f:
            json.dump(cfg, f, ensure_ascii=False)
        return path

    def test_load_config_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            config = load_config(self._write(td, {}))

        self.assertEqual(config.poll_interval_seconds, 60)
        self.assertEqual(config.query_timeout_seconds, 10.0)
        self.assertEqual(config.max_workers, 8)
        self.assertEqual(config.default_triggers, ("status", "player_count"))
        self.assertEqual(config.destinations, ())

    def test_load_config_parses_destinations(self) -> None:
        cfg = {
            "poll_interval_seconds": 30,
            "query_timeout_seconds": 2.5,
            "destinations": {
                "guild-1": {"type": "discord_webhook", "webhook_env": "GUILD1_WEBHOOK", "username": "tracker"},
                "ops": {"type": "log"},
            },
            "defaults": {"triggers": ["players"]},
        }
        with tempfile.TemporaryDirectory() as td:
            config = load_config(self._write(td, cfg))

        self.assertEqual(config.poll_interval_seconds, 30)
        self.assertEqual(config.query_timeout_seconds, 2.5)
        self.assertEqual([d.destination_id for d in config.destinations], ["guild-1", "ops"])
        self.assertEqual(config.destinations[0].webhook_env, "GUILD1_WEBHOOK")
        self.assertEqual(config.destinations[0].username, "tracker")
        self.assertEqual(config.default_triggers, ("players",))

    def test_load_config_rejects_unknown_destination_type(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = self._write(td, {"destinations": {"x": {"type": "carrier-pigeon"}}})
            with self.assertRaises(ValueError):
                load_config(path)

    def test_build_tracker_wires_sinks_and_instances(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = {
                "state": {"sqlite_path": os.path.join(td, "state.sqlite3")},
                "destinations": {
                    "guild-1": {"type": "discord_webhook", "webhook_env": "GST_TEST_WEBHOOK"},
                    "guild-2": {"type": "discord_webhook", "webhook_env": "GST_TEST_MISSING"},
                    "ops": {"type": "log"},
                },
                "trackers": [
                    {
                        "id": "rust-eu-1",
                        "host": "203.0.113.7",
                        "port": 28015,
                        "subscriptions": [{"destination": "guild-1"}],
                    }
                ],
            }
            os.environ["GST_TEST_WEBHOOK"] = "https://discord.com/api/webhooks/1/abc"
            try:
                config = load_config(self._write(td, cfg))
                tracker = build_tracker(config)
            finally:
                os.environ.pop("GST_TEST_WEBHOOK", None)

            router = tracker.notifier.sink
            self.assertIsInstance(router.sink_for("guild-1"), DiscordWebhookSink)
            self.assertIsInstance(router.sink_for("ops"), LogSink)
            # 缺少 webhook 环境变量的目的地回落到默认 LogSink
            self.assertIsInstance(router.sink_for("guild-2"), LogSink)

            report = tracker.instances.load_from_config(config.document)
            self.assertEqual(report.instances_added, 1)
            self.assertEqual(tracker.registry.snapshot().source_ids(), ("rust-eu-1",))
            self.assertEqual(tracker.scheduler.interval_seconds, 60)
