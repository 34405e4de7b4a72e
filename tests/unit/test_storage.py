import json
import tempfile
import threading
import unittest
from pathlib import Path

import fakes  # noqa: F401

from ilo_fan_control.core.storage import AppEventLog, ConfigStore, JsonDocument, SafetyStore
from ilo_fan_control.models import IloConfig, SafetyConfig


class StorageTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.data = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_document_round_trip(self):
        doc = JsonDocument(self.data / "nested" / "doc.json")
        self.assertEqual(doc.load({"empty": True}), {"empty": True})
        self.assertTrue(doc.save({"a": [1, 2]}))
        self.assertEqual(doc.load(), {"a": [1, 2]})
        self.assertEqual([p.name for p in doc.path.parent.iterdir()], ["doc.json"])

    def test_corrupt_document_returns_default(self):
        path = self.data / "doc.json"
        path.write_text("{broken", encoding="utf-8")
        self.assertEqual(JsonDocument(path).load([]), [])

    def test_credentials_and_mode_share_the_record(self):
        store = ConfigStore(JsonDocument(self.data / "config.json"))
        self.assertIsNone(store.get_credentials())
        self.assertEqual(store.get_fan_mode(), "auto")

        store.save_credentials(IloConfig(host="10.0.0.5", username="admin", password="pw"))
        store.set_fan_mode("MANUAL")

        self.assertEqual(store.get_credentials().host, "10.0.0.5")
        self.assertEqual(store.get_fan_mode(), "manual")
        raw = json.loads((self.data / "config.json").read_text(encoding="utf-8"))
        self.assertEqual(raw["fan_mode"], "manual")

    def test_fan_mode_write_keeps_concurrent_credentials(self):
        doc = JsonDocument(self.data / "config.json")
        store = ConfigStore(doc)
        store.save_credentials(IloConfig(host="old", username="admin", password="pw"))

        paused, gate = threading.Event(), threading.Event()
        write = doc._write

        def slow_write(obj):
            if threading.current_thread() is mode_writer:
                paused.set()
                gate.wait(5)
            return write(obj)

        doc._write = slow_write
        mode_writer = threading.Thread(target=store.set_fan_mode, args=("manual",))
        credentials_writer = threading.Thread(
            target=store.save_credentials,
            args=(IloConfig(host="new", username="admin", password="pw"),),
        )
        mode_writer.start()
        try:
            self.assertTrue(paused.wait(5))
            credentials_writer.start()
            credentials_writer.join(0.05)
            self.assertTrue(credentials_writer.is_alive())
        finally:
            gate.set()
            mode_writer.join(5)
            credentials_writer.join(5)

        self.assertEqual(store.get_credentials().host, "new")
        self.assertEqual(store.get_fan_mode(), "manual")

    def test_document_update(self):
        doc = JsonDocument(self.data / "counter.json")
        for _ in range(3):
            self.assertTrue(doc.update(lambda n: n + 1, 0))
        self.assertEqual(doc.load(), 3)

    def test_incomplete_credentials_are_ignored(self):
        doc = JsonDocument(self.data / "config.json")
        doc.save({"host": "10.0.0.5", "username": "", "password": "pw"})
        self.assertIsNone(ConfigStore(doc).get_credentials())

    def test_app_log_tail(self):
        log = AppEventLog(self.data / "app.log", tail=3)
        for i in range(5):
            log.append(f"event {i}", "warning" if i % 2 else "info")
        with open(log.path, "a", encoding="utf-8") as f:
            f.write("plain text line\n")

        entries = log.recent()
        self.assertEqual([e.message for e in entries], ["event 3", "event 4", "plain text line"])
        self.assertEqual(entries[0].type, "warning")
        self.assertEqual(entries[-1].type, "info")

    def test_safety_store_merges_defaults(self):
        doc = JsonDocument(self.data / "safety.json")
        store = SafetyStore(doc, SafetyConfig(threshold_celsius=80))
        self.assertEqual(store.get().threshold_celsius, 80)

        doc.save({"response_speed_percent": 70})
        self.assertEqual(store.get(), SafetyConfig(threshold_celsius=80, response_speed_percent=70))

        doc.save({"threshold_celsius": -5})
        self.assertEqual(store.get().threshold_celsius, 80)

        store.save(SafetyConfig(threshold_celsius=90, aggregate="mean"))
        self.assertEqual(store.get().aggregate, "mean")


if __name__ == "__main__":
    unittest.main()
