import gzip
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fakes import FakeClock

from ilo_fan_control.core.history_store import ARCHIVE_FILE, LIVE_FILE, HistoryStore, period_seconds
from ilo_fan_control.models import SensorSnapshot, Temperatures

DAY = 24 * 60 * 60


def snapshot(cpu1=50.0, fan=40.0):
    return SensorSnapshot(
        fans={"Fan 1": fan, "Fan 2": fan},
        temps=Temperatures(cpu1=cpu1, cpu2=cpu1 - 2, ambient=21.0),
        other={"chipset": 55.0, "sys_exhaust": 33.0},
        source="redfish",
    )


class HistoryStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.clock = FakeClock()
        self.store = HistoryStore(Path(self.tmp.name), max_live_bytes=10 ** 9, clock=self.clock)

    def tearDown(self):
        self.tmp.cleanup()

    def test_append_then_query(self):
        written = self.store.append(snapshot(cpu1=61.5, fan=47.0))
        records = self.store.query("1h")

        self.assertEqual(records, [written])
        record = records[0]
        self.assertEqual(record.cpu1, 61.5)
        self.assertEqual(record.cpu2, 59.5)
        self.assertEqual(record.ambient, 21.0)
        self.assertEqual(record.chipset, 55.0)
        self.assertEqual(record.sys_exhaust, 33.0)
        self.assertEqual(record.memory, 0.0)
        self.assertEqual(record.fans, {"Fan 1": 47.0, "Fan 2": 47.0})
        self.assertEqual(record.timestamp(), self.clock())

    def test_period_filter(self):
        self.store.append(snapshot(cpu1=40.0))
        self.clock.advance(2 * 60 * 60)
        self.store.append(snapshot(cpu1=42.0))

        self.assertEqual([r.cpu1 for r in self.store.query("1h")], [42.0])
        self.assertEqual([r.cpu1 for r in self.store.query("24h")], [40.0, 42.0])

    def test_unknown_period_means_one_hour(self):
        self.assertEqual(period_seconds("fortnight"), 60 * 60)
        self.assertEqual(period_seconds(None), 60 * 60)
        self.assertEqual(period_seconds("1month"), period_seconds("1m"))

    def test_compaction_moves_old_records(self):
        for cpu in (40.0, 41.0, 42.0):
            self.store.append(snapshot(cpu1=cpu))
            self.clock.advance(60)
        self.clock.advance(40 * DAY)
        self.store.max_live_bytes = 1
        self.store.append(snapshot(cpu1=70.0))

        live = (Path(self.tmp.name) / LIVE_FILE).read_text(encoding="utf-8").splitlines()
        self.assertEqual(len(live), 1)
        with gzip.open(Path(self.tmp.name) / ARCHIVE_FILE, "rt", encoding="utf-8") as f:
            self.assertEqual(len(f.read().splitlines()), 3)

        self.assertEqual([r.cpu1 for r in self.store.query("1h")], [70.0])
        self.assertEqual([r.cpu1 for r in self.store.query("1y")], [40.0, 41.0, 42.0, 70.0])

    def test_small_live_log_is_not_compacted(self):
        self.store.append(snapshot())
        self.clock.advance(40 * DAY)
        self.store.append(snapshot())
        self.assertFalse((Path(self.tmp.name) / ARCHIVE_FILE).exists())

    def test_recent_queries_skip_archive(self):
        self.store.append(snapshot())
        with mock.patch.object(self.store, "_archive_lines", side_effect=AssertionError("archive read")):
            self.assertEqual(len(self.store.query("7d")), 1)
            self.assertEqual(len(self.store.query("1m")), 1)

    def test_archive_members_accumulate(self):
        start = self.clock()
        self.store.append(snapshot(cpu1=40.0))
        self.store.append(snapshot(cpu1=41.0))
        self.clock.now = start + 40 * DAY
        self.assertEqual(self.store.compact(), 2)

        self.clock.now = start + DAY
        self.store.append(snapshot(cpu1=42.0))
        self.clock.now = start + 80 * DAY
        self.assertEqual(self.store.compact(), 1)

        self.assertEqual([r.cpu1 for r in self.store.query("5y")], [40.0, 41.0, 42.0])
        self.assertEqual(self.store.query("24h"), [])

    def test_unparseable_lines_stay_live(self):
        self.store.append(snapshot())
        live = Path(self.tmp.name) / LIVE_FILE
        with open(live, "a", encoding="utf-8") as f:
            f.write("{not json\n")
        self.clock.advance(40 * DAY)

        self.assertEqual(self.store.compact(), 1)
        self.assertEqual(live.read_text(encoding="utf-8"), "{not json\n")
        self.assertEqual(len(self.store.query("5y")), 1)

    def test_failed_archive_write_leaves_live_log_intact(self):
        self.store.append(snapshot(cpu1=40.0))
        self.clock.advance(40 * DAY)
        self.store.append(snapshot(cpu1=41.0))
        live = Path(self.tmp.name) / LIVE_FILE
        before = live.read_text(encoding="utf-8")

        with mock.patch("ilo_fan_control.core.history_store.gzip.compress", side_effect=OSError("disk full")):
            self.assertEqual(self.store.compact(), 0)

        self.assertEqual(live.read_text(encoding="utf-8"), before)
        self.assertEqual(sorted(p.name for p in Path(self.tmp.name).iterdir()), [LIVE_FILE])

        self.assertEqual(self.store.compact(), 1)
        self.assertEqual(sorted(p.name for p in Path(self.tmp.name).iterdir()), [ARCHIVE_FILE, LIVE_FILE])

    def test_size_and_clear(self):
        self.assertEqual(self.store.size().total_bytes, 0)
        self.store.append(snapshot())

        size = self.store.size()
        self.assertEqual([f.name for f in size.files], [LIVE_FILE])
        self.assertGreater(size.total_bytes, 0)

        self.assertTrue(self.store.clear())
        self.assertEqual(self.store.size().files, [])
        self.assertEqual(self.store.query("5y"), [])


if __name__ == "__main__":
    unittest.main()
