import tempfile
import unittest
from pathlib import Path

from fakes import CONFIG, FakeClock, ScriptedReader, six_fans

from ilo_fan_control.actuators import FanControlBusy
from ilo_fan_control.config import PollingSettings
from ilo_fan_control.core.history_store import HistoryStore
from ilo_fan_control.core.safety_watchdog import PollCadence, SafetyWatchdog, SessionTracker, TelemetryMonitor
from ilo_fan_control.core.storage import AppEventLog
from ilo_fan_control.models import FanActionResult, SafetyConfig, SensorSnapshot, Temperatures


def hot(cpu1, cpu2=None):
    return SensorSnapshot(temps=Temperatures(cpu1=cpu1, cpu2=cpu1 if cpu2 is None else cpu2), source="redfish")


class RecordingController:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def set_speed(self, percent, config):
        self.calls.append(percent)
        if self.error is not None:
            raise self.error
        return FanActionResult(accepted=True, speed=percent)


class SafetyWatchdogTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.clock = FakeClock()
        self.safety = SafetyConfig(threshold_celsius=85, response_speed_percent=100)
        self.events = AppEventLog(Path(self.tmp.name) / "app.log")

    def tearDown(self):
        self.tmp.cleanup()

    def watchdog(self, controller, reader=None):
        return SafetyWatchdog(
            reader or ScriptedReader(),
            controller,
            safety_config=lambda: self.safety,
            config_provider=lambda: CONFIG,
            events=self.events,
            clock=self.clock,
        )

    def test_override_then_cooldown(self):
        controller = RecordingController()
        watchdog = self.watchdog(controller)

        self.assertFalse(watchdog.check(hot(70)))
        self.assertEqual(controller.calls, [])

        self.assertTrue(watchdog.check(hot(92)))
        self.assertEqual(controller.calls, [100])

        self.clock.advance(20)
        self.assertFalse(watchdog.check(hot(95)))
        self.assertEqual(controller.calls, [100])

        self.clock.advance(40)
        self.assertTrue(watchdog.check(hot(95)))
        self.assertEqual(controller.calls, [100, 100])

    def test_threshold_is_inclusive(self):
        controller = RecordingController()
        self.assertTrue(self.watchdog(controller).check(hot(85)))

    def test_busy_controller_records_nothing(self):
        controller = RecordingController(error=FanControlBusy("busy"))
        watchdog = self.watchdog(controller)

        self.assertFalse(watchdog.check(hot(92)))
        self.assertIsNone(watchdog.last_override_at)

        controller.error = None
        self.assertTrue(watchdog.check(hot(92)))
        self.assertEqual(controller.calls, [100, 100])

    def test_mean_aggregate(self):
        controller = RecordingController()
        watchdog = self.watchdog(controller)
        self.safety = SafetyConfig(threshold_celsius=85, aggregate="mean")

        self.assertFalse(watchdog.check(hot(90, 70)))
        self.safety = SafetyConfig(threshold_celsius=85, aggregate="max")
        self.assertTrue(watchdog.check(hot(90, 70)))

    def test_mean_ignores_missing_cpu(self):
        self.assertEqual(SafetyWatchdog.aggregate(hot(90, 0), "mean"), 90)
        self.assertEqual(SafetyWatchdog.aggregate(hot(0, 0), "mean"), 0)

    def test_tick_reads_fresh_snapshot(self):
        controller = RecordingController()
        watchdog = self.watchdog(controller, ScriptedReader(six_fans(30), cpu=93.0))

        self.assertTrue(watchdog.tick())
        self.assertEqual(self.events.recent()[-1].type, "warning")

    def test_monitor_records_history_and_checks(self):
        controller = RecordingController()
        reader = ScriptedReader(six_fans(30), cpu=90.0)
        history = HistoryStore(Path(self.tmp.name), clock=self.clock)
        monitor = TelemetryMonitor(reader, history, self.watchdog(controller, reader))

        snapshot = monitor.poll(CONFIG)
        self.assertEqual(snapshot.temps.cpu1, 90.0)
        self.assertEqual(len(history.query("1h")), 1)
        self.assertEqual(controller.calls, [100])


class PollCadenceTests(unittest.TestCase):
    def test_intervals_follow_session_state(self):
        clock = FakeClock()
        sessions = SessionTracker(session_ttl_s=600, clock=clock)
        cadence = PollCadence(sessions, PollingSettings())

        self.assertEqual(sessions.state(), "none")
        self.assertEqual(cadence.interval(), 1200)

        sessions.heartbeat(active=False)
        self.assertEqual(sessions.state(), "idle")
        self.assertEqual(cadence.interval(), 15)

        sessions.heartbeat(active=True)
        self.assertEqual(cadence.interval(), 5)

        clock.advance(601)
        self.assertEqual(sessions.state(), "none")
        self.assertEqual(cadence.interval(), 1200)


if __name__ == "__main__":
    unittest.main()
