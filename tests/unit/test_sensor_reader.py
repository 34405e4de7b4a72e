import subprocess
import unittest
from unittest import mock

from fakes import CONFIG, DownShell, FakeClock, FakeRedfish, FakeShell, sensor_shell, thermal

from ilo_fan_control.ilo_client import SENSOR_COMMAND, SSHShell
from ilo_fan_control.sensors import RedfishSource, SensorReader, SSHSource
from ilo_fan_control.sensors.redfish_source import parse_fans, parse_temperatures
from ilo_fan_control.sensors.sensor_reader import parse_system_listing, parse_system_resource
from ilo_fan_control.sensors.ssh_source import clean_sensor_name, parse_sensor_table


def make_reader(redfish, shell, clock=None):
    structured = RedfishSource(redfish.factory)
    reader = SensorReader(structured, SSHSource(shell.factory), clock=clock or FakeClock())
    structured.fallback_fans = reader.last_good_fans
    return reader


class ParsingTests(unittest.TestCase):
    def test_sensor_table(self):
        fans, temps = parse_sensor_table(
            "01-Inlet Ambient | 24 | degrees C\n"
            "02-CPU 1 | 41 | degrees C\n"
            "03-CPU 2 | 39 | degrees C\n"
            "10-Fan 1 | 34 | %\n"
            "garbage line\n"
            "11-Fan 2 | N/A | %\n"
        )
        self.assertEqual(fans, {"Fan 1": 34.0})
        self.assertEqual(temps, {"cpu1": 41.0, "cpu2": 39.0, "ambient": 24.0})

    def test_clean_sensor_name(self):
        self.assertEqual(clean_sensor_name("10-Fan 1"), "Fan 1")
        self.assertEqual(clean_sensor_name(" Fan Block 2 "), "Fan Block 2")

    def test_temperature_rules(self):
        temps, other = parse_temperatures([
            {"Name": "01-Inlet Ambient", "ReadingCelsius": 21},
            {"Name": "02-CPU 1", "ReadingCelsius": 48},
            {"Name": "03-CPU 2", "ReadingCelsius": 46},
            {"Name": "05-P1 DIMM 1-6", "ReadingCelsius": 35},
            {"Name": "14-Chipset", "ReadingCelsius": 52},
            {"Name": "30-Sys Exhaust", "ReadingCelsius": 0},
        ])
        self.assertEqual(temps, {"cpu1": 48.0, "cpu2": 46.0, "ambient": 21.0})
        self.assertEqual(other, {"inlet": 21.0, "memory": 35.0, "chipset": 52.0})

    def test_fan_duty_sources(self):
        fans = parse_fans([
            {"Reading": 0, "Oem": {"Hpe": {"DutyCycle": 42}}},
            {"Reading": 37, "ReadingUnits": "Percent"},
            {"Reading": 1000, "ReadingUnits": "RPM"},
            {"Reading": 2000, "ReadingUnits": "RPM"},
        ])
        self.assertEqual(fans, {"Fan 1": 42.0, "Fan 2": 37.0, "Fan 3": 50.0, "Fan 4": 100.0})

    def test_fan_rpm_uses_own_range(self):
        fans = parse_fans([{"Reading": 3000, "ReadingUnits": "RPM", "ReadingRangeMax": 6000}])
        self.assertEqual(fans, {"Fan 1": 50.0})

    def test_system_resource(self):
        info = parse_system_resource({
            "ProcessorSummary": {"Model": " Intel(R) Xeon(R) CPU E5-2680 v2 "},
            "MemorySummary": {"TotalSystemMemoryGiB": 64},
        })
        self.assertEqual(info.cpu_model, "Intel(R) Xeon(R) CPU E5-2680 v2")
        self.assertEqual(info.memory_gib, 64.0)

    def test_system_listing(self):
        info = parse_system_listing("  processor_name: Intel Xeon E5-2650\n  memory installed: 32768 MB\n")
        self.assertEqual(info.cpu_model, "Intel Xeon E5-2650")
        self.assertEqual(info.memory_gib, 32.0)


class SensorReaderTests(unittest.TestCase):
    def test_structured_path(self):
        shell = sensor_shell()
        snapshot = make_reader(FakeRedfish(), shell).read(CONFIG)

        self.assertEqual(snapshot.source, "redfish")
        self.assertEqual(snapshot.fans, {"Fan 1": 30.0, "Fan 2": 30.0})
        self.assertEqual(snapshot.temps.cpu1, 45.0)
        self.assertEqual(snapshot.temps.ambient, 22.0)
        self.assertEqual(snapshot.other["chipset"], 50.0)
        self.assertEqual(shell.commands, [])

    def test_all_zero_fans_merge_shell_fans(self):
        shell = sensor_shell()
        snapshot = make_reader(FakeRedfish(thermal(fans=(0, 0))), shell).read(CONFIG)

        self.assertEqual(snapshot.fans, {"Fan 1": 34.0, "Fan 2": 35.0})
        # Temperatures still come from Redfish
        self.assertEqual(snapshot.temps.cpu1, 45.0)
        self.assertEqual(shell.commands, [SENSOR_COMMAND])

    def test_falls_back_to_shell(self):
        snapshot = make_reader(FakeRedfish(fail=True), sensor_shell()).read(CONFIG)

        self.assertEqual(snapshot.source, "ssh")
        self.assertEqual(snapshot.fans, {"Fan 1": 34.0, "Fan 2": 35.0})
        self.assertEqual(snapshot.temps.cpu1, 41.0)
        self.assertEqual(snapshot.temps.ambient, 24.0)

    def test_empty_thermal_payload_falls_back_to_shell(self):
        snapshot = make_reader(FakeRedfish(payload={}), sensor_shell()).read(CONFIG)
        self.assertEqual(snapshot.source, "ssh")

    def test_serves_cache_when_both_paths_fail(self):
        redfish = FakeRedfish()
        clock = FakeClock()
        reader = make_reader(redfish, DownShell(), clock)
        first = reader.read(CONFIG)

        redfish.fail = True
        clock.advance(30)
        cached = reader.read(CONFIG)

        self.assertEqual(cached.source, "cache")
        self.assertEqual(cached.fans, first.fans)
        self.assertEqual(cached.age_seconds(clock()), 30)

    def test_unreadable_sensor_table_keeps_cache(self):
        redfish = FakeRedfish()
        reader = make_reader(redfish, FakeShell({SENSOR_COMMAND: "status=0\n"}))
        first = reader.read(CONFIG)

        redfish.fail = True
        snapshot = reader.read(CONFIG)

        self.assertEqual(snapshot.source, "cache")
        self.assertEqual(snapshot.temps, first.temps)
        self.assertEqual(reader.last_good.fans, first.fans)

    def test_refused_ssh_login_serves_cache(self):
        redfish = FakeRedfish()
        structured = RedfishSource(redfish.factory)
        reader = SensorReader(structured, SSHSource(SSHShell), clock=FakeClock())
        structured.fallback_fans = reader.last_good_fans
        first = reader.read(CONFIG)

        redfish.fail = True
        refused = subprocess.CompletedProcess([], 5, stdout="", stderr="Permission denied, please try again.")
        with mock.patch("ilo_fan_control.ilo_client.subprocess.run", return_value=refused):
            snapshot = reader.read(CONFIG)

        self.assertEqual(snapshot.source, "cache")
        self.assertEqual(snapshot.fans, first.fans)
        self.assertEqual(snapshot.cpu_temperatures(), [45.0, 43.0])
        self.assertEqual(reader.last_good.source, "redfish")

    def test_empty_snapshot_without_history(self):
        snapshot = make_reader(FakeRedfish(fail=True), DownShell()).read(CONFIG)

        self.assertEqual(snapshot.source, "empty")
        self.assertEqual(snapshot.fans, {})
        self.assertEqual(snapshot.cpu_temperatures(), [0.0, 0.0])

    def test_missing_fans_reuse_last_known(self):
        redfish = FakeRedfish()
        reader = make_reader(redfish, DownShell())
        reader.read(CONFIG)

        redfish.payload = {"Temperatures": thermal()["Temperatures"]}
        snapshot = reader.read(CONFIG)
        self.assertEqual(snapshot.fans, {"Fan 1": 30.0, "Fan 2": 30.0})

    def test_reset_cache(self):
        reader = make_reader(FakeRedfish(), DownShell())
        reader.read(CONFIG)
        reader.reset_cache()
        self.assertIsNone(reader.last_good)
        self.assertEqual(reader.last_good_fans(), {})

    def test_system_info_falls_back_to_shell(self):
        shell = sensor_shell()
        shell.responses["show /system1"] = "processor_name: Intel Xeon\nmemory installed: 16 GB\n"
        info = make_reader(FakeRedfish(fail=True), shell).read_system_info(CONFIG)

        self.assertEqual(info.cpu_model, "Intel Xeon")
        self.assertEqual(info.memory_gib, 16.0)


if __name__ == "__main__":
    unittest.main()
