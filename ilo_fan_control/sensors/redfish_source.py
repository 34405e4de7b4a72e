"""
Structured telemetry path: Redfish Thermal resource
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..ilo_client import RedfishClient, RedfishError
from ..models import IloConfig, SensorSnapshot
from .base_source import BaseSource

logger = logging.getLogger(__name__)

# Used when neither the vendor nor the readings tell us the fan ceiling
FALLBACK_MAX_RPM = 2000.0

# Ordered name-substring rules, first match wins.
# Targets are "temps.<key>" for the main readings and plain zone names otherwise.
TEMPERATURE_RULES: Tuple[Tuple[Tuple[str, ...], Tuple[str, ...]], ...] = (
    (("cpu 1", "cpu1", "package 1"), ("temps.cpu1",)),
    (("cpu 2", "cpu2", "package 2"), ("temps.cpu2",)),
    (("inlet",), ("temps.ambient", "inlet")),
    (("ambient",), ("temps.ambient",)),
    (("chipset",), ("chipset",)),
    (("battery",), ("battery_zone",)),
    (("entrada",), ("inlet",)),
    (("memory", "dimm"), ("memory",)),
    (("vr p2", "vrm 2", "vrm p2", "cpu vr 2"), ("vr_p2",)),
    (("vr p1", "vrm 1", "vrm p1", "cpu vr 1"), ("vr_p1",)),
    (("power supply 2", "psu 2", "p/s 2", "ps 2"), ("ps2",)),
    (("system board", "motherboard"), ("system_board",)),
    (("exhaust",), ("sys_exhaust",)),
    (("hd controller", "hdd controller"), ("hd_controller",)),
)

DUTY_FIELDS = ("DutyCycle", "DutyPercent", "Value", "Percent")
MAX_RPM_FIELDS = ("MaximumRPM", "MaxRPM", "ReadingRangeMax")


def _number(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _vendor_oem(fan: Dict[str, Any]) -> Dict[str, Any]:
    oem = fan.get("Oem") or fan.get("OEM") or {}
    vendor = oem.get("Hpe") or oem.get("HPE") or {}
    return vendor if isinstance(vendor, dict) else {}


def parse_temperatures(entries: List[Dict[str, Any]]) -> Tuple[Dict[str, float], Dict[str, float]]:
    """
    Classifies Redfish temperature entries by name

    Returns:
        (temps, other) where temps holds cpu1/cpu2/ambient
    """
    temps = {"cpu1": 0.0, "cpu2": 0.0, "ambient": 0.0}
    other: Dict[str, float] = {}

    for entry in entries:
        if not isinstance(entry, dict):
            continue
        name = str(entry.get("Name") or "").lower()
        value = _number(entry.get("ReadingCelsius"))
        if not value:
            continue
        for needles, targets in TEMPERATURE_RULES:
            if any(needle in name for needle in needles):
                for target in targets:
                    if target.startswith("temps."):
                        temps[target[len("temps."):]] = value
                    else:
                        other[target] = value
                break

    return temps, other


def parse_fans(entries: List[Dict[str, Any]]) -> Dict[str, float]:
    """
    Derives a duty percent for every Redfish fan entry

    Preference order: vendor duty field, a reading already in percent,
    then RPM scaled by the best available maximum-RPM estimate.
    """
    fans = []
    for position, entry in enumerate(entries):
        if not isinstance(entry, dict):
            continue
        fans.append({
            "name": f"Fan {position + 1}",
            "units": str(entry.get("ReadingUnits") or "").lower(),
            "reading": _number(entry.get("CurrentReading", entry.get("Reading"))),
            "vendor": _vendor_oem(entry),
            "range_max": _number(entry.get("ReadingRangeMax")),
        })

    vendor_maxes = [
        max(_number(fan["vendor"].get(field)) for field in MAX_RPM_FIELDS)
        for fan in fans
    ]
    global_max_rpm = max(vendor_maxes + [0.0])
    if not global_max_rpm:
        rpm_readings = [fan["reading"] for fan in fans if "rpm" in fan["units"]]
        global_max_rpm = max(rpm_readings + [0.0]) or FALLBACK_MAX_RPM

    result: Dict[str, float] = {}
    for fan in fans:
        vendor = fan["vendor"]
        reading = fan["reading"]
        percent = next((_number(vendor[f]) for f in DUTY_FIELDS if vendor.get(f) is not None), 0.0)
        if not percent and "percent" in fan["units"]:
            percent = reading
        if not percent and 0 < reading <= 100:
            percent = reading
        if not percent and ("rpm" in fan["units"] or reading > 100):
            own_max = max(_number(vendor.get(f)) for f in MAX_RPM_FIELDS) or fan["range_max"]
            max_rpm = own_max or global_max_rpm
            percent = round(reading / max_rpm * 100)
        result[fan["name"]] = max(0.0, min(100.0, float(percent)))

    return result


class RedfishSource(BaseSource):
    """Reads chassis Thermal over Redfish"""

    name = "redfish"

    def __init__(
        self,
        client_factory: Callable[[IloConfig], RedfishClient],
        fallback_fans: Optional[Callable[[], Dict[str, float]]] = None,
    ):
        """
        Args:
            client_factory: Builds a client for given credentials
            fallback_fans: Supplies the last known fan map when the
                controller lists no fans at all
        """
        self.client_factory = client_factory
        self.fallback_fans = fallback_fans

    def read(self, config: IloConfig) -> SensorSnapshot:
        data = self.client_factory(config).get_thermal()

        temperatures = data.get("Temperatures")
        fan_entries = data.get("Fans")
        if not isinstance(temperatures, list):
            temperatures = []
        if not isinstance(fan_entries, list):
            fan_entries = []
        if not temperatures and not fan_entries:
            raise RedfishError("Thermal resource has no Temperatures or Fans")

        temps, other = parse_temperatures(temperatures)
        fans = parse_fans(fan_entries)
        logger.debug(f"[Redfish] {len(fans)} fans, other zones: {other}")

        if not fans and self.fallback_fans is not None:
            fans = dict(self.fallback_fans())

        return self._snapshot(fans, temps, other)

    def read_system(self, config: IloConfig) -> Dict[str, Any]:
        return self.client_factory(config).get_system()
