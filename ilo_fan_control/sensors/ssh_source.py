"""
Line-oriented telemetry path: `show /system1/sensor` on the iLO shell

Expected table rows:
    01-Inlet Ambient | 24     | degrees C | ...
    02-CPU 1         | 40     | degrees C | ...
    10-Fan 1         | 34     | %         | ...
"""

import logging
import re
from typing import Callable, Dict, Tuple

from ..ilo_client import SENSOR_COMMAND, ShellError, SSHShell
from ..models import IloConfig, SensorSnapshot
from .base_source import BaseSource

logger = logging.getLogger(__name__)

ORDINAL_PREFIX = re.compile(r"^\d+-")


def clean_sensor_name(raw_name: str) -> str:
    """'10-Fan 1' -> 'Fan 1'"""
    return ORDINAL_PREFIX.sub("", raw_name.strip(), count=1).strip()


def parse_sensor_table(output: str) -> Tuple[Dict[str, float], Dict[str, float]]:
    """
    Parses the pipe-delimited sensor table

    Returns:
        (fans, temps); rows that are not fans, CPUs or ambient are ignored
    """
    fans: Dict[str, float] = {}
    temps = {"cpu1": 0.0, "cpu2": 0.0, "ambient": 0.0}

    for line in output.splitlines():
        if "|" not in line:
            continue
        parts = [part.strip() for part in line.split("|")]
        if len(parts) < 2:
            continue
        try:
            value = float(parts[1])
        except ValueError:
            continue

        raw_name = parts[0]
        name = raw_name.lower()
        if "fan" in name:
            fans[clean_sensor_name(raw_name)] = value
        elif "cpu" in name:
            if "cpu 1" in name or "cpu1" in name:
                temps["cpu1"] = value
            if "cpu 2" in name or "cpu2" in name:
                temps["cpu2"] = value
        elif "ambient" in name or "inlet" in name:
            temps["ambient"] = value

    return fans, temps


class SSHSource(BaseSource):
    """Reads the sensor inventory through the command shell"""

    name = "ssh"

    def __init__(self, shell_factory: Callable[[IloConfig], SSHShell]):
        self.shell_factory = shell_factory

    def read(self, config: IloConfig) -> SensorSnapshot:
        output = self.shell_factory(config).run(SENSOR_COMMAND)
        fans, temps = parse_sensor_table(output.stdout)
        if not fans and not any(temps.values()):
            raise ShellError(f"No sensor rows in `{SENSOR_COMMAND}` output: {output.text[:120]!r}")
        logger.info(f"[SSH] Read success: {len(fans)} fans, CPU1: {temps['cpu1']}°C")
        return self._snapshot(fans, temps, {})
