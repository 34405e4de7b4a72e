"""
Unified sensor reader

Merges the Redfish and SSH paths and keeps the last good snapshot so a
caller always gets an answer, even with the controller offline.
"""

import logging
import re
import threading
import time
from typing import Any, Callable, Dict, Optional

from ..ilo_client import SYSTEM_COMMAND, RedfishError, ShellError
from ..models import IloConfig, SensorSnapshot, SystemInfo
from .redfish_source import RedfishSource
from .ssh_source import SSHSource

logger = logging.getLogger(__name__)

MEMORY_GB = re.compile(r"([0-9]+\.?[0-9]*)\s*gb", re.IGNORECASE)
MEMORY_MB = re.compile(r"([0-9]+)\s*mb", re.IGNORECASE)


class SensorReader:
    """
    Dual-protocol reader with a last-good cache

    read() never raises: Redfish first, SSH when Redfish fails or reports
    only zero fan duties, then the cached snapshot, then a zeroed one.
    """

    def __init__(
        self,
        structured: RedfishSource,
        line_oriented: SSHSource,
        clock: Callable[[], float] = time.time,
    ):
        self.structured = structured
        self.line_oriented = line_oriented
        self.clock = clock
        self._cache_lock = threading.Lock()
        self._last_good: Optional[SensorSnapshot] = None

    @property
    def last_good(self) -> Optional[SensorSnapshot]:
        with self._cache_lock:
            return self._last_good

    def last_good_fans(self) -> Dict[str, float]:
        snapshot = self.last_good
        return dict(snapshot.fans) if snapshot else {}

    def reset_cache(self):
        with self._cache_lock:
            self._last_good = None

    def _remember(self, snapshot: SensorSnapshot) -> SensorSnapshot:
        snapshot = snapshot.model_copy(update={"captured_at": self.clock()})
        with self._cache_lock:
            self._last_good = snapshot
        return snapshot

    def read(self, config: IloConfig) -> SensorSnapshot:
        """
        Reads a unified snapshot

        Args:
            config: Controller host and credentials

        Returns:
            Fresh snapshot, the cached one (source="cache") or a zeroed
            one (source="empty")
        """
        try:
            snapshot = self.structured.read(config)
        except Exception as e:
            logger.warning(f"⚠ Redfish read failed ({e}), falling back to SSH")
            return self._read_line_oriented_only(config)

        fan_values = list(snapshot.fans.values())
        if fan_values and all(float(v) == 0 for v in fan_values):
            # All-zero duties mean Redfish handed us a placeholder
            try:
                fallback = self.line_oriented.read(config)
                if fallback.fans:
                    snapshot = snapshot.model_copy(update={"fans": dict(fallback.fans)})
            except Exception as e:
                logger.warning(f"⚠ SSH fan fallback failed: {e}")

        return self._remember(snapshot)

    def _read_line_oriented_only(self, config: IloConfig) -> SensorSnapshot:
        try:
            return self._remember(self.line_oriented.read(config))
        except Exception as e:
            logger.error(f"✗ Both telemetry paths failed: {e}")

        cached = self.last_good
        if cached is not None:
            return cached.model_copy(update={"source": "cache"})
        return SensorSnapshot(source="empty", captured_at=self.clock())

    def read_structured(self, config: IloConfig) -> SensorSnapshot:
        """Redfish path only, raises RedfishError on failure"""
        return self.structured.read(config)

    def read_system_info(self, config: IloConfig) -> SystemInfo:
        """CPU model and installed memory, Redfish first then the shell"""
        try:
            return parse_system_resource(self.structured.read_system(config))
        except (RedfishError, AttributeError, TypeError, ValueError) as e:
            logger.warning(f"⚠ Redfish system info failed ({e}), trying SSH")

        try:
            output = self.line_oriented.shell_factory(config).run(SYSTEM_COMMAND)
        except ShellError as e:
            logger.error(f"✗ System info unavailable: {e}")
            return SystemInfo()
        return parse_system_listing(output.stdout)


def parse_system_resource(data: Dict[str, Any]) -> SystemInfo:
    cpu_model = (data.get("ProcessorSummary") or {}).get("Model") or ""
    processors = data.get("Processors")
    if not cpu_model and isinstance(processors, list) and processors:
        cpu_model = processors[0].get("Model") or processors[0].get("ProcessorType") or ""

    memory_gib = float((data.get("MemorySummary") or {}).get("TotalSystemMemoryGiB") or 0)
    memory = data.get("Memory")
    if not memory_gib and isinstance(memory, list):
        memory_gib = sum(float(m.get("CapacityMiB") or 0) for m in memory) / 1024
    if not memory_gib and float(data.get("MemoryMB") or 0) > 0:
        memory_gib = float(data["MemoryMB"]) / 1024

    return SystemInfo(cpu_model=str(cpu_model).strip(), memory_gib=memory_gib)


def parse_system_listing(output: str) -> SystemInfo:
    """Scrapes `show /system1` for processor and memory lines"""
    cpu_model = ""
    memory_gib = 0.0
    for line in output.splitlines():
        lowered = line.lower()
        if not cpu_model and ("processor" in lowered or "cpu" in lowered) and ":" in line:
            cpu_model = line.split(":", 1)[1].strip()
        if not memory_gib and ("memory installed" in lowered or "installed memory" in lowered):
            gb = MEMORY_GB.search(line)
            mb = MEMORY_MB.search(line)
            if gb:
                memory_gib = float(gb.group(1))
            elif mb:
                memory_gib = float(mb.group(1)) / 1024
    return SystemInfo(cpu_model=cpu_model, memory_gib=memory_gib)
