"""
Temperature safety watchdog and adaptive polling cadence
"""

import logging
import threading
import time
from typing import Callable, Optional

from ..actuators.fan_controller import FanControlBusy, FanController
from ..config import PollingSettings
from ..models import IloConfig, SafetyConfig, SensorSnapshot
from ..sensors.sensor_reader import SensorReader
from .storage import AppEventLog

logger = logging.getLogger(__name__)


class SafetyWatchdog:
    """
    Forces a safe fan speed when the CPUs run hot

    Philosophy:
    1. React as soon as the aggregate CPU temperature reaches the threshold
    2. Then hold off for the cooldown so the actuator's own settle/verify
       cycle is not fought and the shell is not hammered
    """

    def __init__(
        self,
        reader: SensorReader,
        fan_controller: FanController,
        safety_config: Callable[[], SafetyConfig],
        config_provider: Callable[[], IloConfig],
        override_cooldown_s: float = 60.0,
        events: Optional[AppEventLog] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            reader: Telemetry source
            fan_controller: Actuator used for the override
            safety_config: Returns the current SafetyConfig (read every tick)
            config_provider: Returns controller credentials
            override_cooldown_s: Minimum gap between two overrides
            events: Operator event log
            clock: Epoch-seconds source
        """
        self.reader = reader
        self.fan_controller = fan_controller
        self.safety_config = safety_config
        self.config_provider = config_provider
        self.override_cooldown_s = override_cooldown_s
        self.events = events
        self.clock = clock

        self.last_override_at: Optional[float] = None
        self._lock = threading.Lock()

    @staticmethod
    def aggregate(snapshot: SensorSnapshot, mode: str) -> float:
        temps = snapshot.cpu_temperatures()
        if mode == "mean":
            readings = [t for t in temps if t]
            return sum(readings) / len(readings) if readings else 0.0
        return max(temps)

    def tick(self, config: Optional[IloConfig] = None) -> bool:
        """Reads a fresh snapshot and evaluates it"""
        config = config or self.config_provider()
        return self.check(self.reader.read(config), config)

    def check(self, snapshot: SensorSnapshot, config: Optional[IloConfig] = None) -> bool:
        """
        Evaluates one snapshot

        Returns:
            True if an override was issued
        """
        safety = self.safety_config()
        cpu_temp = self.aggregate(snapshot, safety.aggregate)
        if cpu_temp < safety.threshold_celsius:
            return False

        with self._lock:
            now = self.clock()
            if self.last_override_at is not None and now - self.last_override_at < self.override_cooldown_s:
                logger.debug(f"Safety override suppressed, cooldown active ({cpu_temp:.1f}°C)")
                return False

            message = (
                f"Safety: CPU {cpu_temp:.1f}°C >= {safety.threshold_celsius:.1f}°C "
                f"-> {safety.response_speed_percent}%"
            )
            logger.warning(f"🚨 {message}")
            try:
                result = self.fan_controller.set_speed(
                    safety.response_speed_percent, config or self.config_provider()
                )
            except FanControlBusy:
                logger.warning("⚠ Safety override deferred, fan control busy")
                return False
            except Exception as e:
                logger.error(f"✗ Safety override failed: {e}")
                return False

            self.last_override_at = now

        if self.events is not None:
            self.events.append(message, "warning" if result.accepted else "error")
        return True


class SessionTracker:
    """
    Dashboard presence, fed by heartbeats

    none: no heartbeat within the session TTL
    idle: dashboard open, user not interacting
    active: user interacting
    """

    def __init__(self, session_ttl_s: float = 600.0, clock: Callable[[], float] = time.time):
        self.session_ttl_s = session_ttl_s
        self.clock = clock
        self._last_heartbeat: Optional[float] = None
        self._active = False

    def heartbeat(self, active: bool = True):
        self._last_heartbeat = self.clock()
        self._active = active

    def state(self) -> str:
        if self._last_heartbeat is None or self.clock() - self._last_heartbeat > self.session_ttl_s:
            return "none"
        return "active" if self._active else "idle"


class PollCadence:
    """Telemetry/watchdog interval for the current session state"""

    def __init__(self, sessions: SessionTracker, settings: Optional[PollingSettings] = None):
        self.sessions = sessions
        self.settings = settings or PollingSettings()

    def interval(self) -> float:
        state = self.sessions.state()
        if state == "active":
            return self.settings.active_interval_s
        if state == "idle":
            return self.settings.idle_interval_s
        return self.settings.no_session_interval_s


class TelemetryMonitor:
    """One background poll: read, record history, let the watchdog look"""

    def __init__(self, reader: SensorReader, history, watchdog: SafetyWatchdog):
        self.reader = reader
        self.history = history
        self.watchdog = watchdog

    def poll(self, config: IloConfig) -> SensorSnapshot:
        snapshot = self.reader.read(config)
        if snapshot.source != "empty":
            self.history.append(snapshot)
        self.watchdog.check(snapshot, config)
        return snapshot
