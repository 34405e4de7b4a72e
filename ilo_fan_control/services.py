"""
Wiring of the long-lived services shared by the API and background loops
"""

import logging
import time
from typing import Callable, Optional

from .actuators.fan_controller import FanController
from .config import Settings
from .core.history_store import HistoryStore
from .core.safety_watchdog import PollCadence, SafetyWatchdog, SessionTracker, TelemetryMonitor
from .core.scheduler import RetryQueue, ScheduleExecutor, ScheduleStore
from .core.storage import AppEventLog, ConfigStore, JsonDocument, SafetyStore
from .ilo_client import RedfishClient, SSHShell, redfish_client_factory, ssh_shell_factory
from .models import IloConfig
from .sensors import RedfishSource, SensorReader, SSHSource

logger = logging.getLogger(__name__)


class AppServices:
    """Everything one server instance needs, built from Settings"""

    def __init__(
        self,
        settings: Settings,
        shell_factory: Optional[Callable[[IloConfig], SSHShell]] = None,
        client_factory: Optional[Callable[[IloConfig], RedfishClient]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        data = settings.data_path

        shell_factory = shell_factory or ssh_shell_factory(
            timeout=settings.ilo.ssh_timeout,
            legacy_algorithms=settings.ilo.ssh_legacy_algorithms,
        )
        client_factory = client_factory or redfish_client_factory(timeout=settings.ilo.redfish_timeout)

        self.config_store = ConfigStore(JsonDocument(data / "config.json"))
        self.safety_store = SafetyStore(JsonDocument(data / "safety.json"), settings.safety.defaults)
        self.schedule_store = ScheduleStore(JsonDocument(data / "schedules.json"))
        self.events = AppEventLog(data / "app.log")

        structured = RedfishSource(client_factory)
        self.reader = SensorReader(structured, SSHSource(shell_factory), clock=clock)
        structured.fallback_fans = self.reader.last_good_fans

        self.fan_controller = FanController(
            self.reader,
            shell_factory,
            settings=settings.fan_control,
            mode_store=self.config_store,
            sleep=sleep,
            clock=clock,
        )
        self.history = HistoryStore(
            data,
            max_live_bytes=settings.history.max_live_bytes,
            retention_days=settings.history.retention_days,
            clock=clock,
        )
        self.watchdog = SafetyWatchdog(
            self.reader,
            self.fan_controller,
            safety_config=self.safety_store.get,
            config_provider=self.ilo_config,
            override_cooldown_s=settings.safety.override_cooldown_s,
            events=self.events,
            clock=clock,
        )
        self.monitor = TelemetryMonitor(self.reader, self.history, self.watchdog)
        self.sessions = SessionTracker(settings.polling.session_ttl_s, clock=clock)
        self.cadence = PollCadence(self.sessions, settings.polling)

        self.retry_queue = RetryQueue(
            JsonDocument(data / "retry_queue.json"),
            backoff_s=settings.schedule.retry_backoff_s,
            max_attempts=settings.schedule.max_retry_attempts,
            clock=clock,
        )
        self.scheduler = ScheduleExecutor(self.fan_controller, self.schedule_store, self.retry_queue, self.events)

    def ilo_config(self) -> IloConfig:
        """Persisted credentials, then the environment"""
        return self.config_store.get_credentials() or self.settings.env_ilo_config()
