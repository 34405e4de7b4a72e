"""
Fan controller
Drives iLO fan PWM limits through the command shell
"""

import logging
import re
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterable, List, Optional

from ..config import FanControlSettings
from ..core.storage import ConfigStore
from ..ilo_client import ShellError, SSHShell
from ..models import (
    MAX_FAN_PERCENT,
    MAX_PWM,
    MIN_FAN_PERCENT,
    CooldownStatus,
    FanActionResult,
    FanCommand,
    IloConfig,
)
from ..sensors.sensor_reader import SensorReader

logger = logging.getLogger(__name__)

# The iLO shell prints these instead of returning an error code
SET_FAILURE_MARKERS = ("command processing failed", "invalid option")
RELEASE_FAILURE_MARKERS = ("failed", "invalid")

FAN_NUMBER = re.compile(r"(\d+)\s*$")


class FanControlBusy(Exception):
    """Another actuation holds the control lock"""


class InvalidFanSpeed(ValueError):
    pass


class InvalidFanIndex(ValueError):
    pass


class FanController:
    """
    Serialized fan actuation

    Every entry point takes the control lock (bounded wait, then
    FanControlBusy), so the controller only ever sees one command
    sequence at a time. Commands are paced because the iLO corrupts its
    state when they arrive back to back.
    """

    def __init__(
        self,
        reader: SensorReader,
        shell_factory: Callable[[IloConfig], SSHShell],
        settings: Optional[FanControlSettings] = None,
        mode_store: Optional[ConfigStore] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.reader = reader
        self.shell_factory = shell_factory
        self.settings = settings or FanControlSettings()
        self.mode_store = mode_store
        self.sleep = sleep
        self.clock = clock

        self._lock = threading.Lock()
        self.last_attempt_at = 0.0

    # ------------------------------------------------------------------
    # Locking and validation
    # ------------------------------------------------------------------

    @contextmanager
    def _control(self):
        if not self._lock.acquire(timeout=self.settings.lock_timeout_s):
            raise FanControlBusy("Fan control already in progress")
        try:
            self.last_attempt_at = self.clock()
            yield
        finally:
            self._lock.release()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def cooldown(self) -> CooldownStatus:
        """Time left in the write cooldown window since the last attempt"""
        cooldown_ms = self.settings.write_cooldown_ms
        elapsed_ms = (self.clock() - self.last_attempt_at) * 1000
        return CooldownStatus(
            cooldown_ms=cooldown_ms,
            remaining_ms=int(max(0, cooldown_ms - elapsed_ms)),
        )

    @staticmethod
    def _command(percent) -> FanCommand:
        if isinstance(percent, bool) or not isinstance(percent, (int, float)):
            raise InvalidFanSpeed(f"Invalid speed {percent!r}")
        if isinstance(percent, float) and not percent.is_integer():
            raise InvalidFanSpeed(f"Speed must be a whole percent: {percent}")
        if not MIN_FAN_PERCENT <= percent <= MAX_FAN_PERCENT:
            raise InvalidFanSpeed(f"Invalid speed range ({MIN_FAN_PERCENT}-{MAX_FAN_PERCENT}): {percent}")
        return FanCommand(target_percent=int(percent))

    def _check_index(self, index) -> int:
        if isinstance(index, bool) or not isinstance(index, int):
            raise InvalidFanIndex(f"Invalid index {index!r}")
        if not 0 <= index <= self.settings.max_fan_count:
            raise InvalidFanIndex(f"Fan index must be 0-{self.settings.max_fan_count}, got {index}")
        return index

    # ------------------------------------------------------------------
    # Shell helpers
    # ------------------------------------------------------------------

    def _pause(self, factor: float = 1.0):
        self.sleep(self.settings.cmd_sleep_ms / 1000.0 * factor)

    def _settle(self):
        self.sleep(self.settings.settle_ms / 1000.0)

    def _send(self, shell: SSHShell, command: str, markers: Iterable[str]) -> bool:
        """Runs one command, True when the shell did not report a failure"""
        try:
            output = shell.run(command)
        except ShellError as e:
            logger.warning(f"[SSH Control] {command} => error: {e}")
            return False
        message = output.text.lower()
        logger.info(f"[SSH Control] {command} => {output.text or output.returncode}")
        return not any(marker in message for marker in markers)

    def _send_all(self, shell: SSHShell, commands: List[str], pause_factor: float = 1.0) -> int:
        """Sends commands in order with pacing, returns the failure count"""
        failed = 0
        for command in commands:
            if not self._send(shell, command, SET_FAILURE_MARKERS):
                failed += 1
            self._pause(pause_factor)
        return failed

    def _fan_indices(self, fans: Dict[str, float]) -> List[int]:
        """
        Shell indices to address

        Some boards count fans from 0, others from 1, so both 0..n-1 and
        1..n are covered.
        """
        count = len(fans) or self.settings.default_fan_count
        count = max(1, min(self.settings.max_fan_count, count))
        return list(range(0, count + 1))

    def _readback(self, config: IloConfig) -> Dict[str, float]:
        return dict(self.reader.read(config).fans)

    def _off_target(self, fans: Dict[str, float], target: float) -> List[str]:
        limit = self.settings.min_delta_percent
        return [name for name, value in fans.items() if abs(float(value or 0) - target) >= limit]

    def _persist_mode(self, mode: str):
        if self.mode_store is not None:
            self.mode_store.set_fan_mode(mode)

    # ------------------------------------------------------------------
    # Actuation
    # ------------------------------------------------------------------

    def set_speed(self, percent, config: IloConfig) -> FanActionResult:
        """
        Pins every fan to the given duty cycle

        Args:
            percent: Target duty cycle, 5-100
            config: Controller host and credentials

        Returns:
            accepted=False when any command was rejected; otherwise
            accepted=True with the fans that still did not converge in
            uncontrolled_fan_names

        Raises:
            InvalidFanSpeed: before touching the hardware
            FanControlBusy: lock not acquired within the timeout
        """
        command = self._command(percent)
        target = command.target_percent

        with self._control():
            current = dict(self.reader.read(config).fans)
            if current and not self._off_target(current, target):
                logger.info(f"Fans already within {self.settings.min_delta_percent}% of {target}%, skipping write")
                self._persist_mode("manual")
                return FanActionResult(accepted=True, speed=target, readback=current, skipped=True)

            logger.info(f"[SSH Control] Setting fans to {target}% (PWM: {command.pwm_value})")
            shell = self.shell_factory(config)

            commands = []
            for index in self._fan_indices(current):
                commands.extend(command.lines(index))
            failed = self._send_all(shell, commands)

            self._settle()
            readback = self._readback(config)

            if not failed:
                readback = self._retry_stragglers(shell, command, readback, config)

            if failed:
                logger.error(f"✗ {failed} fan command(s) rejected by the controller")
                return FanActionResult(
                    accepted=False,
                    speed=target,
                    readback=readback,
                    error="Controller rejected manual fan control over SSH",
                )

            uncontrolled = self._off_target(readback, target)
            if uncontrolled:
                logger.warning(f"⚠ Fans not following {target}%: {', '.join(uncontrolled)}")
            self._persist_mode("manual")
            return FanActionResult(
                accepted=True,
                speed=target,
                readback=readback,
                uncontrolled_fan_names=uncontrolled,
            )

    def _retry_stragglers(
        self,
        shell: SSHShell,
        command: FanCommand,
        readback: Dict[str, float],
        config: IloConfig,
    ) -> Dict[str, float]:
        """Resends the pair for each unconverged fan once, with longer pauses"""
        stragglers = self._off_target(readback, command.target_percent)
        indices = []
        for name in stragglers:
            match = FAN_NUMBER.search(name)
            if match and int(match.group(1)) >= 1:
                indices.append(int(match.group(1)) - 1)
        if not indices:
            return readback

        logger.info(f"Retrying fan indices {indices} with extended settle time")
        for index in indices:
            # Failures here are not counted, the readback decides
            self._send_all(shell, command.lines(index), pause_factor=2.0)
        self._settle()
        return self._readback(config) or readback

    def set_speed_for_index(self, index, percent, config: IloConfig) -> FanActionResult:
        """Pins a single fan index; no skip check, no straggler retry"""
        index = self._check_index(index)
        command = self._command(percent)

        with self._control():
            logger.info(f"[SSH Control] Fan index {index} -> {command.target_percent}% (PWM: {command.pwm_value})")
            shell = self.shell_factory(config)
            failed = self._send_all(shell, command.lines(index))
            self._settle()
            readback = self._readback(config)

            if failed:
                return FanActionResult(
                    accepted=False,
                    speed=command.target_percent,
                    index=index,
                    readback=readback,
                    error="Controller rejected manual fan control over SSH",
                )
            self._persist_mode("manual")
            return FanActionResult(accepted=True, speed=command.target_percent, index=index, readback=readback)

    def set_auto(self, config: IloConfig) -> FanActionResult:
        """
        Releases manual limits (min 0 / max 255) so the iLO curve takes over

        Index 0 does not exist on every board, so it is sent but not
        counted. The release succeeds if any other index accepted it.
        """
        with self._control():
            shell = self.shell_factory(config)
            indices = self._fan_indices(self.reader.last_good_fans())

            released = 0
            for index in indices:
                accepted = False
                for line in (f"fan p {index} min 0", f"fan p {index} max {MAX_PWM}"):
                    if self._send(shell, line, RELEASE_FAILURE_MARKERS):
                        accepted = True
                    self._pause()
                if accepted and index >= 1:
                    released += 1

            self._settle()
            readback = self._readback(config)

            if released == 0:
                logger.error("✗ Controller did not release automatic fan control")
                return FanActionResult(
                    accepted=False,
                    readback=readback,
                    error="Controller did not release automatic fan control",
                )
            logger.info(f"✓ Automatic fan control restored on {released} fan(s)")
            self._persist_mode("auto")
            return FanActionResult(accepted=True, readback=readback)
