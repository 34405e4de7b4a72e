"""
Data models for the iLO fan-control server
Pydantic models for validation and JSON serialization
"""

import math
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# Auxiliary temperature zones reported next to cpu1/cpu2/ambient
OTHER_ZONES = (
    "chipset",
    "battery_zone",
    "inlet",
    "memory",
    "vr_p2",
    "vr_p1",
    "ps2",
    "system_board",
    "sys_exhaust",
    "hd_controller",
)

MIN_FAN_PERCENT = 5
MAX_FAN_PERCENT = 100
MAX_PWM = 255


class IloConfig(BaseModel):
    """Connection credentials for the management controller"""
    host: str
    username: str
    password: str

    def is_complete(self) -> bool:
        return bool(self.host.strip() and self.username.strip() and self.password.strip())


# ============================================================================
# TELEMETRY
# ============================================================================

class Temperatures(BaseModel):
    """Main temperature readings in °C (0 = no reading)"""
    model_config = ConfigDict(frozen=True)

    cpu1: float = 0.0
    cpu2: float = 0.0
    ambient: float = 0.0


class SensorSnapshot(BaseModel):
    """
    One unified reading of fans and temperatures

    Never mutated after creation. `source` tells where it came from:
    redfish, ssh, cache (last good reading served after a failure) or
    empty (nothing was ever read).
    """
    model_config = ConfigDict(frozen=True)

    fans: Dict[str, float] = Field(default_factory=dict, description="Fan name -> duty percent (0-100)")
    temps: Temperatures = Field(default_factory=Temperatures)
    other: Dict[str, float] = Field(default_factory=dict, description="Auxiliary zones in °C")
    source: str = "empty"
    captured_at: float = Field(default_factory=time.time, description="Epoch seconds of the reading")

    def age_seconds(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return max(0.0, now - self.captured_at)

    def cpu_temperatures(self) -> List[float]:
        return [self.temps.cpu1, self.temps.cpu2]


class HistoryRecord(BaseModel):
    """Flattened, timestamped copy of a snapshot's numeric fields"""
    model_config = ConfigDict(frozen=True)

    ts: str
    cpu1: float = 0.0
    cpu2: float = 0.0
    ambient: float = 0.0
    chipset: float = 0.0
    battery_zone: float = 0.0
    inlet: float = 0.0
    memory: float = 0.0
    vr_p2: float = 0.0
    vr_p1: float = 0.0
    ps2: float = 0.0
    system_board: float = 0.0
    sys_exhaust: float = 0.0
    hd_controller: float = 0.0
    fans: Dict[str, float] = Field(default_factory=dict)

    @classmethod
    def from_snapshot(cls, snapshot: SensorSnapshot, ts: Optional[datetime] = None) -> "HistoryRecord":
        ts = ts or datetime.now(timezone.utc)
        zones = {zone: float(snapshot.other.get(zone, 0.0) or 0.0) for zone in OTHER_ZONES}
        return cls(
            ts=ts.isoformat(),
            cpu1=float(snapshot.temps.cpu1 or 0.0),
            cpu2=float(snapshot.temps.cpu2 or 0.0),
            ambient=float(snapshot.temps.ambient or 0.0),
            fans={name: float(value) for name, value in snapshot.fans.items()},
            **zones,
        )

    def timestamp(self) -> Optional[float]:
        """Epoch seconds of `ts`, None when it cannot be parsed"""
        try:
            parsed = datetime.fromisoformat(self.ts.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()


class HistoryFileSize(BaseModel):
    name: str
    bytes: int


class HistorySize(BaseModel):
    total_bytes: int
    files: List[HistoryFileSize]


class SystemInfo(BaseModel):
    cpu_model: str = ""
    memory_gib: float = 0.0


# ============================================================================
# FAN CONTROL
# ============================================================================

class FanCommand(BaseModel):
    """
    Fan speed command for the iLO shell

    The shell works on the raw 0-255 PWM scale, the API on percent.
    """
    model_config = ConfigDict(frozen=True)

    target_percent: int = Field(..., ge=MIN_FAN_PERCENT, le=MAX_FAN_PERCENT)

    @property
    def pwm_value(self) -> int:
        return percent_to_pwm(self.target_percent)

    def lines(self, index: int) -> List[str]:
        """min/max command pair pinning one fan index to the target"""
        return [f"fan p {index} min {self.pwm_value}", f"fan p {index} max {self.pwm_value}"]


def percent_to_pwm(percent: float) -> int:
    return int(math.ceil(percent / 100 * MAX_PWM))


class FanActionResult(BaseModel):
    """Outcome of one actuation call"""
    accepted: bool
    speed: Optional[int] = None
    index: Optional[int] = None
    readback: Dict[str, float] = Field(default_factory=dict)
    uncontrolled_fan_names: List[str] = Field(default_factory=list)
    skipped: bool = False
    error: Optional[str] = None


class CooldownStatus(BaseModel):
    cooldown_ms: int
    remaining_ms: int


class FanSpeedRequest(BaseModel):
    """Manual speed for all fans or one fan index"""
    speed: int = Field(..., ge=MIN_FAN_PERCENT, le=MAX_FAN_PERCENT, description="Duty cycle (%)")

    model_config = ConfigDict(json_schema_extra={"example": {"speed": 40}})


class FanModeRequest(BaseModel):
    mode: str


# ============================================================================
# SCHEDULES, RETRIES, SAFETY
# ============================================================================

class ScheduleItem(BaseModel):
    """Time-of-day fan action, edited by the dashboard"""
    id: str
    time: str = Field(..., pattern=r"^([01]\d|2[0-3]):[0-5]\d$", description="Local time HH:MM")
    speed: int = Field(50, ge=MIN_FAN_PERCENT, le=MAX_FAN_PERCENT)
    mode: str = Field("manual", pattern="^(auto|manual)$")
    active: bool = True
    description: str = ""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "night",
                "time": "23:00",
                "speed": 20,
                "mode": "manual",
                "active": True,
                "description": "Quiet at night"
            }
        }
    )

    def hour_minute(self) -> tuple:
        hh, mm = self.time.split(":")
        return int(hh), int(mm)


class RetryQueueEntry(BaseModel):
    """Failed scheduled action waiting for another attempt"""
    id: str
    description: str = ""
    mode: str = Field("manual", pattern="^(auto|manual)$")
    speed: int = Field(50, ge=MIN_FAN_PERCENT, le=MAX_FAN_PERCENT)
    next_attempt_at: float
    attempts: int = 0


class SafetyConfig(BaseModel):
    """Temperature watchdog settings"""
    threshold_celsius: float = Field(85.0, gt=0)
    response_speed_percent: int = Field(100, ge=MIN_FAN_PERCENT, le=MAX_FAN_PERCENT)
    aggregate: str = Field("max", pattern="^(max|mean)$")


class SessionHeartbeat(BaseModel):
    """Sent periodically by an open dashboard"""
    active: bool = True


class AppLogEntry(BaseModel):
    ts: str = ""
    type: str = "info"
    message: str = ""


class AppLogRequest(BaseModel):
    message: str = ""
    type: str = "info"
