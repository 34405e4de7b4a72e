"""
Configuration for the fan-control server

Defaults live in the pydantic models below, an optional YAML file overrides
them and environment variables (also read from .env) win over both.
"""

import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from .models import IloConfig, SafetyConfig

logger = logging.getLogger(__name__)


class IloSettings(BaseModel):
    host: str = ""
    username: str = ""
    password: str = ""
    redfish_timeout: float = 3.0
    ssh_timeout: float = 15.0
    # Older iLO firmware only speaks sha1 kex and cbc ciphers
    ssh_legacy_algorithms: bool = True


class FanControlSettings(BaseModel):
    write_cooldown_ms: int = 60000
    min_delta_percent: float = 10.0
    cmd_sleep_ms: int = 500
    settle_ms: int = 800
    lock_timeout_s: float = 5.0
    default_fan_count: int = 6
    max_fan_count: int = 8
    startup_fan_percent: Optional[int] = Field(15, ge=5, le=100)
    startup_delay_s: float = 5.0


class HistorySettings(BaseModel):
    max_live_bytes: int = 10 * 1024 * 1024
    retention_days: int = 30


class PollingSettings(BaseModel):
    no_session_interval_s: float = 1200.0
    idle_interval_s: float = 15.0
    active_interval_s: float = 5.0
    session_ttl_s: float = 600.0


class SafetySettings(BaseModel):
    defaults: SafetyConfig = Field(default_factory=SafetyConfig)
    override_cooldown_s: float = 60.0


class ScheduleSettings(BaseModel):
    tick_s: float = 1.0
    retry_tick_s: float = 10.0
    retry_backoff_s: float = 120.0
    # 0 keeps retrying forever
    max_retry_attempts: int = 30


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    data_dir: str = "data"
    background_tasks: bool = True


class Settings(BaseModel):
    ilo: IloSettings = Field(default_factory=IloSettings)
    fan_control: FanControlSettings = Field(default_factory=FanControlSettings)
    history: HistorySettings = Field(default_factory=HistorySettings)
    polling: PollingSettings = Field(default_factory=PollingSettings)
    safety: SafetySettings = Field(default_factory=SafetySettings)
    schedule: ScheduleSettings = Field(default_factory=ScheduleSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    @property
    def data_path(self) -> Path:
        return Path(self.server.data_dir)

    def env_ilo_config(self) -> IloConfig:
        return IloConfig(
            host=self.ilo.host.strip(),
            username=self.ilo.username.strip(),
            password=self.ilo.password.strip(),
        )


def _optional_percent(value: str) -> Optional[int]:
    value = value.strip().lower()
    if value in ("", "none", "off", "0"):
        return None
    return int(value)


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# (env names, section, key, cast); the first name that is set wins
ENV_OVERRIDES: Tuple[Tuple[Tuple[str, ...], str, str, Callable[[str], Any]], ...] = (
    (("ILO_HOST",), "ilo", "host", str.strip),
    (("ILO_USERNAME", "ILO_USER"), "ilo", "username", str.strip),
    (("ILO_PASSWORD", "ILO_PASS"), "ilo", "password", str.strip),
    (("ILO_SSH_LEGACY",), "ilo", "ssh_legacy_algorithms", _flag),
    (("FAN_WRITE_COOLDOWN_MS",), "fan_control", "write_cooldown_ms", int),
    (("FAN_MIN_DELTA_PERCENT",), "fan_control", "min_delta_percent", float),
    (("FAN_CMD_SLEEP_MS",), "fan_control", "cmd_sleep_ms", int),
    (("STARTUP_FAN_PERCENT",), "fan_control", "startup_fan_percent", _optional_percent),
    (("MAX_RETRY_ATTEMPTS",), "schedule", "max_retry_attempts", int),
    (("DATA_DIR",), "server", "data_dir", str),
    (("SERVER_HOST",), "server", "host", str),
    (("SERVER_PORT",), "server", "port", int),
    (("LOG_LEVEL",), "server", "log_level", str),
)


def _read_yaml(path: Path) -> Dict[str, Any]:
    """Loads the YAML settings file, an absent file means defaults"""
    if not path.exists():
        return {}
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        logger.error(f"✗ Failed to parse YAML settings {path}: {e}")
        raise
    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a mapping")
    logger.info(f"✓ Settings loaded from {path}")
    return data


def load_settings(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Builds the effective settings

    Args:
        path: YAML settings file (default: $SETTINGS_FILE or config.yaml)
        env: Environment mapping, os.environ after load_dotenv() by default

    Returns:
        Validated Settings; values that fail validation fall back to the defaults
    """
    if env is None:
        load_dotenv()
        env = os.environ

    settings_path = Path(path or env.get("SETTINGS_FILE", "config.yaml"))
    data = _read_yaml(settings_path)

    for names, section, key, cast in ENV_OVERRIDES:
        for name in names:
            raw = env.get(name)
            if raw is None:
                continue
            try:
                value = cast(raw)
                data[section] = data.get(section) or {}
                data[section][key] = value
            except ValueError:
                logger.warning(f"⚠ Ignoring invalid {name}={raw!r}")
            break

    try:
        return Settings.model_validate(data)
    except ValidationError as e:
        for error in e.errors():
            location = ".".join(str(part) for part in error["loc"])
            logger.warning(f"⚠ Invalid setting {location}: {error['msg']}, using the default")
            _drop(data, error["loc"])
    return Settings.model_validate(data)


def _drop(data: Dict[str, Any], location: Tuple[Any, ...]):
    """Removes the value at a validation error location so its default applies"""
    node: Any = data
    for part in location[:-1]:
        if not isinstance(node, dict) or not isinstance(node.get(part), dict):
            return
        node = node[part]
    if isinstance(node, dict):
        node.pop(location[-1], None)


def resolve_ilo_config(
    headers: Mapping[str, str],
    persisted: Optional[IloConfig],
    settings: Settings,
) -> IloConfig:
    """
    Picks the credentials for one request

    Per-request headers (all three present) beat the persisted record,
    which beats the environment.
    """
    from_headers = IloConfig(
        host=str(headers.get("x-ilo-host", "")).strip(),
        username=str(headers.get("x-ilo-username", "")).strip(),
        password=str(headers.get("x-ilo-password", "")).strip(),
    )
    if from_headers.is_complete():
        return from_headers
    if persisted is not None and persisted.is_complete():
        return persisted
    return settings.env_ilo_config()
