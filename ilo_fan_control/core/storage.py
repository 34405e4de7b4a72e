"""
Small JSON documents on disk

Config, schedules, safety settings and the retry queue are each one JSON
document. A failed write must never stop monitoring, so errors are logged
and reported through the return value.
"""

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional

from ..models import AppLogEntry, IloConfig, SafetyConfig

logger = logging.getLogger(__name__)


class JsonDocument:
    """One JSON file, replaced atomically on every save"""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self, default: Any) -> Any:
        if not self.path.exists():
            return default
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"✗ Failed to read {self.path}: {e}")
            return default

    def _write(self, obj: Any) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(obj, f, indent=2, ensure_ascii=False)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.remove(tmp_name)
                raise
            return True
        except OSError as e:
            logger.error(f"✗ Failed to write {self.path}: {e}")
            return False

    def load(self, default: Any = None) -> Any:
        with self._lock:
            return self._read(default)

    def save(self, obj: Any) -> bool:
        with self._lock:
            return self._write(obj)

    def update(self, mutate: Callable[[Any], Any], default: Any = None) -> bool:
        """
        Read-modify-write under the document lock

        Args:
            mutate: Receives the current content, returns the new content
            default: Content passed to mutate when the file is absent or unreadable
        """
        with self._lock:
            return self._write(mutate(self._read(default)))

    def delete(self) -> bool:
        with self._lock:
            try:
                self.path.unlink(missing_ok=True)
                return True
            except OSError as e:
                logger.error(f"✗ Failed to delete {self.path}: {e}")
                return False


class ConfigStore:
    """
    Persisted controller credentials plus the advisory fan mode

    Both live in config.json. The fan mode is informational for the
    dashboard, nothing in the control path reads it.
    """

    def __init__(self, document: JsonDocument):
        self.document = document

    def _raw(self) -> dict:
        data = self.document.load({})
        return data if isinstance(data, dict) else {}

    def get_credentials(self) -> Optional[IloConfig]:
        data = self._raw()
        config = IloConfig(
            host=str(data.get("host") or "").strip(),
            username=str(data.get("username") or "").strip(),
            password=str(data.get("password") or "").strip(),
        )
        return config if config.is_complete() else None

    def _merge(self, **values) -> bool:
        def apply(data):
            data = data if isinstance(data, dict) else {}
            data.update(values)
            return data
        return self.document.update(apply, {})

    def save_credentials(self, config: IloConfig) -> bool:
        return self._merge(host=config.host, username=config.username, password=config.password)

    def get_fan_mode(self) -> str:
        mode = str(self._raw().get("fan_mode") or "").lower()
        return mode if mode in ("auto", "manual") else "auto"

    def set_fan_mode(self, mode: str) -> bool:
        return self._merge(fan_mode="manual" if str(mode).lower() == "manual" else "auto")


class AppEventLog:
    """Operator-facing event log (JSON lines), shown by the dashboard"""

    def __init__(self, path: Path, tail: int = 100):
        self.path = Path(path)
        self.tail = tail
        self._lock = threading.Lock()

    def append(self, message: str, level: str = "info") -> bool:
        entry = AppLogEntry(ts=datetime.now(timezone.utc).isoformat(), type=level, message=message)
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, 'a', encoding='utf-8') as f:
                    f.write(entry.model_dump_json() + "\n")
                return True
            except OSError as e:
                logger.error(f"✗ Failed to append app log: {e}")
                return False

    def recent(self) -> List[AppLogEntry]:
        with self._lock:
            if not self.path.exists():
                return []
            try:
                lines = [line for line in self.path.read_text(encoding='utf-8').splitlines() if line]
            except OSError as e:
                logger.error(f"✗ Failed to read app log: {e}")
                return []

        entries = []
        for line in lines[-self.tail:]:
            try:
                entries.append(AppLogEntry.model_validate_json(line))
            except ValueError:
                entries.append(AppLogEntry(message=line))
        return entries


class SafetyStore:
    """Watchdog settings in safety.json, falling back to the configured defaults"""

    def __init__(self, document: JsonDocument, defaults: Optional[SafetyConfig] = None):
        self.document = document
        self.defaults = defaults or SafetyConfig()

    def get(self) -> SafetyConfig:
        data = self.document.load(None)
        if not isinstance(data, dict):
            return self.defaults
        try:
            return SafetyConfig.model_validate({**self.defaults.model_dump(), **data})
        except ValueError as e:
            logger.warning(f"⚠ Invalid safety settings on disk, using defaults: {e}")
            return self.defaults

    def save(self, config: SafetyConfig) -> bool:
        return self.document.save(config.model_dump())
