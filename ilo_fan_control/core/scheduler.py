"""
Scheduled fan actions and the retry queue for the ones that failed
"""

import logging
import threading
import time
from datetime import datetime
from typing import Callable, List, Optional

from pydantic import ValidationError

from ..actuators.fan_controller import FanControlBusy, FanController
from ..models import IloConfig, RetryQueueEntry, ScheduleItem
from .storage import AppEventLog, JsonDocument

logger = logging.getLogger(__name__)

ActionRunner = Callable[[str, int, IloConfig], bool]


def minute_index(moment: datetime) -> int:
    """Monotonic index of the local minute"""
    return moment.toordinal() * 1440 + moment.hour * 60 + moment.minute


class ScheduleStore:
    """Schedule list kept in schedules.json"""

    def __init__(self, document: JsonDocument):
        self.document = document

    def load(self) -> List[ScheduleItem]:
        data = self.document.load([])
        if not isinstance(data, list):
            logger.warning(f"⚠ Ignoring malformed schedule document {self.document.path}")
            return []

        items = []
        for raw in data:
            try:
                items.append(ScheduleItem.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"⚠ Skipping invalid schedule entry {raw!r}: {e.error_count()} error(s)")
        return items

    def save(self, items: List[ScheduleItem]) -> bool:
        return self.document.save([item.model_dump() for item in items])


class RetryQueue:
    """
    Failed scheduled actions waiting for another attempt

    Every change is written through to the JSON document, and the queue
    is reloaded from it on construction, so pending entries survive a
    restart.
    """

    def __init__(
        self,
        document: JsonDocument,
        backoff_s: float = 120.0,
        max_attempts: int = 30,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            document: Backing JSON document
            backoff_s: Delay before each retry
            max_attempts: Entries are dropped after this many failures (0 = never)
            clock: Epoch-seconds source
        """
        self.document = document
        self.backoff_s = backoff_s
        self.max_attempts = max_attempts
        self.clock = clock

        self._lock = threading.Lock()
        self._entries: List[RetryQueueEntry] = self._load()

    def _load(self) -> List[RetryQueueEntry]:
        data = self.document.load([])
        entries = []
        for raw in data if isinstance(data, list) else []:
            try:
                entries.append(RetryQueueEntry.model_validate(raw))
            except ValidationError:
                logger.warning(f"⚠ Dropping unreadable retry entry {raw!r}")
        if entries:
            logger.info(f"✓ Retry queue restored with {len(entries)} pending entries")
        return entries

    def _persist(self):
        self.document.save([entry.model_dump() for entry in self._entries])

    def entries(self) -> List[RetryQueueEntry]:
        with self._lock:
            return list(self._entries)

    def _find(self, entry_id: str) -> Optional[int]:
        for position, entry in enumerate(self._entries):
            if entry.id == entry_id:
                return position
        return None

    def _exhausted(self, entry: RetryQueueEntry) -> bool:
        return self.max_attempts > 0 and entry.attempts >= self.max_attempts

    def schedule(self, item: ScheduleItem) -> Optional[RetryQueueEntry]:
        """
        Records a failed action for another attempt

        Returns:
            The created or updated entry, None when it hit the attempt cap
        """
        with self._lock:
            position = self._find(item.id)
            attempts = self._entries[position].attempts if position is not None else 0
            entry = RetryQueueEntry(
                id=item.id,
                description=item.description,
                mode=item.mode,
                speed=item.speed,
                next_attempt_at=self.clock() + self.backoff_s,
                attempts=attempts + 1,
            )

            if position is not None:
                self._entries.pop(position)
            if self._exhausted(entry):
                logger.warning(f"⚠ Giving up on scheduled action {entry.id} after {entry.attempts} attempts")
                self._persist()
                return None

            if position is None:
                self._entries.append(entry)
            else:
                self._entries.insert(position, entry)
            self._persist()
        logger.info(f"Scheduled action {entry.id} queued for retry (attempt {entry.attempts})")
        return entry

    def process_due(self, run_action: ActionRunner, config: IloConfig) -> int:
        """
        Retries every entry whose time has come

        Returns:
            Number of entries that succeeded and were removed
        """
        now = self.clock()
        due = [entry for entry in self.entries() if entry.next_attempt_at <= now]

        succeeded = 0
        for entry in due:
            ok = run_action(entry.mode, entry.speed, config)
            with self._lock:
                position = self._find(entry.id)
                if position is None:
                    continue
                if ok:
                    self._entries.pop(position)
                    succeeded += 1
                    logger.info(f"✓ Retry of {entry.id} succeeded")
                else:
                    current = self._entries[position]
                    updated = current.model_copy(update={
                        "next_attempt_at": self.clock() + self.backoff_s,
                        "attempts": current.attempts + 1,
                    })
                    if self._exhausted(updated):
                        self._entries.pop(position)
                        logger.warning(f"⚠ Giving up on scheduled action {entry.id} after {updated.attempts} attempts")
                    else:
                        self._entries[position] = updated
                self._persist()
        return succeeded

    def clear(self):
        with self._lock:
            self._entries = []
            self._persist()


class ScheduleExecutor:
    """
    Fires time-of-day actions

    tick() is called about once a second; a minute index guards against
    firing the same minute twice.
    """

    def __init__(
        self,
        fan_controller: FanController,
        schedules: ScheduleStore,
        retry_queue: RetryQueue,
        events: Optional[AppEventLog] = None,
    ):
        self.fan_controller = fan_controller
        self.schedules = schedules
        self.retry_queue = retry_queue
        self.events = events

        self._lock = threading.Lock()
        self._last_minute: Optional[int] = None

    def _claim_minute(self, moment: datetime) -> bool:
        index = minute_index(moment)
        with self._lock:
            if self._last_minute == index:
                return False
            self._last_minute = index
            return True

    def tick(self, config: IloConfig, moment: Optional[datetime] = None) -> List[str]:
        """
        Dispatches the items due this minute

        Returns:
            Ids of the items that were dispatched
        """
        moment = moment or datetime.now()
        if not self._claim_minute(moment):
            return []

        fired = []
        for item in self.schedules.load():
            if not item.active or item.hour_minute() != (moment.hour, moment.minute):
                continue
            fired.append(item.id)
            label = item.description or item.id
            action = "auto" if item.mode == "auto" else f"{item.speed}%"
            logger.info(f"⏰ Schedule {label}: {action}")

            if self.run_action(item.mode, item.speed, config):
                self._event(f"Schedule {label} applied", "info")
            else:
                self._event(f"Schedule {label} failed, queued for retry", "warning")
                self.retry_queue.schedule(item)
        return fired

    def run_action(self, mode: str, speed: int, config: IloConfig) -> bool:
        """
        Runs one scheduled action

        auto succeeds when the release is accepted; manual only when every
        fan converged on the target.
        """
        try:
            if mode == "auto":
                return self.fan_controller.set_auto(config).accepted
            result = self.fan_controller.set_speed(speed, config)
            return result.accepted and not result.uncontrolled_fan_names
        except FanControlBusy:
            logger.warning("⚠ Scheduled action hit a busy fan controller")
            return False
        except Exception as e:
            logger.error(f"✗ Scheduled action failed: {e}")
            return False

    def process_retries(self, config: IloConfig) -> int:
        return self.retry_queue.process_due(self.run_action, config)

    def _event(self, message: str, level: str):
        if self.events is not None:
            self.events.append(message, level)
