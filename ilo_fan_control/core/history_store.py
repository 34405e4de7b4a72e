"""
Append-only telemetry history

Live log: one JSON record per line (history.jsonl). Once it outgrows the
size threshold, records older than the retention cutoff move into a gzip
archive (history.archive.gz), one gzip member appended per compaction.
Recent queries never touch the archive.
"""

import gzip
import logging
import os
import tempfile
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from ..models import HistoryFileSize, HistoryRecord, HistorySize, SensorSnapshot

logger = logging.getLogger(__name__)

HOUR = 60 * 60
DAY = 24 * HOUR

PERIODS = {
    "1h": HOUR,
    "24h": 24 * HOUR,
    "7d": 7 * DAY,
    "1m": 30 * DAY,
    "1month": 30 * DAY,
    "1y": 365 * DAY,
    "1year": 365 * DAY,
    "5y": 5 * 365 * DAY,
    "5years": 5 * 365 * DAY,
}
DEFAULT_PERIOD = "1h"

LIVE_FILE = "history.jsonl"
ARCHIVE_FILE = "history.archive.gz"


def period_seconds(period: Optional[str]) -> int:
    """Unknown periods fall back to one hour"""
    return PERIODS.get(str(period or DEFAULT_PERIOD).lower(), PERIODS[DEFAULT_PERIOD])


def _line_timestamp(line: str) -> Optional[float]:
    try:
        return HistoryRecord.model_validate_json(line).timestamp()
    except ValueError:
        return None


class HistoryStore:
    """Time-series log with size-triggered archival"""

    def __init__(
        self,
        data_dir: Path,
        max_live_bytes: int = 10 * 1024 * 1024,
        retention_days: int = 30,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            data_dir: Directory holding the live log and the archive
            max_live_bytes: Live log size that triggers compaction
            retention_days: Age after which records move to the archive
            clock: Epoch-seconds source (injectable for tests)
        """
        self.data_dir = Path(data_dir)
        self.live_path = self.data_dir / LIVE_FILE
        self.archive_path = self.data_dir / ARCHIVE_FILE
        self.max_live_bytes = max_live_bytes
        self.retention_seconds = retention_days * DAY
        self.clock = clock
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def append(self, snapshot: SensorSnapshot) -> Optional[HistoryRecord]:
        """
        Appends one record for the snapshot and compacts if needed

        Returns:
            The written record, None when the disk write failed
        """
        record = HistoryRecord.from_snapshot(
            snapshot, ts=datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        )
        with self._lock:
            try:
                self.data_dir.mkdir(parents=True, exist_ok=True)
                with open(self.live_path, 'a', encoding='utf-8') as f:
                    f.write(record.model_dump_json() + "\n")
            except OSError as e:
                logger.error(f"✗ Failed to append history record: {e}")
                return None
            self._compact_if_needed()
        return record

    def compact(self) -> int:
        """Forces a compaction pass, returns the number of archived records"""
        with self._lock:
            return self._compact()

    def _compact_if_needed(self) -> int:
        try:
            size = self.live_path.stat().st_size
        except OSError:
            return 0
        if size < self.max_live_bytes:
            return 0
        return self._compact()

    def _compact(self) -> int:
        try:
            if not self.live_path.exists():
                return 0
            lines = [line for line in self.live_path.read_text(encoding='utf-8').splitlines() if line]

            cutoff = self.clock() - self.retention_seconds
            older, recent = [], []
            for line in lines:
                ts = _line_timestamp(line)
                # Unparseable lines stay in the live log
                if ts is not None and ts < cutoff:
                    older.append(line)
                else:
                    recent.append(line)

            if not older:
                return 0

            staged = self._stage_live(recent)
            try:
                block = ("\n".join(older) + "\n").encode('utf-8')
                with open(self.archive_path, 'ab') as f:
                    f.write(gzip.compress(block))
                os.replace(staged, self.live_path)
            except BaseException:
                if os.path.exists(staged):
                    os.remove(staged)
                raise
            logger.info(f"✓ History compacted: {len(older)} archived, {len(recent)} kept live")
            return len(older)
        except OSError as e:
            logger.error(f"✗ History compaction failed: {e}")
            return 0

    def _stage_live(self, lines: List[str]) -> str:
        """Writes the remaining live lines to a temp file beside the live log"""
        fd, tmp_name = tempfile.mkstemp(dir=self.data_dir, prefix=f".{LIVE_FILE}.")
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write("\n".join(lines) + ("\n" if lines else ""))
        except BaseException:
            os.remove(tmp_name)
            raise
        return tmp_name

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def query(self, period: Optional[str] = DEFAULT_PERIOD) -> List[HistoryRecord]:
        """
        Records within the named period

        The archive is decompressed only for ranges beyond the retention
        cutoff. Archive records come first, then the live log, each in
        file order; nothing is re-sorted.
        """
        span = period_seconds(period)
        now = self.clock()

        with self._lock:
            lines: List[str] = []
            if span > self.retention_seconds:
                lines.extend(self._archive_lines())
            lines.extend(self._live_lines())

        return list(self._within(lines, now, span))

    def _live_lines(self) -> List[str]:
        if not self.live_path.exists():
            return []
        try:
            return [line for line in self.live_path.read_text(encoding='utf-8').splitlines() if line]
        except OSError as e:
            logger.error(f"✗ Failed to read history: {e}")
            return []

    def _archive_lines(self) -> List[str]:
        if not self.archive_path.exists():
            return []
        try:
            # gzip reads every concatenated member
            with gzip.open(self.archive_path, 'rt', encoding='utf-8') as f:
                return [line for line in f.read().splitlines() if line]
        except (OSError, EOFError) as e:
            logger.error(f"✗ Failed to read history archive: {e}")
            return []

    @staticmethod
    def _within(lines: Iterable[str], now: float, span: float) -> Iterable[HistoryRecord]:
        for line in lines:
            try:
                record = HistoryRecord.model_validate_json(line)
            except ValueError:
                continue
            ts = record.timestamp()
            if ts is not None and now - ts <= span:
                yield record

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def size(self) -> HistorySize:
        files = []
        for path in (self.live_path, self.archive_path):
            try:
                files.append(HistoryFileSize(name=path.name, bytes=path.stat().st_size))
            except FileNotFoundError:
                continue
        return HistorySize(total_bytes=sum(f.bytes for f in files), files=files)

    def clear(self) -> bool:
        """Deletes the live log and the archive"""
        with self._lock:
            try:
                self.live_path.unlink(missing_ok=True)
                self.archive_path.unlink(missing_ok=True)
            except OSError as e:
                logger.error(f"✗ Failed to clear history: {e}")
                return False
        logger.info("✓ History cleared")
        return True

