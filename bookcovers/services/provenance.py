# FILE: bookcovers/services/provenance.py
"""
Provenance capture for cover resolution

ProvenanceTracker collects every attempt of one resolution run. It is
append-only and closes on complete(); records are never read back by the
selection logic.

ProvenanceLog keeps completed records for debugging: a small in-memory
ring plus daily JSONL files under <logs_dir>/provenance/.
"""
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

from bookcovers.config import Settings, get_settings
from bookcovers.errors import ProvenanceClosedError
from bookcovers.models.images import ImageCandidate
from bookcovers.models.provenance import (
    AttemptedSource, AttemptStatus, ProvenanceRecord, SelectedImageInfo,
)
from bookcovers.services.io_pool import run_blocking
from bookcovers.services.source_mapping import to_image_source_name

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProvenanceTracker:
    """Append-only audit trail for one resolution call"""

    def __init__(self, book_key: Optional[str], correlation_id: Optional[str] = None):
        self.book_key = book_key
        self.correlation_id = correlation_id
        self.started_at = _utcnow()
        self._attempts: List[AttemptedSource] = []
        self._selected: Optional[SelectedImageInfo] = None
        self._record: Optional[ProvenanceRecord] = None
        self._lock = threading.Lock()

    @property
    def is_complete(self) -> bool:
        return self._record is not None

    def _ensure_open(self):
        if self._record is not None:
            raise ProvenanceClosedError(
                f"Provenance for {self.book_key or 'unknown'} is already complete"
            )

    def record_attempt(
        self,
        source,
        url: Optional[str],
        status: AttemptStatus,
        failure_reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AttemptedSource:
        """
        Record one attempt against a cache tier or provider

        details may carry fetched_url and dimensions ("WxH").
        """
        details = details or {}
        attempt = AttemptedSource(
            source_name=to_image_source_name(source),
            url_attempted=url,
            status=status,
            failure_reason=failure_reason,
            fetched_url=details.get("fetched_url"),
            dimensions=details.get("dimensions"),
            timestamp=_utcnow(),
        )
        with self._lock:
            self._ensure_open()
            self._attempts.append(attempt)
        logger.debug(
            f"[{self.book_key}] Attempt {attempt.source_name.value} {status.value}"
            + (f": {failure_reason}" if failure_reason else "")
        )
        return attempt

    def record_selection(self, source, winner: ImageCandidate, reason: str) -> SelectedImageInfo:
        selected = SelectedImageInfo(
            source_name=to_image_source_name(source),
            final_url=winner.location,
            resolution=winner.resolution_preference.value,
            dimensions=winner.dimensions_label,
            selection_reason=reason,
            storage_location=winner.storage_location,
            storage_key=winner.storage_key,
        )
        with self._lock:
            self._ensure_open()
            self._selected = selected
        return selected

    def snapshot(self) -> ProvenanceRecord:
        """Current state without closing the tracker"""
        with self._lock:
            if self._record is not None:
                return self._record
            return ProvenanceRecord(
                book_key=self.book_key,
                correlation_id=self.correlation_id,
                started_at=self.started_at,
                attempts=list(self._attempts),
                selected=self._selected,
                completed=False,
            )

    def complete(self) -> ProvenanceRecord:
        """Close the tracker; calling it again returns the same record"""
        with self._lock:
            if self._record is None:
                self._record = ProvenanceRecord(
                    book_key=self.book_key,
                    correlation_id=self.correlation_id,
                    started_at=self.started_at,
                    completed_at=_utcnow(),
                    attempts=list(self._attempts),
                    selected=self._selected,
                    completed=True,
                )
            return self._record


class ProvenanceLog:
    """Recent provenance records in memory, full history in daily JSONL"""

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.export_enabled = settings.provenance_export_enabled
        self._recent: Deque[ProvenanceRecord] = deque(maxlen=max(settings.provenance_buffer_size, 1))
        self._lock = threading.Lock()
        self._export_lock = threading.Lock()
        self.log_dir = Path(settings.logs_dir) / "provenance"
        if self.export_enabled:
            self.log_dir.mkdir(parents=True, exist_ok=True)

    def _log_file(self, when: datetime) -> Path:
        return self.log_dir / f"{when.strftime('%Y-%m-%d')}.jsonl"

    def _remember(self, record: ProvenanceRecord):
        with self._lock:
            self._recent.append(record)

    def export(self, record: ProvenanceRecord):
        """Append record to the daily JSONL file (blocking)"""
        if not self.export_enabled:
            return
        line = record.model_dump_json() + "\n"
        try:
            log_file = self._log_file(record.completed_at or _utcnow())
            with self._export_lock:
                with open(log_file, "a", encoding="utf-8") as f:
                    f.write(line)
        except OSError as e:
            logger.warning(f"Failed to export provenance for {record.book_key}: {e}")

    async def append(self, record: ProvenanceRecord):
        """Keep record in memory; the file write runs on the I/O executor"""
        self._remember(record)
        if self.export_enabled:
            await run_blocking(self.export, record)

    def get_recent(self, limit: int = 20) -> List[ProvenanceRecord]:
        """Most recent records, newest last"""
        with self._lock:
            items = list(self._recent)
        if limit <= 0:
            return items
        return items[-limit:]

    def clear(self):
        with self._lock:
            self._recent.clear()


_provenance_log: Optional[ProvenanceLog] = None


def get_provenance_log() -> ProvenanceLog:
    """Get or create global provenance log"""
    global _provenance_log
    if _provenance_log is None:
        _provenance_log = ProvenanceLog()
    return _provenance_log
