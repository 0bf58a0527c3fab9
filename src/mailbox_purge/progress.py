"""Scan lifecycle state machine and progress reporting."""

from __future__ import annotations

import structlog

from .aggregation import round_half_up
from .constants import PROGRESS_DONE, PROGRESS_FETCH_SPAN, PROGRESS_LISTED
from .exceptions import InvalidTransition
from .models import ScanRecord, ScanStatus, utcnow
from .store import ScanStore

logger = structlog.get_logger()

_TRANSITIONS = {
    ScanStatus.PENDING: {ScanStatus.IN_PROGRESS},
    ScanStatus.IN_PROGRESS: {ScanStatus.COMPLETED, ScanStatus.FAILED},
    ScanStatus.COMPLETED: set(),
    ScanStatus.FAILED: set(),
}


def fetch_progress(processed: int, total: int) -> int:
    """Percent for the metadata stage, linear from 10 to 80."""
    if total <= 0:
        return PROGRESS_LISTED + PROGRESS_FETCH_SPAN
    return round_half_up(PROGRESS_LISTED + processed / total * PROGRESS_FETCH_SPAN)


class ProgressReporter:
    """Write a scan's status and (percent, message) pairs to the store.

    Every write goes through :meth:`ScanStore.update_scan`, so subscribers
    see it immediately.  Percent never goes down: a lower value is clamped
    to the last one written.
    """

    def __init__(self, store: ScanStore, scan: ScanRecord) -> None:
        self.store = store
        self.scan_id = scan.id
        self.status = scan.status
        self.percent = scan.progress

    def _transition(self, target: ScanStatus) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise InvalidTransition(f"Scan {self.scan_id} cannot move from {self.status.value} to {target.value}")
        self.status = target

    def update(self, percent: int, message: str) -> None:
        if self.status is not ScanStatus.IN_PROGRESS:
            raise InvalidTransition(f"Scan {self.scan_id} is {self.status.value}; progress is frozen")
        self.percent = max(self.percent, min(int(percent), PROGRESS_DONE))
        self.store.update_scan(self.scan_id, progress=self.percent, progress_message=message)
        logger.debug("scan_progress", scan_id=self.scan_id, percent=self.percent, message=message)

    def complete(self, message: str = "Scan complete!", **stats) -> None:
        self._transition(ScanStatus.COMPLETED)
        self.percent = PROGRESS_DONE
        self.store.update_scan(
            self.scan_id,
            status=self.status,
            progress=self.percent,
            progress_message=message,
            completed_at=utcnow(),
            **stats,
        )

    def fail(self, reason: str) -> None:
        self._transition(ScanStatus.FAILED)
        self.store.update_scan(
            self.scan_id,
            status=self.status,
            progress_message=f"Scan failed: {reason}",
            completed_at=utcnow(),
        )
