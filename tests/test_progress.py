"""Tests for the scan progress reporter."""

import pytest

from mailbox_purge.exceptions import InvalidTransition
from mailbox_purge.models import ScanStatus
from mailbox_purge.progress import ProgressReporter, fetch_progress


def test_fetch_progress_span():
    """Metadata progress runs linearly from 10 to 80, rounded half up."""
    assert fetch_progress(0, 100) == 10
    assert fetch_progress(50, 100) == 45
    assert fetch_progress(100, 100) == 80
    assert fetch_progress(50, 120) == 39  # 10 + 29.17
    assert fetch_progress(0, 0) == 80


def test_update_writes_to_store(store):
    """Each update is written to the scan row."""
    scan, _ = store.create_scan("alice")
    reporter = ProgressReporter(store, scan)

    reporter.update(5, "Fetching message list...")

    loaded = store.get_scan(scan.id)
    assert loaded.progress == 5
    assert loaded.progress_message == "Fetching message list..."


def test_progress_never_decreases(store):
    """A lower percent is clamped to the last one written."""
    scan, _ = store.create_scan("alice")
    reporter = ProgressReporter(store, scan)

    reporter.update(40, "Processed 200/500 messages...")
    reporter.update(10, "late update")

    assert store.get_scan(scan.id).progress == 40


def test_pending_scan_cannot_report_or_finish(store):
    """A scan that never started accepts neither progress nor completion."""
    scan, _ = store.create_scan("alice", status=ScanStatus.PENDING, message="Queued")
    reporter = ProgressReporter(store, scan)

    with pytest.raises(InvalidTransition):
        reporter.update(5, "too early")
    with pytest.raises(InvalidTransition):
        reporter.complete()

    loaded = store.get_scan(scan.id)
    assert loaded.status is ScanStatus.PENDING
    assert loaded.progress_message == "Queued"


def test_complete_sets_stats(store):
    """Completion writes 100%, the final message and the statistics."""
    scan, _ = store.create_scan("alice")
    reporter = ProgressReporter(store, scan)

    reporter.complete(total_emails_scanned=4, deletable_senders=1, deletable_mails=3, recoverable_space=600)

    loaded = store.get_scan(scan.id)
    assert loaded.status is ScanStatus.COMPLETED
    assert loaded.progress == 100
    assert loaded.progress_message == "Scan complete!"
    assert loaded.total_emails_scanned == 4
    assert loaded.recoverable_space == 600
    assert loaded.completed_at is not None


def test_fail_keeps_progress(store):
    """Failure keeps the last percent and records the reason."""
    scan, _ = store.create_scan("alice")
    reporter = ProgressReporter(store, scan)
    reporter.update(45, "Processed 250/500 messages...")

    reporter.fail("HTTP 500: backend error")

    loaded = store.get_scan(scan.id)
    assert loaded.status is ScanStatus.FAILED
    assert loaded.progress == 45
    assert loaded.progress_message == "Scan failed: HTTP 500: backend error"
    assert loaded.completed_at is not None


def test_terminal_states_are_final(store):
    """A completed scan cannot fail or report progress again."""
    scan, _ = store.create_scan("alice")
    reporter = ProgressReporter(store, scan)
    reporter.complete()

    with pytest.raises(InvalidTransition):
        reporter.fail("late failure")
    with pytest.raises(InvalidTransition):
        reporter.update(100, "again")
    assert store.get_scan(scan.id).status is ScanStatus.COMPLETED
