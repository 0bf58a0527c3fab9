"""Scan orchestration - lists messages, fetches metadata, aggregates senders."""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable

import structlog
from google.oauth2.credentials import Credentials

from .aggregation import aggregate_senders, deletable_stats
from .auth import CredentialProvider, build_gmail_service
from .config import Settings, get_settings
from .constants import (
    PROGRESS_EMAILS_STORED,
    PROGRESS_LISTED,
    PROGRESS_LISTING,
    PROGRESS_SUMMARIES_STORED,
)
from .gmail_client import fetch_message_metadata, list_message_ids
from .models import ScanRecord
from .progress import ProgressReporter, fetch_progress
from .store import ScanStore

logger = structlog.get_logger()


class ScanOrchestrator:
    """Start scans in the background and drive them to a terminal state.

    ``start_scan`` returns as soon as the ScanRecord exists; everything else
    is observed through the store.
    """

    def __init__(
        self,
        store: ScanStore,
        credentials: CredentialProvider,
        service_factory: Callable[[Credentials], object] = build_gmail_service,
        settings: Settings | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.service_factory = service_factory
        self.settings = settings or get_settings()
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.settings.scan_workers, thread_name_prefix="scan"
        )
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()

    def start_scan(self, owner: str, rescan: bool = False) -> str:
        """Create a scan for ``owner`` and run it in the background.

        Raises ReauthorizationRequired before anything is written when the
        owner has no usable credential, and ScanInProgress when the
        ``reject`` policy finds a running scan.
        """
        creds = self.credentials.get_credentials(owner)
        record, created = self.store.create_scan(
            owner, rescan=rescan, policy=self.settings.active_scan_policy
        )
        if not created:
            logger.info("scan_reused", scan_id=record.id, owner=owner)
            return record.id

        logger.info("scan_started", scan_id=record.id, owner=owner, rescan=rescan)
        future = self._executor.submit(self.run_scan, record, creds)
        with self._lock:
            self._futures[record.id] = future
        future.add_done_callback(lambda _f, scan_id=record.id: self._forget(scan_id))
        return record.id

    def _forget(self, scan_id: str) -> None:
        with self._lock:
            self._futures.pop(scan_id, None)

    def run_scan(self, scan: ScanRecord, creds: Credentials) -> ScanRecord | None:
        """Run the pipeline for an in-progress scan and record how it ended."""
        reporter = ProgressReporter(self.store, scan)
        try:
            self._run_pipeline(scan, creds, reporter)
        except Exception as exc:  # noqa: BLE001
            logger.exception("scan_failed", scan_id=scan.id)
            try:
                reporter.fail(str(exc) or type(exc).__name__)
            except Exception:  # noqa: BLE001
                # Left in progress; recover_interrupted() fails it later.
                logger.exception("scan_failure_not_recorded", scan_id=scan.id)
        return self.store.get_scan(scan.id)

    def _run_pipeline(self, scan: ScanRecord, creds: Credentials, reporter: ProgressReporter) -> None:
        service = self.service_factory(creds)
        attempts = self.settings.gmail_retry_attempts

        # Step 1: List message IDs
        reporter.update(PROGRESS_LISTING, "Fetching message list...")
        ids = list_message_ids(service, attempts=attempts)
        reporter.update(PROGRESS_LISTED, f"Found {len(ids)} messages. Processing...")

        # Step 2: Fetch metadata
        def on_batch(processed: int, total: int) -> None:
            reporter.update(fetch_progress(processed, total), f"Processed {processed}/{total} messages...")

        records = fetch_message_metadata(service, ids, callback=on_batch, attempts=attempts)
        logger.info("metadata_fetched", scan_id=scan.id, listed=len(ids), fetched=len(records))

        # Step 3: Persist, aggregate, persist
        self.store.insert_emails(scan.id, scan.owner, records)
        reporter.update(PROGRESS_EMAILS_STORED, f"Stored {len(records)} messages. Computing sender summaries...")

        summaries = aggregate_senders(records)
        self.store.insert_summaries(scan.id, scan.owner, summaries.values())
        reporter.update(PROGRESS_SUMMARIES_STORED, f"Stored {len(summaries)} senders. Finalizing...")

        senders, mails, space = deletable_stats(summaries.values())
        reporter.complete(
            total_emails_scanned=len(records),
            deletable_senders=senders,
            deletable_mails=mails,
            recoverable_space=space,
        )
        logger.info(
            "scan_completed",
            scan_id=scan.id,
            emails=len(records),
            senders=len(summaries),
            deletable_senders=senders,
        )

    def wait(self, scan_id: str, timeout: float | None = None) -> ScanRecord | None:
        """Block until the background scan finishes and return its record."""
        with self._lock:
            future = self._futures.get(scan_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.store.get_scan(scan_id)

    def recover_interrupted(self, owner: str | None = None) -> int:
        """Fail scans a previous process left in progress, optionally for one owner."""
        count = self.store.fail_interrupted_scans(owner=owner)
        if count:
            logger.warning("interrupted_scans_failed", count=count, owner=owner)
        return count

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
