"""Shared fixtures for tests."""

from __future__ import annotations

import pytest
from gmail_fakes import FakeCredentialProvider, FakeGmailService

from mailbox_purge.config import ActiveScanPolicy, Settings
from mailbox_purge.scanner import ScanOrchestrator
from mailbox_purge.store import ScanStore


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        db_path=tmp_path / "mailbox.db",
        token_dir=tmp_path / "tokens",
        credentials_path=tmp_path / "credentials.json",
        scan_workers=1,
        active_scan_policy=ActiveScanPolicy.REJECT,
    )


@pytest.fixture
def store(settings):
    s = ScanStore(settings.db_path)
    yield s
    s.close()


@pytest.fixture
def make_orchestrator(store, settings):
    """Build a ScanOrchestrator bound to a fake Gmail service."""
    created: list[ScanOrchestrator] = []

    def _make(service: FakeGmailService, policy: ActiveScanPolicy | None = None) -> ScanOrchestrator:
        cfg = settings.model_copy(update={"active_scan_policy": policy}) if policy else settings
        orchestrator = ScanOrchestrator(
            store,
            FakeCredentialProvider(),
            service_factory=lambda creds: service,
            settings=cfg,
        )
        created.append(orchestrator)
        return orchestrator

    yield _make
    for orchestrator in created:
        orchestrator.shutdown()
