"""Tests for the SQLite scan store."""

import threading

import pytest
from gmail_fakes import make_record

from mailbox_purge.config import ActiveScanPolicy
from mailbox_purge.exceptions import ScanInProgress
from mailbox_purge.models import ScanStatus, SenderSummary
from mailbox_purge.store import ScanStore


def test_create_and_get_scan(store):
    """A new scan starts in progress at 0% with the opening message."""
    record, created = store.create_scan("alice")
    assert created is True

    loaded = store.get_scan(record.id)
    assert loaded.owner == "alice"
    assert loaded.status is ScanStatus.IN_PROGRESS
    assert loaded.progress == 0
    assert loaded.progress_message == "Starting scan..."
    assert loaded.completed_at is None


def test_get_missing_scan(store):
    """An unknown scan id returns None."""
    assert store.get_scan("nope") is None


def test_reject_policy_raises_while_scan_runs(store):
    """reject refuses a second scan for the same owner only."""
    store.create_scan("alice")
    with pytest.raises(ScanInProgress):
        store.create_scan("alice", policy=ActiveScanPolicy.REJECT)
    # Other owners are unaffected.
    _, created = store.create_scan("bob", policy=ActiveScanPolicy.REJECT)
    assert created


def test_reuse_policy_returns_running_scan(store):
    """reuse hands back the scan already in progress."""
    running, _ = store.create_scan("alice")
    record, created = store.create_scan("alice", policy=ActiveScanPolicy.REUSE)
    assert created is False
    assert record.id == running.id


def test_allow_policy_creates_second_scan(store):
    """allow starts another scan next to the running one."""
    first, _ = store.create_scan("alice")
    second, created = store.create_scan("alice", policy=ActiveScanPolicy.ALLOW)
    assert created
    assert second.id != first.id
    assert len(store.list_scans("alice")) == 2


def test_policy_ignores_finished_scans(store):
    """Finished scans never count as active."""
    first, _ = store.create_scan("alice")
    store.update_scan(first.id, status=ScanStatus.COMPLETED)
    _, created = store.create_scan("alice", policy=ActiveScanPolicy.REJECT)
    assert created


def test_rescan_deletes_only_owner_history(store):
    """A rescan clears the owner's scans, emails and summaries but not other owners'."""
    old, _ = store.create_scan("alice")
    store.insert_emails(old.id, "alice", [make_record("1", "a@x.com")])
    store.insert_summaries(old.id, "alice", [SenderSummary("a@x.com", total_emails=1)])
    store.update_scan(old.id, status=ScanStatus.COMPLETED)
    other, _ = store.create_scan("bob")
    store.insert_emails(other.id, "bob", [make_record("2", "b@y.com")])

    new, _ = store.create_scan("alice", rescan=True)

    assert [s.id for s in store.list_scans("alice")] == [new.id]
    assert store.get_scan(old.id) is None
    assert store.count_emails(old.id) == 0
    assert store.list_sender_summaries(old.id) == []
    assert store.count_emails(other.id) == 1


def test_rescan_refused_while_scan_runs(store):
    """Under allow, a rescan does not delete a scan that is still running."""
    running, _ = store.create_scan("alice")
    store.insert_emails(running.id, "alice", [make_record("1", "a@x.com")])

    with pytest.raises(ScanInProgress):
        store.create_scan("alice", rescan=True, policy=ActiveScanPolicy.ALLOW)

    assert [s.id for s in store.list_scans("alice")] == [running.id]
    assert store.count_emails(running.id) == 1


def test_rescan_with_reuse_returns_running_scan(store):
    """Under reuse, a rescan hands back the running scan untouched."""
    running, _ = store.create_scan("alice")

    record, created = store.create_scan("alice", rescan=True, policy=ActiveScanPolicy.REUSE)

    assert created is False
    assert record.id == running.id
    assert store.get_scan(running.id) is not None


def test_create_scan_is_atomic_across_connections(tmp_path):
    """Two stores on one file racing under reject create exactly one scan."""
    db = tmp_path / "scans.db"
    barrier = threading.Barrier(2, timeout=1)
    stores = [ScanStore(db), ScanStore(db)]
    results = []

    def hold_after_check(statement):
        # Both racers would meet here if the check ran outside the write lock.
        if statement.startswith("SELECT * FROM scans WHERE owner"):
            barrier.wait()

    def race(store):
        try:
            results.append(store.create_scan("alice", policy=ActiveScanPolicy.REJECT))
        except ScanInProgress as exc:
            results.append(exc)

    for s in stores:
        s._conn.set_trace_callback(hold_after_check)
    threads = [threading.Thread(target=race, args=(s,)) for s in stores]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)
    for s in stores:
        s._conn.set_trace_callback(None)

    created = [r for r in results if isinstance(r, tuple)]
    refused = [r for r in results if isinstance(r, ScanInProgress)]
    assert len(created) == 1
    assert len(refused) == 1
    assert len(stores[0].list_scans("alice")) == 1
    for s in stores:
        s.close()


def test_update_scan_rejects_unknown_columns(store):
    """Only scan progress and stat columns can be updated."""
    record, _ = store.create_scan("alice")
    with pytest.raises(ValueError):
        store.update_scan(record.id, owner="mallory")


def test_insert_emails_in_chunks(store):
    """Emails are inserted across several chunks without loss."""
    record, _ = store.create_scan("alice")
    emails = [make_record(f"m{i}", "a@x.com", age_days=i) for i in range(7)]

    assert store.insert_emails(record.id, "alice", emails, chunk_size=3) == 7
    assert store.count_emails(record.id) == 7


def test_sender_emails_newest_first(store):
    """A sender's emails come back newest first with every field intact."""
    record, _ = store.create_scan("alice")
    emails = [
        make_record("old", "a@x.com", age_days=5, unsubscribe="<https://x.com/u>"),
        make_record("new", "a@x.com", age_days=0),
        make_record("mid", "a@x.com", age_days=2, opened=False),
        make_record("other", "b@y.com"),
    ]
    store.insert_emails(record.id, "alice", emails)

    loaded = store.get_sender_emails(record.id, "a@x.com")
    assert [e.message_id for e in loaded] == ["new", "mid", "old"]
    assert loaded[1].is_opened is False
    assert loaded[2].unsubscribe_url == "<https://x.com/u>"
    assert loaded[0].received_at == emails[1].received_at


def test_sender_summaries_ordering_and_filter(store):
    """Summaries sort by unopened percentage then volume and filter by threshold."""
    record, _ = store.create_scan("alice")
    store.insert_summaries(
        record.id,
        "alice",
        [
            SenderSummary("low@x.com", total_emails=5, unopened_percentage=10.0),
            SenderSummary("big@x.com", total_emails=50, unopened_percentage=90.0),
            SenderSummary("small@x.com", total_emails=2, unopened_percentage=90.0),
        ],
    )

    assert [s.sender_email for s in store.list_sender_summaries(record.id)] == [
        "big@x.com",
        "small@x.com",
        "low@x.com",
    ]
    assert len(store.list_sender_summaries(record.id, min_unopened=75)) == 2


def test_delete_sender_summary(store):
    """Deleting a summary removes it once and reports zero afterwards."""
    record, _ = store.create_scan("alice")
    store.insert_summaries(record.id, "alice", [SenderSummary("a@x.com", total_emails=1)])

    assert store.delete_sender_summary(record.id, "a@x.com") == 1
    assert store.get_sender_summary(record.id, "a@x.com") is None
    assert store.delete_sender_summary(record.id, "a@x.com") == 0


def test_add_purge_totals_accumulates(store):
    """Purge totals add up over several purges."""
    record, _ = store.create_scan("alice")
    store.add_purge_totals(record.id, 1, 10, 1000)
    updated = store.add_purge_totals(record.id, 2, 5, 500)

    assert updated.senders_deleted == 3
    assert updated.mails_deleted == 15
    assert updated.space_recovered == 1500


def test_subscribers_see_committed_updates(store):
    """Listeners get each update until they unsubscribe."""
    record, _ = store.create_scan("alice")
    seen = []
    unsubscribe = store.subscribe(record.id, lambda r: seen.append((r.progress, r.progress_message)))

    store.update_scan(record.id, progress=5, progress_message="Fetching message list...")
    unsubscribe()
    store.update_scan(record.id, progress=10, progress_message="Found 0 messages. Processing...")

    assert seen == [(5, "Fetching message list...")]


def test_failing_listener_does_not_break_update(store):
    """A listener that raises does not undo the update."""
    record, _ = store.create_scan("alice")

    def broken(_record):
        raise RuntimeError("listener bug")

    store.subscribe(record.id, broken)
    updated = store.update_scan(record.id, progress=5)
    assert updated.progress == 5


def test_fail_interrupted_scans(store):
    """Scans left in progress are failed and finished ones are left alone."""
    running, _ = store.create_scan("alice")
    done, _ = store.create_scan("bob")
    store.update_scan(done.id, status=ScanStatus.COMPLETED)

    assert store.fail_interrupted_scans() == 1
    failed = store.get_scan(running.id)
    assert failed.status is ScanStatus.FAILED
    assert failed.completed_at is not None
    assert store.get_scan(done.id).status is ScanStatus.COMPLETED


def test_fail_interrupted_scans_for_one_owner(store):
    """With an owner given, other owners' running scans stay in progress."""
    alice, _ = store.create_scan("alice")
    bob, _ = store.create_scan("bob")

    assert store.fail_interrupted_scans(owner="alice") == 1
    assert store.get_scan(alice.id).status is ScanStatus.FAILED
    assert store.get_scan(bob.id).status is ScanStatus.IN_PROGRESS


def test_data_survives_reopen(tmp_path):
    """Scans persist across store instances on the same file."""
    db = tmp_path / "nested" / "scans.db"
    with ScanStore(db) as first:
        record, _ = first.create_scan("alice")
    with ScanStore(db) as second:
        assert second.get_scan(record.id).owner == "alice"
