"""Tests for the purge workflow."""

import pytest
import requests
from gmail_fakes import FakeGmailService, make_record

from mailbox_purge.aggregation import aggregate_senders
from mailbox_purge.exceptions import InvalidRequest, ScanNotFound
from mailbox_purge.models import RetentionAction, ScanStatus, SenderAction
from mailbox_purge.purger import execute_purge, parse_sender_actions


@pytest.fixture
def scanned(store):
    """A completed scan with three senders already stored."""
    records = (
        # news@x.com: 5 mails, 4 unopened (80%), 100 bytes each
        [make_record(f"n{i}", "news@x.com", age_days=i, opened=i == 4, unsubscribe="<mailto:u@x.com>") for i in range(5)]
        # bulk@y.com: 16 mails, 10 bytes each
        + [make_record(f"b{i:02d}", "bulk@y.com", age_days=i, size=10, opened=False) for i in range(16)]
        # pal@z.com: 2 mails, unsubscribe over HTTP
        + [make_record(f"p{i}", "pal@z.com", age_days=i, unsubscribe="<https://z.com/u>") for i in range(2)]
    )
    scan, _ = store.create_scan("me")
    store.insert_emails(scan.id, "me", records)
    store.insert_summaries(scan.id, "me", aggregate_senders(records).values())
    store.update_scan(scan.id, status=ScanStatus.COMPLETED, progress=100)
    return scan.id


def test_delete_all_for_mostly_unopened_sender(store, scanned):
    """delete_all trashes every message, drops the summary and records totals."""
    service = FakeGmailService()

    result = execute_purge(store, service, scanned, [SenderAction("news@x.com", RetentionAction.DELETE_ALL)])

    assert result.senders_deleted == 1
    assert result.mails_deleted == 5
    assert result.space_recovered == 500
    assert sorted(service.trashed_ids) == [f"n{i}" for i in range(5)]
    assert store.get_sender_summary(scanned, "news@x.com") is None

    scan = store.get_scan(scanned)
    assert (scan.senders_deleted, scan.mails_deleted, scan.space_recovered) == (1, 5, 500)


def test_retain_latest_keeps_newest(store, scanned):
    """retain_latest keeps the newest message."""
    service = FakeGmailService()

    result = execute_purge(store, service, scanned, [SenderAction("news@x.com", RetentionAction.RETAIN_LATEST)])

    assert result.mails_deleted == 4
    assert "n0" not in service.trashed_ids


def test_retain_1_in_15(store, scanned):
    """retain_1_in_15 keeps the first of each group of fifteen."""
    service = FakeGmailService()

    result = execute_purge(store, service, scanned, [SenderAction("bulk@y.com", RetentionAction.RETAIN_1_IN_15)])

    assert result.mails_deleted == 14
    assert result.space_recovered == 140
    assert "b00" not in service.trashed_ids
    assert "b15" not in service.trashed_ids


def test_skip_without_unsubscribe_does_nothing(store, scanned):
    """skip without unsubscribe touches nothing."""
    service = FakeGmailService()

    result = execute_purge(store, service, scanned, [SenderAction("news@x.com", RetentionAction.SKIP)])

    assert result.to_dict() == {"senders_deleted": 0, "mails_deleted": 0, "space_recovered": 0}
    assert service.modify_calls == []
    assert store.get_sender_summary(scanned, "news@x.com") is not None


def test_skip_with_unsubscribe_keeps_summary(store, scanned):
    """skip with unsubscribe only sends the unsubscribe."""
    service = FakeGmailService()

    result = execute_purge(
        store, service, scanned, [SenderAction("news@x.com", RetentionAction.SKIP, unsubscribe=True)]
    )

    assert result.mails_deleted == 0
    assert result.senders_deleted == 0
    assert len(service.sent) == 1
    assert store.get_sender_summary(scanned, "news@x.com") is not None


def test_unsubscribe_failure_does_not_change_counts(store, scanned, monkeypatch):
    """A failed unsubscribe still trashes the sender's mail."""
    def refuse(*args, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(requests, "post", refuse)
    monkeypatch.setattr(requests, "get", refuse)
    service = FakeGmailService()

    result = execute_purge(
        store, service, scanned, [SenderAction("pal@z.com", RetentionAction.DELETE_ALL, unsubscribe=True)]
    )

    assert result.mails_deleted == 2
    assert result.senders_deleted == 1


def test_unknown_sender_is_ignored(store, scanned):
    """A sender missing from the scan is skipped."""
    service = FakeGmailService()
    result = execute_purge(store, service, scanned, [SenderAction("ghost@x.com", RetentionAction.DELETE_ALL)])
    assert result.mails_deleted == 0
    assert service.modify_calls == []


def test_failed_trash_chunk_still_counted(store, scanned):
    """Counts come from local metadata even when Gmail rejects a chunk."""
    service = FakeGmailService(fail_modify_calls={1})

    result = execute_purge(store, service, scanned, [SenderAction("news@x.com", RetentionAction.DELETE_ALL)])

    assert result.mails_deleted == 5
    assert store.get_scan(scanned).mails_deleted == 5


def test_totals_accumulate_across_purges(store, scanned):
    """Purge totals on the scan add up across purges."""
    service = FakeGmailService()
    execute_purge(store, service, scanned, [SenderAction("news@x.com", RetentionAction.DELETE_ALL)])
    execute_purge(store, service, scanned, [SenderAction("bulk@y.com", RetentionAction.DELETE_ALL)])

    scan = store.get_scan(scanned)
    assert scan.senders_deleted == 2
    assert scan.mails_deleted == 21
    assert scan.space_recovered == 660


def test_several_senders_in_one_purge(store, scanned):
    """One purge handles several senders with different actions."""
    service = FakeGmailService()
    result = execute_purge(
        store,
        service,
        scanned,
        [
            SenderAction("news@x.com", RetentionAction.DELETE_ALL),
            SenderAction("bulk@y.com", RetentionAction.RETAIN_LATEST),
            SenderAction("pal@z.com", RetentionAction.SKIP),
        ],
    )
    assert result.senders_deleted == 2
    assert result.mails_deleted == 20
    assert [s.sender_email for s in store.list_sender_summaries(scanned)] == ["pal@z.com"]


def test_unknown_scan(store):
    """Purging a missing scan raises ScanNotFound."""
    with pytest.raises(ScanNotFound):
        execute_purge(store, FakeGmailService(), "missing", [])


def test_scan_of_other_owner(store, scanned):
    """Another owner's scan is treated as missing."""
    with pytest.raises(ScanNotFound):
        execute_purge(store, FakeGmailService(), scanned, [], owner="someone-else")


def test_parse_sender_actions():
    """Actions are parsed with normalized addresses and defaults."""
    actions = parse_sender_actions(
        [
            {"sender_email": " News@X.com ", "action": "delete_all"},
            {"sender_email": "a@b.com", "unsubscribe": True},
        ]
    )
    assert actions == [
        SenderAction("news@x.com", RetentionAction.DELETE_ALL, False),
        SenderAction("a@b.com", RetentionAction.SKIP, True),
    ]


@pytest.mark.parametrize(
    "payload",
    [
        {"sender_email": "a@b.com"},
        [{"action": "delete_all"}],
        [{"sender_email": "a@b.com", "action": "burn"}],
        ["a@b.com"],
    ],
)
def test_parse_sender_actions_rejects_bad_input(payload):
    """Malformed action lists raise InvalidRequest."""
    with pytest.raises(InvalidRequest):
        parse_sender_actions(payload)
