"""Purge workflow - apply per-sender retention actions to the mailbox."""

from __future__ import annotations

from typing import Iterable

import structlog

from .exceptions import InvalidRequest, ScanNotFound
from .gmail_client import trash_messages
from .models import EmailRecord, PurgeResult, RetentionAction, SenderAction
from .retention import select_for_deletion
from .store import ScanStore
from .unsubscribe import attempt_unsubscribe

logger = structlog.get_logger()


def parse_sender_actions(items) -> list[SenderAction]:
    """Validate raw ``{sender_email, action, unsubscribe}`` dicts."""
    if not isinstance(items, list):
        raise InvalidRequest("senders must be a list")

    actions: list[SenderAction] = []
    for item in items:
        if not isinstance(item, dict) or not item.get("sender_email"):
            raise InvalidRequest("each sender needs a sender_email")
        try:
            action = RetentionAction(item.get("action", RetentionAction.SKIP.value))
        except ValueError as exc:
            raise InvalidRequest(f"unknown action {item.get('action')!r}") from exc
        actions.append(
            SenderAction(
                sender_email=str(item["sender_email"]).strip().lower(),
                action=action,
                unsubscribe=bool(item.get("unsubscribe", False)),
            )
        )
    return actions


def purge_records(service, records: list[EmailRecord], attempts: int = 1) -> tuple[int, int]:
    """Trash ``records`` and return (messages attempted, bytes attempted).

    Counts come from local metadata, not from what Gmail confirmed.
    """
    if not records:
        return 0, 0
    accepted = trash_messages(service, [r.message_id for r in records], attempts=attempts)
    if accepted < len(records):
        logger.warning("trash_partially_failed", attempted=len(records), accepted=accepted)
    return len(records), sum(r.size_bytes for r in records)


def execute_purge(
    store: ScanStore,
    service,
    scan_id: str,
    actions: Iterable[SenderAction],
    owner: str | None = None,
    attempts: int = 1,
    unsubscribe_timeout: float = 10.0,
) -> PurgeResult:
    """Apply sender actions for a scan, one sender at a time.

    Deletion counts are added to the scan's cumulative totals in a single
    atomic update at the end.  Unsubscribe attempts never affect them.
    """
    scan = store.get_scan(scan_id)
    if scan is None or (owner is not None and scan.owner != owner):
        raise ScanNotFound(f"Scan {scan_id} not found")

    result = PurgeResult()

    for sender_action in actions:
        action = RetentionAction(sender_action.action)
        if action is RetentionAction.SKIP and not sender_action.unsubscribe:
            continue

        emails = store.get_sender_emails(scan_id, sender_action.sender_email)
        if not emails:
            logger.info("purge_sender_empty", scan_id=scan_id, sender=sender_action.sender_email)
            continue

        to_delete = select_for_deletion(emails, action)
        if to_delete:
            count, size = purge_records(service, to_delete, attempts=attempts)
            result.mails_deleted += count
            result.space_recovered += size
            result.senders_deleted += 1

        if sender_action.unsubscribe:
            attempt_unsubscribe(emails[0].unsubscribe_url, service, timeout=unsubscribe_timeout)

        if action is not RetentionAction.SKIP:
            store.delete_sender_summary(scan_id, sender_action.sender_email)

        logger.info(
            "purge_sender_done",
            scan_id=scan_id,
            sender=sender_action.sender_email,
            action=action.value,
            deleted=len(to_delete),
            unsubscribe=sender_action.unsubscribe,
        )

    store.add_purge_totals(scan_id, result.senders_deleted, result.mails_deleted, result.space_recovered)
    logger.info("purge_completed", scan_id=scan_id, **result.to_dict())
    return result
