"""Folding of per-message records into per-sender summaries."""

from __future__ import annotations

import math
from typing import Iterable

from .constants import DELETABLE_UNOPENED_PCT
from .models import EmailRecord, SenderSummary


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positive values."""
    return int(math.floor(value + 0.5))


def unopened_percentage(unopened: int, total: int) -> float:
    """Percentage of unopened mail with two-decimal precision, 0 for no mail."""
    if total <= 0:
        return 0.0
    return round_half_up(unopened / total * 10000) / 100


def _canonical_order(records: Iterable[EmailRecord]) -> list[EmailRecord]:
    # Newest first; ties broken by id so any permutation folds identically.
    by_id = sorted(records, key=lambda r: r.message_id)
    return sorted(by_id, key=lambda r: r.received_at, reverse=True)


def aggregate_senders(records: Iterable[EmailRecord]) -> dict[str, SenderSummary]:
    """Group records by sender address and build SenderSummary objects.

    The display name is the first non-empty name in newest-first order, so
    the result does not depend on the order of ``records``.
    """
    senders: dict[str, SenderSummary] = {}

    for record in _canonical_order(records):
        summary = senders.get(record.sender_email)
        if summary is None:
            summary = senders[record.sender_email] = SenderSummary(sender_email=record.sender_email)

        summary.total_emails += 1
        if not record.is_opened:
            summary.unopened_count += 1
        summary.total_size_bytes += record.size_bytes
        if record.has_unsubscribe:
            summary.has_unsubscribe = True
        if not summary.sender_name and record.sender_name:
            summary.sender_name = record.sender_name

    for summary in senders.values():
        summary.unopened_percentage = unopened_percentage(summary.unopened_count, summary.total_emails)

    return senders


def is_deletable(summary: SenderSummary) -> bool:
    return summary.unopened_percentage >= DELETABLE_UNOPENED_PCT


def deletable_stats(summaries: Iterable[SenderSummary]) -> tuple[int, int, int]:
    """Return (deletable senders, deletable mails, recoverable bytes)."""
    senders = mails = space = 0
    for summary in summaries:
        if is_deletable(summary):
            senders += 1
            mails += summary.total_emails
            space += summary.total_size_bytes
    return senders, mails, space
