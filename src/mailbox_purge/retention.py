"""Retention policies: which of a sender's messages a purge deletes."""

from __future__ import annotations

import math
from typing import Sequence, TypeVar

from .constants import RETAIN_EVERY
from .models import RetentionAction, SenderSummary

T = TypeVar("T")


def select_for_deletion(messages: Sequence[T], action: RetentionAction) -> list[T]:
    """Return the subset of ``messages`` (ordered newest first) to delete.

    skip            -> nothing
    delete_all      -> everything
    retain_latest   -> everything but the newest message
    retain_1_in_15  -> everything but positions 0, 15, 30, ...
    """
    action = RetentionAction(action)
    if action is RetentionAction.SKIP:
        return []
    if action is RetentionAction.DELETE_ALL:
        return list(messages)
    if action is RetentionAction.RETAIN_LATEST:
        return list(messages[1:])
    return [m for i, m in enumerate(messages) if i % RETAIN_EVERY != 0]


def deletion_count(total: int, action: RetentionAction) -> int:
    """How many of ``total`` messages ``action`` deletes."""
    action = RetentionAction(action)
    if total <= 0 or action is RetentionAction.SKIP:
        return 0
    if action is RetentionAction.DELETE_ALL:
        return total
    if action is RetentionAction.RETAIN_LATEST:
        return total - 1
    return total - math.ceil(total / RETAIN_EVERY)


def estimate_savings(summary: SenderSummary, action: RetentionAction) -> int:
    """Bytes expected to be freed, assuming every message has the average size."""
    if summary.total_emails <= 0:
        return 0
    count = deletion_count(summary.total_emails, action)
    if count == summary.total_emails:
        return summary.total_size_bytes
    return round(summary.total_size_bytes / summary.total_emails * count)
