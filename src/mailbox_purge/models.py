"""Data models for Mailbox Purge."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum


class ScanStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ScanStatus.COMPLETED, ScanStatus.FAILED)


class RetentionAction(str, Enum):
    SKIP = "skip"
    DELETE_ALL = "delete_all"
    RETAIN_LATEST = "retain_latest"
    RETAIN_1_IN_15 = "retain_1_in_15"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EmailRecord:
    """Metadata extracted from a single Gmail message."""

    message_id: str
    sender_email: str  # Lower-cased address
    received_at: datetime
    sender_name: str | None = None
    subject: str | None = None
    size_bytes: int = 0
    is_opened: bool = True
    has_unsubscribe: bool = False
    unsubscribe_url: str | None = None  # Raw List-Unsubscribe value


@dataclass
class SenderSummary:
    """Aggregated statistics for a single sender within one scan."""

    sender_email: str
    sender_name: str | None = None
    total_emails: int = 0
    unopened_count: int = 0
    unopened_percentage: float = 0.0
    total_size_bytes: int = 0
    has_unsubscribe: bool = False


@dataclass
class ScanRecord:
    """Lifecycle and statistics of one scan attempt."""

    id: str
    owner: str
    status: ScanStatus = ScanStatus.PENDING
    progress: int = 0
    progress_message: str = ""
    total_emails_scanned: int = 0
    deletable_senders: int = 0
    deletable_mails: int = 0
    recoverable_space: int = 0
    senders_deleted: int = 0
    mails_deleted: int = 0
    space_recovered: int = 0
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["started_at"] = self.started_at.isoformat()
        data["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        return data


@dataclass(frozen=True)
class SenderAction:
    """A user's decision for one sender, consumed once by a purge."""

    sender_email: str
    action: RetentionAction = RetentionAction.SKIP
    unsubscribe: bool = False


@dataclass
class PurgeResult:
    """Counts produced by one purge invocation."""

    senders_deleted: int = 0
    mails_deleted: int = 0
    space_recovered: int = 0

    def to_dict(self) -> dict:
        return asdict(self)
