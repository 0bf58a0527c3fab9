"""SQLite store for scan records, email metadata and sender summaries."""

from __future__ import annotations

import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Iterator

import structlog

from .config import ActiveScanPolicy
from .constants import DB_PATH, STORE_CHUNK_SIZE
from .exceptions import PersistenceFailure, ScanInProgress
from .models import EmailRecord, ScanRecord, ScanStatus, SenderSummary, utcnow

logger = structlog.get_logger()

ScanListener = Callable[[ScanRecord], None]

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS scans (
    id TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    status TEXT NOT NULL,
    progress INTEGER NOT NULL DEFAULT 0,
    progress_message TEXT NOT NULL DEFAULT '',
    total_emails_scanned INTEGER NOT NULL DEFAULT 0,
    deletable_senders INTEGER NOT NULL DEFAULT 0,
    deletable_mails INTEGER NOT NULL DEFAULT 0,
    recoverable_space INTEGER NOT NULL DEFAULT 0,
    senders_deleted INTEGER NOT NULL DEFAULT 0,
    mails_deleted INTEGER NOT NULL DEFAULT 0,
    space_recovered INTEGER NOT NULL DEFAULT 0,
    started_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_scans_owner ON scans (owner, status);

CREATE TABLE IF NOT EXISTS emails (
    scan_id TEXT NOT NULL,
    owner TEXT NOT NULL,
    message_id TEXT NOT NULL,
    sender_name TEXT,
    sender_email TEXT NOT NULL,
    subject TEXT,
    received_ms INTEGER NOT NULL,
    size_bytes INTEGER NOT NULL DEFAULT 0,
    is_opened INTEGER NOT NULL,
    has_unsubscribe INTEGER NOT NULL,
    unsubscribe_url TEXT
);

CREATE INDEX IF NOT EXISTS idx_emails_sender ON emails (scan_id, sender_email);

CREATE TABLE IF NOT EXISTS sender_summaries (
    scan_id TEXT NOT NULL,
    owner TEXT NOT NULL,
    sender_email TEXT NOT NULL,
    sender_name TEXT,
    total_emails INTEGER NOT NULL,
    unopened_count INTEGER NOT NULL,
    unopened_percentage REAL NOT NULL,
    total_size_bytes INTEGER NOT NULL,
    has_unsubscribe INTEGER NOT NULL,
    PRIMARY KEY (scan_id, sender_email)
);
"""

# Columns a scan update may touch.
_SCAN_UPDATABLE = frozenset(
    {
        "status",
        "progress",
        "progress_message",
        "total_emails_scanned",
        "deletable_senders",
        "deletable_mails",
        "recoverable_space",
        "completed_at",
    }
)


def _to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _scan_from_row(row: sqlite3.Row) -> ScanRecord:
    return ScanRecord(
        id=row["id"],
        owner=row["owner"],
        status=ScanStatus(row["status"]),
        progress=row["progress"],
        progress_message=row["progress_message"],
        total_emails_scanned=row["total_emails_scanned"],
        deletable_senders=row["deletable_senders"],
        deletable_mails=row["deletable_mails"],
        recoverable_space=row["recoverable_space"],
        senders_deleted=row["senders_deleted"],
        mails_deleted=row["mails_deleted"],
        space_recovered=row["space_recovered"],
        started_at=datetime.fromisoformat(row["started_at"]),
        completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
    )


def _email_from_row(row: sqlite3.Row) -> EmailRecord:
    return EmailRecord(
        message_id=row["message_id"],
        sender_email=row["sender_email"],
        sender_name=row["sender_name"],
        subject=row["subject"],
        received_at=_from_ms(row["received_ms"]),
        size_bytes=row["size_bytes"],
        is_opened=bool(row["is_opened"]),
        has_unsubscribe=bool(row["has_unsubscribe"]),
        unsubscribe_url=row["unsubscribe_url"],
    )


def _summary_from_row(row: sqlite3.Row) -> SenderSummary:
    return SenderSummary(
        sender_email=row["sender_email"],
        sender_name=row["sender_name"],
        total_emails=row["total_emails"],
        unopened_count=row["unopened_count"],
        unopened_percentage=row["unopened_percentage"],
        total_size_bytes=row["total_size_bytes"],
        has_unsubscribe=bool(row["has_unsubscribe"]),
    )


def _chunks(rows: list, size: int) -> Iterator[list]:
    for start in range(0, len(rows), size):
        yield rows[start:start + size]


class ScanStore:
    """Persistent SQLite store shared by the scan and purge pipelines.

    One connection is shared across threads and serialized with a lock.
    Observers can :meth:`subscribe` to a scan and receive the fresh
    ScanRecord after every committed change to it.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = Path(db_path or DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._listeners: dict[str, list[ScanListener]] = {}
        self._create_tables()

    def _create_tables(self) -> None:
        with self._lock:
            self._conn.executescript(_CREATE_TABLES_SQL)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        # IMMEDIATE takes the database write lock up front, so reads inside
        # the transaction cannot be invalidated by another process.
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute("BEGIN IMMEDIATE")
                    yield self._conn
            except sqlite3.Error as exc:
                raise PersistenceFailure(f"Store write failed: {exc}") from exc

    def _fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise PersistenceFailure(f"Store read failed: {exc}") from exc

    # --- change notification ---

    def subscribe(self, scan_id: str, listener: ScanListener) -> Callable[[], None]:
        """Call ``listener`` with the updated ScanRecord after each change.

        Returns a function that removes the subscription.
        """
        with self._lock:
            self._listeners.setdefault(scan_id, []).append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(scan_id, [])
                if listener in listeners:
                    listeners.remove(listener)
                if not listeners:
                    self._listeners.pop(scan_id, None)

        return _unsubscribe

    def _notify(self, scan_id: str) -> ScanRecord | None:
        record = self.get_scan(scan_id)
        with self._lock:
            listeners = list(self._listeners.get(scan_id, []))
        if record is None:
            return None
        for listener in listeners:
            try:
                listener(record)
            except Exception:  # noqa: BLE001
                logger.exception("scan_listener_failed", scan_id=scan_id)
        return record

    # --- scans ---

    def create_scan(
        self,
        owner: str,
        rescan: bool = False,
        policy: ActiveScanPolicy = ActiveScanPolicy.ALLOW,
        status: ScanStatus = ScanStatus.IN_PROGRESS,
        message: str = "Starting scan...",
    ) -> tuple[ScanRecord, bool]:
        """Create a scan for ``owner`` after applying the active-scan policy.

        The check, the optional history reset and the insert happen in one
        transaction.  Returns ``(record, created)``; ``created`` is False when
        the ``reuse`` policy hands back the scan already in progress.  A rescan
        is refused while a scan is running, since the reset would delete it.
        """
        with self._transaction() as conn:
            active = conn.execute(
                "SELECT * FROM scans WHERE owner = ? AND status = ? ORDER BY started_at DESC LIMIT 1",
                (owner, ScanStatus.IN_PROGRESS.value),
            ).fetchone()
            if active is not None:
                if policy is ActiveScanPolicy.REJECT:
                    raise ScanInProgress(f"Scan {active['id']} is already in progress")
                if policy is ActiveScanPolicy.REUSE:
                    return _scan_from_row(active), False
                if rescan:
                    raise ScanInProgress(f"Cannot rescan while scan {active['id']} is in progress")

            if rescan:
                self._delete_owner_history(conn, owner)

            record = ScanRecord(
                id=str(uuid.uuid4()),
                owner=owner,
                status=status,
                progress=0,
                progress_message=message,
                started_at=utcnow(),
            )
            conn.execute(
                "INSERT INTO scans (id, owner, status, progress, progress_message, started_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.owner,
                    record.status.value,
                    record.progress,
                    record.progress_message,
                    record.started_at.isoformat(),
                ),
            )
        return record, True

    def get_scan(self, scan_id: str) -> ScanRecord | None:
        rows = self._fetchall("SELECT * FROM scans WHERE id = ?", (scan_id,))
        return _scan_from_row(rows[0]) if rows else None

    def list_scans(self, owner: str) -> list[ScanRecord]:
        rows = self._fetchall(
            "SELECT * FROM scans WHERE owner = ? ORDER BY started_at DESC", (owner,)
        )
        return [_scan_from_row(r) for r in rows]

    def update_scan(self, scan_id: str, **fields) -> ScanRecord | None:
        """Overwrite the given scan columns and notify subscribers."""
        unknown = set(fields) - _SCAN_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update scan columns: {sorted(unknown)}")
        if not fields:
            return self.get_scan(scan_id)

        values = []
        for key, value in fields.items():
            if isinstance(value, ScanStatus):
                value = value.value
            elif isinstance(value, datetime):
                value = value.isoformat()
            values.append(value)

        assignments = ", ".join(f"{key} = ?" for key in fields)
        with self._transaction() as conn:
            conn.execute(f"UPDATE scans SET {assignments} WHERE id = ?", (*values, scan_id))
        return self._notify(scan_id)

    def add_purge_totals(
        self, scan_id: str, senders_deleted: int, mails_deleted: int, space_recovered: int
    ) -> ScanRecord | None:
        """Atomically add purge counts to the scan's cumulative totals."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE scans SET senders_deleted = senders_deleted + ?, "
                "mails_deleted = mails_deleted + ?, space_recovered = space_recovered + ? "
                "WHERE id = ?",
                (senders_deleted, mails_deleted, space_recovered, scan_id),
            )
        return self._notify(scan_id)

    def fail_interrupted_scans(self, owner: str | None = None, message: str = "Scan interrupted") -> int:
        """Mark scans still in progress as failed, only ``owner``'s when given."""
        sql = "UPDATE scans SET status = ?, progress_message = ?, completed_at = ? WHERE status = ?"
        params: tuple = (ScanStatus.FAILED.value, message, utcnow().isoformat(), ScanStatus.IN_PROGRESS.value)
        if owner is not None:
            sql += " AND owner = ?"
            params += (owner,)
        with self._transaction() as conn:
            cursor = conn.execute(sql, params)
        return cursor.rowcount

    @staticmethod
    def _delete_owner_history(conn: sqlite3.Connection, owner: str) -> None:
        conn.execute("DELETE FROM emails WHERE owner = ?", (owner,))
        conn.execute("DELETE FROM sender_summaries WHERE owner = ?", (owner,))
        conn.execute("DELETE FROM scans WHERE owner = ?", (owner,))

    # --- emails ---

    def insert_emails(
        self,
        scan_id: str,
        owner: str,
        records: Iterable[EmailRecord],
        chunk_size: int = STORE_CHUNK_SIZE,
    ) -> int:
        """Insert email records, one transaction per chunk of ``chunk_size``."""
        rows = [
            (
                scan_id,
                owner,
                r.message_id,
                r.sender_name,
                r.sender_email,
                r.subject,
                _to_ms(r.received_at),
                r.size_bytes,
                int(r.is_opened),
                int(r.has_unsubscribe),
                r.unsubscribe_url,
            )
            for r in records
        ]
        for chunk in _chunks(rows, chunk_size):
            with self._transaction() as conn:
                conn.executemany(
                    "INSERT INTO emails (scan_id, owner, message_id, sender_name, sender_email, "
                    "subject, received_ms, size_bytes, is_opened, has_unsubscribe, unsubscribe_url) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    chunk,
                )
        return len(rows)

    def get_sender_emails(self, scan_id: str, sender_email: str) -> list[EmailRecord]:
        """Return a sender's email records for a scan, newest first."""
        rows = self._fetchall(
            "SELECT * FROM emails WHERE scan_id = ? AND sender_email = ? "
            "ORDER BY received_ms DESC, message_id ASC",
            (scan_id, sender_email),
        )
        return [_email_from_row(r) for r in rows]

    def count_emails(self, scan_id: str) -> int:
        return self._fetchall("SELECT COUNT(*) AS c FROM emails WHERE scan_id = ?", (scan_id,))[0]["c"]

    # --- sender summaries ---

    def insert_summaries(
        self,
        scan_id: str,
        owner: str,
        summaries: Iterable[SenderSummary],
        chunk_size: int = STORE_CHUNK_SIZE,
    ) -> int:
        """Insert sender summaries, one transaction per chunk of ``chunk_size``."""
        rows = [
            (
                scan_id,
                owner,
                s.sender_email,
                s.sender_name,
                s.total_emails,
                s.unopened_count,
                s.unopened_percentage,
                s.total_size_bytes,
                int(s.has_unsubscribe),
            )
            for s in summaries
        ]
        for chunk in _chunks(rows, chunk_size):
            with self._transaction() as conn:
                conn.executemany(
                    "INSERT INTO sender_summaries (scan_id, owner, sender_email, sender_name, "
                    "total_emails, unopened_count, unopened_percentage, total_size_bytes, "
                    "has_unsubscribe) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    chunk,
                )
        return len(rows)

    def list_sender_summaries(self, scan_id: str, min_unopened: float = 0.0) -> list[SenderSummary]:
        """Return a scan's sender summaries, most unopened and busiest first."""
        rows = self._fetchall(
            "SELECT * FROM sender_summaries WHERE scan_id = ? AND unopened_percentage >= ? "
            "ORDER BY unopened_percentage DESC, total_emails DESC, sender_email ASC",
            (scan_id, min_unopened),
        )
        return [_summary_from_row(r) for r in rows]

    def get_sender_summary(self, scan_id: str, sender_email: str) -> SenderSummary | None:
        rows = self._fetchall(
            "SELECT * FROM sender_summaries WHERE scan_id = ? AND sender_email = ?",
            (scan_id, sender_email),
        )
        return _summary_from_row(rows[0]) if rows else None

    def delete_sender_summary(self, scan_id: str, sender_email: str) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM sender_summaries WHERE scan_id = ? AND sender_email = ?",
                (scan_id, sender_email),
            )
        return cursor.rowcount

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    # --- context manager ---

    def __enter__(self) -> ScanStore:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        self.close()
