"""Gmail API client functions for listing, fetching, trashing and sending messages."""

from __future__ import annotations

import base64
import re
from datetime import datetime, timezone
from email.mime.text import MIMEText
from typing import Callable

import structlog
from googleapiclient.errors import Error as GoogleClientError
from googleapiclient.errors import HttpError
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from .constants import (
    BATCH_SIZE,
    GMAIL_USER_ID,
    MAX_SCAN_MESSAGES,
    METADATA_HEADERS,
    PAGE_SIZE,
    RETRYABLE_STATUSES,
    TRASH_BATCH_SIZE,
    UNREAD_LABEL,
)
from .exceptions import UpstreamFailure
from .models import EmailRecord

logger = structlog.get_logger()

_ANGLE_ADDR_RE = re.compile(r"<(.+?)>")
_ANGLE_SEGMENT_RE = re.compile(r"<.*>")

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def _is_retryable_http_error(exc: BaseException) -> bool:
    return isinstance(exc, HttpError) and exc.resp.status in RETRYABLE_STATUSES


def _execute(request, attempts: int = 1):
    """Execute a request or batch, retrying 429/5xx up to ``attempts`` times in total."""
    retrying = Retrying(
        retry=retry_if_exception(_is_retryable_http_error),
        wait=wait_exponential(multiplier=1, min=1, max=60),
        stop=stop_after_attempt(attempts),
        reraise=True,
    )
    return retrying(request.execute)


def _describe(exc: HttpError) -> str:
    status = getattr(exc.resp, "status", "?")
    return f"HTTP {status}: {getattr(exc, 'reason', None) or exc}"


def _to_int(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def parse_from_header(from_value: str) -> tuple[str | None, str]:
    """Parse a From header into (display name, lower-cased address).

    Handles formats like:
      '"John Doe" <John@Example.com>' -> ("John Doe", "john@example.com")
      "<john@example.com>"            -> (None, "john@example.com")
      "john@example.com"              -> ("john@example.com", "john@example.com")
    """
    match = _ANGLE_ADDR_RE.search(from_value)
    email = (match.group(1) if match else from_value).strip().lower()
    name = _ANGLE_SEGMENT_RE.sub("", from_value).strip().replace('"', "").strip()
    return (name or None, email)


def parse_message(response: dict) -> EmailRecord | None:
    """Build an EmailRecord from a ``messages.get(format=metadata)`` response."""
    message_id = response.get("id")
    if not message_id:
        return None

    headers = {
        h.get("name", "").lower(): h.get("value", "")
        for h in response.get("payload", {}).get("headers", [])
    }
    from_value = headers.get("from", "")
    name, email = parse_from_header(from_value)
    unsubscribe = headers.get("list-unsubscribe") or None

    internal_date = _to_int(response.get("internalDate"))
    received_at = datetime.fromtimestamp(internal_date / 1000, tz=timezone.utc) if internal_date else _EPOCH

    return EmailRecord(
        message_id=message_id,
        sender_email=email,
        sender_name=name,
        subject=headers.get("subject") or None,
        received_at=received_at,
        size_bytes=_to_int(response.get("sizeEstimate")),
        is_opened=UNREAD_LABEL not in response.get("labelIds", []),
        has_unsubscribe=unsubscribe is not None,
        unsubscribe_url=unsubscribe,
    )


def list_message_ids(
    service,
    max_results: int = MAX_SCAN_MESSAGES,
    attempts: int = 1,
) -> list[str]:
    """List message IDs newest first, following pagination up to ``max_results``.

    A failed page aborts the listing with :class:`UpstreamFailure`.
    """
    ids: list[str] = []
    page_token: str | None = None

    while True:
        kwargs: dict = {
            "userId": GMAIL_USER_ID,
            "maxResults": PAGE_SIZE,
            "fields": "messages/id,nextPageToken",
        }
        if page_token:
            kwargs["pageToken"] = page_token

        try:
            resp = _execute(service.users().messages().list(**kwargs), attempts)
        except HttpError as exc:
            raise UpstreamFailure(f"Failed to list messages ({_describe(exc)})") from exc

        for msg in resp.get("messages", []):
            ids.append(msg["id"])
            if len(ids) >= max_results:
                logger.info("message_list_capped", cap=max_results)
                return ids[:max_results]

        page_token = resp.get("nextPageToken")
        if not page_token:
            break

    return ids


def fetch_message_metadata(
    service,
    message_ids: list[str],
    callback: Callable[[int, int], None] | None = None,
    attempts: int = 1,
) -> list[EmailRecord]:
    """Fetch metadata for messages in batches of BATCH_SIZE.

    The sub-requests of one batch run together in a single BatchHttpRequest.
    Messages whose fetch fails are left out of the result; a batch whose
    transport fails is left out entirely.  ``callback(processed, total)`` runs
    after every batch.
    """
    results: list[EmailRecord] = []
    total = len(message_ids)

    for start in range(0, total, BATCH_SIZE):
        chunk = message_ids[start:start + BATCH_SIZE]
        fetched: dict[str, EmailRecord] = {}

        def _cb(request_id, response, exception):
            if exception is not None:
                logger.debug("message_fetch_failed", request_id=request_id, error=str(exception))
                return
            record = parse_message(response or {})
            if record is not None:
                fetched[request_id] = record

        batch = service.new_batch_http_request(callback=_cb)
        for offset, msg_id in enumerate(chunk):
            batch.add(
                service.users().messages().get(
                    userId=GMAIL_USER_ID,
                    id=msg_id,
                    format="metadata",
                    metadataHeaders=METADATA_HEADERS,
                ),
                request_id=str(offset),
            )

        try:
            _execute(batch, attempts)
        except (GoogleClientError, OSError) as exc:
            logger.warning("metadata_batch_failed", start=start, size=len(chunk), error=str(exc))

        omitted = len(chunk) - len(fetched)
        if omitted:
            logger.info("metadata_fetch_omitted", start=start, omitted=omitted)
        results.extend(fetched[str(i)] for i in range(len(chunk)) if str(i) in fetched)

        if callback:
            callback(min(start + BATCH_SIZE, total), total)

    return results


def trash_messages(
    service,
    message_ids: list[str],
    attempts: int = 1,
) -> int:
    """Move messages to trash with batchModify, TRASH_BATCH_SIZE ids per call.

    A failed chunk is logged and skipped.  Returns how many ids were in chunks
    the API accepted.
    """
    accepted = 0

    for start in range(0, len(message_ids), TRASH_BATCH_SIZE):
        chunk = message_ids[start:start + TRASH_BATCH_SIZE]
        request = service.users().messages().batchModify(
            userId=GMAIL_USER_ID,
            body={
                "ids": chunk,
                "addLabelIds": ["TRASH"],
                "removeLabelIds": ["INBOX"],
            },
        )
        try:
            _execute(request, attempts)
        except (GoogleClientError, OSError) as exc:
            logger.warning("trash_chunk_failed", start=start, size=len(chunk), error=str(exc))
            continue
        accepted += len(chunk)

    return accepted


def send_message(service, to: str, subject: str, body: str, attempts: int = 1) -> dict:
    """Send a plain-text message from the mailbox owner."""
    mime = MIMEText(body, "plain")
    mime["To"] = to
    mime["Subject"] = subject
    raw = base64.urlsafe_b64encode(mime.as_bytes()).decode("ascii").rstrip("=")

    try:
        return _execute(
            service.users().messages().send(userId=GMAIL_USER_ID, body={"raw": raw}),
            attempts,
        )
    except HttpError as exc:
        raise UpstreamFailure(f"Failed to send message to {to} ({_describe(exc)})") from exc
