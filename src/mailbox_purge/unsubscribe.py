"""Best-effort execution of List-Unsubscribe directives."""

from __future__ import annotations

import re

import requests
import structlog

from .constants import UNSUBSCRIBE_BODY, UNSUBSCRIBE_SUBJECT
from .gmail_client import send_message

logger = structlog.get_logger()

_MAILTO_RE = re.compile(r"mailto:([^?>,\s]+)", re.IGNORECASE)


def parse_http_target(directive: str) -> str | None:
    """Return the first HTTP(S) candidate of a List-Unsubscribe value."""
    candidate = directive.replace("<", "").replace(">", "").split(",")[0].strip()
    return candidate if candidate.lower().startswith("http") else None


def _http_unsubscribe(url: str, timeout: float) -> None:
    try:
        requests.post(url, timeout=timeout).raise_for_status()
    except requests.RequestException as exc:
        logger.info("unsubscribe_post_failed", url=url, error=str(exc))
        requests.get(url, timeout=timeout).raise_for_status()


def attempt_unsubscribe(directive: str | None, service, timeout: float = 10.0) -> bool:
    """Try once to unsubscribe using a raw List-Unsubscribe value.

    mailto directives send a short request through the owner's mailbox; HTTP
    directives are POSTed, falling back to a single GET.  Never raises.
    Returns whether a request went out without error.
    """
    if not directive:
        return False

    try:
        if "mailto:" in directive.lower():
            match = _MAILTO_RE.search(directive)
            if not match:
                logger.info("unsubscribe_no_target", directive=directive)
                return False
            send_message(service, match.group(1), UNSUBSCRIBE_SUBJECT, UNSUBSCRIBE_BODY)
            logger.info("unsubscribe_mail_sent", to=match.group(1))
            return True

        url = parse_http_target(directive)
        if url is None:
            logger.info("unsubscribe_no_target", directive=directive)
            return False
        _http_unsubscribe(url, timeout)
        logger.info("unsubscribe_http_sent", url=url)
        return True
    except Exception as exc:  # noqa: BLE001
        logger.warning("unsubscribe_failed", directive=directive, error=str(exc))
        return False
