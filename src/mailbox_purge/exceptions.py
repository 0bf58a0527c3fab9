"""Custom exceptions for Mailbox Purge.

Each error carries the HTTP status and machine-readable code it maps to at the
API boundary.
"""


class MailboxPurgeError(Exception):
    """Base exception for all Mailbox Purge errors."""

    status_code = 500
    code = "internal"


class Unauthenticated(MailboxPurgeError):
    """No authenticated owner, or no usable credential for the owner."""

    status_code = 401
    code = "unauthenticated"


class ReauthorizationRequired(Unauthenticated):
    """The stored refresh credential is missing, revoked or could not be refreshed."""

    code = "reauthorization_required"


class InvalidRequest(MailboxPurgeError):
    """Malformed input from the caller."""

    status_code = 400
    code = "invalid_request"


class ScanNotFound(InvalidRequest):
    """The scan does not exist or belongs to another owner."""

    status_code = 404
    code = "scan_not_found"


class ScanInProgress(InvalidRequest):
    """The owner already has a scan running."""

    status_code = 409
    code = "scan_in_progress"


class UpstreamFailure(MailboxPurgeError):
    """The Gmail API returned an error or could not be reached."""

    code = "upstream_failure"


class PersistenceFailure(MailboxPurgeError):
    """The local store failed to read or write."""

    code = "persistence_failure"


class InvalidTransition(MailboxPurgeError):
    """A scan record was asked to move to a state it cannot reach."""

    code = "invalid_transition"
