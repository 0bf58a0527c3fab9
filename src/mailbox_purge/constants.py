"""Constants for Mailbox Purge."""

from pathlib import Path

# --- Config paths ---
CONFIG_DIR = Path.home() / ".mailbox-purge"
CREDENTIALS_PATH = CONFIG_DIR / "credentials.json"
TOKEN_DIR = CONFIG_DIR / "tokens"
DB_PATH = CONFIG_DIR / "mailbox.db"

# --- Gmail API ---
SCOPES = ["https://www.googleapis.com/auth/gmail.modify"]
GMAIL_USER_ID = "me"
PAGE_SIZE = 500  # messages per list page
MAX_SCAN_MESSAGES = 10_000  # hard cap on ids collected per scan
BATCH_SIZE = 50  # messages per BatchHttpRequest
TRASH_BATCH_SIZE = 1000  # messages per batchModify call
METADATA_HEADERS = ["From", "Subject", "List-Unsubscribe"]
UNREAD_LABEL = "UNREAD"
RETRYABLE_STATUSES = (429, 500, 503)

# --- Store ---
STORE_CHUNK_SIZE = 500  # rows per bulk insert

# --- Classification ---
DELETABLE_UNOPENED_PCT = 75.0
RETAIN_EVERY = 15

# --- Progress stages (percent) ---
PROGRESS_CREATED = 0
PROGRESS_LISTING = 5
PROGRESS_LISTED = 10
PROGRESS_FETCH_SPAN = 70  # 10 -> 80 across metadata batches
PROGRESS_EMAILS_STORED = 85
PROGRESS_SUMMARIES_STORED = 90
PROGRESS_DONE = 100

# --- Unsubscribe ---
UNSUBSCRIBE_SUBJECT = "Unsubscribe"
UNSUBSCRIBE_BODY = "Please unsubscribe me from this mailing list."

# --- Display ---
SENDER_TABLE_LIMIT = 50
