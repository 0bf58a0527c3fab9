"""Runtime configuration for Mailbox Purge.

Settings are read from environment variables with the ``MAILBOX_PURGE_``
prefix (e.g. ``MAILBOX_PURGE_ACTIVE_SCAN_POLICY=reuse``) or a local ``.env``
file. Fixed Gmail API limits live in :mod:`mailbox_purge.constants`.
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import CREDENTIALS_PATH, DB_PATH, TOKEN_DIR


class ActiveScanPolicy(str, Enum):
    """What to do when an owner already has a scan in progress."""

    REJECT = "reject"
    REUSE = "reuse"
    ALLOW = "allow"


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="MAILBOX_PURGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    db_path: Path = Field(default=DB_PATH, description="SQLite database holding scan results")
    token_dir: Path = Field(
        default=TOKEN_DIR,
        description="Directory of per-owner authorized-user token files",
    )
    credentials_path: Path = Field(
        default=CREDENTIALS_PATH,
        description="OAuth client secrets downloaded from the Google Cloud Console",
    )

    active_scan_policy: ActiveScanPolicy = Field(
        default=ActiveScanPolicy.REJECT,
        description="Behaviour when a scan is requested while one is in progress",
    )
    scan_workers: int = Field(default=2, ge=1, description="Background scan threads")
    gmail_retry_attempts: int = Field(
        default=1,
        ge=1,
        description="Attempts per Gmail call on 429/5xx responses (1 disables retries)",
    )
    unsubscribe_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Timeout in seconds for HTTP unsubscribe requests",
    )

    log_level: str = Field(default="INFO", description="Logging level")
    default_owner: str = Field(
        default="me",
        description="Owner id used by the CLI when --owner is not given",
    )


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""
    return Settings()
