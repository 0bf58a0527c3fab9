"""Mailbox Purge - scan a Gmail mailbox and purge senders you never read."""

__version__ = "0.1.0"
