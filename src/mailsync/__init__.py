"""mailsync: multi-account IMAP ingestion with classification, search and alerts."""

__version__ = "0.1.0"
