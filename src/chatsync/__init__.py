"""chatsync: exactly-once chat message ingestion with optional AI replies."""

__version__ = "0.1.0"
