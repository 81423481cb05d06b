from datetime import UTC, datetime


def utc_now() -> datetime:
    """Current UTC time as a naive datetime.

    Timestamps are stored naive (SQLite drops tzinfo), so every comparison
    against ``expires_at`` has to use the same representation.
    """
    return datetime.now(UTC).replace(tzinfo=None)
