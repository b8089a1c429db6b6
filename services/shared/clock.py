from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, the form sqlite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
