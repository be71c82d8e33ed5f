"""Timezone-aware clock shared by models, stores and services."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time in UTC."""
    return datetime.now(timezone.utc)
