"""
Naive-UTC timestamps.

Columns are ``DateTime`` without timezone (SQLite drops tzinfo anyway), so
every value written or compared is naive UTC.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
