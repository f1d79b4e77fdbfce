from __future__ import annotations

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def seconds_ago(seconds: float) -> datetime:
    return utcnow() - timedelta(seconds=seconds)
