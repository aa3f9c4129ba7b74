"""Wall clock helpers shared by token, session and rate limit code."""

import time

from datetime import datetime, timezone


def epoch_seconds() -> int:
    """Current UNIX time truncated to whole seconds."""
    return int(time.time())


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.fromtimestamp(time.time(), tz=timezone.utc)


def from_epoch(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)
