"""Small helpers shared across packages."""

from datetime import datetime, timezone
from typing import Callable
from uuid import uuid4

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current UTC time as a naive datetime.

    Naive UTC is what SQLite round-trips, so every component compares
    naive values.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())
