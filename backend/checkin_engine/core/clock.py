"""
Wall clock used by the check-in and reward services.

Routes take the clock as a dependency so tests can move time forward.
"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def get_clock() -> Clock:
    return utc_now
