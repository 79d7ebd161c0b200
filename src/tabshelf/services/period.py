"""
Retention period arithmetic for the auto-delete engine.

Pure functions: callers supply ``now`` and drive recomputation on their own
poll interval. Times are epoch milliseconds.
"""
import math
import time
from dataclasses import dataclass

NEVER = "never"

_MINUTE = 60
_HOUR = 60 * _MINUTE
_DAY = 24 * _HOUR

PERIOD_SECONDS: dict[str, int] = {
    "30sec": 30,
    "1min": _MINUTE,
    "1hour": _HOUR,
    "1day": _DAY,
    "7days": 7 * _DAY,
    "14days": 14 * _DAY,
    "30days": 30 * _DAY,
    "180days": 180 * _DAY,
    "365days": 365 * _DAY,
}

PERIODS: tuple[str, ...] = (NEVER, *PERIOD_SECONDS)

# Short periods used for trying auto-delete out; saved times are re-stamped
# into the past when one of these is applied so the effect is visible at once.
TEST_PERIODS = frozenset({"30sec", "1min"})


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def to_seconds(period: str) -> float:
    """
    Map a period token to seconds.

    ``never`` and unknown tokens map to infinity, i.e. never expire.
    """
    return PERIOD_SECONDS.get(period, math.inf)


def is_period(period: str) -> bool:
    return period in PERIODS


def is_shortening(current: str, new: str) -> bool:
    """
    Tell whether switching from ``current`` to ``new`` shortens retention.

    Leaving ``never`` always counts as shortening (even ``never`` to ``never``);
    switching to ``never`` never does.
    """
    if current == NEVER:
        return True
    if new == NEVER:
        return False
    return to_seconds(new) < to_seconds(current)


@dataclass(frozen=True)
class TimeRemaining:
    """
    Time left before an entry expires.

    ``millis`` is negative once expired. Severity tiers for display are left
    to the caller.
    """

    expired: bool
    millis: float


def remaining(saved_at: int | None, period: str, now: int) -> TimeRemaining | None:
    """
    Compute the time remaining for an entry saved at ``saved_at``.

    An unknown period never expires, so its ``millis`` is infinite.

    Returns:
        None when the period is ``never`` or ``saved_at`` is absent.
    """
    if period == NEVER or saved_at is None:
        return None
    millis = saved_at + to_seconds(period) * 1000 - now
    return TimeRemaining(expired=millis <= 0, millis=millis)


def expiration_cutoff(period: str, now: int) -> int | None:
    """
    Entries saved at or before the returned instant are expired, matching
    ``remaining()`` which reports an entry expired once ``millis <= 0``.

    Returns:
        None when nothing expires under ``period``.
    """
    seconds = to_seconds(period)
    if math.isinf(seconds):
        return None
    return now - int(seconds * 1000)
