"""
Usage Period Calculator - Maps a period kind and an instant to its UTC window.

Windows are half-open [start, end). MONTHLY and YEARLY use calendar arithmetic.
"""

from datetime import UTC, datetime, timedelta

from metering.models.api import UsagePeriod
from metering.models.domain import UsageWindow


def _utc_midnight(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        raise ValueError("instant must be timezone-aware")
    utc = instant.astimezone(UTC)
    return datetime(utc.year, utc.month, utc.day, tzinfo=UTC)


def compute_window(period: UsagePeriod, now: datetime) -> UsageWindow:
    """
    Compute the [start, end) window containing now.

    Raises:
        ValueError: If now is naive
    """
    midnight = _utc_midnight(now)

    if period == UsagePeriod.DAILY:
        return UsageWindow(start=midnight, end=midnight + timedelta(days=1))

    if period == UsagePeriod.WEEKLY:
        # ISO week: Monday is weekday() == 0
        start = midnight - timedelta(days=midnight.weekday())
        return UsageWindow(start=start, end=start + timedelta(days=7))

    if period == UsagePeriod.YEARLY:
        return UsageWindow(
            start=datetime(midnight.year, 1, 1, tzinfo=UTC),
            end=datetime(midnight.year + 1, 1, 1, tzinfo=UTC),
        )

    # MONTHLY (default)
    start = datetime(midnight.year, midnight.month, 1, tzinfo=UTC)
    if midnight.month == 12:
        end = datetime(midnight.year + 1, 1, 1, tzinfo=UTC)
    else:
        end = datetime(midnight.year, midnight.month + 1, 1, tzinfo=UTC)
    return UsageWindow(start=start, end=end)
