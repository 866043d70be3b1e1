"""Aggregation of usage log entries for the admin dashboard."""
from datetime import date, datetime, timezone
from typing import Iterable, Optional, Union

from shared.models.usage import UsageLogEntry, UsageStats


def _as_date(value: Union[date, datetime, None]) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).date() if value.tzinfo else value.date()
    return value


def _entry_date(entry: UsageLogEntry) -> date:
    return _as_date(entry.timestamp)


def summarize_usage(
    entries: Iterable[UsageLogEntry],
    start: Union[date, datetime, None] = None,
    end: Union[date, datetime, None] = None,
) -> UsageStats:
    """
    Aggregate usage entries, optionally restricted to the inclusive [start, end] date window.

    Dates are compared in UTC.
    """
    start_date = _as_date(start)
    end_date = _as_date(end)
    stats = UsageStats()

    for entry in entries:
        day = _entry_date(entry)
        if start_date and day < start_date:
            continue
        if end_date and day > end_date:
            continue

        stats.total_actions += 1
        if entry.success:
            stats.successful_actions += 1
        stats.total_tokens_used += entry.tokens_used

        action = entry.action_value
        stats.action_breakdown[action] = stats.action_breakdown.get(action, 0) + 1
        day_key = day.isoformat()
        stats.daily_breakdown[day_key] = stats.daily_breakdown.get(day_key, 0) + 1

    return stats
