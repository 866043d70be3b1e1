from datetime import date, datetime, timezone

from shared.models.usage import UsageAction, UsageLogEntry
from shared.services.usage_stats import summarize_usage


def entry(action, day, tokens=100, success=True) -> UsageLogEntry:
    return UsageLogEntry(
        user_id="user-1",
        action=action,
        tokens_used=tokens,
        success=success,
        timestamp=datetime(2025, 6, day, 10, 0, tzinfo=timezone.utc),
    )


ENTRIES = [
    entry(UsageAction.OFFER_GENERATION, 1, 400),
    entry(UsageAction.OFFER_GENERATION, 1, 350, success=False),
    entry(UsageAction.HOOK_GENERATION, 2, 200),
    entry(UsageAction.VAULT_ACCESS, 3, 0),
    entry(UsageAction.QUIZ_ATTEMPT, 5, 0),
]


def test_summarize_all_entries():
    stats = summarize_usage(ENTRIES)

    assert stats.total_actions == 5
    assert stats.successful_actions == 4
    assert stats.total_tokens_used == 950
    assert stats.action_breakdown == {
        "offer_generation": 2,
        "hook_generation": 1,
        "vault_access": 1,
        "quiz_attempt": 1,
    }
    assert stats.daily_breakdown == {
        "2025-06-01": 2,
        "2025-06-02": 1,
        "2025-06-03": 1,
        "2025-06-05": 1,
    }


def test_summarize_window_is_inclusive():
    stats = summarize_usage(ENTRIES, date(2025, 6, 2), date(2025, 6, 3))

    assert stats.total_actions == 2
    assert stats.action_breakdown == {"hook_generation": 1, "vault_access": 1}
    assert set(stats.daily_breakdown) == {"2025-06-02", "2025-06-03"}


def test_summarize_empty():
    stats = summarize_usage([])
    assert stats.total_actions == 0
    assert stats.to_response() == {
        "totalActions": 0,
        "successfulActions": 0,
        "totalTokensUsed": 0,
        "actionBreakdown": {},
        "dailyBreakdown": {},
    }
