from datetime import date, datetime, timedelta, timezone

import pytest
from botocore.exceptions import ClientError

from shared.models.subscription import SubscriptionStatus, Tier, UserNotFoundError
from shared.models.usage import QuotaExceededError, UsageAction
from shared.services.usage_service import MAX_STATS_DAYS

NOW = datetime(2025, 6, 15, 9, 0, tzinfo=timezone.utc)
TOMORROW = NOW + timedelta(days=1)


def test_status_for_new_free_user(usage_service, repository):
    repository.create_user("user-1", None, NOW)

    status = usage_service.get_status("user-1", NOW)

    assert status.can_proceed is True
    assert status.remaining_offers == 2
    assert status.remaining_tokens == 2000
    assert status.plan_limits.tier == Tier.FREE


def test_missing_user_raises_not_found(usage_service):
    with pytest.raises(UserNotFoundError):
        usage_service.get_status("ghost", NOW)
    with pytest.raises(UserNotFoundError):
        usage_service.check_access("ghost", Tier.FREE)


def test_free_user_exhausts_quota(usage_service, repository):
    repository.create_user("user-1", None, NOW)

    for _ in range(2):
        assert usage_service.check("user-1", UsageAction.OFFER_GENERATION, 500, NOW).allowed is True
        usage_service.record("user-1", UsageAction.OFFER_GENERATION, 450, now=NOW)

    result = usage_service.check("user-1", UsageAction.OFFER_GENERATION, 500, NOW)
    assert result.allowed is False
    assert result.status.upgrade_required is True
    assert result.message.startswith("You've reached your daily limit for free plan.")

    # Unmetered actions keep working
    assert usage_service.check("user-1", UsageAction.QUIZ_ATTEMPT, 500, NOW).allowed is True


def test_record_past_the_ceiling_is_refused_and_logged(usage_service, repository):
    repository.create_user("user-1", None, NOW)
    usage_service.record("user-1", UsageAction.HOOK_GENERATION, 100, now=NOW)
    usage_service.record("user-1", UsageAction.HOOK_GENERATION, 100, now=NOW)

    with pytest.raises(QuotaExceededError):
        usage_service.record("user-1", UsageAction.HOOK_GENERATION, 100, now=NOW)

    _, counters = repository.get_user("user-1")
    assert counters.daily_offer_count == 2

    entries = repository.list_usage_logs("user-1")
    assert len(entries) == 3
    assert sum(1 for e in entries if not e.success) == 1


def test_exhausted_user_can_proceed_next_day(usage_service, repository):
    repository.create_user("user-1", None, NOW)
    usage_service.record("user-1", UsageAction.OFFER_GENERATION, 500, now=NOW)
    usage_service.record("user-1", UsageAction.OFFER_GENERATION, 500, now=NOW)
    assert usage_service.get_status("user-1", NOW).can_proceed is False

    status = usage_service.get_status("user-1", TOMORROW)

    assert status.can_proceed is True
    assert status.remaining_offers == 2
    _, stored = repository.get_user("user-1")
    assert stored.daily_offer_count == 0
    assert stored.usage_count == 2
    assert stored.last_usage_reset == TOMORROW


def test_record_on_a_new_day_resets_then_counts(usage_service, repository):
    repository.create_user("user-1", None, NOW)
    usage_service.record("user-1", UsageAction.OFFER_GENERATION, 500, now=NOW)

    counters = usage_service.record("user-1", UsageAction.OFFER_GENERATION, 300, now=TOMORROW)

    assert counters.daily_offer_count == 1
    assert counters.daily_token_count == 300
    assert counters.usage_count == 2


def test_failed_action_is_logged_only(usage_service, repository):
    repository.create_user("user-1", None, NOW)

    counters = usage_service.record(
        "user-1", UsageAction.OFFER_GENERATION, 250, success=False, metadata={"error": "timeout"}, now=NOW
    )

    assert counters.daily_offer_count == 0
    [entry] = repository.list_usage_logs("user-1")
    assert entry.success is False
    assert entry.metadata == {"error": "timeout"}


def test_vault_access_recorded_once(usage_service, repository):
    repository.create_user("user-1", None, NOW)
    assert usage_service.has_accessed_vault("user-1") == (False, None)

    usage_service.record("user-1", UsageAction.VAULT_ACCESS, 0, now=NOW)
    usage_service.record("user-1", UsageAction.VAULT_ACCESS, 0, now=NOW + timedelta(hours=1))

    assert usage_service.has_accessed_vault("user-1") == (True, NOW)


def test_check_access_with_lifecycle(usage_service, repository):
    repository.create_user("user-1", None, NOW)
    assert usage_service.check_access("user-1", Tier.STARTER) == (False, "Access denied: starter tier required")

    usage_service.apply_billing_event("user-1", SubscriptionStatus.ACTIVE, Tier.PRO, TOMORROW, now=NOW)
    assert usage_service.check_access("user-1", Tier.STARTER) == (True, None)
    assert usage_service.get_status("user-1", NOW).remaining_offers == -1

    usage_service.apply_billing_event("user-1", SubscriptionStatus.PAST_DUE, Tier.PRO, now=NOW)
    assert usage_service.check_access("user-1", Tier.PRO) == (False, "Access denied: Active subscription required")

    usage_service.cancel("user-1", NOW)
    state, _ = repository.get_user("user-1")
    assert state.tier == Tier.FREE
    assert state.subscription_status == SubscriptionStatus.CANCELED


def test_expire_lapsed_subscriptions(usage_service, repository):
    repository.create_user("lapsed", None, NOW)
    repository.create_user("running", None, NOW)
    usage_service.apply_billing_event("lapsed", SubscriptionStatus.ACTIVE, Tier.VAULT, NOW - timedelta(hours=1), now=NOW)
    usage_service.apply_billing_event("running", SubscriptionStatus.ACTIVE, Tier.PRO, TOMORROW, now=NOW)

    expired = usage_service.expire_lapsed_subscriptions(NOW)

    assert [s.user_id for s in expired] == ["lapsed"]
    state, _ = repository.get_user("lapsed")
    assert state.tier == Tier.FREE
    assert state.subscription_status == SubscriptionStatus.EXPIRED
    assert state.access_granted is False
    running, _ = repository.get_user("running")
    assert running.tier == Tier.PRO


def test_is_admin(usage_service, repository):
    repository.create_user("owner", "owner@onyxhooks.test", NOW)
    repository.create_user("coach", "coach@example.com", NOW)

    assert usage_service.is_admin("owner") is True
    assert usage_service.is_admin("coach") is False
    assert usage_service.is_admin("coach", "coach@example.com") is False
    assert usage_service.is_admin("not-registered", "owner@onyxhooks.test") is True

    usage_service.apply_billing_event("coach", SubscriptionStatus.ACTIVE, Tier.ADMIN, now=NOW)
    assert usage_service.is_admin("coach") is True


def test_usage_stats(usage_service, repository):
    repository.create_user("user-1", None, NOW)
    repository.create_user("user-2", None, NOW)
    usage_service.record("user-1", UsageAction.OFFER_GENERATION, 400, now=NOW)
    usage_service.record("user-2", UsageAction.HOOK_GENERATION, 200, now=NOW)
    usage_service.record("user-2", UsageAction.FUNNEL_REVIEW, 0, success=False, now=TOMORROW)

    stats = usage_service.get_usage_stats(date(2025, 6, 15), date(2025, 6, 16))

    assert stats.total_actions == 3
    assert stats.successful_actions == 2
    assert stats.total_tokens_used == 600
    assert stats.daily_breakdown == {"2025-06-15": 2, "2025-06-16": 1}


def test_usage_stats_rejects_bad_windows(usage_service):
    with pytest.raises(ValueError):
        usage_service.get_usage_stats(date(2025, 6, 16), date(2025, 6, 15))
    with pytest.raises(ValueError):
        usage_service.get_usage_stats(date(2025, 1, 1), date(2025, 1, 1) + timedelta(days=MAX_STATS_DAYS))


def test_log_write_failure_propagates_after_counting(usage_service, repository, monkeypatch):
    repository.create_user("user-1", None, NOW)

    def failing_append(entry):
        raise ClientError(
            {"Error": {"Code": "ProvisionedThroughputExceededException", "Message": "Rate exceeded"}},
            "PutItem",
        )

    monkeypatch.setattr(repository, "append_usage_log", failing_append)

    with pytest.raises(ClientError):
        usage_service.record("user-1", UsageAction.OFFER_GENERATION, 300, now=NOW)

    _, counters = repository.get_user("user-1")
    assert counters.daily_offer_count == 1
    assert counters.daily_token_count == 300
    assert repository.list_usage_logs("user-1") == []


def test_usage_history_filters_by_date(usage_service, repository):
    repository.create_user("user-1", None, NOW)
    usage_service.record("user-1", UsageAction.HOOK_GENERATION, 100, now=NOW)
    usage_service.record("user-1", UsageAction.QUIZ_ATTEMPT, 0, now=TOMORROW)

    latest_first = usage_service.get_usage_history("user-1")
    assert [e.action_value for e in latest_first] == ["quiz_attempt", "hook_generation"]

    [entry] = usage_service.get_usage_history("user-1", NOW.date(), NOW.date())
    assert entry.action_value == "hook_generation"
    assert entry.tokens_used == 100

    assert len(usage_service.get_usage_history("user-1", limit=1)) == 1

    with pytest.raises(UserNotFoundError):
        usage_service.get_usage_history("ghost")


def test_summary_reports_vault_access(usage_service, repository):
    repository.create_user("vault-user", "vault@example.com", NOW)
    repository.create_user("owner", "owner@onyxhooks.test", NOW)
    repository.create_user("pro-user", "pro@example.com", NOW)
    usage_service.apply_billing_event("vault-user", SubscriptionStatus.ACTIVE, Tier.VAULT, now=NOW)
    usage_service.apply_billing_event("pro-user", SubscriptionStatus.ACTIVE, Tier.PRO, now=NOW)

    assert usage_service.get_subscription_summary("vault-user")["hasVaultAccess"] is True
    assert usage_service.get_subscription_summary("owner")["hasVaultAccess"] is True
    assert usage_service.get_subscription_summary("pro-user")["hasVaultAccess"] is False
