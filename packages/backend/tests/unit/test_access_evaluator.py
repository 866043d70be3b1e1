import itertools

import pytest

from shared.models.subscription import SubscriptionState, SubscriptionStatus, Tier, tier_rank
from shared.services.access_evaluator import (
    can_access_premium,
    describe_denial,
    evaluate_access,
    has_feature_access,
    has_sufficient_tier,
    is_admin,
    is_admin_or_vault,
    parse_admin_emails,
)

ALL_TIERS = [Tier.FREE, Tier.STARTER, Tier.PRO, Tier.VAULT, Tier.ADMIN]


def make_state(tier, status=None, access_granted=False) -> SubscriptionState:
    return SubscriptionState(
        user_id="user-1",
        tier=tier,
        subscription_status=status,
        access_granted=access_granted,
    )


def test_tier_ranks_are_ordered():
    assert [tier_rank(t) for t in ALL_TIERS] == [0, 1, 2, 3, 4]
    assert tier_rank("pro") == 2
    assert tier_rank("platinum") == 0
    assert tier_rank(None) == 0


@pytest.mark.parametrize("user_tier,required_tier", list(itertools.product(ALL_TIERS, ALL_TIERS)))
def test_has_sufficient_tier_compares_ranks(user_tier, required_tier):
    assert has_sufficient_tier(user_tier, required_tier) == (user_tier.rank >= required_tier.rank)


def test_has_sufficient_tier_accepts_raw_strings():
    assert has_sufficient_tier("vault", "pro") is True
    assert has_sufficient_tier("starter", "pro") is False


def test_unknown_tiers_rank_as_free_on_both_sides():
    # Unrecognized requirement is satisfied by anyone
    assert has_sufficient_tier("starter", "invalid") is True
    assert has_sufficient_tier("free", "invalid") is True
    # Unrecognized user tier only satisfies free
    assert has_sufficient_tier("invalid", "free") is True
    assert has_sufficient_tier("invalid", "starter") is False


def test_admin_satisfies_every_requirement():
    for required in ALL_TIERS:
        assert has_sufficient_tier(Tier.ADMIN, required) is True


@pytest.mark.parametrize("status", [None] + list(SubscriptionStatus))
@pytest.mark.parametrize("access_granted", [True, False])
def test_free_tier_never_needs_a_subscription(status, access_granted):
    assert can_access_premium(make_state(Tier.FREE, status, access_granted)) is True


@pytest.mark.parametrize("tier", [Tier.STARTER, Tier.PRO, Tier.VAULT, Tier.ADMIN])
@pytest.mark.parametrize("status", [None] + list(SubscriptionStatus))
@pytest.mark.parametrize("access_granted", [True, False])
def test_paid_tiers_need_active_subscription_with_access(tier, status, access_granted):
    expected = status == SubscriptionStatus.ACTIVE and access_granted
    assert can_access_premium(make_state(tier, status, access_granted)) is expected


def test_free_user_is_denied_starter_feature():
    state = make_state(Tier.FREE, SubscriptionStatus.CANCELED, False)
    assert has_feature_access(state, Tier.STARTER) is False


def test_active_pro_user_gets_starter_feature():
    state = make_state(Tier.PRO, SubscriptionStatus.ACTIVE, True)
    assert has_feature_access(state, Tier.STARTER) is True


def test_lapsed_vault_user_is_denied_vault_feature():
    state = make_state(Tier.VAULT, SubscriptionStatus.CANCELED, False)
    assert has_feature_access(state, Tier.VAULT) is False


def test_unknown_stored_tier_is_kept_and_ranks_as_free():
    state = make_state("legacy_gold", SubscriptionStatus.ACTIVE, True)
    assert state.tier == "legacy_gold"
    assert state.tier_value == "legacy_gold"
    assert has_feature_access(state, Tier.FREE) is True
    assert has_feature_access(state, Tier.STARTER) is False


def test_evaluate_access_matches_has_feature_access():
    for tier in ALL_TIERS:
        for required in ALL_TIERS:
            state = make_state(tier, SubscriptionStatus.ACTIVE, True)
            assert evaluate_access(state, required) == has_feature_access(state, required)


def test_describe_denial_messages():
    free_user = make_state(Tier.FREE)
    assert describe_denial(free_user, Tier.PRO) == "Access denied: pro tier required"

    lapsed = make_state(Tier.PRO, SubscriptionStatus.PAST_DUE, False)
    assert describe_denial(lapsed, Tier.STARTER) == "Access denied: Active subscription required"

    active = make_state(Tier.PRO, SubscriptionStatus.ACTIVE, True)
    assert describe_denial(active, Tier.PRO) is None


def test_parse_admin_emails_normalizes():
    assert parse_admin_emails(" Owner@OnyxHooks.test, ,ops@onyxhooks.test ") == frozenset(
        {"owner@onyxhooks.test", "ops@onyxhooks.test"}
    )
    assert parse_admin_emails("") == frozenset()
    assert parse_admin_emails(None) == frozenset()


def test_is_admin_by_tier_or_email():
    admins = parse_admin_emails("owner@onyxhooks.test")
    assert is_admin(Tier.ADMIN, None, admins) is True
    assert is_admin(Tier.FREE, "OWNER@onyxhooks.test", admins) is True
    assert is_admin(Tier.VAULT, "someone@example.com", admins) is False
    assert is_admin("free", None) is False


def test_is_admin_or_vault():
    assert is_admin_or_vault(Tier.VAULT, None) is True
    assert is_admin_or_vault(Tier.ADMIN, None) is True
    assert is_admin_or_vault(Tier.PRO, None) is False
    assert is_admin_or_vault(Tier.PRO, "owner@onyxhooks.test", ["owner@onyxhooks.test"]) is True
