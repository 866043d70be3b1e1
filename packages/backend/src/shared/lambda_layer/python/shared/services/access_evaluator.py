"""
Tier-gated access decisions.

Pure functions over a SubscriptionState snapshot: no I/O, and every input,
including unknown tier strings, maps to a boolean. Unknown tiers rank as free
on both sides of the comparison, so an unrecognized *required* tier is
satisfied by anyone. That asymmetry is kept as observed in production data.
"""

from typing import Iterable, Optional, Union
from aws_lambda_powertools import Logger

from shared.models.subscription import (
    SubscriptionState,
    SubscriptionStatus,
    Tier,
    parse_tier,
    tier_rank,
)

logger = Logger()


def has_sufficient_tier(user_tier: Union[Tier, str, None], required_tier: Union[Tier, str, None]) -> bool:
    """True when the user's tier ranks at or above the required tier. Admin outranks every tier."""
    return tier_rank(user_tier) >= tier_rank(required_tier)


def can_access_premium(state: SubscriptionState) -> bool:
    """
    Billing gate: free never needs a subscription, every other tier needs an
    active subscription with access granted.
    """
    if state.tier == Tier.FREE:
        return True
    return state.subscription_status == SubscriptionStatus.ACTIVE and state.access_granted


def has_feature_access(state: SubscriptionState, required_tier: Union[Tier, str, None]) -> bool:
    return has_sufficient_tier(state.tier, required_tier) and can_access_premium(state)


def describe_denial(state: SubscriptionState, required_tier: Union[Tier, str, None]) -> Optional[str]:
    """
    Actionable message for a denied request, or None when access is granted.
    """
    if not has_sufficient_tier(state.tier, required_tier):
        required = parse_tier(required_tier)
        label = required.value if required is not None else str(required_tier)
        return f"Access denied: {label} tier required"
    if not can_access_premium(state):
        return "Access denied: Active subscription required"
    return None


def evaluate_access(state: SubscriptionState, required_tier: Union[Tier, str, None]) -> bool:
    allowed = has_feature_access(state, required_tier)
    if not allowed:
        logger.debug(
            f"Access denied for user {state.user_id}: tier={state.tier_value}, "
            f"required={required_tier}, status={state.subscription_status}, "
            f"access_granted={state.access_granted}"
        )
    return allowed


def parse_admin_emails(raw: Optional[str]) -> frozenset:
    """Parse a comma-separated ADMIN_EMAILS value into a normalized set."""
    if not raw:
        return frozenset()
    return frozenset(email.strip().lower() for email in raw.split(",") if email.strip())


def is_admin(tier: Union[Tier, str, None], email: Optional[str], admin_emails: Iterable[str] = ()) -> bool:
    if parse_tier(tier) is Tier.ADMIN:
        return True
    return bool(email) and email.lower() in {e.lower() for e in admin_emails}


def is_admin_or_vault(tier: Union[Tier, str, None], email: Optional[str], admin_emails: Iterable[str] = ()) -> bool:
    return parse_tier(tier) is Tier.VAULT or is_admin(tier, email, admin_emails)
