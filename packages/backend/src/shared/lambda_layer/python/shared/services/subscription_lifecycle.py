"""
Subscription state transitions driven by billing events and the expiry sweep.

Each function returns a new SubscriptionState; persisting it is up to the caller.
"""

from datetime import datetime, timezone
from typing import Optional, Union
from aws_lambda_powertools import Logger

from shared.models.subscription import SubscriptionState, SubscriptionStatus, Tier

logger = Logger()


def _aware(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def apply_subscription_update(
    state: SubscriptionState,
    status: SubscriptionStatus,
    tier: Union[Tier, str],
    ends_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    stripe_subscription_id: Optional[str] = None,
) -> SubscriptionState:
    """
    Apply a subscription created/updated billing event.

    Access is granted only while the subscription is active.
    """
    now = now or datetime.now(timezone.utc)
    update = {
        "tier": tier,
        "subscription_status": status,
        "access_granted": status == SubscriptionStatus.ACTIVE,
        "subscription_ends_at": ends_at,
        "updated_at": now,
    }
    if stripe_subscription_id:
        update["stripe_subscription_id"] = stripe_subscription_id

    # model_validate so the tier validator normalizes the new value
    updated = SubscriptionState.model_validate({**state.model_dump(), **update})
    logger.info(
        f"Subscription for user {state.user_id} is now {updated.tier_value}/{status.value}"
    )
    return updated


def cancel_subscription(state: SubscriptionState, now: Optional[datetime] = None) -> SubscriptionState:
    """Subscription deleted: back to free, access revoked."""
    now = now or datetime.now(timezone.utc)
    logger.info(f"Downgrading user {state.user_id} to free after subscription deletion")
    return state.model_copy(
        update={
            "tier": Tier.FREE,
            "subscription_status": SubscriptionStatus.CANCELED,
            "access_granted": False,
            "subscription_ends_at": now,
            "updated_at": now,
        }
    )


def is_lapsed(state: SubscriptionState, now: Optional[datetime] = None) -> bool:
    """An active subscription whose paid period has ended."""
    now = now or datetime.now(timezone.utc)
    return (
        state.subscription_status == SubscriptionStatus.ACTIVE
        and state.subscription_ends_at is not None
        and _aware(state.subscription_ends_at) <= _aware(now)
    )


def expire_if_lapsed(state: SubscriptionState, now: Optional[datetime] = None) -> SubscriptionState:
    now = now or datetime.now(timezone.utc)
    if not is_lapsed(state, now):
        return state

    logger.info(f"Subscription expired for user {state.user_id}, downgrading to free")
    return state.model_copy(
        update={
            "tier": Tier.FREE,
            "subscription_status": SubscriptionStatus.EXPIRED,
            "access_granted": False,
            "updated_at": now,
        }
    )
