from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Dict, Optional, Union

from shared.constants.subscription_tiers import (
    FREE_DAILY_OFFER_GENERATIONS, FREE_DAILY_TOKEN_BUDGET,
    STARTER_DAILY_OFFER_GENERATIONS, STARTER_DAILY_TOKEN_BUDGET,
    PRO_DAILY_OFFER_GENERATIONS, PRO_DAILY_TOKEN_BUDGET,
    VAULT_DAILY_OFFER_GENERATIONS, VAULT_DAILY_TOKEN_BUDGET,
    SOFT_CAP_WARNING_RATIO, UNLIMITED,
)


class UserNotFoundError(Exception):
    """Raised when no user record exists for the requested user id"""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class Tier(str, Enum):
    """Subscription tier enumeration, ordered free < starter < pro < vault < admin"""
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    VAULT = "vault"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return _TIER_RANKS[self]


_TIER_RANKS: Dict[Tier, int] = {
    Tier.FREE: 0,
    Tier.STARTER: 1,
    Tier.PRO: 2,
    Tier.VAULT: 3,
    Tier.ADMIN: 4,
}


def parse_tier(value: Union[Tier, str, None]) -> Optional[Tier]:
    """Return the Tier for a value, or None when the value is not a known tier."""
    if isinstance(value, Tier):
        return value
    try:
        return Tier(value)
    except ValueError:
        return None


def tier_rank(value: Union[Tier, str, None]) -> int:
    """Canonical rank of a tier. Unrecognized values rank as free (0)."""
    tier = parse_tier(value)
    return tier.rank if tier is not None else 0


class SubscriptionStatus(str, Enum):
    """Subscription status enumeration"""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"


class SubscriptionState(BaseModel):
    """Billing-facing state of a user, as mutated by webhooks and the expiry sweep"""
    user_id: str = Field(description="Unique user identifier")
    email: Optional[str] = Field(default=None)
    tier: Union[Tier, str] = Field(
        default=Tier.FREE,
        description="Known tier, or the raw stored value when it is not recognized",
    )
    subscription_status: Optional[SubscriptionStatus] = Field(
        default=None, description="None until the user subscribes for the first time"
    )
    access_granted: bool = Field(default=False)
    subscription_ends_at: Optional[datetime] = Field(default=None)
    stripe_customer_id: Optional[str] = Field(default=None, description="Stripe customer ID")
    stripe_subscription_id: Optional[str] = Field(default=None, description="Stripe subscription ID")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("tier", mode="before")
    @classmethod
    def known_tier_as_enum(cls, v):
        return parse_tier(v) or v

    @property
    def tier_value(self) -> str:
        return self.tier.value if isinstance(self.tier, Tier) else str(self.tier)


class PlanLimits(BaseModel):
    """Daily quotas and capability flags of one tier. Built once at import time."""
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    tier: Tier
    daily_offer_generations: int = Field(description="Offer/hook generations per day, -1 for unlimited")
    daily_token_budget: int = Field(description="Tokens per day")
    soft_cap_warning_ratio: float = Field(default=SOFT_CAP_WARNING_RATIO)
    has_watermark: bool = Field(default=False)
    can_edit: bool = Field(default=True)
    can_export: bool = Field(default=True)
    has_pro_tools: bool = Field(default=False)
    has_vault_tools: bool = Field(default=False)
    has_swipe_copy_bank: bool = Field(default=False)
    has_white_label: bool = Field(default=False)
    has_crm_export: bool = Field(default=False)

    @property
    def is_unlimited(self) -> bool:
        return self.daily_offer_generations == UNLIMITED


def _vault_like(tier: Tier) -> PlanLimits:
    return PlanLimits(
        tier=tier,
        daily_offer_generations=VAULT_DAILY_OFFER_GENERATIONS,
        daily_token_budget=VAULT_DAILY_TOKEN_BUDGET,
        has_pro_tools=True,
        has_vault_tools=True,
        has_swipe_copy_bank=True,
        has_white_label=True,
        has_crm_export=True,
    )


PLAN_LIMITS: Dict[Tier, PlanLimits] = {
    Tier.FREE: PlanLimits(
        tier=Tier.FREE,
        daily_offer_generations=FREE_DAILY_OFFER_GENERATIONS,
        daily_token_budget=FREE_DAILY_TOKEN_BUDGET,
        has_watermark=True,
        can_edit=False,
        can_export=False,
    ),
    Tier.STARTER: PlanLimits(
        tier=Tier.STARTER,
        daily_offer_generations=STARTER_DAILY_OFFER_GENERATIONS,
        daily_token_budget=STARTER_DAILY_TOKEN_BUDGET,
    ),
    Tier.PRO: PlanLimits(
        tier=Tier.PRO,
        daily_offer_generations=PRO_DAILY_OFFER_GENERATIONS,
        daily_token_budget=PRO_DAILY_TOKEN_BUDGET,
        has_pro_tools=True,
    ),
    Tier.VAULT: _vault_like(Tier.VAULT),
    Tier.ADMIN: _vault_like(Tier.ADMIN),
}


def get_plan_limits(tier: Union[Tier, str, None]) -> PlanLimits:
    """Plan record for a tier; unrecognized tiers get the free plan."""
    return PLAN_LIMITS.get(parse_tier(tier), PLAN_LIMITS[Tier.FREE])
