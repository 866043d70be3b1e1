import uuid
from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Any, Dict, Optional, Union

from shared.models.subscription import PlanLimits


class QuotaExceededError(Exception):
    """Raised when the storage layer refuses an increment past the daily ceiling"""

    def __init__(self, message: str, user_id: Optional[str] = None, limit: Optional[int] = None):
        self.message = message
        self.user_id = user_id
        self.limit = limit
        super().__init__(self.message)


class UsageAction(str, Enum):
    """Actions recorded against a user's usage"""
    HOOK_GENERATION = "hook_generation"
    OFFER_GENERATION = "offer_generation"
    FUNNEL_REVIEW = "funnel_review"
    VAULT_ACCESS = "vault_access"
    QUIZ_ATTEMPT = "quiz_attempt"


# Only these consume the daily offer quota and token budget
METERED_ACTIONS = frozenset({UsageAction.HOOK_GENERATION.value, UsageAction.OFFER_GENERATION.value})


def action_value(action: Union[UsageAction, str]) -> str:
    return action.value if isinstance(action, UsageAction) else str(action)


def is_metered(action: Union[UsageAction, str]) -> bool:
    return action_value(action) in METERED_ACTIONS


class UsageState(str, Enum):
    """Per-day throttle state of a bounded plan"""
    UNDER_SOFT_CAP = "under_soft_cap"
    NEAR_SOFT_CAP = "near_soft_cap"
    AT_HARD_CAP = "at_hard_cap"


class UsageCounters(BaseModel):
    """Daily and lifetime counters, owned by the user record"""
    daily_offer_count: int = Field(default=0, ge=0)
    daily_token_count: int = Field(default=0, ge=0)
    last_usage_reset: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    usage_count: int = Field(default=0, ge=0, description="Lifetime metered actions")
    vault_accessed_at: Optional[datetime] = Field(default=None)
    updated_at: Optional[datetime] = Field(default=None)

    @classmethod
    def fresh(cls, now: datetime) -> "UsageCounters":
        """Counters for a brand-new user."""
        return cls(last_usage_reset=now, updated_at=now)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_response(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class UsageStatus(_CamelModel):
    can_proceed: bool
    remaining_offers: int = Field(description="-1 when the plan is unlimited")
    remaining_tokens: int
    warning_message: Optional[str] = None
    upgrade_required: bool = False
    usage_state: UsageState = UsageState.UNDER_SOFT_CAP
    plan_limits: PlanLimits


class ThrottleResult(_CamelModel):
    allowed: bool
    status: UsageStatus
    message: Optional[str] = None


class UsageLogEntry(BaseModel):
    """Append-only audit record of one action"""
    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    action: Union[UsageAction, str]
    tokens_used: int = Field(default=0, ge=0)
    success: bool = True
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def action_value(self) -> str:
        return action_value(self.action)


class UsageStats(_CamelModel):
    """Aggregated usage for the admin dashboard"""
    total_actions: int = 0
    successful_actions: int = 0
    total_tokens_used: int = 0
    action_breakdown: Dict[str, int] = Field(default_factory=dict)
    daily_breakdown: Dict[str, int] = Field(default_factory=dict)
