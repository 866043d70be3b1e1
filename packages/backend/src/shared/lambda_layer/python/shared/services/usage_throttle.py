"""
Daily quota and token-budget throttling for metered actions.

UsageThrottle never loads or stores anything: callers pass in the user's
UsageCounters snapshot and persist whatever comes back. Counters reset once
per calendar day, where "calendar day" is taken in the configured reset time
zone (server-local time unless configured otherwise).
"""

from datetime import date, datetime, timezone, tzinfo
from typing import Any, Dict, Optional, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from aws_lambda_powertools import Logger

from shared.constants.subscription_tiers import DEFAULT_ESTIMATED_TOKENS, UNLIMITED
from shared.models.subscription import PlanLimits
from shared.models.usage import (
    ThrottleResult,
    UsageAction,
    UsageCounters,
    UsageLogEntry,
    UsageState,
    UsageStatus,
    action_value,
    is_metered,
)

logger = Logger()

LOCAL_TIMEZONE = "local"


def resolve_reset_timezone(name: Optional[str]) -> Optional[tzinfo]:
    """
    Map a USAGE_RESET_TIMEZONE value to a tzinfo.

    Args:
        name: "local" (or empty) for server-local time, "UTC", or an IANA zone name

    Returns:
        tzinfo, or None for server-local time

    Raises:
        ValueError: if the zone name is unknown
    """
    if not name or name.strip().lower() == LOCAL_TIMEZONE:
        return None
    if name.strip().upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown usage reset time zone: {name}") from exc


class UsageThrottle:
    """Quota decisions over an explicit UsageCounters snapshot"""

    def __init__(self, reset_timezone: Optional[tzinfo] = None):
        self.reset_timezone = reset_timezone

    def calendar_date(self, moment: datetime) -> date:
        """Calendar date of a moment in the reset time zone."""
        if self.reset_timezone is None:
            # Naive values are already server-local
            return moment.astimezone().date() if moment.tzinfo else moment.date()
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(self.reset_timezone).date()

    def reset_daily_usage_if_needed(self, counters: UsageCounters, now: Optional[datetime] = None) -> UsageCounters:
        now = now or datetime.now(timezone.utc)
        if self.calendar_date(now) == self.calendar_date(counters.last_usage_reset):
            return counters

        logger.debug(f"New usage day {self.calendar_date(now)}, resetting daily counters")
        return counters.model_copy(
            update={
                "daily_offer_count": 0,
                "daily_token_count": 0,
                "last_usage_reset": now,
                "updated_at": now,
            }
        )

    @staticmethod
    def usage_state(plan: PlanLimits, counters: UsageCounters) -> UsageState:
        """Where the counters sit in under -> near soft cap -> at hard cap."""
        if plan.is_unlimited:
            return UsageState.UNDER_SOFT_CAP
        limit = plan.daily_offer_generations
        if limit - counters.daily_offer_count <= 0:
            return UsageState.AT_HARD_CAP
        if counters.daily_offer_count / limit >= plan.soft_cap_warning_ratio:
            return UsageState.NEAR_SOFT_CAP
        return UsageState.UNDER_SOFT_CAP

    def get_usage_status(
        self, plan: PlanLimits, counters: UsageCounters, now: Optional[datetime] = None
    ) -> UsageStatus:
        counters = self.reset_daily_usage_if_needed(counters, now)
        remaining_tokens = max(0, plan.daily_token_budget - counters.daily_token_count)

        if plan.is_unlimited:
            return UsageStatus(
                can_proceed=True,
                remaining_offers=UNLIMITED,
                remaining_tokens=remaining_tokens,
                plan_limits=plan,
            )

        limit = plan.daily_offer_generations
        used = counters.daily_offer_count
        remaining_offers = max(0, limit - used)
        state = self.usage_state(plan, counters)

        warning_message = None
        upgrade_required = False

        if state is UsageState.NEAR_SOFT_CAP:
            warning_message = f"You're nearing your daily limit ({used}/{limit} offers used)."

        if state is UsageState.AT_HARD_CAP:
            upgrade_required = True
            warning_message = (
                f"You've reached your daily limit for {plan.tier.value} plan. "
                "Upgrade to unlock more offers."
            )

        return UsageStatus(
            can_proceed=remaining_offers > 0,
            remaining_offers=remaining_offers,
            remaining_tokens=remaining_tokens,
            warning_message=warning_message,
            upgrade_required=upgrade_required,
            usage_state=state,
            plan_limits=plan,
        )

    def check_throttle(
        self,
        plan: PlanLimits,
        counters: UsageCounters,
        action: Union[UsageAction, str],
        estimated_tokens: int = DEFAULT_ESTIMATED_TOKENS,
        now: Optional[datetime] = None,
    ) -> ThrottleResult:
        status = self.get_usage_status(plan, counters, now)

        if not is_metered(action):
            return ThrottleResult(allowed=True, status=status)

        if not status.can_proceed:
            return ThrottleResult(
                allowed=False,
                status=status,
                message=status.warning_message or "Daily limit reached",
            )

        if status.remaining_tokens < estimated_tokens:
            return ThrottleResult(
                allowed=False,
                status=status,
                message=(
                    f"Insufficient token allowance. Need {estimated_tokens} tokens, "
                    f"have {status.remaining_tokens} remaining."
                ),
            )

        return ThrottleResult(allowed=True, status=status)

    def record_usage(
        self,
        counters: UsageCounters,
        action: Union[UsageAction, str],
        tokens_used: int,
        success: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> Tuple[UsageCounters, UsageLogEntry]:
        """
        Apply one action to the counters.

        Args:
            counters: Snapshot loaded by the caller
            action: Action performed
            tokens_used: Tokens the action consumed
            success: Whether the action succeeded
            metadata: Free-form context stored on the log entry
            user_id: Owner of the counters
            now: Timestamp of the action, defaults to UTC now

        Returns:
            Tuple of (updated counters, log entry); both must be persisted by the caller
        """
        now = now or datetime.now(timezone.utc)
        counters = self.reset_daily_usage_if_needed(counters, now)

        entry = UsageLogEntry(
            user_id=user_id,
            action=action,
            tokens_used=tokens_used,
            success=success,
            timestamp=now,
            metadata=metadata or {},
        )

        if not success:
            return counters, entry

        if is_metered(action):
            counters = counters.model_copy(
                update={
                    "daily_offer_count": counters.daily_offer_count + 1,
                    "daily_token_count": counters.daily_token_count + tokens_used,
                    "usage_count": counters.usage_count + 1,
                    "updated_at": now,
                }
            )
        elif action_value(action) == UsageAction.VAULT_ACCESS.value and counters.vault_accessed_at is None:
            counters = counters.model_copy(update={"vault_accessed_at": now, "updated_at": now})

        return counters, entry

    @staticmethod
    def has_accessed_vault(counters: UsageCounters) -> bool:
        """Once a vault resource was opened the purchase is no longer refundable."""
        return counters.vault_accessed_at is not None
