"""
Usage Service for OnyxHooks

Wires the pure access and throttle decisions to the DynamoDB repository:
load the user, decide, then persist through the repository's atomic updates.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
from aws_lambda_powertools import Logger

from shared.constants.subscription_tiers import DEFAULT_ESTIMATED_TOKENS
from shared.models.subscription import (
    SubscriptionState,
    SubscriptionStatus,
    Tier,
    UserNotFoundError,
    get_plan_limits,
)
from shared.models.usage import (
    QuotaExceededError,
    ThrottleResult,
    UsageAction,
    UsageCounters,
    UsageLogEntry,
    UsageStats,
    UsageStatus,
    action_value,
    is_metered,
)
from shared.services import access_evaluator
from shared.services.subscription_lifecycle import (
    apply_subscription_update,
    cancel_subscription,
    expire_if_lapsed,
)
from shared.services.usage_repository import UsageRepository
from shared.services.usage_stats import summarize_usage
from shared.services.usage_throttle import UsageThrottle, resolve_reset_timezone

logger = Logger()

# Upper bound on the admin stats window, one GSI query per day
MAX_STATS_DAYS = 92


class UsageService:
    """Service for tier-gated access and daily usage throttling"""

    def __init__(
        self,
        repository: UsageRepository,
        throttle: Optional[UsageThrottle] = None,
        admin_emails: Iterable[str] = (),
    ):
        """
        Initialize the usage service

        Args:
            repository: Storage for user records and usage logs
            throttle: Throttle configured with the reset time zone, server-local by default
            admin_emails: Emails that are treated as admin regardless of tier
        """
        self.repository = repository
        self.throttle = throttle or UsageThrottle()
        self.admin_emails = frozenset(e.lower() for e in admin_emails)

    def _load_current(self, user_id: str, now: datetime) -> Tuple[SubscriptionState, UsageCounters]:
        """Load a user and roll the counters over to the current day if needed."""
        state, counters = self.repository.get_user(user_id)
        current = self.throttle.reset_daily_usage_if_needed(counters, now)
        if current is not counters:
            self.repository.persist_reset(user_id, current, counters.last_usage_reset)
        return state, current

    def get_status(self, user_id: str, now: Optional[datetime] = None) -> UsageStatus:
        """
        Get the caller's usage status for today

        Returns:
            UsageStatus with remaining offers, remaining tokens and any warning
        """
        now = now or datetime.now(timezone.utc)
        state, counters = self._load_current(user_id, now)
        return self.throttle.get_usage_status(get_plan_limits(state.tier), counters, now)

    def check(
        self,
        user_id: str,
        action: Union[UsageAction, str],
        estimated_tokens: int = DEFAULT_ESTIMATED_TOKENS,
        now: Optional[datetime] = None,
    ) -> ThrottleResult:
        """
        Check whether an action may run right now

        Args:
            user_id: Unique user identifier
            action: Action about to run
            estimated_tokens: Expected token cost of the action

        Returns:
            ThrottleResult, with an actionable message when refused
        """
        now = now or datetime.now(timezone.utc)
        state, counters = self._load_current(user_id, now)
        result = self.throttle.check_throttle(
            get_plan_limits(state.tier), counters, action, estimated_tokens, now
        )
        if not result.allowed:
            logger.warning(f"Throttled {action_value(action)} for user {user_id}: {result.message}")
        return result

    def record(
        self,
        user_id: str,
        action: Union[UsageAction, str],
        tokens_used: int,
        success: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> UsageCounters:
        """
        Record one performed action

        The log entry is always appended. Counter changes use the repository's
        conditional updates, so the stored daily count never passes the plan ceiling.

        Counters are written before the log entry: the ceiling decides whether the
        entry is logged as a success or as a refusal. A failed log write therefore
        leaves the counters updated and propagates the ClientError.

        Returns:
            UsageCounters as stored after the action

        Raises:
            QuotaExceededError: if the daily ceiling was reached in the meantime
            UserNotFoundError: if no record exists
        """
        now = now or datetime.now(timezone.utc)
        state, counters = self._load_current(user_id, now)
        counters, entry = self.throttle.record_usage(
            counters, action, tokens_used, success, metadata, user_id=user_id, now=now
        )

        if success and is_metered(action):
            try:
                counters = self.repository.increment_metered_usage(
                    user_id, tokens_used, get_plan_limits(state.tier), now
                )
            except QuotaExceededError as e:
                self.repository.append_usage_log(
                    entry.model_copy(
                        update={"success": False, "metadata": {**entry.metadata, "refused": e.message}}
                    )
                )
                raise
        elif success and action_value(action) == UsageAction.VAULT_ACCESS.value:
            counters = self.repository.mark_vault_access(user_id, now)

        self.repository.append_usage_log(entry)
        logger.info(
            f"Recorded {entry.action_value} for user {user_id}: tokens={tokens_used}, success={success}"
        )
        return counters

    def check_access(
        self, user_id: str, required_tier: Union[Tier, str, None]
    ) -> Tuple[bool, Optional[str]]:
        """
        Check whether the user may use a feature of the given tier

        Returns:
            Tuple of (allowed, denial message or None)
        """
        state, _ = self.repository.get_user(user_id)
        allowed = access_evaluator.evaluate_access(state, required_tier)
        if allowed:
            return True, None
        message = access_evaluator.describe_denial(state, required_tier)
        logger.warning(f"Access denied for user {user_id}: {message}")
        return False, message

    def has_accessed_vault(self, user_id: str) -> Tuple[bool, Optional[datetime]]:
        _, counters = self.repository.get_user(user_id)
        return self.throttle.has_accessed_vault(counters), counters.vault_accessed_at

    def is_admin(self, user_id: str, email: Optional[str] = None) -> bool:
        """Admin by tier or by allow-listed email. Unknown users can still be allow-listed."""
        try:
            state, _ = self.repository.get_user(user_id)
        except UserNotFoundError:
            return access_evaluator.is_admin(None, email, self.admin_emails)
        return access_evaluator.is_admin(state.tier, email or state.email, self.admin_emails)

    def get_subscription_summary(self, user_id: str) -> Dict[str, Any]:
        """Subscription state plus which tiers' features the user can use today."""
        state, _ = self.repository.get_user(user_id)
        plan = get_plan_limits(state.tier)
        return {
            "userId": state.user_id,
            "tier": state.tier_value,
            "subscriptionStatus": state.subscription_status.value if state.subscription_status else None,
            "accessGranted": state.access_granted,
            "subscriptionEndsAt": state.subscription_ends_at.isoformat() if state.subscription_ends_at else None,
            "canAccessPremium": access_evaluator.can_access_premium(state),
            "hasVaultAccess": access_evaluator.is_admin_or_vault(state.tier, state.email, self.admin_emails),
            "featureAccess": {
                tier.value: access_evaluator.has_feature_access(state, tier)
                for tier in Tier
                if tier is not Tier.ADMIN
            },
            "planLimits": plan.model_dump(mode="json", by_alias=True),
        }

    def get_usage_history(
        self,
        user_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
        limit: int = 100,
    ) -> List[UsageLogEntry]:
        """Caller's own usage log, most recent first."""
        self.repository.get_user(user_id)
        return self.repository.list_usage_logs(
            user_id,
            start.isoformat() if start else None,
            end.isoformat() if end else None,
            limit,
        )

    def apply_billing_event(
        self,
        user_id: str,
        status: SubscriptionStatus,
        tier: Union[Tier, str],
        ends_at: Optional[datetime] = None,
        stripe_subscription_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SubscriptionState:
        state, _ = self.repository.get_user(user_id)
        updated = apply_subscription_update(state, status, tier, ends_at, now, stripe_subscription_id)
        self.repository.save_subscription(updated)
        return updated

    def cancel(self, user_id: str, now: Optional[datetime] = None) -> SubscriptionState:
        state, _ = self.repository.get_user(user_id)
        updated = cancel_subscription(state, now)
        self.repository.save_subscription(updated)
        return updated

    def expire_lapsed_subscriptions(self, now: Optional[datetime] = None) -> List[SubscriptionState]:
        """
        Downgrade every active subscription whose paid period has ended

        Returns:
            List of the downgraded states
        """
        now = now or datetime.now(timezone.utc)
        expired = []
        for state in self.repository.find_lapsed_subscriptions(now):
            updated = expire_if_lapsed(state, now)
            if updated is state:
                continue
            self.repository.save_subscription(updated)
            expired.append(updated)

        logger.info(f"Expired {len(expired)} lapsed subscriptions")
        return expired

    def get_usage_stats(self, start: date, end: date) -> UsageStats:
        """
        Aggregate all users' usage between two dates, inclusive

        Raises:
            ValueError: if the window is reversed or longer than MAX_STATS_DAYS
        """
        if end < start:
            raise ValueError("end date must not be before start date")
        days = (end - start).days + 1
        if days > MAX_STATS_DAYS:
            raise ValueError(f"date range must not exceed {MAX_STATS_DAYS} days")

        dates = [start + timedelta(days=offset) for offset in range(days)]
        entries = self.repository.list_usage_logs_for_dates(dates)
        return summarize_usage(entries, start, end)


def build_usage_service(
    users_table_name: str,
    usage_log_table_name: str,
    admin_emails: Optional[str] = None,
    reset_timezone: Optional[str] = None,
) -> UsageService:
    """
    Build a UsageService from raw environment values

    Args:
        users_table_name: Users table (USERS_TABLE_NAME)
        usage_log_table_name: Usage-log table (USAGE_LOG_TABLE_NAME)
        admin_emails: Comma-separated admin allow-list (ADMIN_EMAILS)
        reset_timezone: "local", "UTC" or an IANA zone (USAGE_RESET_TIMEZONE)

    Raises:
        ValueError: if the reset time zone is unknown
    """
    return UsageService(
        UsageRepository(users_table_name, usage_log_table_name),
        UsageThrottle(resolve_reset_timezone(reset_timezone)),
        access_evaluator.parse_admin_emails(admin_emails),
    )
