"""
DynamoDB persistence for user subscription state, usage counters and usage logs.

Counter changes go through single UpdateItem calls with condition expressions,
so the check-then-record sequence of two concurrent requests cannot push a
bounded plan past its daily ceiling.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

from shared.models.subscription import (
    PlanLimits,
    SubscriptionState,
    Tier,
    UserNotFoundError,
)
from shared.models.usage import QuotaExceededError, UsageCounters, UsageLogEntry
from shared.services.aws import get_ddb_table

logger = Logger()

PROFILE_SK = "PROFILE"
CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"


def _user_pk(user_id: str) -> str:
    return f"USER#{user_id}"


def _iso(moment: Optional[datetime]) -> Optional[str]:
    """Store timestamps as UTC ISO strings so they sort and compare lexically."""
    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def convert_floats_to_decimal(obj: Any) -> Any:
    """Recursively convert float values to Decimal for DynamoDB compatibility."""
    if isinstance(obj, float):
        return Decimal(str(obj))
    elif isinstance(obj, dict):
        return {key: convert_floats_to_decimal(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [convert_floats_to_decimal(item) for item in obj]
    else:
        return obj


def convert_decimals(obj: Any) -> Any:
    """Inverse of convert_floats_to_decimal for values read back from DynamoDB."""
    if isinstance(obj, Decimal):
        return int(obj) if obj == obj.to_integral_value() else float(obj)
    elif isinstance(obj, dict):
        return {key: convert_decimals(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [convert_decimals(item) for item in obj]
    else:
        return obj


def _is_conditional_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == CONDITIONAL_CHECK_FAILED


def state_from_item(item: Dict[str, Any]) -> SubscriptionState:
    return SubscriptionState(
        user_id=item["user_id"],
        email=item.get("email"),
        tier=item.get("tier", Tier.FREE.value),
        subscription_status=item.get("subscription_status"),
        access_granted=bool(item.get("access_granted", False)),
        subscription_ends_at=_parse_dt(item.get("subscription_ends_at")),
        stripe_customer_id=item.get("stripe_customer_id"),
        stripe_subscription_id=item.get("stripe_subscription_id"),
        created_at=_parse_dt(item["created_at"]),
        updated_at=_parse_dt(item["updated_at"]),
    )


def counters_from_item(item: Dict[str, Any]) -> UsageCounters:
    return UsageCounters(
        daily_offer_count=int(item.get("daily_offer_count", 0)),
        daily_token_count=int(item.get("daily_token_count", 0)),
        last_usage_reset=_parse_dt(item["last_usage_reset"]),
        usage_count=int(item.get("usage_count", 0)),
        vault_accessed_at=_parse_dt(item.get("vault_accessed_at")),
        updated_at=_parse_dt(item.get("updated_at")),
    )


def log_entry_to_item(entry: UsageLogEntry) -> Dict[str, Any]:
    timestamp = _iso(entry.timestamp)
    event_date = timestamp[:10]
    item = {
        "PK": _user_pk(entry.user_id),
        "SK": f"LOG#{timestamp}#{entry.entry_id}",
        "entry_id": entry.entry_id,
        "user_id": entry.user_id,
        "action": entry.action_value,
        "tokens_used": entry.tokens_used,
        "success": entry.success,
        "timestamp": timestamp,
        "event_date": event_date,
        # GSI for date-based admin queries
        "GSI1PK": f"DATE#{event_date}",
        "GSI1SK": f"USER#{entry.user_id}#{timestamp}",
    }
    if entry.metadata:
        item["metadata"] = convert_floats_to_decimal(entry.metadata)
    return item


def log_entry_from_item(item: Dict[str, Any]) -> UsageLogEntry:
    return UsageLogEntry(
        entry_id=item["entry_id"],
        user_id=item["user_id"],
        action=item["action"],
        tokens_used=int(item.get("tokens_used", 0)),
        success=bool(item.get("success", True)),
        timestamp=_parse_dt(item["timestamp"]),
        metadata=convert_decimals(item.get("metadata", {})),
    )


class UsageRepository:
    """Storage boundary for the user record and its usage log"""

    def __init__(self, users_table_name: str, usage_log_table_name: str):
        """
        Initialize the repository

        Args:
            users_table_name: DynamoDB table holding one PROFILE item per user
            usage_log_table_name: DynamoDB table for append-only usage log entries
        """
        self.users_table_name = users_table_name
        self.usage_log_table_name = usage_log_table_name

    @property
    def users_table(self):
        return get_ddb_table(self.users_table_name)

    @property
    def usage_log_table(self):
        return get_ddb_table(self.usage_log_table_name)

    def _key(self, user_id: str) -> Dict[str, str]:
        return {"PK": _user_pk(user_id), "SK": PROFILE_SK}

    def create_user(
        self, user_id: str, email: Optional[str] = None, now: Optional[datetime] = None
    ) -> Tuple[SubscriptionState, UsageCounters]:
        """
        Create a free-tier user record with fresh counters (idempotent)

        Args:
            user_id: Unique user identifier
            email: User email, used for the admin allow-list

        Returns:
            Tuple of (SubscriptionState, UsageCounters) as stored
        """
        now = now or datetime.now(timezone.utc)
        state = SubscriptionState(user_id=user_id, email=email, created_at=now, updated_at=now)
        counters = UsageCounters.fresh(now)

        item = {
            **self._key(user_id),
            "user_id": user_id,
            "tier": state.tier_value,
            "access_granted": state.access_granted,
            "daily_offer_count": counters.daily_offer_count,
            "daily_token_count": counters.daily_token_count,
            "last_usage_reset": _iso(counters.last_usage_reset),
            "usage_count": counters.usage_count,
            "created_at": _iso(now),
            "updated_at": _iso(now),
        }
        if email:
            item["email"] = email

        try:
            self.users_table.put_item(
                Item=item,
                ConditionExpression="attribute_not_exists(PK)",  # Never overwrite an existing user
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                logger.info(f"User {user_id} already exists, keeping existing record")
                return self.get_user(user_id)
            logger.error(f"Error creating user {user_id}: {str(e)}")
            raise

        logger.info(f"Created free-tier record for user {user_id}")
        return state, counters

    def get_user(self, user_id: str) -> Tuple[SubscriptionState, UsageCounters]:
        """
        Load a user's subscription state and usage counters

        Raises:
            UserNotFoundError: if no record exists
        """
        try:
            response = self.users_table.get_item(Key=self._key(user_id), ConsistentRead=True)
        except ClientError as e:
            logger.error(f"Error getting user {user_id}: {str(e)}")
            raise

        item = response.get("Item")
        if not item:
            raise UserNotFoundError(user_id)
        return state_from_item(item), counters_from_item(item)

    def save_subscription(self, state: SubscriptionState) -> None:
        """Persist the subscription fields of a user record."""
        values = {
            "tier": state.tier_value,
            "subscription_status": state.subscription_status.value if state.subscription_status else None,
            "access_granted": state.access_granted,
            "subscription_ends_at": _iso(state.subscription_ends_at),
            "stripe_customer_id": state.stripe_customer_id,
            "stripe_subscription_id": state.stripe_subscription_id,
            "updated_at": _iso(state.updated_at),
        }

        set_parts, remove_parts = [], []
        names, expression_values = {}, {}
        for field_name, value in values.items():
            names[f"#{field_name}"] = field_name
            if value is None:
                remove_parts.append(f"#{field_name}")
            else:
                set_parts.append(f"#{field_name} = :{field_name}")
                expression_values[f":{field_name}"] = value

        update_expression = "SET " + ", ".join(set_parts)
        if remove_parts:
            update_expression += " REMOVE " + ", ".join(remove_parts)

        try:
            self.users_table.update_item(
                Key=self._key(state.user_id),
                UpdateExpression=update_expression,
                ConditionExpression="attribute_exists(PK)",
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=expression_values,
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                raise UserNotFoundError(state.user_id) from e
            logger.error(f"Error saving subscription for user {state.user_id}: {str(e)}")
            raise

        logger.info(f"Saved subscription for user {state.user_id}: {state.tier_value}/{values['subscription_status']}")

    def persist_reset(self, user_id: str, counters: UsageCounters, previous_reset: datetime) -> bool:
        """
        Write a daily reset, unless another request already reset the counters

        Args:
            user_id: Unique user identifier
            counters: Counters after the reset
            previous_reset: last_usage_reset value the reset was computed from

        Returns:
            bool: True if this call applied the reset
        """
        try:
            self.users_table.update_item(
                Key=self._key(user_id),
                UpdateExpression=(
                    "SET daily_offer_count = :zero, daily_token_count = :zero, "
                    "last_usage_reset = :reset, updated_at = :reset"
                ),
                ConditionExpression="last_usage_reset = :previous",
                ExpressionAttributeValues={
                    ":zero": 0,
                    ":reset": _iso(counters.last_usage_reset),
                    ":previous": _iso(previous_reset),
                },
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                logger.info(f"Daily usage for user {user_id} was already reset")
                return False
            logger.error(f"Error resetting daily usage for user {user_id}: {str(e)}")
            raise

        logger.info(f"Reset daily usage for user {user_id}")
        return True

    def increment_metered_usage(
        self, user_id: str, tokens_used: int, plan: PlanLimits, now: Optional[datetime] = None
    ) -> UsageCounters:
        """
        Atomically count one metered action, refusing to pass the plan's daily ceiling

        Returns:
            UsageCounters after the increment

        Raises:
            QuotaExceededError: if the daily limit was already reached
            UserNotFoundError: if no record exists
        """
        now = now or datetime.now(timezone.utc)
        condition = "attribute_exists(PK)"
        expression_values = {
            ":one": 1,
            ":tokens": tokens_used,
            ":now": _iso(now),
        }
        if not plan.is_unlimited:
            condition += " AND daily_offer_count < :limit"
            expression_values[":limit"] = plan.daily_offer_generations

        try:
            response = self.users_table.update_item(
                Key=self._key(user_id),
                UpdateExpression=(
                    "ADD daily_offer_count :one, daily_token_count :tokens, usage_count :one "
                    "SET updated_at = :now"
                ),
                ConditionExpression=condition,
                ExpressionAttributeValues=expression_values,
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if not _is_conditional_failure(e):
                logger.error(f"Error recording usage for user {user_id}: {str(e)}")
                raise
            # Raises UserNotFoundError when the record is missing
            self.get_user(user_id)
            logger.warning(f"Daily limit {plan.daily_offer_generations} reached for user {user_id}")
            raise QuotaExceededError(
                f"You've reached your daily limit for {plan.tier.value} plan. Upgrade to unlock more offers.",
                user_id=user_id,
                limit=plan.daily_offer_generations,
            ) from e

        logger.info(f"Recorded metered usage for user {user_id}, tokens: {tokens_used}")
        return counters_from_item(response["Attributes"])

    def mark_vault_access(self, user_id: str, now: Optional[datetime] = None) -> UsageCounters:
        """Timestamp the first vault access; later calls leave it unchanged."""
        now = now or datetime.now(timezone.utc)
        try:
            response = self.users_table.update_item(
                Key=self._key(user_id),
                UpdateExpression=(
                    "SET vault_accessed_at = if_not_exists(vault_accessed_at, :now), updated_at = :now"
                ),
                ConditionExpression="attribute_exists(PK)",
                ExpressionAttributeValues={":now": _iso(now)},
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                raise UserNotFoundError(user_id) from e
            logger.error(f"Error recording vault access for user {user_id}: {str(e)}")
            raise

        logger.info(f"Recorded vault access for user {user_id}")
        return counters_from_item(response["Attributes"])

    def append_usage_log(self, entry: UsageLogEntry) -> None:
        try:
            self.usage_log_table.put_item(Item=log_entry_to_item(entry))
        except ClientError as e:
            logger.error(f"Failed to append usage log for user {entry.user_id}: {e}")
            raise

    def list_usage_logs(
        self,
        user_id: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        limit: int = 100,
    ) -> List[UsageLogEntry]:
        """Get usage log entries for a user within a YYYY-MM-DD date range, most recent first."""
        key_condition = "PK = :pk"
        expression_values = {":pk": _user_pk(user_id)}

        if start_date and end_date:
            key_condition += " AND SK BETWEEN :start AND :end"
            expression_values[":start"] = f"LOG#{start_date}"
            expression_values[":end"] = f"LOG#{end_date}T23:59:59~"
        elif start_date:
            key_condition += " AND SK >= :start"
            expression_values[":start"] = f"LOG#{start_date}"

        try:
            response = self.usage_log_table.query(
                KeyConditionExpression=key_condition,
                ExpressionAttributeValues=expression_values,
                Limit=limit,
                ScanIndexForward=False,  # Most recent first
            )
        except ClientError as e:
            logger.error(f"Failed to get usage logs for user {user_id}: {e}")
            raise

        return [log_entry_from_item(item) for item in response.get("Items", [])]

    def list_usage_logs_for_dates(self, dates: Iterable[date]) -> List[UsageLogEntry]:
        """All users' usage log entries on the given days (GSI1)."""
        entries: List[UsageLogEntry] = []
        for day in dates:
            query_kwargs = {
                "IndexName": "GSI1",
                "KeyConditionExpression": "GSI1PK = :pk",
                "ExpressionAttributeValues": {":pk": f"DATE#{day.isoformat()}"},
            }
            while True:
                try:
                    response = self.usage_log_table.query(**query_kwargs)
                except ClientError as e:
                    logger.error(f"Failed to get usage logs for {day.isoformat()}: {e}")
                    raise
                entries.extend(log_entry_from_item(item) for item in response.get("Items", []))
                if "LastEvaluatedKey" not in response:
                    break
                query_kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        return entries

    def find_lapsed_subscriptions(self, now: Optional[datetime] = None) -> List[SubscriptionState]:
        """Active subscriptions whose paid period ended at or before now."""
        now = now or datetime.now(timezone.utc)
        scan_kwargs = {
            "FilterExpression": (
                "SK = :profile AND subscription_status = :active AND subscription_ends_at <= :now"
            ),
            "ExpressionAttributeValues": {
                ":profile": PROFILE_SK,
                ":active": "active",
                ":now": _iso(now),
            },
        }
        lapsed: List[SubscriptionState] = []
        while True:
            try:
                response = self.users_table.scan(**scan_kwargs)
            except ClientError as e:
                logger.error(f"Failed to scan for lapsed subscriptions: {e}")
                raise
            lapsed.extend(state_from_item(item) for item in response.get("Items", []))
            if "LastEvaluatedKey" not in response:
                break
            scan_kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        return lapsed
