import os
from datetime import datetime
from aws_lambda_powertools import Logger
from aws_lambda_powertools.event_handler import APIGatewayRestResolver
from aws_lambda_powertools.event_handler.api_gateway import CORSConfig
from aws_lambda_powertools.event_handler.exceptions import (
    BadRequestError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
)
from aws_lambda_powertools.utilities.typing import LambdaContext
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel
from typing import Any, Dict, Literal, Optional

from shared.utils.auth import extract_user_email_from_event, extract_user_id_from_event
from shared.services.usage_service import build_usage_service
from shared.models.subscription import PLAN_LIMITS, SubscriptionStatus, Tier, UserNotFoundError
from shared.constants.subscription_tiers import (
    FREE_PRICE_USD, FREE_DESCRIPTION,
    STARTER_PRICE_USD, STARTER_DESCRIPTION,
    PRO_PRICE_USD, PRO_DESCRIPTION,
    VAULT_PRICE_USD, VAULT_DESCRIPTION,
    CURRENCY, CURRENCY_SYMBOL,
)

# Initialize the logger
logger = Logger()

# Retrieve environment variables
USERS_TABLE_NAME = os.environ.get("USERS_TABLE_NAME", "oh-users-dev")
USAGE_LOG_TABLE_NAME = os.environ.get("USAGE_LOG_TABLE_NAME", "oh-usage-logs-dev")
ADMIN_EMAILS = os.environ.get("ADMIN_EMAILS", "")
USAGE_RESET_TIMEZONE = os.environ.get("USAGE_RESET_TIMEZONE", "local")

usage_service = build_usage_service(USERS_TABLE_NAME, USAGE_LOG_TABLE_NAME, ADMIN_EMAILS, USAGE_RESET_TIMEZONE)

# Configure CORS
cors_config = CORSConfig(
    allow_origin="*",  # In production, specify your actual domain
)

# Initialize the APIGatewayRestResolver
app = APIGatewayRestResolver(cors=cors_config)


class BillingEvent(BaseModel):
    """Subscription change forwarded by the billing webhook"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: str
    event: Literal["subscription_updated", "subscription_deleted"]
    tier: Optional[Tier] = None
    status: Optional[SubscriptionStatus] = None
    ends_at: Optional[datetime] = None
    stripe_subscription_id: Optional[str] = None


def _current_user_id() -> str:
    user_id = extract_user_id_from_event(app.current_event.raw_event)
    if not user_id:
        logger.error("No user_id found in JWT token")
        raise UnauthorizedError("Authentication required")
    return user_id


@app.get("/subscription")
def get_subscription() -> Dict[str, Any]:
    """
    Get user's current subscription and which tiers' features it unlocks
    """
    user_id = _current_user_id()
    try:
        return usage_service.get_subscription_summary(user_id)
    except UserNotFoundError:
        raise NotFoundError("User not found")


@app.get("/subscription/access")
def get_access() -> Dict[str, Any]:
    """
    Check access to a feature tier, e.g. /subscription/access?requiredTier=pro
    """
    user_id = _current_user_id()
    required_tier = app.current_event.get_query_string_value(name="requiredTier", default_value=None)
    if not required_tier:
        raise BadRequestError("Missing required query parameter: requiredTier")

    try:
        allowed, message = usage_service.check_access(user_id, required_tier.lower())
    except UserNotFoundError:
        raise NotFoundError("User not found")

    response = {"allowed": allowed}
    if message:
        response["message"] = message
    return response


@app.get("/subscription/pricing")
def get_pricing() -> Dict[str, Any]:
    """
    Get pricing tiers and feature comparison
    """
    catalog = [
        (Tier.FREE, "Free", FREE_PRICE_USD, "day", FREE_DESCRIPTION),
        (Tier.STARTER, "Starter", STARTER_PRICE_USD, "month", STARTER_DESCRIPTION),
        (Tier.PRO, "Pro", PRO_PRICE_USD, "month", PRO_DESCRIPTION),
        (Tier.VAULT, "Vault", VAULT_PRICE_USD, "one_time", VAULT_DESCRIPTION),
    ]
    tiers = {}
    for tier, name, price, interval, description in catalog:
        tiers[tier.value] = {
            "name": name,
            "price": price,
            "currency": CURRENCY,
            "interval": interval,
            "features": PLAN_LIMITS[tier].model_dump(mode="json", by_alias=True, exclude={"tier"}),
            "description": description,
        }
    tiers[Tier.PRO.value]["popular"] = True

    return {
        "tiers": tiers,
        "currencySymbol": CURRENCY_SYMBOL,
    }


@app.post("/subscription/billing-event")
def post_billing_event() -> Dict[str, Any]:
    """
    Apply a billing status change (admin only)
    Expected body: {"userId": "...", "event": "subscription_updated", "tier": "pro", "status": "active", "endsAt": "..."}
    """
    caller_id = _current_user_id()
    caller_email = extract_user_email_from_event(app.current_event.raw_event)
    if not usage_service.is_admin(caller_id, caller_email):
        logger.warning(f"Non-admin user {caller_id} attempted a billing event")
        raise ForbiddenError("Admin access required")

    try:
        billing_event = BillingEvent(**app.current_event.json_body)
        if billing_event.event == "subscription_updated" and (
            billing_event.tier is None or billing_event.status is None
        ):
            raise ValueError("tier and status are required for subscription_updated")
    except (ValidationError, TypeError, ValueError) as exc:
        logger.error(f"Validation error: {str(exc)}")
        raise BadRequestError(f"Invalid request: {str(exc)}")

    try:
        if billing_event.event == "subscription_deleted":
            state = usage_service.cancel(billing_event.user_id)
        else:
            state = usage_service.apply_billing_event(
                billing_event.user_id,
                billing_event.status,
                billing_event.tier,
                billing_event.ends_at,
                billing_event.stripe_subscription_id,
            )
    except UserNotFoundError:
        raise NotFoundError("User not found")

    return {
        "success": True,
        "userId": state.user_id,
        "tier": state.tier_value,
        "subscriptionStatus": state.subscription_status.value if state.subscription_status else None,
        "accessGranted": state.access_granted,
    }


def handler(event: Dict[str, Any], context: LambdaContext) -> Dict[str, Any]:
    """
    Lambda function handler.
    """
    return app.resolve(event, context)
