"""
Quota Middleware for OnyxHooks API Endpoints

Wraps generation handlers: tier access check, then throttle check, then the
handler, then usage recording when the handler answered 200.
"""

import json
import os
from functools import wraps
from typing import Dict, Any, Callable, Optional, Union
from aws_lambda_powertools import Logger

from shared.constants.subscription_tiers import DEFAULT_ESTIMATED_TOKENS
from shared.models.subscription import Tier, UserNotFoundError
from shared.models.usage import QuotaExceededError, UsageAction, action_value
from shared.services.usage_service import UsageService, build_usage_service
from shared.utils.auth import extract_user_id_from_event

logger = Logger()

UPGRADE_URL = "/pricing"


def create_api_response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create an API Gateway proxy response

    Args:
        status_code: HTTP status code
        body: Response body dict

    Returns:
        Dict: API Gateway response format
    """
    return {
        "statusCode": status_code,
        "headers": {
            "Content-Type": "application/json",
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Headers": "Content-Type,Authorization",
            "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
        },
        "body": json.dumps(body, default=str),
    }


def _tokens_from_result(result: Dict[str, Any], fallback: int) -> int:
    """Handlers may report the actual token cost as tokensUsed in their JSON body."""
    body = result.get("body")
    if not isinstance(body, str):
        return fallback
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return fallback
    if isinstance(payload, dict) and isinstance(payload.get("tokensUsed"), int):
        return payload["tokensUsed"]
    return fallback


def _default_service() -> UsageService:
    return build_usage_service(
        os.environ.get("USERS_TABLE_NAME", "oh-users-dev"),
        os.environ.get("USAGE_LOG_TABLE_NAME", "oh-usage-logs-dev"),
        os.environ.get("ADMIN_EMAILS", ""),
        os.environ.get("USAGE_RESET_TIMEZONE", "local"),
    )


def quota_check(
    action: Union[UsageAction, str],
    required_tier: Union[Tier, str, None] = None,
    estimated_tokens: int = DEFAULT_ESTIMATED_TOKENS,
    service: Optional[UsageService] = None,
):
    """
    Decorator to gate and meter a Lambda handler

    Args:
        action: Action the handler performs
        required_tier: Minimum tier for the feature, None for no tier gate
        estimated_tokens: Expected token cost, checked against the remaining budget
        service: UsageService to use, built from the environment when omitted

    Usage:
        @quota_check(UsageAction.OFFER_GENERATION, required_tier=Tier.STARTER)
        def generate_offer_handler(event, context):
            # Runs only when the user has access and quota left
            pass
    """
    def decorator(handler_func: Callable) -> Callable:
        @wraps(handler_func)
        def wrapper(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
            user_id = extract_user_id_from_event(event)
            if not user_id:
                return create_api_response(401, {"error": "Unauthorized", "message": "Authentication required"})

            usage_service = service or _default_service()

            try:
                if required_tier is not None:
                    allowed, message = usage_service.check_access(user_id, required_tier)
                    if not allowed:
                        return create_api_response(
                            403,
                            {"error": "Forbidden", "message": message, "upgrade_url": UPGRADE_URL},
                        )

                throttle = usage_service.check(user_id, action, estimated_tokens)
            except UserNotFoundError:
                logger.warning(f"No usage record for user {user_id}")
                return create_api_response(404, {"error": "Not found", "message": "User not found"})

            if not throttle.allowed:
                body = throttle.to_response()
                body.update({
                    "error": "Quota exceeded",
                    "upgrade_url": UPGRADE_URL if throttle.status.upgrade_required else None,
                })
                return create_api_response(429, body)

            logger.info(f"Quota check passed for user {user_id}, action: {action_value(action)}")
            result = handler_func(event, context)

            # Only successful responses count against the quota
            if isinstance(result, dict) and result.get("statusCode") == 200:
                tokens_used = _tokens_from_result(result, estimated_tokens)
                try:
                    usage_service.record(user_id, action, tokens_used)
                except QuotaExceededError as e:
                    return create_api_response(
                        429,
                        {"error": "Quota exceeded", "message": e.message, "upgrade_url": UPGRADE_URL},
                    )
                except UserNotFoundError:
                    logger.warning(f"Usage record for user {user_id} disappeared before recording")
                    return create_api_response(404, {"error": "Not found", "message": "User not found"})

            return result

        return wrapper
    return decorator
