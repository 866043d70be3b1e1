import json
import os
from datetime import date
from aws_lambda_powertools import Logger
from aws_lambda_powertools.event_handler import APIGatewayRestResolver, Response, content_types
from aws_lambda_powertools.event_handler.api_gateway import CORSConfig
from aws_lambda_powertools.event_handler.exceptions import BadRequestError, NotFoundError, UnauthorizedError
from aws_lambda_powertools.utilities.typing import LambdaContext
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel
from typing import Any, Dict, Optional

from shared.constants.subscription_tiers import DEFAULT_ESTIMATED_TOKENS
from shared.models.subscription import UserNotFoundError
from shared.models.usage import QuotaExceededError, UsageAction
from shared.services.usage_service import build_usage_service
from shared.utils.auth import extract_user_id_from_event

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


class CheckUsageRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    action: UsageAction
    estimated_tokens: int = Field(default=DEFAULT_ESTIMATED_TOKENS, ge=0)


class RecordUsageRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    action: UsageAction
    tokens_used: int = Field(default=0, ge=0)
    success: bool = True
    metadata: Optional[Dict[str, Any]] = None


def _current_user_id() -> str:
    user_id = extract_user_id_from_event(app.current_event.raw_event)
    if not user_id:
        logger.error("No user_id found in JWT token")
        raise UnauthorizedError("Authentication required")
    return user_id


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


@app.get("/usage/status")
def get_usage_status() -> Dict[str, Any]:
    """
    Get the caller's daily usage status
    """
    user_id = _current_user_id()
    try:
        status = usage_service.get_status(user_id)
    except UserNotFoundError:
        raise NotFoundError("User not found")
    return status.to_response()


@app.post("/usage/check")
def check_usage():
    """
    Check whether an action may run now. Expected body: {"action": "offer_generation", "estimatedTokens": 500}
    """
    user_id = _current_user_id()
    try:
        request = CheckUsageRequest(**(app.current_event.json_body or {}))
    except (ValidationError, TypeError, ValueError) as exc:
        logger.error(f"Validation error: {str(exc)}")
        raise BadRequestError(f"Invalid request: {str(exc)}")

    try:
        result = usage_service.check(user_id, request.action, request.estimated_tokens)
    except UserNotFoundError:
        raise NotFoundError("User not found")

    if not result.allowed:
        return Response(
            status_code=429,
            content_type=content_types.APPLICATION_JSON,
            body=json.dumps(result.to_response()),
        )
    return result.to_response()


@app.post("/usage/record")
def record_usage():
    """
    Record a performed action. Expected body: {"action": "offer_generation", "tokensUsed": 420, "success": true}
    """
    user_id = _current_user_id()
    try:
        request = RecordUsageRequest(**(app.current_event.json_body or {}))
    except (ValidationError, TypeError, ValueError) as exc:
        logger.error(f"Validation error: {str(exc)}")
        raise BadRequestError(f"Invalid request: {str(exc)}")

    try:
        counters = usage_service.record(
            user_id, request.action, request.tokens_used, request.success, request.metadata
        )
    except UserNotFoundError:
        raise NotFoundError("User not found")
    except QuotaExceededError as exc:
        return Response(
            status_code=429,
            content_type=content_types.APPLICATION_JSON,
            body=json.dumps({"allowed": False, "message": exc.message, "limit": exc.limit}),
        )

    return {
        "dailyOfferCount": counters.daily_offer_count,
        "dailyTokenCount": counters.daily_token_count,
        "usageCount": counters.usage_count,
        "lastUsageReset": counters.last_usage_reset.isoformat(),
        "vaultAccessedAt": counters.vault_accessed_at.isoformat() if counters.vault_accessed_at else None,
    }


@app.get("/usage/vault-access")
def get_vault_access() -> Dict[str, Any]:
    """
    Refund protection: whether the caller ever opened a vault resource
    """
    user_id = _current_user_id()
    try:
        accessed, accessed_at = usage_service.has_accessed_vault(user_id)
    except UserNotFoundError:
        raise NotFoundError("User not found")
    return {
        "hasAccessedVault": accessed,
        "vaultAccessedAt": accessed_at.isoformat() if accessed_at else None,
    }


@app.get("/usage/history")
def get_usage_history() -> Dict[str, Any]:
    """
    Caller's own usage log, most recent first, e.g. /usage/history?start=2025-06-01&end=2025-06-07&limit=50
    """
    user_id = _current_user_id()
    event = app.current_event
    try:
        start = _parse_date(event.get_query_string_value(name="start", default_value=None))
        end = _parse_date(event.get_query_string_value(name="end", default_value=None))
        limit = int(event.get_query_string_value(name="limit", default_value="100"))
    except ValueError as exc:
        raise BadRequestError(f"Invalid query: {str(exc)}")
    if limit < 1:
        raise BadRequestError("limit must be positive")

    try:
        entries = usage_service.get_usage_history(user_id, start, end, limit)
    except UserNotFoundError:
        raise NotFoundError("User not found")

    return {
        "entries": [
            {
                "entryId": entry.entry_id,
                "action": entry.action_value,
                "tokensUsed": entry.tokens_used,
                "success": entry.success,
                "timestamp": entry.timestamp.isoformat(),
                "metadata": entry.metadata,
            }
            for entry in entries
        ],
        "count": len(entries),
    }


@logger.inject_lambda_context
def handler(event: Dict[str, Any], context: LambdaContext) -> Dict[str, Any]:
    """
    Lambda function handler.
    """
    return app.resolve(event, context)
