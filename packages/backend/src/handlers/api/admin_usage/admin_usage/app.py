import os
from datetime import date, datetime, timedelta, timezone
from aws_lambda_powertools import Logger
from aws_lambda_powertools.event_handler import APIGatewayRestResolver
from aws_lambda_powertools.event_handler.api_gateway import CORSConfig
from aws_lambda_powertools.event_handler.exceptions import (
    BadRequestError,
    ForbiddenError,
    UnauthorizedError,
)
from aws_lambda_powertools.utilities.typing import LambdaContext
from typing import Any, Dict, Optional

from shared.services.usage_service import build_usage_service
from shared.utils.auth import extract_user_email_from_event, extract_user_id_from_event

# Initialize the logger
logger = Logger()

# Retrieve environment variables
USERS_TABLE_NAME = os.environ.get("USERS_TABLE_NAME", "oh-users-dev")
USAGE_LOG_TABLE_NAME = os.environ.get("USAGE_LOG_TABLE_NAME", "oh-usage-logs-dev")
ADMIN_EMAILS = os.environ.get("ADMIN_EMAILS", "")
USAGE_RESET_TIMEZONE = os.environ.get("USAGE_RESET_TIMEZONE", "local")

# Window used when the caller gives no start date
DEFAULT_STATS_DAYS = 7

usage_service = build_usage_service(USERS_TABLE_NAME, USAGE_LOG_TABLE_NAME, ADMIN_EMAILS, USAGE_RESET_TIMEZONE)

# Configure CORS
cors_config = CORSConfig(
    allow_origin="*",  # In production, specify your actual domain
)

# Initialize the APIGatewayRestResolver
app = APIGatewayRestResolver(cors=cors_config)


def _parse_date(value: Optional[str], name: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise BadRequestError(f"Invalid {name} date, expected YYYY-MM-DD")


@app.get("/admin/usage-stats")
def get_usage_stats() -> Dict[str, Any]:
    """
    Aggregate usage of all users, e.g. /admin/usage-stats?start=2025-06-01&end=2025-06-07
    """
    user_id = extract_user_id_from_event(app.current_event.raw_event)
    if not user_id:
        logger.error("No user_id found in JWT token")
        raise UnauthorizedError("Authentication required")

    email = extract_user_email_from_event(app.current_event.raw_event)
    if not usage_service.is_admin(user_id, email):
        logger.warning(f"Non-admin user {user_id} requested usage stats")
        raise ForbiddenError("Admin access required")

    end = _parse_date(app.current_event.get_query_string_value(name="end", default_value=None), "end")
    start = _parse_date(app.current_event.get_query_string_value(name="start", default_value=None), "start")
    end = end or datetime.now(timezone.utc).date()
    start = start or end - timedelta(days=DEFAULT_STATS_DAYS - 1)

    try:
        stats = usage_service.get_usage_stats(start, end)
    except ValueError as exc:
        raise BadRequestError(str(exc))

    logger.info(f"Usage stats {start} to {end}: {stats.total_actions} actions")
    return {"start": start.isoformat(), "end": end.isoformat(), **stats.to_response()}


@logger.inject_lambda_context
def handler(event: Dict[str, Any], context: LambdaContext) -> Dict[str, Any]:
    """
    Lambda function handler.
    """
    return app.resolve(event, context)
