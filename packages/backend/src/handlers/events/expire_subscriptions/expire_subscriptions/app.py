import os
from typing import Dict, Any
from aws_lambda_powertools import Logger
from aws_lambda_powertools.utilities.typing import LambdaContext

from shared.services.usage_service import build_usage_service

# Initialize the logger
logger = Logger()

# Retrieve environment variables
USERS_TABLE_NAME = os.environ.get("USERS_TABLE_NAME", "oh-users-dev")
USAGE_LOG_TABLE_NAME = os.environ.get("USAGE_LOG_TABLE_NAME", "oh-usage-logs-dev")

usage_service = build_usage_service(USERS_TABLE_NAME, USAGE_LOG_TABLE_NAME)


@logger.inject_lambda_context
def handler(event: Dict[str, Any], context: LambdaContext) -> Dict[str, Any]:
    """
    Scheduled sweep (EventBridge) that downgrades lapsed subscriptions to free.
    """
    expired = usage_service.expire_lapsed_subscriptions()
    return {
        "expired_count": len(expired),
        "user_ids": [state.user_id for state in expired],
    }
