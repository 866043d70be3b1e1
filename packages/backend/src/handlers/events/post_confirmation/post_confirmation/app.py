import os
from typing import Dict, Any
from aws_lambda_powertools import Logger
from aws_lambda_powertools.utilities.typing import LambdaContext
from botocore.exceptions import ClientError

from shared.services.usage_repository import UsageRepository

# Initialize the logger
logger = Logger()

# Initialize services
users_table_name = os.environ.get("USERS_TABLE_NAME", "oh-users-dev")
usage_log_table_name = os.environ.get("USAGE_LOG_TABLE_NAME", "oh-usage-logs-dev")

repository = UsageRepository(users_table_name, usage_log_table_name)


def extract_user_info(event: Dict[str, Any]) -> Dict[str, str]:
    """Extract user information from Cognito post-confirmation event."""
    try:
        user_attributes = event["request"]["userAttributes"]
        user_id = user_attributes["sub"]
    except KeyError as e:
        logger.error(f"Missing required user attribute: {e}")
        raise ValueError(f"Invalid Cognito event structure: missing {e}")

    email = user_attributes.get("email")
    logger.info(f"Processing post-confirmation for user: {user_id}, email: {email}")
    return {"user_id": user_id, "email": email}


@logger.inject_lambda_context
def handler(event: Dict[str, Any], context: LambdaContext) -> Dict[str, Any]:
    """
    Cognito Post-Confirmation Lambda handler.

    Creates the free-tier user record with fresh usage counters. An existing
    record is left untouched, so retried triggers are harmless.

    Input: Cognito Post-Confirmation trigger event
    Output: Same event (required by Cognito)
    """
    logger.info("Post-confirmation Lambda triggered", extra={
        "trigger_source": event.get("triggerSource", "unknown"),
        "user_pool_id": event.get("userPoolId", "unknown")
    })

    try:
        user_info = extract_user_info(event)
        repository.create_user(user_info["user_id"], user_info["email"])
    except (ValueError, ClientError) as e:
        # Raising here would block the sign-up
        logger.exception(f"Post-confirmation failed but allowing registration to proceed: {e}")

    # Cognito requires the original event back
    return event
