"""
Authentication utilities for extracting user information from API Gateway events.

API Gateway validates the JWT before the Lambda runs; its claims arrive in
requestContext.authorizer.claims and are trusted as supplied.
"""
from typing import Dict, Any, Optional
from aws_lambda_powertools import Logger

logger = Logger()


def get_all_user_claims(event: Dict[str, Any]) -> Dict[str, Any]:
    """
    Extract all user claims from API Gateway event context.

    Args:
        event: API Gateway event dictionary

    Returns:
        Dictionary of all JWT claims, empty when the request is unauthenticated
    """
    request_context = event.get("requestContext") or {}
    authorizer = request_context.get("authorizer") or {}
    return authorizer.get("claims") or {}


def extract_user_id_from_event(event: Dict[str, Any]) -> Optional[str]:
    """
    Extract user_id (the 'sub' claim) from API Gateway event context.

    Args:
        event: API Gateway event dictionary

    Returns:
        User ID from the JWT token, or None if not found
    """
    user_id = get_all_user_claims(event).get("sub")
    if not user_id:
        logger.warning("No user_id found in JWT claims")
        return None
    return user_id


def extract_user_email_from_event(event: Dict[str, Any]) -> Optional[str]:
    """Extract user email from the JWT claims, or None if not found."""
    return get_all_user_claims(event).get("email") or None
