from typing import Any, Optional
import boto3
import os
from boto3.resources.base import ServiceResource
from functools import cache


def get_region_name() -> Optional[str]:
    """
    Get the AWS region name from environment variable.
    Uses AWS_REGION if set, otherwise lets boto3 use its default region resolution.

    Returns:
        str: The AWS region name or None to let boto3 handle region resolution.
    """
    return os.getenv("AWS_REGION")


def get_dynamodb_endpoint_url() -> Optional[str]:
    """Endpoint override for DynamoDB Local; None in AWS."""
    return os.getenv("DYNAMODB_ENDPOINT_URL") or None


@cache
def get_dynamodb_resource() -> ServiceResource:
    """
    Get a DynamoDB resource instance, honoring region and endpoint overrides.

    Returns:
        boto3.resources.base.ServiceResource: The DynamoDB resource.
    """
    kwargs = {}
    region = get_region_name()
    if region:
        kwargs["region_name"] = region
    endpoint_url = get_dynamodb_endpoint_url()
    if endpoint_url:
        kwargs["endpoint_url"] = endpoint_url
    return boto3.resource("dynamodb", **kwargs)


@cache
def get_ddb_table(table_name: str) -> Any:
    return get_dynamodb_resource().Table(table_name)


def clear_aws_caches() -> None:
    """Drop cached resources, e.g. after the region or endpoint changed."""
    get_ddb_table.cache_clear()
    get_dynamodb_resource.cache_clear()
