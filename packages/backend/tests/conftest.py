import os
from datetime import timezone

# Handler modules read their configuration at import time
os.environ.setdefault("AWS_REGION", "us-east-1")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("AWS_SECURITY_TOKEN", "testing")
os.environ.setdefault("AWS_SESSION_TOKEN", "testing")
os.environ.setdefault("POWERTOOLS_SERVICE_NAME", "onyxhooks-test")
os.environ["USERS_TABLE_NAME"] = "test-users-table"
os.environ["USAGE_LOG_TABLE_NAME"] = "test-usage-log-table"
os.environ["ADMIN_EMAILS"] = "owner@onyxhooks.test"
os.environ["USAGE_RESET_TIMEZONE"] = "UTC"

import pytest  # noqa: E402
from moto import mock_aws  # noqa: E402

from shared.services.aws import clear_aws_caches  # noqa: E402
from shared.services.usage_repository import UsageRepository  # noqa: E402
from shared.services.usage_service import UsageService  # noqa: E402
from shared.services.usage_throttle import UsageThrottle  # noqa: E402
from tests.fixtures.ddb import (  # noqa: E402
    create_usage_log_table,
    create_users_table,
    get_usage_log_table_name,
    get_users_table_name,
)
from tests.fixtures.events import FakeLambdaContext  # noqa: E402


@pytest.fixture
def aws():
    """Mocked AWS with fresh boto3 resources for every test."""
    clear_aws_caches()
    with mock_aws():
        yield
    clear_aws_caches()


@pytest.fixture
def tables(aws):
    return create_users_table(), create_usage_log_table()


@pytest.fixture
def repository(tables) -> UsageRepository:
    return UsageRepository(get_users_table_name(), get_usage_log_table_name())


@pytest.fixture
def usage_service(repository) -> UsageService:
    return UsageService(repository, UsageThrottle(timezone.utc), admin_emails=["owner@onyxhooks.test"])


@pytest.fixture
def lambda_context() -> FakeLambdaContext:
    return FakeLambdaContext()
