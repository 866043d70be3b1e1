import json
from datetime import datetime, timezone

from shared.models.usage import UsageAction, UsageLogEntry
from src.handlers.api.admin_usage.admin_usage.app import handler
from tests.fixtures.events import api_event


def call(event, lambda_context):
    response = handler(event, lambda_context)
    return response["statusCode"], json.loads(response["body"])


def stats_event(query=None, user_id="owner", email="owner@onyxhooks.test"):
    return api_event("GET", "/admin/usage-stats", user_id=user_id, email=email, query=query)


def seed_logs(repository):
    for user_id, action, tokens, day in [
        ("user-1", UsageAction.OFFER_GENERATION, 400, 1),
        ("user-1", UsageAction.HOOK_GENERATION, 300, 2),
        ("user-2", UsageAction.VAULT_ACCESS, 0, 2),
        ("user-2", UsageAction.OFFER_GENERATION, 500, 20),
    ]:
        repository.append_usage_log(
            UsageLogEntry(
                user_id=user_id,
                action=action,
                tokens_used=tokens,
                timestamp=datetime(2025, 6, day, 12, 0, tzinfo=timezone.utc),
            )
        )


def test_stats_for_admin(repository, lambda_context):
    seed_logs(repository)

    status_code, body = call(stats_event({"start": "2025-06-01", "end": "2025-06-07"}), lambda_context)

    assert status_code == 200
    assert body["start"] == "2025-06-01"
    assert body["end"] == "2025-06-07"
    assert body["totalActions"] == 3
    assert body["successfulActions"] == 3
    assert body["totalTokensUsed"] == 700
    assert body["actionBreakdown"] == {"offer_generation": 1, "hook_generation": 1, "vault_access": 1}
    assert body["dailyBreakdown"] == {"2025-06-01": 1, "2025-06-02": 2}


def test_stats_for_non_admin_is_forbidden(repository, lambda_context):
    repository.create_user("user-1", "coach@example.com")
    status_code, _ = call(stats_event(user_id="user-1", email="coach@example.com"), lambda_context)
    assert status_code == 403


def test_stats_requires_authentication(repository, lambda_context):
    status_code, _ = call(stats_event(user_id=None, email=None), lambda_context)
    assert status_code == 401


def test_stats_rejects_bad_dates(repository, lambda_context):
    status_code, _ = call(stats_event({"start": "June 1st", "end": "2025-06-07"}), lambda_context)
    assert status_code == 400

    status_code, _ = call(stats_event({"start": "2025-06-07", "end": "2025-06-01"}), lambda_context)
    assert status_code == 400

    status_code, _ = call(stats_event({"start": "2024-01-01", "end": "2025-06-01"}), lambda_context)
    assert status_code == 400


def test_stats_default_window(repository, lambda_context):
    status_code, body = call(stats_event(), lambda_context)

    assert status_code == 200
    assert body["totalActions"] == 0
