"""Tests for the Slack integration."""

from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest

from driftwatch.analyzer import analyze_stack
from driftwatch.integrations.slack import SlackNotifier, post_to_slack
from driftwatch.models import (
    ResourceStatus,
    StackRecord,
    StackStatus,
    StackView,
    StoredResourceDrift,
)

WEBHOOK = "https://hooks.slack.com/services/T00/B00/xxx"


def _analyzed():
    ts = datetime(2026, 2, 25, 13, 30, tzinfo=UTC)
    stack = StackRecord(
        id=1,
        account_id="123456789012",
        stack_name="my-stack",
        region="us-east-1",
        stack_id=None,
        last_known_status="CREATE_COMPLETE",
        drift_status=StackStatus.DRIFTED,
        detection_time=ts,
    )
    resource = StoredResourceDrift(
        logical_resource_id="MyRole",
        resource_type="AWS::IAM::Role",
        physical_resource_id="my-role",
        drift_status=ResourceStatus.MODIFIED,
        actual_properties={},
        expected_properties={},
        property_differences=[
            {
                "property_path": "/MaxSessionDuration",
                "expected_value": "3600",
                "actual_value": "43200",
                "difference_type": "NOT_EQUAL",
            }
        ],
        recorded_at=ts,
    )
    return analyze_stack(StackView(stack=stack, latest_job=None, stale=False), [resource])


def test_post_to_slack_sends_payload():
    with patch("driftwatch.integrations.slack.requests.post") as mock_post:
        mock_post.return_value = MagicMock(status_code=200)

        post_to_slack("## Drift Report\nSome drift", WEBHOOK)

        mock_post.assert_called_once()
        call_kwargs = mock_post.call_args
        assert call_kwargs[0][0] == WEBHOOK
        payload = call_kwargs[1]["json"]
        assert "Drift Report" in payload["text"]


def test_post_to_slack_raises_on_failure():
    with patch("driftwatch.integrations.slack.requests.post") as mock_post:
        mock_post.return_value = MagicMock(status_code=500, text="Server Error")
        mock_post.return_value.raise_for_status.side_effect = Exception("500 Server Error")

        with pytest.raises(Exception, match="500"):
            post_to_slack("report", WEBHOOK)


def test_post_to_slack_rejects_non_slack_host():
    with pytest.raises(ValueError, match="Invalid Slack webhook host"):
        post_to_slack("report", "https://evil.example.com/webhook")


def test_post_to_slack_rejects_http():
    with pytest.raises(ValueError, match="must use HTTPS"):
        post_to_slack("report", "http://hooks.slack.com/services/T00/B00/xxx")


def test_post_to_slack_allows_gov_cloud():
    with patch("driftwatch.integrations.slack.requests.post") as mock_post:
        mock_post.return_value = MagicMock(status_code=200)

        post_to_slack("report", "https://hooks.slack-gov.com/services/T00/B00/xxx")

        mock_post.assert_called_once()


def test_notifier_rejects_bad_webhook_up_front():
    with pytest.raises(ValueError):
        SlackNotifier("https://example.com/hook")


def test_notifier_posts_redacted_report():
    with patch("driftwatch.integrations.slack.requests.post") as mock_post:
        mock_post.return_value = MagicMock(status_code=200)

        SlackNotifier(WEBHOOK).notify_drift(_analyzed())

        text = mock_post.call_args[1]["json"]["text"]
        assert "my-stack" in text
        assert "MyRole" in text
        assert "CRITICAL" in text
        assert "43200" not in text


def test_notifier_can_include_values():
    with patch("driftwatch.integrations.slack.requests.post") as mock_post:
        mock_post.return_value = MagicMock(status_code=200)

        SlackNotifier(WEBHOOK, redact=False).notify_drift(_analyzed())

        assert "43200" in mock_post.call_args[1]["json"]["text"]
