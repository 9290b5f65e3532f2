"""Post drift reports to Slack via incoming webhook."""

import logging
from urllib.parse import urlparse

import requests

from driftwatch.analyzer import AnalyzedStack
from driftwatch.formatter import format_markdown

logger = logging.getLogger(__name__)

ALLOWED_SLACK_HOSTS = {"hooks.slack.com", "hooks.slack-gov.com"}


def validate_webhook_url(webhook_url: str) -> None:
    parsed = urlparse(webhook_url)
    if parsed.scheme != "https":
        raise ValueError("Slack webhook URL must use HTTPS")
    if parsed.hostname not in ALLOWED_SLACK_HOSTS:
        raise ValueError(
            f"Invalid Slack webhook host {parsed.hostname!r}: "
            f"must be one of {sorted(ALLOWED_SLACK_HOSTS)}"
        )


def post_to_slack(report: str, webhook_url: str, timeout: int = 30) -> None:
    """Post a drift report to a Slack incoming webhook."""
    validate_webhook_url(webhook_url)
    response = requests.post(
        webhook_url,
        json={"text": report},
        timeout=timeout,
    )
    response.raise_for_status()


class SlackNotifier:
    """Sends a markdown drift report whenever a stack is reconciled as drifted."""

    def __init__(self, webhook_url: str, redact: bool = True, timeout: int = 30):
        validate_webhook_url(webhook_url)
        self._webhook_url = webhook_url
        self._redact = redact
        self._timeout = timeout

    def notify_drift(self, analyzed: AnalyzedStack) -> None:
        post_to_slack(
            format_markdown([analyzed], redact=self._redact),
            self._webhook_url,
            timeout=self._timeout,
        )
        logger.debug("Posted drift report for %s to Slack", analyzed.view.stack.stack_name)
