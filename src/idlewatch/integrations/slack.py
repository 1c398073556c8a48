"""Post alerts and reports to Slack via incoming webhook."""

from urllib.parse import urlparse

import requests

from idlewatch.models import Alert

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
    """Post a text report to a Slack incoming webhook."""
    validate_webhook_url(webhook_url)
    response = requests.post(
        webhook_url,
        json={"text": report},
        timeout=timeout,
    )
    response.raise_for_status()


def format_alert_message(alert: Alert) -> str:
    return (
        f"*[{alert.severity.name}] {alert.resource_type.value} {alert.alert_type}*\n"
        f"Resource: `{alert.resource_id}`\n"
        f"{alert.message}"
    )


class SlackAlertObserver:
    """Posts every new and resolved alert to a Slack webhook.

    The URL is validated up front so a misconfigured webhook fails at setup
    rather than on the first alert.
    """

    def __init__(self, webhook_url: str, timeout: int = 30):
        validate_webhook_url(webhook_url)
        self._webhook_url = webhook_url
        self._timeout = timeout

    def on_alert_created(self, alert: Alert) -> None:
        post_to_slack(format_alert_message(alert), self._webhook_url, timeout=self._timeout)

    def on_alert_resolved(self, alert: Alert) -> None:
        post_to_slack(
            f"Resolved: `{alert.resource_id}` {alert.message}",
            self._webhook_url,
            timeout=self._timeout,
        )
