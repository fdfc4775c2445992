"""Notification sinks for audit reports.

Slack is called through the Web API (``chat.postMessage``) with httpx rather
than the Slack SDK.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

SLACK_POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"


class NotificationError(Exception):
    pass


class Notifier(Protocol):
    def post(self, channel: str, text: str) -> None: ...


class SlackNotifier:
    def __init__(self, token: str, http: httpx.Client | None = None, timeout: float = 10.0) -> None:
        self.token = token
        self._http = http or httpx.Client(timeout=timeout)

    def post(self, channel: str, text: str) -> None:
        logger.debug("posting message to Slack channel %s", channel)
        try:
            resp = self._http.post(
                SLACK_POST_MESSAGE_URL,
                headers={"Authorization": f"Bearer {self.token}"},
                json={"channel": channel, "text": text, "mrkdwn": False},
            )
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise NotificationError(f"error posting message to Slack: {e}") from e
        # Slack reports API errors with HTTP 200 and ok=false
        if not body.get("ok"):
            raise NotificationError(f"error posting message to Slack: {body.get('error', 'unknown_error')}")
        logger.info("posted message to Slack channel %s", channel)

    def close(self) -> None:
        self._http.close()


class LogNotifier:
    """Fallback when no Slack token is configured."""

    def post(self, channel: str, text: str) -> None:
        logger.info("report for %s:\n%s", channel, text)


def build_notifier(slack_token: str, timeout: float = 10.0) -> Notifier:
    if slack_token:
        return SlackNotifier(slack_token, timeout=timeout)
    logger.warning("SLACK_TOKEN not set, reports will only be logged")
    return LogNotifier()
