from __future__ import annotations

import logging

import requests

logger = logging.getLogger(__name__)

# Chat webhooks reject longer message bodies.
_MAX_MESSAGE_CHARS = 1900


class WebhookNotifier:
    """Posts admin messages to a chat webhook as `{"content": text}`."""

    def __init__(self, url: str, timeout: float = 10.0, username: str = "tradevault"):
        self.url = url
        self.timeout = float(timeout)
        self.username = username
        self.session = requests.Session()

    def post_message(self, text: str) -> None:
        body = {"content": str(text)[:_MAX_MESSAGE_CHARS], "username": self.username}
        try:
            resp = self.session.post(self.url, json=body, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Webhook delivery failed: %s", e)


class LogNotifier:
    """Used when no webhook is configured: admin messages only reach the log."""

    def post_message(self, text: str) -> None:
        logger.warning("[admin] %s", text)


def build_notifier(url: str | None, timeout: float = 10.0):
    if url:
        return WebhookNotifier(url, timeout=timeout)
    return LogNotifier()
