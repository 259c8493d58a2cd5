"""
Notification collaborator.
Delivers one-time codes and workflow notices to operators.
"""
import logging

import httpx

from ... import config
from ...errors import CollaboratorUnavailable

logger = logging.getLogger(__name__)


class LoggingNotifier:
    """Development notifier - writes messages to the log instead of sending them."""

    def send(self, contact: str, message: str) -> bool:
        logger.info("Notification to %s: %s", contact, message)
        return True


class WebhookNotifier:
    """Posts notifications to an HTTP endpoint (SMS/e-mail gateway)."""

    def __init__(self, url: str, timeout: float = config.COLLABORATOR_TIMEOUT_SECONDS):
        self.url = url
        self.timeout = timeout

    def send(self, contact: str, message: str) -> bool:
        try:
            response = httpx.post(
                self.url,
                json={"to": contact, "message": message},
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            raise CollaboratorUnavailable(f"notification gateway: {exc}") from exc
        if response.status_code >= 400:
            raise CollaboratorUnavailable(f"notification gateway returned {response.status_code}")
        return True
