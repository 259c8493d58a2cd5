"""
Content-addressed storage collaborator.

publish() returns an opaque reference or None. The reference is stored
next to the evidence record but the content hash stays authoritative.
"""
import logging
from typing import Optional

import httpx

from ... import config
from ...errors import CollaboratorUnavailable

logger = logging.getLogger(__name__)


class NullStorage:
    """Used when no pinning service is configured."""

    def publish(self, data: bytes, file_name: str) -> Optional[str]:
        logger.info("Content storage not configured, skipping publish of %s", file_name)
        return None


class PinningStorage:
    """Pins content to a pinning service and returns its content identifier."""

    def __init__(self, url: str, token: Optional[str], timeout: float = config.COLLABORATOR_TIMEOUT_SECONDS):
        self.url = url
        self.token = token
        self.timeout = timeout

    def publish(self, data: bytes, file_name: str) -> Optional[str]:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            response = httpx.post(
                self.url,
                files={"file": (file_name, data)},
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise CollaboratorUnavailable(f"content storage: {exc}") from exc

        content_id = response.json().get("IpfsHash") or response.json().get("cid")
        if content_id:
            logger.info("Published %s as %s", file_name, content_id)
        return content_id
