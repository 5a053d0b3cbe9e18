"""Upstash QStash publish client.

Publishing hands a JSON payload to QStash, which later POSTs it to the
destination URL with an ``Upstash-Signature`` header and retries on non-2xx.
"""

from typing import Any
from urllib.parse import quote

import httpx
import structlog

from parascene.services.exceptions import ConfigurationError, QueuePublishError

logger = structlog.get_logger()


class QStashClient:
    """Publishes messages to the QStash v2 API."""

    def __init__(
        self,
        token: str,
        base_url: str = "https://qstash.upstash.io",
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize QStash client.

        Args:
            token: QStash API token (from QSTASH_TOKEN env var)
            base_url: QStash API base URL
            timeout_seconds: Timeout for the publish request
            transport: Optional httpx transport (tests inject a MockTransport)

        Raises:
            ConfigurationError: If token is empty
        """
        if not token or not token.strip():
            raise ConfigurationError("QSTASH_TOKEN is required to publish creation jobs")
        self.token = token.strip()
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    def publish_url(self, destination_url: str) -> str:
        return f"{self.base_url}/v2/publish/{quote(destination_url, safe='')}"

    async def publish_json(self, destination_url: str, payload: dict[str, Any]) -> str | None:
        """Publish a JSON message addressed at ``destination_url``.

        Args:
            destination_url: Absolute URL QStash will deliver the message to
            payload: JSON-serializable message body

        Returns:
            QStash message id when reported, None otherwise

        Raises:
            QueuePublishError: Network failure or non-2xx response
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self.transport
            ) as client:
                response = await client.post(
                    self.publish_url(destination_url),
                    headers={
                        "Authorization": f"Bearer {self.token}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as e:
            raise QueuePublishError(f"Failed to publish QStash job: {e}") from e

        if not response.is_success:
            raise QueuePublishError(
                f"Failed to publish QStash job: {response.status_code} "
                f"{response.reason_phrase} {response.text}".strip()
            )

        try:
            message_id = response.json().get("messageId")
        except (ValueError, AttributeError):
            message_id = None

        logger.debug("qstash.published", destination=destination_url, message_id=message_id)
        return message_id
