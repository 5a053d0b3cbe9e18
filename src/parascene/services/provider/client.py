"""HTTP client for provider servers implementing the generation protocol.

Protocol:
    POST {server_url}
    Body: {"method": "...", "args": {...}}
    2xx response body is the image; optional X-Image-Color, X-Image-Width and
    X-Image-Height headers describe it.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any

import httpx

from parascene.models.created_image import DEFAULT_HEIGHT, DEFAULT_WIDTH
from parascene.services.exceptions import (
    ProviderError,
    ProviderResponseError,
    ProviderTimeoutError,
)

MAX_ERROR_BODY_CHARS = 20_000


@dataclass
class ProviderImage:
    """Image returned by a provider."""

    data: bytes
    width: int = DEFAULT_WIDTH
    height: int = DEFAULT_HEIGHT
    color: str | None = None


def build_provider_headers(auth_token: str | None) -> dict[str, str]:
    """Request headers for a provider call, with bearer auth when configured."""
    headers = {"Content-Type": "application/json", "Accept": "image/png"}
    token = auth_token.strip() if isinstance(auth_token, str) else ""
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def _parse_dimension(value: str | None, default: int) -> int:
    if not value:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def read_error_payload(response: httpx.Response) -> tuple[Any, str]:
    """Decode a provider error body.

    Returns:
        Tuple of (body, content type). JSON bodies are parsed when possible;
        text is truncated to MAX_ERROR_BODY_CHARS.
    """
    content_type = response.headers.get("content-type", "")
    text = response.text or ""
    if len(text) > MAX_ERROR_BODY_CHARS:
        text = f"{text[:MAX_ERROR_BODY_CHARS]}…"
    if "application/json" in content_type:
        try:
            return json.loads(text or "null"), content_type
        except ValueError:
            return text, content_type
    return text, content_type


def body_to_message(body: Any) -> str:
    """Human-readable message from a provider error body."""
    if body is None:
        return ""
    if isinstance(body, str):
        return body.strip()
    if isinstance(body, dict):
        for key in ("error", "message"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        try:
            return json.dumps(body)
        except (TypeError, ValueError):
            return "[provider_error]"
    return str(body)


class ProviderClient:
    """Invokes provider servers with a hard timeout and error classification."""

    def __init__(
        self,
        timeout_seconds: float = 50.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize provider client.

        Args:
            timeout_seconds: Upper bound for the whole provider call, body included
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def generate(
        self,
        server_url: str,
        method: str,
        args: dict[str, Any] | None,
        auth_token: str | None = None,
    ) -> ProviderImage:
        """Ask a provider to generate an image.

        Args:
            server_url: Provider endpoint
            method: Provider method id
            args: Method arguments
            auth_token: Optional bearer token for the provider

        Returns:
            ProviderImage with bytes and dimensions (1024x1024 when not reported)

        Raises:
            ProviderTimeoutError: Provider did not answer in time
            ProviderResponseError: Provider answered with a non-2xx status
            ProviderError: Network failure
        """
        try:
            # httpx timeouts apply per read; this bounds the call end to end
            async with asyncio.timeout(self.timeout_seconds):
                async with httpx.AsyncClient(
                    timeout=self.timeout_seconds, transport=self.transport
                ) as client:
                    response = await client.post(
                        server_url,
                        headers=build_provider_headers(auth_token),
                        json={"method": method, "args": args or {}},
                    )
        except (httpx.TimeoutException, TimeoutError) as e:
            raise ProviderTimeoutError(
                f"Provider timed out after {self.timeout_seconds:g}s: {e}"
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Provider request failed: {e}") from e

        if not response.is_success:
            body, content_type = read_error_payload(response)
            message = body_to_message(body) or (
                f"Provider error: {response.status_code} {response.reason_phrase}"
            )
            raise ProviderResponseError(
                message,
                details={
                    "status": response.status_code,
                    "statusText": response.reason_phrase,
                    "contentType": content_type,
                    "body": body,
                },
            )

        return ProviderImage(
            data=response.content,
            width=_parse_dimension(response.headers.get("X-Image-Width"), DEFAULT_WIDTH),
            height=_parse_dimension(response.headers.get("X-Image-Height"), DEFAULT_HEIGHT),
            color=response.headers.get("X-Image-Color") or None,
        )
