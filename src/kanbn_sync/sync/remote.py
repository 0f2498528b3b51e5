"""Rate-limited HTTP executor for the Kanbn API.

Every outbound call goes through ``RateLimitedClient.execute``, which spaces
requests at least ``MIN_REQUEST_DELAY`` apart and transparently retries the
responses Kanbn uses to signal throttling (429, 401 "Rate limit", and 500).
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from typing import Any

import httpx

from kanbn_sync.logging import sanitize_for_log
from kanbn_sync.sync.errors import (
    ClientError,
    NotFoundError,
    RateLimitError,
    ServerError,
)

logger = logging.getLogger(__name__)

# Kanbn allows 100 requests per minute; 650ms keeps us around 92/min
MIN_REQUEST_DELAY = 0.65  # seconds
DEFAULT_TIMEOUT = 30.0
MAX_RETRIES = 3
RETRY_WAIT_MIN = 60  # seconds
RETRY_WAIT_MAX = 120  # seconds
API_PREFIX = "/api/v1"


def normalize_endpoint(endpoint: str) -> str:
    """Place a relative endpoint under the API version prefix.

    Absolute URLs and already-prefixed paths are returned unchanged.
    """
    if endpoint.startswith(("http://", "https://")) or endpoint.startswith(API_PREFIX):
        return endpoint
    if not endpoint.startswith("/"):
        endpoint = f"/{endpoint}"
    return f"{API_PREFIX}{endpoint}"


def _error_message(text: str) -> str:
    """Extract the ``message`` field from a JSON error body, if any."""
    try:
        data = json.loads(text)
    except ValueError:
        return text
    if isinstance(data, dict) and isinstance(data.get("message"), str):
        return data["message"]
    return text


class RateLimitedClient:
    """Async request executor with a minimum inter-request delay and retry.

    All callers sharing one instance are serialized through the same
    last-request timestamp, so the delay holds regardless of who calls.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        min_delay: float = MIN_REQUEST_DELAY,
        max_retries: int = MAX_RETRIES,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Kanbn instance URL (e.g., https://kan.example.org).
            api_key: Kanbn API key sent as ``x-api-key``.
            min_delay: Minimum seconds between two consecutive requests.
            max_retries: Retries on rate-limit/server responses before failing.
            timeout: Request timeout in seconds.
        """
        self.base_url = base_url.rstrip("/")
        self.min_delay = min_delay
        self.max_retries = max_retries
        self.timeout = timeout

        # Never log the key!
        self._headers = {
            "Content-Type": "application/json",
            "x-api-key": api_key,
        }

        self._client: httpx.AsyncClient | None = None
        self._last_request_at = 0.0
        self._throttle_lock = asyncio.Lock()

    async def __aenter__(self) -> RateLimitedClient:
        """Enter async context manager."""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers,
            timeout=self.timeout,
        )
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        """Exit async context manager."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client, ensuring it's initialized."""
        if self._client is None:
            raise RuntimeError("RateLimitedClient must be used as async context manager")
        return self._client

    async def _throttle(self) -> None:
        """Wait until ``min_delay`` has passed since the previous request."""
        async with self._throttle_lock:
            elapsed = time.monotonic() - self._last_request_at
            if elapsed < self.min_delay:
                await asyncio.sleep(self.min_delay - elapsed)
            self._last_request_at = time.monotonic()

    async def execute(
        self,
        method: str,
        endpoint: str,
        body: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Execute a request and return the decoded JSON response.

        Args:
            method: HTTP method (GET, POST, PATCH, PUT, DELETE).
            endpoint: API path, normalized under ``/api/v1``, or an absolute URL.
            body: JSON-serializable request body.
            params: Query string parameters.

        Returns:
            Decoded JSON, or None when the response has no body.

        Raises:
            RateLimitError: If throttling persists after all retries.
            NotFoundError: On 404.
            ClientError: On other 4xx responses.
            ServerError: On other 5xx responses or transport failures.
        """
        path = normalize_endpoint(endpoint)
        url = path if path.startswith("http") else f"{self.base_url}{path}"

        for attempt in range(self.max_retries + 1):
            await self._throttle()
            logger.debug(f"{method} {url}")

            try:
                response = await self.client.request(method, path, json=body, params=params)
            except httpx.HTTPError as e:
                raise ServerError(f"Kanbn API request failed: {method} {url} - {e}", method=method, url=url) from e

            status = response.status_code
            if 200 <= status < 300:
                if not response.content:
                    return None
                try:
                    return response.json()
                except ValueError as e:
                    raise ServerError(
                        f"Kanbn API returned invalid JSON: {method} {url} -> {status}",
                        method=method,
                        url=url,
                        status_code=status,
                        body=response.text,
                    ) from e

            error_text = response.text
            message = _error_message(error_text)

            is_rate_limit = status == 429 or (status == 401 and "rate limit" in message.lower())
            is_server_error = status == 500

            if is_rate_limit or is_server_error:
                error_type = "Server error (likely rate limited)" if is_server_error else "Rate limit"
                if attempt < self.max_retries:
                    wait_seconds = random.randint(RETRY_WAIT_MIN, RETRY_WAIT_MAX)
                    logger.warning(
                        f"[KANBN API] {error_type} hit. Waiting {wait_seconds}s before retry... "
                        f"(attempt {attempt + 1}/{self.max_retries})"
                    )
                    await asyncio.sleep(wait_seconds)
                    continue
                raise RateLimitError(
                    f"Kanbn API {error_type} exceeded after {self.max_retries} retries. Please wait before trying again.",
                    service="kanbn",
                )

            full_message = f"Kanbn API error: {method} {url} -> {status} - {message}"
            if status == 404:
                raise NotFoundError(full_message, method=method, url=url, status_code=status, body=error_text)

            logger.error(f"[KANBN API] {sanitize_for_log(full_message)}")
            error_cls = ServerError if status >= 500 else ClientError
            raise error_cls(full_message, method=method, url=url, status_code=status, body=error_text)

        # Loop always returns or raises; kept for type checkers
        raise RateLimitError("Max retries exceeded", service="kanbn")
