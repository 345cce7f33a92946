"""
Shared httpx plumbing for the external provider adapters.
Retry with exponential backoff on transient statuses, then map errors to ProviderError.
"""

import asyncio
from typing import Any

import httpx

from stina.errors import ProviderError
from stina.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REQUEST_TIMEOUT = 30  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


class ProviderHttpClient:
    """Base class for REST adapters. Subclasses set `provider_name`."""

    provider_name = "provider"

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        max_retries: int = MAX_RETRIES,
        backoff_factor: float = BACKOFF_FACTOR,
    ):
        self._client = client or self._create_client()
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor

    def _create_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(REQUEST_TIMEOUT)
        limits = httpx.Limits(max_keepalive_connections=20, max_connections=50)
        return httpx.AsyncClient(timeout=timeout, limits=limits)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def _request_with_retry(
        self, method: str, url: str, idempotent: bool = True, **kwargs
    ) -> httpx.Response:
        """
        Execute an HTTP request with retry and backoff.

        A non-idempotent request (one that sends mail or books an event) is
        only retried when the connection was never established; once the
        provider may have received it, the first outcome is final.
        """
        for attempt in range(1, self.max_retries + 1):
            retries_left = attempt < self.max_retries
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and retries_left and idempotent:
                    backoff = self.backoff_factor * (2 ** (attempt - 1))
                    logger.debug(
                        f"{self.provider_name} retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                if not retries_left:
                    raise ProviderError(
                        f"{self.provider_name} unreachable: {e}", kind="unavailable"
                    ) from e
                backoff = self.backoff_factor * (2 ** (attempt - 1))
                logger.debug(
                    f"{self.provider_name} connection failed, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
            except httpx.TimeoutException as e:
                if not retries_left or not idempotent:
                    raise ProviderError(
                        f"{self.provider_name} request timed out", kind="timeout"
                    ) from e
                await asyncio.sleep(self.backoff_factor * (2 ** (attempt - 1)))
            except httpx.RequestError as e:
                if not retries_left or not idempotent:
                    raise ProviderError(
                        f"{self.provider_name} unreachable: {e}", kind="unavailable"
                    ) from e
                backoff = self.backoff_factor * (2 ** (attempt - 1))
                logger.debug(
                    f"{self.provider_name} request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise ProviderError(f"{self.provider_name} retry loop exhausted", kind="unavailable")

    def _extract_error_message(self, error_data: Any) -> str | None:
        """Provider-specific error body parsing; override where the shape differs."""
        if isinstance(error_data, dict):
            error = error_data.get("error")
            if isinstance(error, dict):
                return error.get("message")
            if isinstance(error, str):
                return error
            return error_data.get("message")
        return None

    def _handle_api_response(self, response: httpx.Response, operation: str) -> Any:
        """
        Parse a successful response or raise ProviderError classified by status.
        """
        if response.is_success:
            try:
                return response.json() if response.text else {}
            except ValueError as e:
                logger.error(
                    f"Failed to parse {self.provider_name} {operation} response", error=str(e)
                )
                raise ProviderError(f"Invalid response format: {e}") from e

        try:
            message = self._extract_error_message(response.json()) if response.text else None
        except ValueError:
            message = None

        message = message or f"HTTP {response.status_code}"
        logger.error(
            f"{self.provider_name} {operation} failed",
            status_code=response.status_code,
            error_message=message,
        )
        raise ProviderError.from_status(
            f"{self.provider_name} {operation} failed: {message}", response.status_code
        )
