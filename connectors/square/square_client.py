"""Square HTTP Client.

Low-level HTTP client for Square API calls.
Handles authentication headers, retries, and error mapping onto the
invoice source error hierarchy.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from connectors.invoice_base import PermissionDenied, RemoteFailure
from core.security.credentials import CredentialProvider

logger = logging.getLogger(__name__)


class SquareApiError(RemoteFailure):
    """Base exception for Square API errors."""
    def __init__(
        self,
        message: str,
        status_code: int = 0,
        response_body: str = "",
        errors: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message, status_code, response_body)
        self.errors = errors or []

    @property
    def error_codes(self) -> List[str]:
        return [e.get("code") for e in self.errors if e.get("code")]


class SquareAuthenticationError(SquareApiError):
    """Access token rejected (401)."""
    pass


class SquareNotFoundError(SquareApiError):
    """Resource not found (404)."""
    pass


class SquareRateLimitError(SquareApiError):
    """Rate limit exceeded (429) after all retries."""
    def __init__(self, message: str, retry_after: int = 60):
        super().__init__(message, 429)
        self.retry_after = retry_after


class SquareValidationError(SquareApiError):
    """Request rejected by Square (400/409). Never retried."""
    pass


class SquarePermissionError(PermissionDenied):
    """Merchant has not granted the scope for this call (403 / INSUFFICIENT_SCOPES)."""
    def __init__(
        self,
        message: str,
        status_code: int = 403,
        response_body: str = "",
        errors: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message, status_code, response_body)
        self.errors = errors or []


NON_RETRYABLE_ERROR_CODES = frozenset({
    "IDEMPOTENCY_KEY_REUSED",
    "VERSION_MISMATCH",
    "CONFLICT",
    "INVALID_REQUEST_ERROR",
})


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0
    retry_on_status: Tuple[int, ...] = (500, 502, 503, 504)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for retry attempt (exponential backoff)."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        return min(delay, self.max_delay)


@dataclass
class SquareApiConfig:
    """Configuration for Square API client."""
    base_url: str = "https://connect.squareup.com"
    api_version: str = "2025-01-23"
    timeout_seconds: int = 30
    retry_config: RetryConfig = field(default_factory=RetryConfig)

    def build_url(self, endpoint: str) -> str:
        return f"{self.base_url.rstrip('/')}/{endpoint.lstrip('/')}"


def _parse_errors(response_text: str) -> List[Dict[str, Any]]:
    """Extract Square's `errors` array from a response body, if any."""
    if not response_text:
        return []
    try:
        body = json.loads(response_text)
    except ValueError:
        return []
    if isinstance(body, dict):
        errors = body.get("errors") or []
        return [e for e in errors if isinstance(e, dict)]
    return []


class SquareApiClient:
    """HTTP client for the Square API.

    Provides:
    - Per-merchant bearer authentication
    - Error mapping (403/INSUFFICIENT_SCOPES -> SquarePermissionError,
      everything else -> SquareApiError subclasses)
    - Retries with exponential backoff on 5xx, timeouts and connection errors

    Usage:
        client = SquareApiClient(credentials, SquareApiConfig())
        await client.connect()
        data = await client.get("/v2/locations", merchant_id="m-1")
        await client.disconnect()
    """

    def __init__(
        self,
        credentials: CredentialProvider,
        api_config: Optional[SquareApiConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize API client.

        Args:
            credentials: Source of per-merchant access tokens
            api_config: API configuration
            session: Pre-built HTTP session (the client will not close it)
        """
        self.credentials = credentials
        self.api_config = api_config or SquareApiConfig()
        self._session = session
        self._owns_session = session is None

    async def connect(self) -> None:
        """Initialize HTTP session."""
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

    async def disconnect(self) -> None:
        """Close HTTP session."""
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "SquareApiClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    async def _get_headers(self, merchant_id: str) -> Dict[str, str]:
        """Get headers for API requests."""
        token = await self.credentials.get_access_token(merchant_id)
        return {
            "Authorization": f"Bearer {token}",
            "Square-Version": self.api_config.api_version,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        merchant_id: str,
        params: Optional[Dict[str, str]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Make an authenticated API request with automatic retries.

        Raises:
            SquarePermissionError: Missing OAuth scope for this call
            SquareAuthenticationError: Access token rejected
            SquareNotFoundError: Resource not found
            SquareRateLimitError: Rate limit exceeded after retries
            SquareValidationError: Request rejected
            SquareApiError: Other API errors, retries exhausted
        """
        if self._session is None:
            raise SquareApiError("Not connected. Call connect() first.")

        url = self.api_config.build_url(endpoint)
        headers = await self._get_headers(merchant_id)
        retry_config = self.api_config.retry_config
        last_error: Optional[Exception] = None

        for attempt in range(retry_config.max_retries + 1):
            try:
                timeout = aiohttp.ClientTimeout(total=self.api_config.timeout_seconds)

                async with self._session.request(
                    method,
                    url,
                    headers=headers,
                    params=params,
                    json=data,
                    timeout=timeout,
                ) as response:
                    response_text = await response.text()

                    if response.status < 400:
                        return json.loads(response_text) if response_text else {}

                    errors = _parse_errors(response_text)
                    codes = {e.get("code") for e in errors}

                    if response.status == 403 or "INSUFFICIENT_SCOPES" in codes:
                        raise SquarePermissionError(
                            f"Permission denied for {endpoint}: {response_text}",
                            response.status,
                            response_text,
                            errors,
                        )

                    if response.status == 401:
                        raise SquareAuthenticationError(
                            f"Square API authentication failed: {response_text}",
                            response.status,
                            response_text,
                            errors,
                        )

                    if response.status == 404:
                        raise SquareNotFoundError(
                            f"Resource not found: {url}",
                            response.status,
                            response_text,
                            errors,
                        )

                    if response.status == 429:
                        retry_after = int(response.headers.get("Retry-After", 5))
                        if attempt < retry_config.max_retries:
                            logger.warning(f"Rate limited on {endpoint}, waiting {retry_after}s...")
                            await asyncio.sleep(retry_after)
                            continue
                        raise SquareRateLimitError("Rate limit exceeded", retry_after)

                    if response.status in (400, 409) or codes & NON_RETRYABLE_ERROR_CODES:
                        raise SquareValidationError(
                            f"Square API error {response.status}: {response_text}",
                            response.status,
                            response_text,
                            errors,
                        )

                    if response.status in retry_config.retry_on_status:
                        if attempt < retry_config.max_retries:
                            delay = retry_config.get_delay(attempt)
                            logger.warning(
                                f"Request to {endpoint} failed with {response.status}, "
                                f"retrying in {delay:.1f}s (attempt {attempt + 1}/{retry_config.max_retries})"
                            )
                            await asyncio.sleep(delay)
                            continue

                    raise SquareApiError(
                        f"Square API error {response.status}: {response_text}",
                        response.status,
                        response_text,
                        errors,
                    )

            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                last_error = e
                if attempt < retry_config.max_retries:
                    delay = retry_config.get_delay(attempt)
                    logger.warning(
                        f"Request to {endpoint} failed with {type(e).__name__}: {e}, "
                        f"retrying in {delay:.1f}s"
                    )
                    await asyncio.sleep(delay)
                    continue
                raise SquareApiError(
                    f"Request to {endpoint} failed after {retry_config.max_retries} retries: {e}"
                ) from e

        raise SquareApiError(f"Request to {endpoint} failed: {last_error}")

    async def get(
        self,
        endpoint: str,
        merchant_id: str,
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        return await self._request("GET", endpoint, merchant_id, params=params)

    async def post(
        self,
        endpoint: str,
        merchant_id: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return await self._request("POST", endpoint, merchant_id, data=data)
