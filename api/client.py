"""
API Client Framework
--------------------
Async JSON-over-HTTP client shared by the model providers.

Rules:
- API keys come from SecretManager (environment only), never from config
- Keys are sent in headers and never logged
- Every HTTP outcome is mapped to an APIStatus; nothing raises
"""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, Optional, Tuple
import logging
import time

import httpx


USER_AGENT = "toolsmith/0.1"


class APIStatus(Enum):
    """Status of an API response."""
    SUCCESS = auto()
    RATE_LIMITED = auto()
    AUTH_ERROR = auto()
    NOT_FOUND = auto()
    BAD_REQUEST = auto()
    SERVER_ERROR = auto()
    TIMEOUT = auto()
    NETWORK_ERROR = auto()
    BAD_RESPONSE = auto()


@dataclass
class APIConfig:
    """Configuration for an API client."""
    name: str
    base_url: str
    timeout_seconds: float = 60.0
    auth_header: str = "Authorization"
    auth_scheme: Optional[str] = "Bearer"  # None sends the bare key
    requires_key: bool = True
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class APIResponse:
    """Response from an API call."""
    status: APIStatus
    data: Optional[Any] = None
    error: Optional[str] = None
    status_code: int = 0
    response_time_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == APIStatus.SUCCESS


def classify_status(status_code: int) -> Tuple[APIStatus, Optional[str]]:
    """Map an HTTP status code to an APIStatus and a short reason."""
    if 200 <= status_code < 300:
        return APIStatus.SUCCESS, None
    if status_code == 429:
        return APIStatus.RATE_LIMITED, "Rate limit exceeded"
    if status_code in (401, 403):
        return APIStatus.AUTH_ERROR, "Authentication failed"
    if status_code == 404:
        return APIStatus.NOT_FOUND, "Resource not found"
    if status_code >= 500:
        return APIStatus.SERVER_ERROR, f"Server error: {status_code}"
    if 400 <= status_code < 500:
        return APIStatus.BAD_REQUEST, f"Request rejected: {status_code}"
    return APIStatus.SERVER_ERROR, f"Unexpected status: {status_code}"


def _error_detail(response: httpx.Response) -> str:
    """Best-effort error message from a JSON or text body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return str(error.get("message", error))[:200]
        if error:
            return str(error)[:200]
        if "message" in body:
            return str(body["message"])[:200]
    return str(body)[:200]


class APIClient:
    """
    Base API client with authentication and error mapping.

    The transport is injectable so tests can serve canned responses
    through httpx.MockTransport.
    """

    def __init__(
        self,
        config: APIConfig,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self._api_key = api_key
        self._transport = transport
        self._logger = logging.getLogger(f"toolsmith.api.{config.name}")

        if config.requires_key and not api_key:
            self._logger.warning(f"API key not configured for {config.name}")

    @property
    def is_configured(self) -> bool:
        """Check if API client is properly configured."""
        return bool(self._api_key) or not self.config.requires_key

    def _get_headers(self) -> Dict[str, str]:
        """Build request headers with authentication."""
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        headers.update(self.config.headers)

        if self._api_key:
            if self.config.auth_scheme:
                headers[self.config.auth_header] = f"{self.config.auth_scheme} {self._api_key}"
            else:
                headers[self.config.auth_header] = self._api_key

        return headers

    async def get(self, endpoint: str, params: Optional[Dict] = None) -> APIResponse:
        """Make a GET request."""
        return await self._request("GET", endpoint, params=params)

    async def post(self, endpoint: str, data: Optional[Dict] = None) -> APIResponse:
        """Make a POST request."""
        return await self._request("POST", endpoint, json=data)

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict] = None,
        json: Optional[Dict] = None
    ) -> APIResponse:
        """Make an HTTP request with error handling."""
        if not self.is_configured:
            return APIResponse(
                status=APIStatus.AUTH_ERROR,
                error=f"API key not configured for {self.config.name}"
            )

        url = f"{self.config.base_url.rstrip('/')}/{endpoint.lstrip('/')}"
        start = time.perf_counter()

        try:
            async with httpx.AsyncClient(
                timeout=self.config.timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.request(
                    method=method,
                    url=url,
                    params=params,
                    json=json,
                    headers=self._get_headers()
                )
        except httpx.TimeoutException:
            return APIResponse(status=APIStatus.TIMEOUT, error="Request timed out")
        except httpx.HTTPError as e:
            self._logger.error(f"Request to {self.config.name} failed: {e}")
            return APIResponse(status=APIStatus.NETWORK_ERROR, error=f"Network error: {e}")

        response_time = (time.perf_counter() - start) * 1000
        status, reason = classify_status(response.status_code)

        if status != APIStatus.SUCCESS:
            detail = _error_detail(response)
            self._logger.warning(
                f"{self.config.name} returned {response.status_code}: {reason}"
            )
            return APIResponse(
                status=status,
                error=f"{reason}: {detail}" if detail else reason,
                status_code=response.status_code,
                response_time_ms=response_time
            )

        try:
            data = response.json() if response.content else None
        except ValueError:
            return APIResponse(
                status=APIStatus.BAD_RESPONSE,
                error="Response body is not valid JSON",
                status_code=response.status_code,
                response_time_ms=response_time
            )

        return APIResponse(
            status=APIStatus.SUCCESS,
            data=data,
            status_code=response.status_code,
            response_time_ms=response_time
        )
