"""MetaSync - Meta Graph API Client.

Handles authentication, retry logic, rate limiting, and pagination.
"""

import asyncio
import json
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from metasync.config import settings
from metasync.core.errors import (
    MetaAPIError,
    MissingCredentialError,
    TransientUpstreamError,
    classify_graph_error,
)
from metasync.connectors.meta.transformer import normalize_ad_account_id
from metasync.core.logging import get_logger

logger = get_logger("meta.client")

DEFAULT_TIMEOUT = 30.0
LIGHT_TIMEOUT = 10.0
HEAVY_TIMEOUT = 60.0

SleepFn = Callable[[float], Awaitable[None]]


def backoff_delay(
    attempt: int,
    base: float = settings.gateway_backoff_base_seconds,
    cap: float = settings.gateway_backoff_cap_seconds,
    jitter: float = settings.gateway_jitter_seconds,
) -> float:
    """Exponential backoff for retry ``attempt`` (0-based) plus random jitter."""
    return min(cap, base * (2**attempt)) + random.uniform(0, jitter)


def parse_body(resp: httpx.Response) -> Any:
    """Decode a JSON body, returning ``{}`` for empty or non-JSON payloads."""
    try:
        return resp.json()
    except (json.JSONDecodeError, ValueError):
        return {}


class MetaClient:
    """Async HTTP client for the Meta Graph API."""

    def __init__(
        self,
        access_token: str | None = None,
        ad_account_id: str | None = None,
        token_provider: Optional[Callable[[], str]] = None,
        limiter: Any = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[SleepFn] = None,
        max_retries: int = settings.gateway_max_retries,
        base_url: str | None = None,
    ):
        self._access_token = access_token
        self._token_provider = token_provider
        self.ad_account_id = ad_account_id or settings.meta_ad_account_id
        self.limiter = limiter
        self.max_retries = max_retries
        self.base = base_url or settings.graph_base
        self._transport = transport
        self._sleep = sleep or asyncio.sleep
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def access_token(self) -> str:
        if self._access_token:
            return self._access_token
        if self._token_provider is not None:
            return self._token_provider() or ""
        return settings.meta_access_token

    def url(self, path: str) -> str:
        return f"{self.base}/{path.lstrip('/')}"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=DEFAULT_TIMEOUT, transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def sleep(self, seconds: float) -> None:
        await self._sleep(seconds)

    # ── Core Request Method ──

    async def _send(
        self,
        method: str,
        url: str,
        params: Dict[str, Any] | None,
        data: Dict[str, Any] | None,
        timeout: float,
    ) -> httpx.Response:
        client = await self._get_client()

        async def call() -> httpx.Response:
            return await client.request(
                method, url, params=params, data=data, timeout=timeout
            )

        if self.limiter is not None:
            return await self.limiter.schedule(call)
        return await call()

    async def _request(
        self,
        method: str,
        url: str,
        params: Dict[str, Any] | None = None,
        data: Dict[str, Any] | None = None,
        access_token: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> Any:
        """Make a request with retry + rate-limit handling."""
        token = access_token or self.access_token
        if not token:
            raise MissingCredentialError(
                "Meta access token missing. Please configure it in Settings."
            )
        params = dict(params or {})
        if data is not None:
            data = {**data, "access_token": token}
        else:
            params["access_token"] = token

        for attempt in range(self.max_retries + 1):
            try:
                resp = await self._send(method, url, params, data, timeout)
            except httpx.RequestError as e:
                if attempt < self.max_retries:
                    wait = backoff_delay(attempt)
                    logger.warning(
                        f"Request error: {e}. Retrying in {wait:.2f}s "
                        f"(attempt {attempt + 1}/{self.max_retries})"
                    )
                    await self.sleep(wait)
                    continue
                raise TransientUpstreamError(
                    f"Connection failed after {self.max_retries} retries: {e}"
                ) from e

            body = parse_body(resp)
            failed = resp.status_code >= 400 or (
                isinstance(body, dict) and isinstance(body.get("error"), dict)
            )
            if not failed:
                return body

            error = classify_graph_error(resp.status_code, body, resp.reason_phrase)
            if isinstance(error, TransientUpstreamError) and attempt < self.max_retries:
                wait = backoff_delay(attempt)
                logger.warning(
                    f"Throttled ({resp.status_code}, code {error.error_code}). "
                    f"Retrying in {wait:.2f}s (attempt {attempt + 1}/{self.max_retries})",
                    extra={"status_code": resp.status_code},
                )
                await self.sleep(wait)
                continue
            raise error

        raise MetaAPIError("Max retries exhausted")

    async def get(
        self,
        path_or_url: str,
        params: Dict[str, Any] | None = None,
        access_token: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> Dict[str, Any]:
        url = path_or_url if path_or_url.startswith("http") else self.url(path_or_url)
        result = await self._request(
            "GET", url, params, access_token=access_token, timeout=timeout
        )
        return result if isinstance(result, dict) else {"data": result}

    # ── Pagination ──

    async def _paginated_get(
        self,
        url: str,
        params: Dict[str, Any] | None = None,
        max_pages: int = 50,
        access_token: str | None = None,
        timeout: float = HEAVY_TIMEOUT,
    ) -> List[Dict[str, Any]]:
        """Fetch all pages of a paginated endpoint."""
        all_data: List[Dict[str, Any]] = []
        params = params or {}
        current_url = url if url.startswith("http") else self.url(url)

        for page in range(max_pages):
            result = await self.get(
                current_url,
                params if page == 0 else None,
                access_token=access_token,
                timeout=timeout,
            )
            data = result.get("data", [])
            if isinstance(data, list):
                all_data.extend(data)

            # Check for next page
            paging = result.get("paging") or {}
            next_url = paging.get("next")
            if not next_url:
                break
            current_url = next_url
        else:
            logger.warning(f"Stopped paging {url} at safety limit of {max_pages} pages")

        logger.info(f"Fetched {len(all_data)} records from {url}")
        return all_data

    # ── Batch ──

    async def post_batch(
        self,
        batch: List[Dict[str, Any]],
        access_token: str | None = None,
        timeout: float = HEAVY_TIMEOUT,
    ) -> List[Any]:
        """POST one physical batch call. Returns the raw per-item list."""
        result = await self._request(
            "POST",
            self.url(""),
            data={"batch": json.dumps(batch)},
            access_token=access_token,
            timeout=timeout,
        )
        if not isinstance(result, list):
            raise MetaAPIError(
                f"Unexpected batch response shape (expected list of {len(batch)} items)"
            )
        return result

    # ── Token Validation ──

    async def debug_token(self, input_token: str | None = None) -> Dict[str, Any]:
        """Introspect a token via /debug_token."""
        token = input_token or self.access_token
        result = await self.get(
            "debug_token",
            {"input_token": token},
            access_token=token,
            timeout=LIGHT_TIMEOUT,
        )
        return result.get("data", {}) or {}

    async def validate_token(self) -> Dict[str, Any]:
        """Check if the access token is valid and return metadata."""
        token_data = await self.debug_token()
        return {
            "valid": token_data.get("is_valid", False),
            "expires_at": token_data.get("expires_at", 0),
            "scopes": token_data.get("scopes", []),
            "app_id": token_data.get("app_id", ""),
        }

    async def exchange_token(
        self, app_id: str, app_secret: str, token: str
    ) -> Dict[str, Any]:
        """Exchange ``token`` for a long-lived token (fb_exchange_token grant)."""
        params = {
            "grant_type": "fb_exchange_token",
            "client_id": app_id,
            "client_secret": app_secret,
            "fb_exchange_token": token,
        }
        return await self.get(
            "oauth/access_token", params, access_token=token, timeout=DEFAULT_TIMEOUT
        )

    # ── Account Info ──

    async def get_account_info(self, ad_account_id: str | None = None) -> Dict[str, Any]:
        """Fetch ad account details."""
        account = normalize_ad_account_id(ad_account_id or self.ad_account_id)
        return await self.get(
            f"act_{account}",
            {"fields": "name,account_id,account_status,currency,timezone_name,balance"},
            timeout=LIGHT_TIMEOUT,
        )
