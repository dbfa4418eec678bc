"""
Rate-limited async gateway for the Yodeck REST API.

Every call to the platform goes through ``YodeckGateway.request``. It
enforces:

- a global concurrency bound (``asyncio.Semaphore``, FIFO waiters),
- an absolute per-call timeout (15s default, 30s for upload-origin creation),
- retry with exponential backoff on HTTP 429 and transport failures,
  bounded by a fixed retry budget.

Expected failures are never raised: they come back as ``ApiResult`` with a
typed ``error`` (``"timeout"``, ``"transport"``, ``"http_<status>"``).
Malformed success bodies are programmer-visible and propagate.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from yodeck_orchestrator.config import YodeckConfig
from yodeck_orchestrator.yodeck.models import ApiResult, ErrorKind

logger = logging.getLogger(__name__)

RETRYABLE_KINDS = (ErrorKind.RATE_LIMITED, ErrorKind.TRANSPORT)


class YodeckGateway:
    """Single chokepoint for HTTP traffic to Yodeck.

    Args:
        token: API token in ``label:value`` form.
        config: Gateway tunables. Defaults to ``YodeckConfig()``.
        transport: Optional ``httpx`` transport (tests pass
            ``httpx.MockTransport``).
        sleep: Coroutine used for backoff waits.

    Usage::

        gateway = YodeckGateway("orchestrator:abc123")
        result = await gateway.request("GET", "/screens/42")
        if result.ok:
            screen = result.data
        await gateway.aclose()
    """

    def __init__(
        self,
        token: str,
        config: Optional[YodeckConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or YodeckConfig()
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent)
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url,
            headers={
                "Authorization": f"Token {token}",
                "Accept": "application/json",
            },
            timeout=self.config.timeout_seconds,
            transport=transport,
        )
        # Signed upload URLs reject the Authorization header
        self._upload_client = httpx.AsyncClient(
            timeout=self.config.upload_put_timeout_seconds, transport=transport
        )

    # ------------------------------------------------------------------
    # Core request
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        timeout: Optional[float] = None,
    ) -> ApiResult:
        """Issue one logical request, retrying 429 and transport failures.

        Args:
            method: HTTP verb.
            endpoint: Path relative to the base URL, or an absolute URL
                (pagination ``next`` links).
            params: Query parameters.
            json: JSON body.
            timeout: Absolute timeout in seconds for each attempt. Defaults
                to ``config.timeout_seconds``.

        Returns:
            ``ApiResult``. After the retry budget is spent the last failure
            is returned as-is.
        """
        timeout = timeout or self.config.timeout_seconds
        attempt = 0
        while True:
            async with self._semaphore:
                result = await self._send(method, endpoint, params, json, timeout)

            if result.ok or result.kind not in RETRYABLE_KINDS:
                return result
            if attempt >= self.config.max_retries:
                logger.warning(
                    "[GATEWAY] %s %s gave up after %d retries: %s",
                    method,
                    endpoint,
                    attempt,
                    result.error,
                )
                return result

            delay = self.config.backoff_base_seconds * (2 ** attempt)
            logger.info(
                "[GATEWAY] %s %s -> %s, retry %d/%d in %.1fs",
                method,
                endpoint,
                result.error,
                attempt + 1,
                self.config.max_retries,
                delay,
            )
            # Backoff happens outside the semaphore so waiters keep moving
            await self._sleep(delay)
            attempt += 1

    async def _send(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]],
        json: Any,
        timeout: float,
    ) -> ApiResult:
        try:
            response = await asyncio.wait_for(
                self._client.request(
                    method, endpoint, params=params, json=json, timeout=timeout
                ),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return ApiResult.failure("timeout", ErrorKind.TRANSPORT)
        except httpx.TransportError as exc:
            logger.debug("[GATEWAY] %s %s transport error: %s", method, endpoint, exc)
            return ApiResult.failure("transport", ErrorKind.TRANSPORT)

        if response.is_success:
            data = response.json() if response.content else None
            return ApiResult.success(data, response.status_code)

        return ApiResult.from_status(response.status_code, _error_payload(response))

    # ------------------------------------------------------------------
    # Pagination
    # ------------------------------------------------------------------

    async def list_all(
        self, endpoint: str, params: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        """Drain an offset/limit paginated list endpoint.

        Follows ``next`` links until a page without one. A failed page stops
        the drain and the rows collected so far are returned.
        """
        page_params: Optional[Dict[str, Any]] = {
            "limit": self.config.page_size,
            "offset": 0,
            **(params or {}),
        }
        url: Optional[str] = endpoint
        rows: List[Dict[str, Any]] = []

        while url:
            result = await self.request("GET", url, params=page_params)
            if not result.ok:
                logger.warning(
                    "[GATEWAY] Pagination of %s stopped at %d rows: %s",
                    endpoint,
                    len(rows),
                    result.error,
                )
                break

            body = result.data or {}
            if isinstance(body, list):
                rows.extend(body)
                break
            rows.extend(body.get("results") or [])
            url = body.get("next")
            # The next link already carries offset/limit
            page_params = None

        return rows

    # ------------------------------------------------------------------
    # Signed uploads
    # ------------------------------------------------------------------

    async def put_bytes(
        self,
        url: str,
        content: bytes,
        content_type: str = "video/mp4",
        timeout: Optional[float] = None,
    ) -> ApiResult:
        """PUT raw bytes to a pre-signed storage URL.

        Shares the concurrency bound but not the retry loop: a failed upload
        is retried by the caller with a fresh signed URL.
        """
        timeout = timeout or self.config.upload_put_timeout_seconds
        async with self._semaphore:
            try:
                response = await asyncio.wait_for(
                    self._upload_client.put(
                        url,
                        content=content,
                        headers={"Content-Type": content_type},
                        timeout=timeout,
                    ),
                    timeout=timeout,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException):
                return ApiResult.failure("timeout", ErrorKind.TRANSPORT)
            except httpx.TransportError:
                return ApiResult.failure("transport", ErrorKind.TRANSPORT)

        if response.status_code in (200, 201, 204):
            return ApiResult.success(None, response.status_code)
        return ApiResult.from_status(response.status_code, response.text)

    async def aclose(self) -> None:
        """Close both underlying HTTP clients."""
        await self._client.aclose()
        await self._upload_client.aclose()


def _error_payload(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


__all__ = ["YodeckGateway", "RETRYABLE_KINDS"]
