"""
Bokun Client
Version: 1.0

HTTP client for the Bokun booking API.
Returns provider-native booking dicts; transforms live in services/transformers.py.
DEPENDS ON: circuit_breaker.py, config.py
"""

import asyncio
import base64
import hashlib
import hmac
import logging
import random
import time
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from config import get_settings
from errors import SourceUnavailable
from services.circuit_breaker import CircuitBreaker, CircuitOpenError
from services.metrics import record_remote_fetch

logger = logging.getLogger(__name__)
settings = get_settings()


class BokunClient:
    """
    Bokun booking search client.

    Features:
    - HMAC-SHA1 request signing
    - Pagination over product-booking-search
    - Retry with exponential backoff on 408/429/5xx
    - Per-product circuit breaker
    """

    SEARCH_PATH = "/booking.json/product-booking-search"
    DEFAULT_MAX_RETRIES = 2
    RETRY_STATUS_CODES = {408, 429, 500, 502, 503, 504}

    def __init__(
        self,
        base_url: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        page_size: Optional[int] = None,
        max_pages: Optional[int] = None,
        max_retries: Optional[int] = None,
        backoff_base: float = 1.0
    ):
        """
        Initialize Bokun client.

        Args:
            base_url: API base URL (defaults to settings)
            access_key: Bokun access key (defaults to settings)
            secret_key: Bokun secret key (defaults to settings)
            client: Preconfigured httpx client (tests pass a MockTransport one)
            circuit_breaker: Shared breaker; one circuit per product
            page_size: Bookings per search page
            max_pages: Hard stop on pagination
            max_retries: Retries per page request
            backoff_base: Seconds for the first retry delay
        """
        self.base_url = (base_url or settings.BOKUN_API_URL).rstrip("/")
        self.access_key = access_key if access_key is not None else settings.BOKUN_ACCESS_KEY
        self.secret_key = secret_key if secret_key is not None else settings.BOKUN_SECRET_KEY
        self.page_size = page_size or settings.BOKUN_PAGE_SIZE
        self.max_pages = max_pages or settings.BOKUN_MAX_PAGES
        self.max_retries = max_retries if max_retries is not None else self.DEFAULT_MAX_RETRIES
        self.backoff_base = backoff_base
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.REMOTE_FETCH_TIMEOUT, connect=5.0),
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
        )

        logger.info(f"BokunClient initialized: {self.base_url}")

    @property
    def configured(self) -> bool:
        return bool(self.access_key and self.secret_key)

    async def fetch_bookings(self, product_id: str, start: date, end: date) -> List[Dict[str, Any]]:
        """
        Fetch all bookings for one product in a date window.

        Raises:
            SourceUnavailable: On missing credentials, open circuit, or exhausted retries
        """
        if not self.configured:
            raise SourceUnavailable("Bokun credentials are not configured")

        started = time.perf_counter()
        try:
            bookings = await self.circuit_breaker.call(
                f"bokun:{product_id}",
                self._fetch_all_pages,
                product_id,
                start,
                end,
            )
        except CircuitOpenError as e:
            record_remote_fetch(time.perf_counter() - started, success=False, reason="circuit_open")
            raise SourceUnavailable(str(e), {"product_id": product_id}) from e
        except SourceUnavailable:
            record_remote_fetch(time.perf_counter() - started, success=False, reason="http")
            raise

        record_remote_fetch(time.perf_counter() - started, success=True)
        logger.info(f"Fetched {len(bookings)} Bokun bookings for product {product_id}")
        return bookings

    async def _fetch_all_pages(self, product_id: str, start: date, end: date) -> List[Dict[str, Any]]:
        bookings: List[Dict[str, Any]] = []

        for page in range(1, self.max_pages + 1):
            body = {
                "productId": product_id,
                "startDate": start.isoformat(),
                "endDate": end.isoformat(),
                "page": page,
                "size": self.page_size,
            }
            data = await self._post(self.SEARCH_PATH, body)

            if isinstance(data, list):
                # Older proxy deployments return the bare results array.
                bookings.extend(data)
                break

            if data is None:
                data = {}
            if not isinstance(data, dict):
                raise SourceUnavailable(
                    f"Unexpected Bokun search response: {type(data).__name__}",
                    {"product_id": product_id, "page": page},
                )

            results = data.get("results") or []
            if not isinstance(results, list):
                raise SourceUnavailable(
                    "Bokun search results are not a list",
                    {"product_id": product_id, "page": page},
                )
            bookings.extend(results)

            total_hits = data.get("totalHits")
            if not results or (total_hits and len(bookings) >= total_hits):
                break
        else:
            logger.warning(f"Bokun pagination for product {product_id} stopped at {self.max_pages} pages")

        return bookings

    async def _post(self, path: str, body: Dict[str, Any]) -> Any:
        """POST with signing and retries; returns decoded JSON."""
        url = f"{self.base_url}{path}"
        last_error = None

        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.post(url, json=body, headers=self._headers("POST", path))

                if response.status_code in self.RETRY_STATUS_CODES and attempt < self.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(f"Bokun retryable error {response.status_code}, delay={delay:.1f}s")
                    await asyncio.sleep(delay)
                    continue

                if response.status_code >= 400:
                    raise SourceUnavailable(
                        f"Bokun API error {response.status_code}: {response.text[:200]}",
                        {"status_code": response.status_code},
                    )

                try:
                    return response.json()
                except ValueError as e:
                    raise SourceUnavailable(f"Bokun returned invalid JSON: {e}") from e

            except httpx.TimeoutException as e:
                last_error = f"Timeout: {e}"
            except httpx.RequestError as e:
                last_error = f"Network error: {e}"

            if attempt < self.max_retries:
                await asyncio.sleep(self._calculate_backoff(attempt))

        logger.error(f"Bokun retries exhausted: {last_error}")
        raise SourceUnavailable(last_error or "Bokun request failed")

    def _headers(self, method: str, path: str) -> Dict[str, str]:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        return {
            "X-Bokun-Date": timestamp,
            "X-Bokun-AccessKey": self.access_key,
            "X-Bokun-Signature": self.sign(timestamp, method, path),
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def sign(self, timestamp: str, method: str, path: str) -> str:
        """Base64 HMAC-SHA1 over date + access key + method + path."""
        message = f"{timestamp}{self.access_key}{method.upper()}{path}"
        digest = hmac.new(self.secret_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha1).digest()
        return base64.b64encode(digest).decode("ascii")

    def _calculate_backoff(self, attempt: int) -> float:
        """Calculate exponential backoff."""
        base = self.backoff_base * (2 ** attempt)
        jitter = random.uniform(0, 0.5 * self.backoff_base)
        return min(base + jitter, 30)

    async def close(self) -> None:
        """Close HTTP client."""
        if self.client:
            await self.client.aclose()
            logger.info("BokunClient closed")
