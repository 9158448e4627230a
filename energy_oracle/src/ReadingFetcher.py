"""ReadingFetcher: Bounded-time meter reading fetch from one oracle provider.

Every provider endpoint is expected to answer an HTTP GET with a JSON body:

.. code-block:: json

    {"ts": 1718000000000, "kwh": 12.5, "co2": 6.1, "raw_wh": 12500}

``ts`` defaults to the fetch time, ``kwh`` and ``co2`` default to 0.

A fetch makes up to ``1 + provider.retry_attempts`` attempts, all inside a
single deadline of ``provider.timeout`` seconds. The outcome is recorded in
the ProviderRegistry exactly once per call, and failures are returned as
None rather than raised so one bad provider never fails a round.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from .ProviderRegistry import OracleProvider, ProviderRegistry

logger = logging.getLogger(__name__)


class FetcherError(Exception):
    """Base exception for provider fetch errors."""

    pass


class FetcherHTTPError(FetcherError):
    """Raised when a provider answers with a non-2xx status.

    :ivar status_code: HTTP status code from the failed request.
    """

    def __init__(self, status_code: int, message: str):
        """Initialize the HTTP error.

        :param status_code: HTTP status code.
        :param message: Error message from response.
        """
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}")


class FetcherPayloadError(FetcherError):
    """Raised when a provider response body is not a valid reading."""

    pass


@dataclass(frozen=True)
class OracleReading:
    """One provider's report for one aggregation round.

    :ivar source: Provider name.
    :ivar timestamp: Provider-reported time in epoch milliseconds.
    :ivar kwh: Energy produced since the previous reading.
    :ivar co2: Emissions avoided since the previous reading.
    :ivar confidence: Provider reputation at fetch time, scaled to 0-1.
    :ivar metadata: Provenance details (raw_wh, response_time, provider).
    """

    source: str
    timestamp: int
    kwh: float
    co2: float
    confidence: float
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "timestamp": self.timestamp,
            "kwh": self.kwh,
            "co2": self.co2,
            "confidence": self.confidence,
            "metadata": dict(self.metadata),
        }


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


def _numeric_field(data: dict[str, Any], key: str, default: float) -> float:
    """Read a numeric payload field, treating absent and null as default.

    :raises FetcherPayloadError: If the value is present but not a finite number.
    """
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise FetcherPayloadError(f"Field '{key}' is not numeric: {value!r}")
    try:
        finite = math.isfinite(value)
    except OverflowError as e:
        raise FetcherPayloadError(f"Field '{key}' is out of range") from e
    if not finite:
        raise FetcherPayloadError(f"Field '{key}' is not finite: {value!r}")
    return value


def parse_reading_payload(data: Any) -> dict[str, Any]:
    """Normalize a provider response body.

    :param data: Decoded JSON body.
    :returns: Dict with ``ts``, ``kwh``, ``co2`` and ``raw_wh`` keys.
    :raises FetcherPayloadError: If the body is not a valid reading.

    .. code-block:: python

        >>> parse_reading_payload({"kwh": 1.5})["co2"]
        0.0
    """
    if not isinstance(data, dict):
        raise FetcherPayloadError(
            f"Expected a JSON object, got {type(data).__name__}"
        )

    kwh = float(_numeric_field(data, "kwh", 0.0))
    co2 = float(_numeric_field(data, "co2", 0.0))
    if kwh < 0 or co2 < 0:
        raise FetcherPayloadError(f"Negative measurement: kwh={kwh}, co2={co2}")

    ts = data.get("ts")
    if ts is not None:
        ts = int(_numeric_field(data, "ts", 0))

    raw_wh = data.get("raw_wh")
    if raw_wh is not None:
        raw_wh = _numeric_field(data, "raw_wh", 0)

    return {"ts": ts, "kwh": kwh, "co2": co2, "raw_wh": raw_wh}


class ReadingFetcher:
    """Fetches readings from providers and records outcomes in the registry.

    :cvar USER_AGENT: User-Agent header sent to providers.
    :cvar DEFAULT_RETRY_BACKOFF: Pause before the first retry, in seconds.
    :ivar registry: Registry receiving success/failure outcomes.
    :ivar retry_backoff: Base pause between attempts, doubled each retry.
    """

    USER_AGENT = "EnergyOracle-MultiOracle/1.0"
    DEFAULT_RETRY_BACKOFF = 0.1

    def __init__(
        self,
        registry: ProviderRegistry,
        client: httpx.AsyncClient | None = None,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF,
    ) -> None:
        """Initialize the fetcher.

        :param registry: Registry to update after each fetch.
        :param client: Optional HTTP client; one is created lazily otherwise.
        :param retry_backoff: Base pause between attempts in seconds.
        """
        self.registry = registry
        self.retry_backoff = retry_backoff
        self._client = client

    def get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client used for all providers.

        :returns: httpx.AsyncClient instance.
        """
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
                follow_redirects=True,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def fetch(self, provider: OracleProvider) -> OracleReading | None:
        """Fetch one reading from a provider.

        :param provider: Provider to query.
        :returns: The reading, or None if every attempt failed.
        """
        start = time.monotonic()
        try:
            payload = await asyncio.wait_for(
                self._fetch_with_retries(provider),
                timeout=provider.timeout,
            )
        except asyncio.TimeoutError:
            self._handle_failure(
                provider, FetcherError(f"Timed out after {provider.timeout}s")
            )
            return None
        except FetcherError as e:
            self._handle_failure(provider, e)
            return None

        response_time = time.monotonic() - start
        reading = OracleReading(
            source=provider.name,
            timestamp=payload["ts"] if payload["ts"] is not None else now_ms(),
            kwh=payload["kwh"],
            co2=payload["co2"],
            confidence=provider.reputation / 100,
            metadata={
                "raw_wh": payload["raw_wh"],
                "response_time": response_time,
                "provider": provider.name,
            },
        )

        if self.registry.is_current(provider):
            self.registry.record_success(provider.name)
        logger.info(
            f"[{provider.name}] Fetched reading: kwh={reading.kwh}, "
            f"co2={reading.co2} ({response_time * 1000:.0f}ms)"
        )
        return reading

    def _handle_failure(self, provider: OracleProvider, error: Exception) -> None:
        # A provider replaced or removed mid-fetch keeps its new record intact.
        if not self.registry.is_current(provider):
            logger.warning(f"[{provider.name}] Failed to fetch reading: {error}")
            return
        self.registry.record_failure(provider.name)
        logger.warning(
            f"[{provider.name}] Failed to fetch reading: {error} "
            f"(consecutive_failures={provider.consecutive_failures})"
        )

    async def _fetch_with_retries(self, provider: OracleProvider) -> dict[str, Any]:
        """Attempt the fetch up to 1 + retry_attempts times.

        :raises FetcherError: From the last attempt if all attempts fail.
        """
        attempts = 1 + max(0, provider.retry_attempts)
        for attempt in range(attempts):
            try:
                return await self._fetch_once(provider)
            except FetcherError as e:
                if attempt + 1 >= attempts:
                    raise
                delay = self.retry_backoff * (2**attempt)
                logger.debug(
                    "[%s] Attempt %d/%d failed: %s; retrying in %.2fs",
                    provider.name,
                    attempt + 1,
                    attempts,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)
        raise FetcherError("No fetch attempts made")

    async def _fetch_once(self, provider: OracleProvider) -> dict[str, Any]:
        response = await self._get(provider.endpoint, timeout=provider.timeout)
        try:
            data = response.json()
        except (ValueError, RecursionError) as e:
            raise FetcherPayloadError(f"Malformed JSON body: {e}") from e
        return parse_reading_payload(data)

    async def _get(self, url: str, *, timeout: float) -> httpx.Response:
        """Make an HTTP GET request.

        :param url: Request URL.
        :param timeout: Per-request timeout in seconds.
        :returns: httpx.Response object.
        :raises FetcherHTTPError: On non-2xx response.
        :raises FetcherError: On network/timeout errors.
        """
        client = self.get_client()
        try:
            response = await client.get(
                url,
                headers={"User-Agent": self.USER_AGENT, "Accept": "application/json"},
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise FetcherError(f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise FetcherError(f"Request failed: {e}") from e

        if not response.is_success:
            logger.debug(
                "HTTP GET %s failed with status %s: %s",
                url,
                response.status_code,
                response.text[:200],
            )
            raise FetcherHTTPError(response.status_code, response.text[:200])
        return response
