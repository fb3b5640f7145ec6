"""
CoinGecko markets client.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import requests
from pydantic import BaseModel, ConfigDict, ValidationError

from athwatch.database.store import KeyValueStore, StoreError
from .circuit_breaker import CircuitBreaker
from .errors import UpstreamError
from .rate_limiter import KeyRotator, MinIntervalThrottle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssetObservation:
    """One asset as reported by the feed.

    feed_ath is the feed's own all-time high, which is not necessarily the
    value this system has recorded.
    """

    id: str
    symbol: str
    name: str
    current_price: float
    feed_ath: float
    feed_ath_date: Optional[datetime]
    market_cap: float = 0.0
    market_cap_rank: Optional[int] = None
    total_volume: float = 0.0
    last_updated: Optional[datetime] = None
    price_change_percentage_24h: float = 0.0


class MarketEntry(BaseModel):
    """Schema of one item in the /coins/markets response."""

    model_config = ConfigDict(extra="ignore")

    id: str
    symbol: str
    name: str
    current_price: Optional[float] = None
    market_cap: Optional[float] = None
    market_cap_rank: Optional[int] = None
    total_volume: Optional[float] = None
    ath: Optional[float] = None
    ath_date: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    price_change_percentage_24h: Optional[float] = None

    def to_observation(self) -> Optional[AssetObservation]:
        """Convert to AssetObservation, or None if price data is unusable."""
        if self.current_price is None or self.ath is None:
            return None
        if self.current_price < 0 or self.ath <= 0:
            return None
        return AssetObservation(
            id=self.id,
            symbol=self.symbol.upper(),
            name=self.name,
            current_price=self.current_price,
            feed_ath=self.ath,
            feed_ath_date=self.ath_date,
            market_cap=self.market_cap or 0.0,
            market_cap_rank=self.market_cap_rank,
            total_volume=self.total_volume or 0.0,
            last_updated=self.last_updated,
            price_change_percentage_24h=self.price_change_percentage_24h or 0.0,
        )


def parse_markets_payload(payload: Any) -> list[AssetObservation]:
    """
    Validate a /coins/markets payload and convert it to observations.

    Entries that fail validation or lack price data are dropped.

    Raises:
        UpstreamError: If the payload is not a list, or no entry is valid
    """
    if not isinstance(payload, list):
        raise UpstreamError(
            f"Malformed CoinGecko payload: expected list, got {type(payload).__name__}"
        )

    observations = []
    for raw in payload:
        try:
            entry = MarketEntry.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Dropping invalid market entry: {e.error_count()} errors")
            continue
        observation = entry.to_observation()
        if observation is None:
            logger.warning(f"Dropping {entry.id}: missing price or ATH")
            continue
        observations.append(observation)

    if payload and not observations:
        raise UpstreamError("Malformed CoinGecko payload: no valid entries")
    return observations


class CoinGeckoClient:
    """Fetches ranked market data under throttling and a circuit breaker."""

    BASE_URL = "https://api.coingecko.com/api/v3"
    DEFAULT_API_KEY_HEADER = "x-cg-demo-api-key"

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        api_keys: Optional[list[str]] = None,
        api_key_header: str = DEFAULT_API_KEY_HEADER,
        base_url: str = BASE_URL,
        vs_currency: str = "usd",
        per_page: int = 100,
        timeout: float = 10.0,
        cache_ttl: float = 60.0,
        throttle: Optional[MinIntervalThrottle] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        """
        Initialize client.

        Args:
            store: Store used for the short-lived response cache; None disables it
            api_keys: Pool of API keys, used round-robin
            api_key_header: Header that carries the API key
            base_url: API root URL
            vs_currency: Quote currency
            per_page: Assets per page (max 250)
            timeout: Request timeout in seconds
            cache_ttl: Seconds a cached page stays valid
            throttle: Minimum-interval throttle shared by all calls
            breaker: Circuit breaker owned by this client
        """
        self.store = store
        self.keys = KeyRotator(api_keys or [])
        self.api_key_header = api_key_header
        self.base_url = base_url.rstrip("/")
        self.vs_currency = vs_currency
        self.per_page = per_page
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self.throttle = throttle or MinIntervalThrottle(min_interval=1.2)
        self.breaker = breaker or CircuitBreaker()

    def fetch_ranked(self, page: int = 1) -> list[AssetObservation]:
        """
        Fetch one page of assets ordered by market cap.

        Args:
            page: 1-based page number

        Returns:
            List of AssetObservation

        Raises:
            CircuitOpenError: If the breaker is open; no request was made
            UpstreamError: If the request failed or the payload was malformed
        """
        cache_key = f"coingecko:markets:{self.vs_currency}:{self.per_page}:{page}"
        cached = self._get_cached(cache_key)
        if cached is not None:
            logger.debug(f"Cache hit for markets page {page}")
            return parse_markets_payload(cached)

        self.breaker.before_call()
        self.throttle.wait()

        try:
            payload = self._request(page)
            observations = parse_markets_payload(payload)
        except UpstreamError as e:
            logger.error(f"CoinGecko page {page} failed: {e}")
            self.breaker.record_failure()
            raise

        self.breaker.record_success()
        self._set_cached(cache_key, payload)
        return observations

    def _request(self, page: int) -> Any:
        """Issue the HTTP request and decode JSON."""
        params = {
            "vs_currency": self.vs_currency,
            "order": "market_cap_desc",
            "per_page": str(self.per_page),
            "page": str(page),
            "sparkline": "false",
            "price_change_percentage": "24h",
        }
        headers = {"Accept": "application/json"}
        api_key = self.keys.next_key()
        if api_key:
            headers[self.api_key_header] = api_key

        try:
            response = requests.get(
                f"{self.base_url}/coins/markets",
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise UpstreamError(f"CoinGecko request failed: {e}") from e

        if not response.ok:
            raise UpstreamError(
                f"CoinGecko API error: HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(f"CoinGecko returned invalid JSON: {e}") from e

    def _get_cached(self, key: str) -> Optional[Any]:
        if self.store is None or self.cache_ttl <= 0:
            return None
        try:
            raw = self.store.get(key)
        except StoreError as e:
            logger.warning(f"Price cache read failed: {e}")
            return None
        return json.loads(raw) if raw else None

    def _set_cached(self, key: str, payload: Any) -> None:
        if self.store is None or self.cache_ttl <= 0:
            return
        try:
            self.store.set(key, json.dumps(payload), ttl=self.cache_ttl)
        except StoreError as e:
            logger.warning(f"Failed to cache price data: {e}")
