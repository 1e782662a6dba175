"""
BTC/USD reference rate lookup.

USD values on ledger entries are derived from the rate in effect when the
entry is recorded. The provider is a FastAPI dependency so it can be
swapped per deployment (static rate, remote price API) or in tests.
"""
import logging
from decimal import Decimal
from typing import Optional

import httpx

from app.core.config import settings
from app.core.database import get_redis
from app.core.money import to_decimal

logger = logging.getLogger(__name__)

RATE_CACHE_KEY = "rate:BTC_USD"


class RateProvider:
    """Interface for BTC/USD reference rate sources"""

    async def get_btc_usd_rate(self) -> Decimal:
        raise NotImplementedError


class StaticRateProvider(RateProvider):
    """Fixed rate taken from configuration"""

    def __init__(self, rate: Optional[Decimal] = None):
        self.rate = to_decimal(rate if rate is not None else settings.BTC_USD_RATE, "rate")

    async def get_btc_usd_rate(self) -> Decimal:
        return self.rate


class HttpRateProvider(RateProvider):
    """
    Fetches the rate from a CoinGecko-style price endpoint
    (``{"bitcoin": {"usd": 67000.0}}``) and caches it in Redis.
    Falls back to the configured static rate when the API is unreachable.
    """

    def __init__(
        self,
        url: str = None,
        timeout: float = None,
        cache_ttl: int = None,
        fallback_rate: Decimal = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url or settings.RATE_API_URL
        self.timeout = timeout or settings.RATE_API_TIMEOUT_SECONDS
        self.cache_ttl = cache_ttl or settings.RATE_CACHE_TTL_SECONDS
        self.fallback_rate = to_decimal(
            fallback_rate if fallback_rate is not None else settings.BTC_USD_RATE, "rate"
        )
        self._transport = transport

    async def _cached_rate(self) -> Optional[Decimal]:
        try:
            redis = await get_redis()
            cached = await redis.get(RATE_CACHE_KEY)
        except Exception as e:
            logger.warning(f"Rate cache unavailable: {e}")
            return None
        if cached:
            logger.debug(f"Using cached BTC/USD rate: {cached}")
            return to_decimal(cached, "rate")
        return None

    async def _store_rate(self, rate: Decimal) -> None:
        try:
            redis = await get_redis()
            await redis.set(RATE_CACHE_KEY, str(rate), ex=self.cache_ttl)
        except Exception as e:
            logger.warning(f"Could not cache BTC/USD rate: {e}")

    async def _fetch_rate(self) -> Decimal:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.get(self.url)
            response.raise_for_status()
            payload = response.json()
        return to_decimal(payload["bitcoin"]["usd"], "rate")

    async def get_btc_usd_rate(self) -> Decimal:
        cached = await self._cached_rate()
        if cached is not None:
            return cached

        try:
            rate = await self._fetch_rate()
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"BTC/USD rate fetch failed, using fallback {self.fallback_rate}: {e}")
            return self.fallback_rate

        await self._store_rate(rate)
        return rate


def get_rate_provider() -> RateProvider:
    """Rate provider selected by RATE_PROVIDER"""
    if settings.RATE_PROVIDER == "http":
        return HttpRateProvider()
    return StaticRateProvider()
