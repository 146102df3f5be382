import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests
from cachetools import TTLCache

from mint_errors import TransientNetworkError
from retry_policy import RetryPolicy

logger = logging.getLogger("mintpad.price_oracle")
_RATE_KEY = "SOL"


@dataclass(frozen=True)
class ExchangeRate:
    native_to_usd: float  # USD per 1 SOL
    usd_to_native: float  # SOL per 1 USD
    cached: bool = False
    fallback: bool = False

    @classmethod
    def from_sol_price(cls, sol_price: float, **kwargs) -> "ExchangeRate":
        return cls(native_to_usd=sol_price, usd_to_native=1.0 / sol_price, **kwargs)


def _headers() -> Dict[str, str]:
    return {"Accept": "application/json"}


def _extract_sol_price(data: Any) -> float:
    """Accept the Jupiter (``data.SOL.price``) and CoinGecko (``solana.usd``) quote shapes."""
    if not isinstance(data, dict):
        return 0.0
    candidates = []
    quotes = data.get("data")
    if isinstance(quotes, dict):
        for key in ("SOL", "So11111111111111111111111111111111111111112"):
            entry = quotes.get(key)
            if isinstance(entry, dict):
                candidates.append(entry.get("price"))
    solana = data.get("solana")
    if isinstance(solana, dict):
        candidates.append(solana.get("usd"))
    candidates.append(data.get("price"))
    for cand in candidates:
        try:
            if cand is not None:
                return float(cand)
        except (TypeError, ValueError):
            continue
    return 0.0


class PriceOracle:
    """Caches the SOL/USD quote for a bounded TTL and never fails: on error it serves a fixed fallback."""

    def __init__(
        self,
        url: str,
        *,
        fallback_sol_price: float,
        ttl_seconds: float = 300,
        timeout_seconds: float = 5.0,
        retry: Optional[RetryPolicy] = None,
        http_get: Callable[..., Any] = requests.get,
        clock: Callable[[], float] = time.time,
    ):
        self.url = url
        self.fallback_sol_price = fallback_sol_price
        self.timeout_seconds = timeout_seconds
        self.retry = retry or RetryPolicy.fixed(3, 1.0)
        self._http_get = http_get
        self._cache: TTLCache = TTLCache(maxsize=1, ttl=ttl_seconds, timer=clock)

    def _fetch_blocking(self) -> float:
        try:
            resp = self._http_get(self.url, headers=_headers(), timeout=self.timeout_seconds)
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as exc:
            raise TransientNetworkError(f"Price oracle request failed: {exc}") from exc
        except ValueError as exc:
            raise TransientNetworkError(f"Price oracle returned invalid JSON: {exc}") from exc
        price = _extract_sol_price(data)
        if price <= 0:
            raise TransientNetworkError(f"Price oracle returned non-positive rate {price}")
        return price

    async def _fetch(self) -> float:
        return await asyncio.to_thread(self._fetch_blocking)

    async def get_current_rate(self) -> ExchangeRate:
        cached = self._cache.get(_RATE_KEY)
        if cached is not None:
            return ExchangeRate.from_sol_price(cached, cached=True)
        try:
            price = await self.retry.call(self._fetch, op="price_oracle_fetch")
        except TransientNetworkError as exc:
            logger.warning(
                "price_oracle_fallback url=%s fallback=%s error=%s", self.url, self.fallback_sol_price, exc
            )
            if self.fallback_sol_price <= 0:
                return ExchangeRate(native_to_usd=0.0, usd_to_native=0.0, fallback=True)
            return ExchangeRate.from_sol_price(self.fallback_sol_price, fallback=True)
        self._cache[_RATE_KEY] = price
        logger.info("price_oracle_refresh sol_price=%.4f", price)
        return ExchangeRate.from_sol_price(price)

    async def usd_to_native(self, usd_amount: float) -> float:
        rate = await self.get_current_rate()
        return usd_amount * rate.usd_to_native

    def set_rate(self, sol_price: float) -> None:
        self._cache[_RATE_KEY] = sol_price

    def clear_cache(self) -> None:
        self._cache.clear()
