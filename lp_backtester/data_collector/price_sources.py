"""
Historical price source adapters.

Every source exposes the same coroutine, ``try_fetch(client, token_a, token_b,
start_ms, end_ms)``, which returns a list of ``PricePoint`` (tokenA priced in
tokenB) or ``None``. Sources never raise to the resolver: HTTP errors and
unexpected payload shapes are logged, counted and reported as ``None`` so the
resolver can move on to the next source.

- Binance spot klines (1h candles, direct pairs only, inverted pairs allowed)
- DeFiLlama coins API (/prices/historical batched, then /chart)
- CoinGecko market_chart (direct, then through public proxies)
"""
from __future__ import annotations

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import quote

import httpx

from lp_backtester.analytics_engine.models import HOUR_MS, DAY_MS, DataSource, PricePoint
from lp_backtester.core.config_loader import PriceSourceSettings
from lp_backtester.core.errors import PriceSourceError
from lp_backtester.core.metrics import increment_metric
from lp_backtester.core.structured_logging import log_info, log_warning

logger = logging.getLogger(__name__)

# === SYMBOL TABLES ===

BINANCE_SYMBOLS: Dict[str, str] = {
    "SUI/USDC": "SUIUSDC",
    "SUI/USDT": "SUIUSDT",
    "ETH/USDC": "ETHUSDC",
    "ETH/USDT": "ETHUSDT",
    "WETH/USDC": "ETHUSDC",
    "WETH/USDT": "ETHUSDT",
    "BTC/USDC": "BTCUSDC",
    "BTC/USDT": "BTCUSDT",
    "WBTC/USDC": "BTCUSDC",
    "WBTC/USDT": "BTCUSDT",
    "SOL/USDC": "SOLUSDC",
    "SOL/USDT": "SOLUSDT",
    "CETUS/USDT": "CETUSUSDT",
}

DEFILLAMA_IDS: Dict[str, str] = {
    "SUI": "coingecko:sui",
    "USDC": "coingecko:usd-coin",
    "USDT": "coingecko:tether",
    "WETH": "coingecko:ethereum",
    "ETH": "coingecko:ethereum",
    "WBTC": "coingecko:wrapped-bitcoin",
    "BTC": "coingecko:bitcoin",
    "CETUS": "coingecko:cetus-protocol",
}

COINGECKO_IDS: Dict[str, str] = {
    "SUI": "sui",
    "USDC": "usd-coin",
    "USDT": "tether",
    "WETH": "ethereum",
    "ETH": "ethereum",
    "WBTC": "wrapped-bitcoin",
    "BTC": "bitcoin",
    "SOL": "solana",
    "CETUS": "cetus-protocol",
    "DEEP": "deepbook",
    "NAVX": "navi-protocol",
    "SCA": "scallop-2",
    "BUCK": "bucket-protocol",
    "AUSD": "helio-protocol-hay",
}

# DeFiLlama /chart returns at most this many points per request
DEFILLAMA_MAX_SPAN = 500


def _hour_bucket_ms(timestamp_ms: int) -> int:
    return (int(timestamp_ms) // HOUR_MS) * HOUR_MS


def combine_ratio(
    series_a: Iterable[Tuple[int, float]],
    series_b: Iterable[Tuple[int, float]],
    start_ms: int,
    end_ms: int,
) -> List[PricePoint]:
    """tokenA/tokenB ratio from two USD series matched on the hour bucket (ms)."""
    b_by_hour: Dict[int, float] = {}
    for ts, price in series_b:
        b_by_hour[_hour_bucket_ms(ts)] = float(price)

    prices: List[PricePoint] = []
    for ts, price_a in series_a:
        price_b = b_by_hour.get(_hour_bucket_ms(ts))
        if not price_b or price_b <= 0:
            continue
        if start_ms <= ts <= end_ms:
            prices.append(PricePoint(timestamp=int(ts), price=float(price_a) / price_b))
    return prices


class PriceSource(ABC):
    """Uniform adapter around one external price API."""

    name: DataSource

    def __init__(self, settings: Optional[PriceSourceSettings] = None):
        self.settings = settings or PriceSourceSettings()

    async def try_fetch(
        self,
        client: httpx.AsyncClient,
        token_a: str,
        token_b: str,
        start_ms: int,
        end_ms: int,
    ) -> Optional[List[PricePoint]]:
        source = self.name.value
        increment_metric("price_source_attempts", labels={"source": source})
        try:
            prices = await self.fetch(client, token_a.upper(), token_b.upper(), start_ms, end_ms)
        except (PriceSourceError, httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as exc:
            increment_metric("price_source_failures", labels={"source": source})
            log_warning(
                logger,
                "price_source_failed",
                source=source,
                pair=f"{token_a}/{token_b}",
                error=str(exc),
            )
            return None

        log_info(logger, "price_source_fetched", source=source, pair=f"{token_a}/{token_b}", points=len(prices))
        return prices

    @abstractmethod
    async def fetch(
        self,
        client: httpx.AsyncClient,
        token_a: str,
        token_b: str,
        start_ms: int,
        end_ms: int,
    ) -> List[PricePoint]:
        """Fetch the raw series or raise ``PriceSourceError``."""

    async def _get_json(self, client: httpx.AsyncClient, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        resp = await client.get(url, params=params, timeout=self.settings.timeout_seconds)
        if resp.status_code >= 400:
            raise PriceSourceError(self.name.value, f"HTTP {resp.status_code} for {url}")
        return resp.json()


# === BINANCE ===


def resolve_binance_symbol(token_a: str, token_b: str) -> Tuple[Optional[str], bool]:
    """Return ``(symbol, inverted)`` for a pair, or ``(None, False)``."""
    symbol = BINANCE_SYMBOLS.get(f"{token_a.upper()}/{token_b.upper()}")
    if symbol:
        return symbol, False
    symbol = BINANCE_SYMBOLS.get(f"{token_b.upper()}/{token_a.upper()}")
    if symbol:
        return symbol, True
    return None, False


class BinanceKlinesSource(PriceSource):
    name = DataSource.BINANCE
    interval = "1h"

    async def fetch(self, client, token_a, token_b, start_ms, end_ms):
        symbol, inverted = resolve_binance_symbol(token_a, token_b)
        if not symbol:
            raise PriceSourceError(self.name.value, f"no trading pair for {token_a}/{token_b}")

        url = f"{self.settings.binance_base_url}/api/v3/klines"
        max_limit = self.settings.binance_max_candles
        prices: List[PricePoint] = []
        current_start = start_ms

        # Page through the window, at most max_limit candles per request
        while current_start <= end_ms:
            remaining = math.ceil((end_ms - current_start + 1) / HOUR_MS)
            params = {
                "symbol": symbol,
                "interval": self.interval,
                "startTime": current_start,
                "endTime": end_ms,
                "limit": max(1, min(max_limit, remaining)),
            }
            raw = await self._get_json(client, url, params)
            if not isinstance(raw, list):
                raise PriceSourceError(self.name.value, f"unexpected klines payload: {type(raw).__name__}")
            if not raw:
                break

            for row in raw:
                # [openTime, open, high, low, close, volume, closeTime, ...]
                close = float(row[4])
                if close <= 0:
                    continue
                prices.append(
                    PricePoint(timestamp=int(row[0]), price=1.0 / close if inverted else close)
                )

            last_open = int(raw[-1][0])
            if len(raw) < params["limit"]:
                break
            current_start = last_open + HOUR_MS

        if len(prices) < 2:
            raise PriceSourceError(self.name.value, f"insufficient klines for {symbol}: {len(prices)}")
        return prices


# === DEFILLAMA ===


def _extract_chart_prices(payload: Any, coin_id: str) -> List[Dict[str, Any]]:
    # The chart endpoint has been seen returning three different shapes
    if not isinstance(payload, dict):
        return []
    coins = payload.get("coins")
    if isinstance(coins, dict) and isinstance(coins.get(coin_id), dict):
        return coins[coin_id].get("prices") or []
    if isinstance(payload.get(coin_id), dict):
        return payload[coin_id].get("prices") or []
    return payload.get("prices") or []


def _historical_price(payload: Any, coin_id: str) -> Optional[float]:
    # Malformed samples are skipped, not fatal
    if not isinstance(payload, dict):
        return None
    coins = payload.get("coins")
    if not isinstance(coins, dict):
        return None
    entry = coins.get(coin_id)
    if not isinstance(entry, dict):
        return None
    price = entry.get("price")
    if isinstance(price, bool) or not isinstance(price, (int, float)):
        return None
    return float(price)


class DefiLlamaSource(PriceSource):
    name = DataSource.DEFILLAMA

    async def fetch(self, client, token_a, token_b, start_ms, end_ms):
        id_a = DEFILLAMA_IDS.get(token_a)
        id_b = DEFILLAMA_IDS.get(token_b)
        if not id_a or not id_b:
            raise PriceSourceError(self.name.value, f"token id not found for {token_a} or {token_b}")

        prices = await self._fetch_historical(client, id_a, id_b, start_ms, end_ms)
        if len(prices) >= 2:
            return prices

        log_info(logger, "defillama_historical_insufficient", points=len(prices))
        prices = await self._fetch_chart(client, id_a, id_b, start_ms, end_ms)
        if len(prices) >= 2:
            return prices
        raise PriceSourceError(self.name.value, f"insufficient matched price points: {len(prices)}")

    def _sample_timestamps(self, start_ms: int, end_ms: int) -> List[int]:
        num_points = max(1, min(math.ceil((end_ms - start_ms) / HOUR_MS), self.settings.defillama_max_points))
        interval = (end_ms - start_ms) / num_points
        return [int((start_ms + i * interval) // 1000) for i in range(num_points + 1)]

    async def _fetch_historical_one(self, client: httpx.AsyncClient, ts: int, coins: str) -> Optional[Dict[str, Any]]:
        url = f"{self.settings.defillama_base_url}/prices/historical/{ts}/{coins}"
        try:
            return await self._get_json(client, url)
        except (PriceSourceError, httpx.HTTPError, ValueError) as exc:
            # One missing sample is not fatal for the whole series
            log_warning(logger, "defillama_sample_failed", timestamp=ts, error=str(exc))
            return None

    async def _fetch_historical(self, client, id_a: str, id_b: str, start_ms: int, end_ms: int) -> List[PricePoint]:
        coins = f"{id_a},{id_b}"
        timestamps = self._sample_timestamps(start_ms, end_ms)
        batch_size = max(1, self.settings.defillama_batch_size)

        prices: List[PricePoint] = []
        for i in range(0, len(timestamps), batch_size):
            batch = timestamps[i:i + batch_size]
            results = await asyncio.gather(*(self._fetch_historical_one(client, ts, coins) for ts in batch))
            for ts, data in zip(batch, results):
                price_a = _historical_price(data, id_a)
                price_b = _historical_price(data, id_b)
                if price_a and price_b and price_b > 0:
                    prices.append(PricePoint(timestamp=ts * 1000, price=price_a / price_b))

        prices.sort(key=lambda p: p.timestamp)
        return prices

    async def _fetch_chart(self, client, id_a: str, id_b: str, start_ms: int, end_ms: int) -> List[PricePoint]:
        start_sec = start_ms // 1000
        end_sec = end_ms // 1000
        span = max(1, min(math.ceil((end_sec - start_sec) / 3600), DEFILLAMA_MAX_SPAN))
        params = {"start": start_sec, "span": span, "period": "1h"}

        data_a, data_b = await asyncio.gather(
            self._get_json(client, f"{self.settings.defillama_base_url}/chart/{id_a}", params),
            self._get_json(client, f"{self.settings.defillama_base_url}/chart/{id_b}", params),
        )
        prices_a = _extract_chart_prices(data_a, id_a)
        prices_b = _extract_chart_prices(data_b, id_b)
        if len(prices_a) < 2 or len(prices_b) < 2:
            raise PriceSourceError(
                self.name.value, f"insufficient chart data: A={len(prices_a)}, B={len(prices_b)}"
            )

        return combine_ratio(
            ((int(p["timestamp"]) * 1000, p["price"]) for p in prices_a),
            ((int(p["timestamp"]) * 1000, p["price"]) for p in prices_b),
            start_ms,
            end_ms,
        )


# === COINGECKO ===


class CoinGeckoSource(PriceSource):
    name = DataSource.COINGECKO

    def _candidate_urls(self, base_url: str) -> Sequence[Tuple[str, str]]:
        proxies = self.settings.coingecko_proxies or [""]
        return [
            (proxy or "direct", proxy + quote(base_url, safe="") if proxy else base_url)
            for proxy in proxies
        ]

    async def fetch(self, client, token_a, token_b, start_ms, end_ms):
        id_a = COINGECKO_IDS.get(token_a)
        id_b = COINGECKO_IDS.get(token_b)
        if not id_a or not id_b:
            raise PriceSourceError(self.name.value, f"token id not found for {token_a} or {token_b}")

        days = min(max(1, math.ceil((end_ms - start_ms) / DAY_MS)), self.settings.coingecko_max_days)
        base = self.settings.coingecko_base_url
        url_a = f"{base}/coins/{id_a}/market_chart?vs_currency=usd&days={days}"
        url_b = f"{base}/coins/{id_b}/market_chart?vs_currency=usd&days={days}"

        last_error = "no endpoints configured"
        for (via, proxied_a), (_, proxied_b) in zip(self._candidate_urls(url_a), self._candidate_urls(url_b)):
            try:
                data_a, data_b = await asyncio.gather(
                    self._get_json(client, proxied_a),
                    self._get_json(client, proxied_b),
                )
                if not isinstance(data_a, dict) or not isinstance(data_b, dict):
                    raise PriceSourceError(self.name.value, "unexpected market_chart payload")
                if not data_a.get("prices") or not data_b.get("prices"):
                    raise PriceSourceError(self.name.value, "missing price data")

                prices = combine_ratio(
                    ((int(ts), p) for ts, p in data_a["prices"]),
                    ((int(ts), p) for ts, p in data_b["prices"]),
                    start_ms,
                    end_ms,
                )
                if len(prices) < 2:
                    raise PriceSourceError(self.name.value, f"insufficient price data points: {len(prices)}")

                log_info(logger, "coingecko_fetch_succeeded", via=via, points=len(prices))
                return prices
            except (PriceSourceError, httpx.HTTPError, ValueError, TypeError) as exc:
                last_error = str(exc)
                log_warning(logger, "coingecko_endpoint_failed", via=via, error=last_error)
                continue

        raise PriceSourceError(self.name.value, f"all endpoints failed, last error: {last_error}")


def default_sources(settings: Optional[PriceSourceSettings] = None) -> List[PriceSource]:
    """Sources in priority order."""
    return [
        BinanceKlinesSource(settings),
        DefiLlamaSource(settings),
        CoinGeckoSource(settings),
    ]
