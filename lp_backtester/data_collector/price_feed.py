"""
Price Feed Resolver.

Walks the price sources in priority order (Binance > DeFiLlama > CoinGecko)
and returns the first series that still has at least two time-ordered points
inside ``[start_ms, end_ms]``. If every source fails and synthetic data is
allowed, a calibrated synthetic path is generated instead. Otherwise the
result carries ``source='none'`` and a human-readable error.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import httpx

from lp_backtester.analytics_engine.models import DataSource, PricePoint
from lp_backtester.analytics_engine.price_paths import NormalSource, generate_synthetic_prices
from lp_backtester.core.config_loader import PriceSourceSettings
from lp_backtester.core.metrics import increment_metric, timed
from lp_backtester.core.structured_logging import log_info, log_warning
from lp_backtester.data_collector.price_sources import PriceSource, default_sources

logger = logging.getLogger(__name__)

MIN_POINTS = 2

SYNTHETIC_NOTICE = (
    "Using simulated prices - real historical data unavailable. "
    "Results are illustrative only."
)


@dataclass(frozen=True)
class PriceFeedResult:
    prices: List[PricePoint] = field(default_factory=list)
    source: DataSource = DataSource.NONE
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.source is not DataSource.NONE and len(self.prices) >= MIN_POINTS


def clean_series(prices: Sequence[PricePoint], start_ms: int, end_ms: int) -> List[PricePoint]:
    """Keep positive finite prices inside the window, sorted, one per timestamp."""
    seen = set()
    cleaned: List[PricePoint] = []
    for point in sorted(prices, key=lambda p: p.timestamp):
        if point.timestamp in seen:
            continue
        if not (start_ms <= point.timestamp <= end_ms):
            continue
        if not math.isfinite(point.price) or point.price <= 0:
            continue
        seen.add(point.timestamp)
        cleaned.append(point)
    return cleaned


class PriceFeedResolver:
    """Fallback chain over the configured price sources.

    ``client`` lets callers (and tests) share one ``httpx.AsyncClient``; when
    omitted a client is opened per ``resolve()`` call, optionally over
    ``transport``. With ``memoize=True`` results are cached per pair, window
    and synthetic flag for the lifetime of the resolver.
    """

    def __init__(
        self,
        settings: Optional[PriceSourceSettings] = None,
        *,
        sources: Optional[Sequence[PriceSource]] = None,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        normals: Optional[NormalSource] = None,
        memoize: bool = False,
    ):
        self.settings = settings or PriceSourceSettings()
        self.sources: List[PriceSource] = list(sources) if sources is not None else default_sources(self.settings)
        self._client = client
        self._transport = transport
        self._normals = normals
        self._memoize = memoize
        self._cache: Dict[Tuple[str, str, int, int, bool], PriceFeedResult] = {}

    async def resolve(
        self,
        token_a: str,
        token_b: str,
        start_ms: int,
        end_ms: int,
        allow_synthetic: bool = False,
    ) -> PriceFeedResult:
        key = (token_a.upper(), token_b.upper(), int(start_ms), int(end_ms), bool(allow_synthetic))
        if self._memoize and key in self._cache:
            return self._cache[key]

        if self._client is not None:
            result = await self._resolve_with(self._client, token_a, token_b, start_ms, end_ms, allow_synthetic)
        else:
            async with httpx.AsyncClient(
                timeout=self.settings.timeout_seconds,
                transport=self._transport,
            ) as client:
                result = await self._resolve_with(client, token_a, token_b, start_ms, end_ms, allow_synthetic)

        if self._memoize and result.ok:
            self._cache[key] = result
        return result

    async def _resolve_with(
        self,
        client: httpx.AsyncClient,
        token_a: str,
        token_b: str,
        start_ms: int,
        end_ms: int,
        allow_synthetic: bool,
    ) -> PriceFeedResult:
        pair = f"{token_a}/{token_b}"

        for source in self.sources:
            with timed("price_source_fetch", labels={"source": source.name.value}):
                raw = await source.try_fetch(client, token_a, token_b, start_ms, end_ms)
            if raw is None:
                continue
            prices = clean_series(raw, start_ms, end_ms)
            if len(prices) < MIN_POINTS:
                increment_metric("price_source_rejections", labels={"source": source.name.value})
                log_warning(
                    logger,
                    "price_source_rejected",
                    source=source.name.value,
                    pair=pair,
                    points_in_window=len(prices),
                )
                continue

            increment_metric("price_source_successes", labels={"source": source.name.value})
            log_info(logger, "price_feed_resolved", source=source.name.value, pair=pair, points=len(prices))
            return PriceFeedResult(prices=prices, source=source.name)

        if allow_synthetic:
            prices = clean_series(
                generate_synthetic_prices(token_a, token_b, start_ms, end_ms, normals=self._normals),
                start_ms,
                end_ms,
            )
            if len(prices) >= MIN_POINTS:
                increment_metric("price_source_successes", labels={"source": DataSource.SYNTHETIC.value})
                log_warning(logger, "price_feed_synthetic", pair=pair, points=len(prices))
                return PriceFeedResult(prices=prices, source=DataSource.SYNTHETIC, error=SYNTHETIC_NOTICE)

        increment_metric("price_feed_unavailable", labels={"pair": pair})
        log_warning(logger, "price_feed_unavailable", pair=pair, allow_synthetic=allow_synthetic)
        return PriceFeedResult(
            prices=[],
            source=DataSource.NONE,
            error=(
                f"Could not fetch historical price data for {pair}. "
                "Please try a different token pair or time range."
            ),
        )


async def resolve_prices(
    token_a: str,
    token_b: str,
    start_ms: int,
    end_ms: int,
    allow_synthetic: bool = False,
    *,
    resolver: Optional[PriceFeedResolver] = None,
) -> PriceFeedResult:
    resolver = resolver or PriceFeedResolver()
    return await resolver.resolve(token_a, token_b, start_ms, end_ms, allow_synthetic)
