"""
Market Sentiment Feeds
Fear & Greed index, BTC dominance and Market-Pulse breadth from public APIs

Every fetch returns None on failure; the aggregator decides how to degrade.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import aiohttp
import numpy as np
import logging

from .models import utc_now

logger = logging.getLogger(__name__)


# Stablecoin bases excluded from breadth (their 24h change is noise)
STABLE_BASES = {"USDC", "FDUSD", "TUSD", "BUSD", "DAI", "USDP", "USDE", "EUR", "AEUR"}

# Leveraged token suffixes
LEVERAGED_SUFFIXES = ("UP", "DOWN", "BULL", "BEAR")


@dataclass
class FearGreedReading:
    value: float
    classification: str
    source: str
    collected_at: datetime = field(default_factory=utc_now)


@dataclass
class DominanceReading:
    btc_dominance: float
    trend: str
    classification: str
    source: str = "coingecko"
    collected_at: datetime = field(default_factory=utc_now)


@dataclass
class MarketPulseReading:
    pm_plus: float
    pm_minus: float
    vw_delta: float
    sampled: int
    positive: int
    negative: int
    neutral: int
    average_change: float
    leaders: List[str] = field(default_factory=list)
    collected_at: datetime = field(default_factory=utc_now)


def classify_fear_greed(value: float) -> str:
    if value <= 24:
        return "Extreme Fear"
    if value <= 44:
        return "Fear"
    if value <= 55:
        return "Neutral"
    if value <= 75:
        return "Greed"
    return "Extreme Greed"


def classify_dominance(dominance: float) -> str:
    if dominance > 60:
        return "HIGH_DOMINANCE"
    if dominance > 50:
        return "MODERATE_HIGH"
    if dominance > 40:
        return "BALANCED"
    if dominance > 30:
        return "MODERATE_LOW"
    return "LOW_DOMINANCE"


def dominance_trend(current: float, previous: Optional[float], band: float = 0.1) -> str:
    if previous is None:
        return "STABLE"
    delta = current - previous
    if delta > band:
        return "RISING"
    if delta < -band:
        return "FALLING"
    return "STABLE"


def _eligible_symbol(symbol: str, quote_asset: str) -> bool:
    if not symbol.endswith(quote_asset):
        return False
    base = symbol[: -len(quote_asset)]
    if not base or base in STABLE_BASES:
        return False
    return not any(base.endswith(s) and len(base) > len(s) for s in LEVERAGED_SUFFIXES)


def compute_market_pulse(
    tickers: List[Dict[str, Any]],
    quote_asset: str = "USDT",
    top_n: int = 100,
) -> Optional[MarketPulseReading]:
    """
    Breadth and volume-weighted change over the top-N pairs by quote volume

    PM+ is the percentage of sampled pairs with a positive 24h change,
    PM- = 100 - PM+, and VWΔ = Σ(Δ24h·volume) / Σvolume.
    """
    rows = []
    for ticker in tickers:
        symbol = str(ticker.get("symbol", ""))
        if not _eligible_symbol(symbol, quote_asset):
            continue
        try:
            change = float(ticker.get("priceChangePercent", 0))
            volume = float(ticker.get("quoteVolume", 0))
        except (TypeError, ValueError):
            continue
        rows.append((symbol, change, volume))

    if not rows:
        return None

    rows.sort(key=lambda r: r[2], reverse=True)
    rows = rows[:top_n]

    changes = np.array([r[1] for r in rows], dtype=float)
    volumes = np.array([r[2] for r in rows], dtype=float)
    n = len(rows)

    positive = int(np.sum(changes > 0))
    negative = int(np.sum(changes < 0))
    pm_plus = positive / n * 100.0

    total_volume = float(np.sum(volumes))
    if total_volume > 0:
        vw_delta = float(np.sum(changes * volumes) / total_volume)
    else:
        vw_delta = float(np.mean(changes))

    order = np.argsort(changes)[::-1]
    leaders = [rows[i][0] for i in order[:5]]

    return MarketPulseReading(
        pm_plus=pm_plus,
        pm_minus=100.0 - pm_plus,
        vw_delta=vw_delta,
        sampled=n,
        positive=positive,
        negative=negative,
        neutral=n - positive - negative,
        average_change=float(np.mean(changes)),
        leaders=leaders,
    )


class PublicFeed:
    """Unauthenticated JSON feed"""

    HEADERS = {
        "Accept": "application/json",
        "User-Agent": "signal-trader/1.0",
    }

    def __init__(self, timeout: float = 15.0, session: Optional[aiohttp.ClientSession] = None):
        self.timeout = timeout
        self._session = session
        self.failures = 0
        self.last_success: Optional[datetime] = None

    async def _fetch_json(
        self, url: str, params: Dict = None, headers: Dict = None
    ) -> Optional[Any]:
        """Fetch JSON from URL; None on any failure"""
        request_headers = dict(self.HEADERS)
        request_headers.update(headers or {})
        try:
            if self._session is not None:
                return await self._get(self._session, url, params, request_headers)
            async with aiohttp.ClientSession() as session:
                return await self._get(session, url, params, request_headers)
        except asyncio.TimeoutError:
            logger.warning(f"Feed timeout for {url}")
        except aiohttp.ClientError as e:
            logger.warning(f"Feed error for {url}: {e}")
        except ValueError as e:
            logger.warning(f"Feed returned invalid JSON for {url}: {e}")
        self.failures += 1
        return None

    async def _get(self, session, url, params, headers) -> Optional[Any]:
        async with session.get(
            url,
            headers=headers,
            params=params,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as resp:
            if resp.status != 200:
                logger.warning(f"Feed {url} returned {resp.status}")
                self.failures += 1
                return None
            data = await resp.json(content_type=None)
            self.last_success = utc_now()
            return data


class FearGreedFeed(PublicFeed):
    """CoinStats when an API key is configured, alternative.me otherwise"""

    ALTERNATIVE_URL = "https://api.alternative.me/fng/"
    COINSTATS_URL = "https://openapiv1.coinstats.app/insights/fear-and-greed"

    def __init__(self, coinstats_api_key: str = "", **kwargs):
        super().__init__(**kwargs)
        self.coinstats_api_key = coinstats_api_key

    async def fetch(self) -> Optional[FearGreedReading]:
        if self.coinstats_api_key:
            data = await self._fetch_json(
                self.COINSTATS_URL, headers={"X-API-KEY": self.coinstats_api_key}
            )
            reading = self._parse_coinstats(data)
            if reading:
                return reading
            logger.info("CoinStats Fear & Greed unavailable, falling back to alternative.me")

        data = await self._fetch_json(self.ALTERNATIVE_URL, params={"limit": 1})
        return self._parse_alternative(data)

    def _parse_coinstats(self, data: Any) -> Optional[FearGreedReading]:
        if not isinstance(data, dict):
            return None
        now = data.get("now") or {}
        try:
            value = float(now["value"])
        except (KeyError, TypeError, ValueError):
            return None
        return FearGreedReading(
            value=value,
            classification=now.get("value_classification") or classify_fear_greed(value),
            source="coinstats",
        )

    def _parse_alternative(self, data: Any) -> Optional[FearGreedReading]:
        if not isinstance(data, dict) or not data.get("data"):
            return None
        entry = data["data"][0]
        try:
            value = float(entry["value"])
        except (KeyError, TypeError, ValueError):
            return None
        return FearGreedReading(
            value=value,
            classification=entry.get("value_classification") or classify_fear_greed(value),
            source="alternative.me",
        )


class DominanceFeed(PublicFeed):
    """BTC market-cap dominance from CoinGecko /global"""

    URL = "https://api.coingecko.com/api/v3/global"

    def __init__(self, trend_band: float = 0.1, **kwargs):
        super().__init__(**kwargs)
        self.trend_band = trend_band
        self._previous: Optional[float] = None

    async def fetch(self) -> Optional[DominanceReading]:
        data = await self._fetch_json(self.URL)
        try:
            dominance = float(data["data"]["market_cap_percentage"]["btc"])
        except (KeyError, TypeError, ValueError):
            return None

        trend = dominance_trend(dominance, self._previous, self.trend_band)
        self._previous = dominance
        return DominanceReading(
            btc_dominance=dominance,
            trend=trend,
            classification=classify_dominance(dominance),
        )


class MarketPulseFeed(PublicFeed):
    """Top-N USDT pairs by quote volume from Binance 24h tickers"""

    URL = "https://api.binance.com/api/v3/ticker/24hr"

    def __init__(self, quote_asset: str = "USDT", top_n: int = 100, **kwargs):
        super().__init__(**kwargs)
        self.quote_asset = quote_asset
        self.top_n = top_n

    async def fetch(self) -> Optional[MarketPulseReading]:
        data = await self._fetch_json(self.URL)
        if not isinstance(data, list):
            return None
        return compute_market_pulse(data, self.quote_asset, self.top_n)
