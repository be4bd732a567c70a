"""
Market sentiment: verdict rules, dominance nudge, degradation and staleness
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import NOW, make_verdict
from signal_trader.core.collaborators import InMemoryPersistence
from signal_trader.core.market_sentiment import MarketSentimentAggregator
from signal_trader.core.models import SentimentSnapshot, VerdictDirection
from signal_trader.core.scheduler import VirtualClock
from signal_trader.core.sentiment_feeds import (
    DominanceReading,
    FearGreedReading,
    MarketPulseReading,
    compute_market_pulse,
    dominance_trend,
)


def feed(result=None, error=None):
    mock = MagicMock()
    mock.fetch = AsyncMock(return_value=result, side_effect=error)
    return mock


def pulse(pm_plus: float, vw_delta: float) -> MarketPulseReading:
    return MarketPulseReading(
        pm_plus=pm_plus, pm_minus=100 - pm_plus, vw_delta=vw_delta,
        sampled=100, positive=int(pm_plus), negative=100 - int(pm_plus), neutral=0,
        average_change=vw_delta,
    )


def aggregator(fear_greed=None, dominance=None, market_pulse=None, persistence=None, **errors):
    return MarketSentimentAggregator(
        fear_greed_feed=feed(fear_greed, errors.get("fear_greed_error")),
        dominance_feed=feed(dominance, errors.get("dominance_error")),
        pulse_feed=feed(market_pulse, errors.get("pulse_error")),
        clock=VirtualClock(NOW),
        persistence=persistence,
    )


def snapshot(fear_greed=50.0, pm_plus=50.0, vw_delta=0.0, trend="STABLE") -> SentimentSnapshot:
    return SentimentSnapshot(
        fear_greed=fear_greed, pm_plus=pm_plus, pm_minus=100 - pm_plus,
        vw_delta=vw_delta, dominance_trend=trend,
    )


class TestVerdictRules:

    @pytest.mark.parametrize("inputs, direction, confidence", [
        (dict(fear_greed=25), VerdictDirection.LONG, 0.9),
        (dict(fear_greed=85), VerdictDirection.SHORT, 0.9),
        (dict(pm_plus=65, vw_delta=1.0), VerdictDirection.LONG, 0.85),
        (dict(pm_plus=35, vw_delta=-1.0), VerdictDirection.SHORT, 0.85),
        (dict(pm_plus=50, vw_delta=2.0), VerdictDirection.BOTH, 0.5),
        (dict(pm_plus=70, vw_delta=0.3), VerdictDirection.BOTH, 0.5),
        (dict(pm_plus=70, vw_delta=-1.0), VerdictDirection.NONE, 0.3),
    ])
    def test_rules(self, inputs, direction, confidence):
        verdict = aggregator().evaluate(snapshot(**inputs))
        assert verdict.direction is direction
        assert verdict.confidence == pytest.approx(confidence)

    def test_first_matching_rule_wins(self):
        verdict = aggregator().evaluate(snapshot(fear_greed=20, pm_plus=20, vw_delta=-2.0))
        assert verdict.direction is VerdictDirection.LONG
        assert verdict.source == "FEAR_GREED"

    def test_pulse_boundaries_are_inclusive(self):
        agg = aggregator()
        assert agg.evaluate(snapshot(pm_plus=60, vw_delta=0.51)).direction is VerdictDirection.LONG
        assert agg.evaluate(snapshot(pm_plus=40, vw_delta=-0.51)).direction is VerdictDirection.SHORT

    def test_dominance_adjusts_confidence_only(self):
        agg = aggregator()
        falling = agg.evaluate(snapshot(fear_greed=25, trend="FALLING"))
        rising = agg.evaluate(snapshot(fear_greed=25, trend="RISING"))

        assert falling.direction is rising.direction is VerdictDirection.LONG
        assert falling.confidence == pytest.approx(0.95)
        assert rising.confidence == pytest.approx(0.85)

    def test_confidence_is_clamped(self):
        agg = aggregator()
        assert agg._apply_dominance(VerdictDirection.SHORT, 0.98, "RISING") == 1.0
        assert agg._apply_dominance(VerdictDirection.LONG, 0.02, "RISING") == 0.0


class TestRefresh:

    @pytest.mark.asyncio
    async def test_refresh_uses_all_feeds(self):
        persistence = InMemoryPersistence()
        agg = aggregator(
            fear_greed=FearGreedReading(50, "Neutral", "alternative.me"),
            dominance=DominanceReading(55.0, "FALLING", "MODERATE_HIGH"),
            market_pulse=pulse(68, 1.2),
            persistence=persistence,
        )

        verdict = await agg.refresh()

        assert verdict.direction is VerdictDirection.LONG
        assert verdict.confidence == pytest.approx(0.9)
        assert verdict.snapshot.btc_dominance == 55.0
        assert agg.current() is verdict
        assert persistence.verdicts == [verdict]

    @pytest.mark.asyncio
    async def test_missing_pulse_degrades_to_none(self):
        agg = aggregator(fear_greed=FearGreedReading(10, "Extreme Fear", "alternative.me"))

        verdict = await agg.refresh()

        assert verdict.direction is VerdictDirection.NONE
        assert verdict.confidence == pytest.approx(0.2)
        assert verdict.source == "DEGRADED"
        assert agg.current().source == "DEGRADED"
        assert agg.degraded_count == 1

    @pytest.mark.parametrize("fear_greed", [5.0, 29.0, 81.0, 95.0])
    def test_extreme_fear_greed_does_not_override_missing_pulse(self, fear_greed):
        verdict = aggregator().evaluate(snapshot(fear_greed=fear_greed), pulse_available=False)

        assert verdict.direction is VerdictDirection.NONE
        assert verdict.confidence == pytest.approx(0.2)
        assert verdict.source == "DEGRADED"

    @pytest.mark.asyncio
    async def test_failed_feeds_fall_back_to_neutral(self):
        agg = aggregator(
            market_pulse=pulse(52, 0.1),
            fear_greed_error=RuntimeError("boom"),
            dominance_error=RuntimeError("boom"),
        )

        verdict = await agg.refresh()

        assert verdict.direction is VerdictDirection.BOTH
        assert verdict.snapshot.fear_greed == 50.0
        assert verdict.snapshot.feeds_ok == {"fear_greed": False, "dominance": False, "market_pulse": True}


class TestCurrent:

    def test_no_data_yet(self):
        verdict = aggregator().current(NOW)
        assert verdict.direction is VerdictDirection.NONE
        assert verdict.confidence == 0.0
        assert verdict.source == "NO_DATA"

    def test_fresh_verdict_is_served(self):
        agg = aggregator()
        installed = make_verdict(VerdictDirection.SHORT, 0.85)
        agg.set_verdict(installed)
        assert agg.current(NOW + timedelta(minutes=29)) is installed

    def test_stale_verdict_becomes_none(self):
        agg = aggregator()
        agg.set_verdict(make_verdict(VerdictDirection.LONG, 0.85))

        verdict = agg.current(NOW + timedelta(minutes=31))

        assert verdict.direction is VerdictDirection.NONE
        assert verdict.source == "STALE"
        assert verdict.confidence == pytest.approx(0.1)


class TestFeeds:

    def test_market_pulse_breadth(self):
        tickers = [
            {"symbol": "BTCUSDT", "priceChangePercent": "2.0", "quoteVolume": "300"},
            {"symbol": "ETHUSDT", "priceChangePercent": "-1.0", "quoteVolume": "100"},
            {"symbol": "SOLUSDT", "priceChangePercent": "4.0", "quoteVolume": "100"},
            {"symbol": "USDCUSDT", "priceChangePercent": "0.01", "quoteVolume": "9999"},
            {"symbol": "BTCUPUSDT", "priceChangePercent": "9.0", "quoteVolume": "50"},
            {"symbol": "ETHBTC", "priceChangePercent": "1.0", "quoteVolume": "50"},
        ]

        reading = compute_market_pulse(tickers, "USDT", top_n=100)

        assert reading.sampled == 3
        assert reading.pm_plus == pytest.approx(200 / 3)
        assert reading.pm_minus == pytest.approx(100 / 3)
        assert reading.vw_delta == pytest.approx((2.0 * 300 - 1.0 * 100 + 4.0 * 100) / 500)

    def test_market_pulse_empty(self):
        assert compute_market_pulse([], "USDT") is None

    def test_dominance_trend(self):
        assert dominance_trend(55.0, None) == "STABLE"
        assert dominance_trend(55.5, 55.0) == "RISING"
        assert dominance_trend(54.5, 55.0) == "FALLING"
        assert dominance_trend(55.05, 55.0) == "STABLE"
