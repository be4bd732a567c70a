"""
Market Sentiment Aggregator
Fuses Fear & Greed, BTC dominance and Market-Pulse breadth into the
process-wide directional verdict
"""

import asyncio
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, Optional
import logging

from .models import MarketVerdict, SentimentSnapshot, VerdictDirection
from .scheduler import Clock, SystemClock
from .sentiment_feeds import DominanceFeed, FearGreedFeed, MarketPulseFeed
from ..utils.config_loader import SentimentConfig

logger = logging.getLogger(__name__)


NEUTRAL_FEAR_GREED = 50.0
NEUTRAL_DOMINANCE = 50.0

EXTREME_CONFIDENCE = 0.9
DIRECTIONAL_CONFIDENCE = 0.85
BOTH_CONFIDENCE = 0.5
MIXED_CONFIDENCE = 0.3
DEGRADED_CONFIDENCE = 0.2


class MarketSentimentAggregator:
    """
    Produces one verdict per refresh; signal processing reads the cached
    verdict through current() and never waits on a recompute.

    Rules, first match wins:
      1. Fear & Greed < 30 -> LONG, > 80 -> SHORT
      2. PM+ >= 60 and VWΔ > +0.5 -> LONG
      3. PM- >= 60 and VWΔ < -0.5 -> SHORT
      4. PM+ in [40, 60] or VWΔ in [-0.5, +0.5] -> BOTH
      5. otherwise -> NONE
    """

    def __init__(
        self,
        config: Optional[SentimentConfig] = None,
        fear_greed_feed: Optional[FearGreedFeed] = None,
        dominance_feed: Optional[DominanceFeed] = None,
        pulse_feed: Optional[MarketPulseFeed] = None,
        clock: Optional[Clock] = None,
        persistence=None,
    ):
        self.config = config or SentimentConfig()
        timeout = self.config.request_timeout_seconds
        self.fear_greed_feed = fear_greed_feed or FearGreedFeed(
            coinstats_api_key=self.config.coinstats_api_key, timeout=timeout
        )
        self.dominance_feed = dominance_feed or DominanceFeed(
            trend_band=self.config.dominance_trend_band, timeout=timeout
        )
        self.pulse_feed = pulse_feed or MarketPulseFeed(
            quote_asset=self.config.quote_asset, top_n=self.config.top_n, timeout=timeout
        )
        self.clock = clock or SystemClock()
        self.persistence = persistence

        self._verdict: Optional[MarketVerdict] = None
        self._inputs_at: Optional[datetime] = None
        self.history: Deque[MarketVerdict] = deque(maxlen=self.config.history_size)
        self.refresh_count = 0
        self.degraded_count = 0

    @property
    def cadence(self) -> timedelta:
        return timedelta(minutes=self.config.refresh_minutes)

    @property
    def stale_after(self) -> timedelta:
        return self.cadence * self.config.stale_multiplier

    # Rules

    def evaluate(self, snapshot: SentimentSnapshot, pulse_available: bool = True) -> MarketVerdict:
        """Apply the verdict rules to one input snapshot"""
        cfg = self.config
        now = self.clock.now()

        if not pulse_available:
            return MarketVerdict(
                direction=VerdictDirection.NONE,
                confidence=DEGRADED_CONFIDENCE,
                generated_at=now,
                snapshot=snapshot,
                source="DEGRADED",
                reason="Market-Pulse unavailable; directional rules cannot run",
            )

        fg = snapshot.fear_greed
        vw = snapshot.vw_delta
        threshold = cfg.vw_delta_threshold

        if fg < cfg.fear_greed_long_below:
            direction, confidence, source = VerdictDirection.LONG, EXTREME_CONFIDENCE, "FEAR_GREED"
            reason = f"Extreme fear ({fg:.0f}) favours longs"
        elif fg > cfg.fear_greed_short_above:
            direction, confidence, source = VerdictDirection.SHORT, EXTREME_CONFIDENCE, "FEAR_GREED"
            reason = f"Extreme greed ({fg:.0f}) favours shorts"
        elif snapshot.pm_plus >= cfg.pulse_directional_pct and vw > threshold:
            direction, confidence, source = VerdictDirection.LONG, DIRECTIONAL_CONFIDENCE, "MARKET_PULSE"
            reason = f"Broad strength: PM+ {snapshot.pm_plus:.0f}%, VWΔ {vw:+.2f}%"
        elif snapshot.pm_minus >= cfg.pulse_directional_pct and vw < -threshold:
            direction, confidence, source = VerdictDirection.SHORT, DIRECTIONAL_CONFIDENCE, "MARKET_PULSE"
            reason = f"Broad weakness: PM- {snapshot.pm_minus:.0f}%, VWΔ {vw:+.2f}%"
        elif (cfg.pulse_neutral_low <= snapshot.pm_plus <= cfg.pulse_neutral_high
              or -threshold <= vw <= threshold):
            direction, confidence, source = VerdictDirection.BOTH, BOTH_CONFIDENCE, "MARKET_PULSE"
            reason = f"Balanced market: PM+ {snapshot.pm_plus:.0f}%, VWΔ {vw:+.2f}%"
        else:
            direction, confidence, source = VerdictDirection.NONE, MIXED_CONFIDENCE, "MARKET_PULSE"
            reason = f"Mixed signals: PM+ {snapshot.pm_plus:.0f}%, VWΔ {vw:+.2f}%"

        confidence = self._apply_dominance(direction, confidence, snapshot.dominance_trend)

        return MarketVerdict(
            direction=direction,
            confidence=confidence,
            generated_at=now,
            snapshot=snapshot,
            source=source,
            reason=reason,
        )

    def _apply_dominance(self, direction: VerdictDirection, confidence: float, trend: str) -> float:
        """Dominance adjusts confidence only, never direction"""
        nudge = self.config.dominance_confidence_nudge
        if direction is VerdictDirection.LONG:
            if trend == "FALLING":
                confidence += nudge
            elif trend == "RISING":
                confidence -= nudge
        elif direction is VerdictDirection.SHORT:
            if trend == "RISING":
                confidence += nudge
            elif trend == "FALLING":
                confidence -= nudge
        return max(0.0, min(1.0, confidence))

    # Refresh

    async def refresh(self) -> MarketVerdict:
        """Fetch all feeds and recompute the verdict; never raises on feed failure"""
        results = await asyncio.gather(
            self.fear_greed_feed.fetch(),
            self.dominance_feed.fetch(),
            self.pulse_feed.fetch(),
            return_exceptions=True,
        )
        fear_greed, dominance, pulse = (
            None if isinstance(r, Exception) else r for r in results
        )
        for name, r in zip(("fear_greed", "dominance", "market_pulse"), results):
            if isinstance(r, Exception):
                logger.warning(f"Sentiment feed {name} raised: {r}")

        now = self.clock.now()
        snapshot = SentimentSnapshot(
            fear_greed=fear_greed.value if fear_greed else NEUTRAL_FEAR_GREED,
            btc_dominance=dominance.btc_dominance if dominance else NEUTRAL_DOMINANCE,
            dominance_trend=dominance.trend if dominance else "STABLE",
            pm_plus=pulse.pm_plus if pulse else 50.0,
            pm_minus=pulse.pm_minus if pulse else 50.0,
            vw_delta=pulse.vw_delta if pulse else 0.0,
            instruments_sampled=pulse.sampled if pulse else 0,
            feeds_ok={
                "fear_greed": fear_greed is not None,
                "dominance": dominance is not None,
                "market_pulse": pulse is not None,
            },
            collected_at=now,
        )

        degraded = [name for name, ok in snapshot.feeds_ok.items() if not ok]
        if degraded:
            self.degraded_count += 1
            logger.warning(f"Sentiment feeds degraded to neutral: {', '.join(degraded)}")

        verdict = self.evaluate(snapshot, pulse_available=pulse is not None)
        if pulse is not None:
            self._inputs_at = now
        self._store(verdict)
        self.refresh_count += 1

        logger.info(
            f"Verdict: {verdict.direction.value} ({verdict.confidence:.2f}) "
            f"F&G={snapshot.fear_greed:.0f} PM+={snapshot.pm_plus:.1f}% "
            f"VWΔ={snapshot.vw_delta:+.2f}% BTC.D={snapshot.btc_dominance:.1f}% {snapshot.dominance_trend}"
        )

        if self.persistence is not None:
            try:
                await self.persistence.record_verdict(verdict)
            except Exception as e:
                logger.warning(f"Failed to persist verdict: {e}")

        return verdict

    def _store(self, verdict: MarketVerdict):
        self._verdict = verdict
        self.history.append(verdict)

    def set_verdict(self, verdict: MarketVerdict):
        """Install a verdict directly (paper mode, tests); counts as a fresh refresh"""
        self._inputs_at = verdict.generated_at
        self._store(verdict)

    def current(self, now: Optional[datetime] = None) -> MarketVerdict:
        """Latest verdict, or NONE when inputs are missing or stale"""
        now = now or self.clock.now()

        if self._verdict is None:
            return MarketVerdict(
                direction=VerdictDirection.NONE,
                confidence=0.0,
                generated_at=now,
                source="NO_DATA",
                reason="No sentiment refresh has completed yet",
            )

        if self._verdict.source == "DEGRADED":
            return self._verdict

        if self._inputs_at is None or now - self._inputs_at > self.stale_after:
            return MarketVerdict(
                direction=VerdictDirection.NONE,
                confidence=round(min(self._verdict.confidence, DEGRADED_CONFIDENCE) / 2, 4),
                generated_at=now,
                snapshot=self._verdict.snapshot,
                source="STALE",
                reason=f"Sentiment inputs older than {self.stale_after}",
            )

        return self._verdict

    def get_stats(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {}
        for verdict in self.history:
            counts[verdict.direction.value] = counts.get(verdict.direction.value, 0) + 1
        current = self.current()
        return {
            "current": current.to_dict(),
            "refreshes": self.refresh_count,
            "degraded_refreshes": self.degraded_count,
            "inputs_at": self._inputs_at.isoformat() if self._inputs_at else None,
            "history_size": len(self.history),
            "direction_counts": counts,
        }
