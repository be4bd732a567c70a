"""
Reasoning Oracle
Bounded-latency contract for the external decision service consulted on
signals the algorithmic fast path cannot settle
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp
import logging

from .errors import ErrorCode

logger = logging.getLogger(__name__)


@dataclass
class OracleDecision:
    approve: bool
    reason: str
    confidence: float = 0.0
    error: Optional[ErrorCode] = None
    direction: Optional[str] = None
    source: str = "oracle"
    latency_ms: float = 0.0
    factors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approve": self.approve,
            "reason": self.reason,
            "confidence": round(self.confidence, 4),
            "error": self.error.value if self.error else None,
            "direction": self.direction,
            "source": self.source,
            "latency_ms": round(self.latency_ms, 2),
            "factors": list(self.factors),
        }


class ReasoningOracle(ABC):
    """
    Every call is wrapped in a hard timeout and never raises: a timeout
    yields a TIMEOUT decline, any transport failure a conservative decline.
    """

    name = "oracle"

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self.calls = 0
        self.timeouts = 0
        self.failures = 0

    @abstractmethod
    async def _decide(self, context: Dict[str, Any]) -> OracleDecision:
        pass

    async def decide(self, context: Dict[str, Any]) -> OracleDecision:
        self.calls += 1
        started = time.monotonic()
        try:
            decision = await asyncio.wait_for(self._decide(context), timeout=self.timeout)
        except asyncio.TimeoutError:
            self.timeouts += 1
            logger.warning(f"Reasoning oracle {self.name} timed out after {self.timeout}s")
            decision = OracleDecision(
                approve=False,
                reason=f"oracle timed out after {self.timeout}s",
                error=ErrorCode.TIMEOUT,
                source=self.name,
            )
        except (aiohttp.ClientError, ValueError, KeyError, TypeError) as e:
            self.failures += 1
            logger.warning(f"Reasoning oracle {self.name} failed: {e}")
            decision = OracleDecision(
                approve=False,
                reason=f"oracle unavailable: {e}",
                error=ErrorCode.REASONING_DECLINED,
                source=self.name,
            )

        decision.latency_ms = (time.monotonic() - started) * 1000
        if not decision.approve and decision.error is None:
            decision.error = ErrorCode.REASONING_DECLINED
        return decision

    async def close(self):
        pass

    def get_stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "calls": self.calls,
            "timeouts": self.timeouts,
            "failures": self.failures,
        }


class HttpReasoningOracle(ReasoningOracle):
    """
    POSTs the decision context as JSON

    The service answers {"approve": bool, "reason": str, "confidence": float}
    and may add "direction" to resolve a signal with an unrecognised token.
    """

    name = "http"

    def __init__(self, endpoint: str, api_key: str = "", timeout: float = 10.0,
                 session: Optional[aiohttp.ClientSession] = None):
        super().__init__(timeout)
        self.endpoint = endpoint
        self.api_key = api_key
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def _decide(self, context: Dict[str, Any]) -> OracleDecision:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        session = await self._get_session()
        async with session.post(self.endpoint, json=context, headers=headers) as response:
            if response.status != 200:
                text = await response.text()
                self.failures += 1
                logger.warning(f"Reasoning oracle returned {response.status}: {text[:200]}")
                return OracleDecision(
                    approve=False,
                    reason=f"oracle HTTP {response.status}",
                    error=ErrorCode.REASONING_DECLINED,
                    source=self.name,
                )
            data = await response.json(content_type=None)

        return OracleDecision(
            approve=bool(data["approve"]),
            reason=str(data.get("reason", "")),
            confidence=float(data.get("confidence", 0.0)),
            direction=str(data["direction"]).upper() if data.get("direction") else None,
            source=self.name,
        )

    async def close(self):
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()


class CallableReasoningOracle(ReasoningOracle):
    """Wraps a coroutine function; used for simulation and tests"""

    name = "callable"

    def __init__(self, func: Callable[[Dict[str, Any]], Awaitable[OracleDecision]], timeout: float = 10.0):
        super().__init__(timeout)
        self.func = func
        self.contexts: List[Dict[str, Any]] = []

    async def _decide(self, context: Dict[str, Any]) -> OracleDecision:
        self.contexts.append(context)
        return await self.func(context)


class FallbackReasoningOracle(ReasoningOracle):
    """
    Local scoring used when no reasoning service is configured

    Closes are approved (they only reduce exposure). Opens are scored from
    verdict alignment and the Fear & Greed reading and approved above
    ``min_score``.
    """

    name = "fallback"

    def __init__(self, min_score: float = 0.5, timeout: float = 1.0):
        super().__init__(timeout)
        self.min_score = min_score

    async def _decide(self, context: Dict[str, Any]) -> OracleDecision:
        signal = context.get("signal") or {}
        verdict = context.get("verdict") or {}
        direction = signal.get("direction")

        if direction is None:
            return OracleDecision(False, "unrecognised direction", source=self.name)

        if signal.get("close_intent"):
            return OracleDecision(True, "close reduces exposure", confidence=0.7, source=self.name)

        factors = []
        verdict_direction = verdict.get("direction")
        verdict_confidence = float(verdict.get("confidence", 0.0))
        if verdict_direction == direction:
            score = verdict_confidence
            factors.append(f"verdict favours {direction}")
        elif verdict_direction == "BOTH":
            score = verdict_confidence * 0.8
            factors.append("verdict neutral")
        else:
            score = 0.0
            factors.append(f"verdict is {verdict_direction}")

        fear_greed = float((verdict.get("snapshot") or {}).get("fear_greed", 50.0))
        if fear_greed < 25 and direction == "LONG":
            score += 0.1
            factors.append("extreme fear (contrarian)")
        elif fear_greed > 75 and direction == "SHORT":
            score += 0.1
            factors.append("extreme greed (contrarian)")
        elif fear_greed > 75 and direction == "LONG":
            score -= 0.1
            factors.append("extreme greed (caution)")

        if signal.get("strong"):
            score += 0.1
            factors.append("strong signal")

        score = max(0.0, min(1.0, score))
        approve = score >= self.min_score
        return OracleDecision(
            approve=approve,
            reason=", ".join(factors),
            confidence=score,
            source=self.name,
            factors=factors,
        )
