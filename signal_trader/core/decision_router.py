"""
Decision Router
Chooses the algorithmic fast path or the reasoning oracle for each classified
signal, then applies the market verdict gate
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

from .errors import ErrorCode
from .models import Direction, MarketVerdict, Position, Priority, SignalClass
from .reasoning import OracleDecision, ReasoningOracle
from .signal_intake import ClassifiedSignal, matching_positions

logger = logging.getLogger(__name__)


@dataclass
class RouteDecision:
    route_to_reasoning: bool
    reason_code: str
    priority: Priority
    no_op: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "route_to_reasoning": self.route_to_reasoning,
            "reason_code": self.reason_code,
            "priority": self.priority.name,
            "no_op": self.no_op,
        }


@dataclass
class RouterMetrics:
    """Run counters for cost reporting; reset explicitly"""
    total: int = 0
    reasoning: int = 0
    fast_path: int = 0
    by_class: Dict[str, int] = field(default_factory=dict)

    def record(self, signal_class: SignalClass, decision: RouteDecision):
        self.total += 1
        if decision.route_to_reasoning:
            self.reasoning += 1
        else:
            self.fast_path += 1
        self.by_class[signal_class.value] = self.by_class.get(signal_class.value, 0) + 1

    def reset(self):
        self.total = 0
        self.reasoning = 0
        self.fast_path = 0
        self.by_class = {}

    def savings_report(self, cost_per_reasoning_call: float = 0.0) -> Dict[str, Any]:
        """Share of signals settled without the oracle"""
        saved_pct = (self.fast_path / self.total * 100) if self.total else 0.0
        return {
            "total": self.total,
            "reasoning": self.reasoning,
            "fast_path": self.fast_path,
            "fast_path_pct": round(saved_pct, 2),
            "estimated_savings": round(self.fast_path * cost_per_reasoning_call, 4),
            "by_class": dict(self.by_class),
        }


@dataclass
class Decision:
    """Final approve/reject for one signal, before per-user fan-out"""
    approved: bool
    route: RouteDecision
    reason_code: Optional[ErrorCode] = None
    direction: Optional[Direction] = None
    close: bool = False
    oracle: Optional[OracleDecision] = None
    message: str = ""

    @property
    def no_op(self) -> bool:
        return self.route.no_op

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approved": self.approved,
            "route": self.route.to_dict(),
            "reason_code": self.reason_code.value if self.reason_code else None,
            "direction": self.direction.value if self.direction else None,
            "close": self.close,
            "oracle": self.oracle.to_dict() if self.oracle else None,
            "message": self.message,
        }


# Classification -> (route_to_reasoning, reason_code, priority, no_op)
ROUTING_TABLE = {
    SignalClass.STRONG: (True, "STRONG_SIGNAL", Priority.HIGH, False),
    SignalClass.CLOSE_WITH_POSITION: (True, "CLOSE_WITH_POSITION", Priority.HIGH, False),
    SignalClass.CLOSE_WITHOUT_POSITION: (False, "CLOSE_WITHOUT_POSITION", Priority.LOW, True),
    SignalClass.NORMAL: (False, "NORMAL_FAST_PATH", Priority.NORMAL, False),
    SignalClass.UNCLASSIFIED: (True, "UNCLASSIFIED_FALLBACK", Priority.NORMAL, False),
}


class DecisionRouter:
    """
    Routing policy:
      STRONG                 -> reasoning
      CLOSE_WITH_POSITION    -> reasoning
      CLOSE_WITHOUT_POSITION -> algorithmic no-op
      NORMAL                 -> algorithmic fast path
      UNCLASSIFIED           -> reasoning
    """

    def __init__(self, metrics: Optional[RouterMetrics] = None):
        self.metrics = metrics if metrics is not None else RouterMetrics()

    def _effective_class(
        self,
        classified: ClassifiedSignal,
        open_positions_by_instrument: Optional[Dict[str, List[Position]]],
    ) -> SignalClass:
        """A close only counts as CLOSE_WITH_POSITION while a matching position is open"""
        if classified.signal_class is not SignalClass.CLOSE_WITH_POSITION:
            return classified.signal_class
        if open_positions_by_instrument is None:
            return classified.signal_class
        if matching_positions(classified.signal, open_positions_by_instrument):
            return SignalClass.CLOSE_WITH_POSITION
        return SignalClass.CLOSE_WITHOUT_POSITION

    def route(
        self,
        classified: ClassifiedSignal,
        open_positions_by_instrument: Optional[Dict[str, List[Position]]] = None,
    ) -> RouteDecision:
        signal_class = self._effective_class(classified, open_positions_by_instrument)
        to_reasoning, reason_code, priority, no_op = ROUTING_TABLE[signal_class]
        decision = RouteDecision(
            route_to_reasoning=to_reasoning,
            reason_code=reason_code,
            priority=priority,
            no_op=no_op,
        )
        self.metrics.record(signal_class, decision)
        logger.debug(
            f"Routed {classified.signal.id} ({signal_class.value}) -> "
            f"{'reasoning' if to_reasoning else 'fast path'}"
        )
        return decision

    async def decide(
        self,
        classified: ClassifiedSignal,
        verdict: MarketVerdict,
        oracle: Optional[ReasoningOracle],
        open_positions_by_instrument: Optional[Dict[str, List[Position]]] = None,
    ) -> Decision:
        """Route, then settle the signal on the fast path or through the oracle"""
        route = self.route(classified, open_positions_by_instrument)
        signal = classified.signal
        close = signal.close_intent

        # NONE blocks every order, closes included
        if not verdict.allows_execution:
            return Decision(
                approved=False,
                route=route,
                reason_code=ErrorCode.NO_VERDICT,
                direction=signal.direction,
                close=close,
                message=f"verdict NONE ({verdict.source})",
            )

        if route.no_op:
            return Decision(
                approved=False,
                route=route,
                direction=signal.direction,
                close=True,
                message="close signal without a matching open position",
            )

        if not route.route_to_reasoning:
            return self._gate(route, signal.direction, verdict, close)

        # Direction gate first so a blocked open never costs an oracle call
        if not close and signal.direction is not None and not verdict.permits(signal.direction):
            return self._gate(route, signal.direction, verdict, close)

        if oracle is None:
            return Decision(
                approved=False,
                route=route,
                reason_code=ErrorCode.REASONING_DECLINED,
                direction=signal.direction,
                close=close,
                message="no reasoning oracle configured",
            )

        context = {
            "signal": signal.to_dict(),
            "class": classified.signal_class.value,
            "route": route.to_dict(),
            "verdict": verdict.to_dict(),
            "positions": [p.to_dict() for p in classified.matching_positions],
        }
        answer = await oracle.decide(context)
        logger.info(
            f"Oracle {answer.source} on {signal.id}: "
            f"{'approve' if answer.approve else 'decline'} ({answer.confidence:.2f}) {answer.reason}"
        )

        if not answer.approve:
            return Decision(
                approved=False,
                route=route,
                reason_code=answer.error or ErrorCode.REASONING_DECLINED,
                direction=signal.direction,
                close=close,
                oracle=answer,
                message=answer.reason,
            )

        direction = signal.direction
        if direction is None and answer.direction in (d.value for d in Direction):
            direction = Direction(answer.direction)
        if direction is None:
            return Decision(
                approved=False,
                route=route,
                reason_code=ErrorCode.REASONING_DECLINED,
                close=close,
                oracle=answer,
                message="oracle approved without a tradable direction",
            )

        if close:
            return Decision(True, route, direction=direction, close=True, oracle=answer, message=answer.reason)

        decision = self._gate(route, direction, verdict, close)
        decision.oracle = answer
        return decision

    def _gate(
        self,
        route: RouteDecision,
        direction: Optional[Direction],
        verdict: MarketVerdict,
        close: bool,
    ) -> Decision:
        if direction is None:
            return Decision(False, route, ErrorCode.INVALID_SIGNAL, message="no direction")
        if not close and not verdict.permits(direction):
            return Decision(
                approved=False,
                route=route,
                reason_code=ErrorCode.DIRECTION_NOT_ALLOWED,
                direction=direction,
                close=close,
                message=f"verdict {verdict.direction.value} blocks {direction.value}",
            )
        return Decision(True, route, direction=direction, close=close)
