"""
Core Data Model
Users, credentials, signals, verdicts, positions, balances and execution records
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from enum import Enum, IntEnum
from typing import Any, Dict, List, NamedTuple, Optional

from .errors import ErrorCode


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Environment(Enum):
    """Exchange environment"""
    MAINNET = "mainnet"
    TESTNET = "testnet"


class ValidationStatus(Enum):
    """Credential validation state (written only by diagnostics)"""
    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"


class PlanTier(IntEnum):
    """Subscription tiers, ordered FREE < BASIC < PREMIUM < VIP"""
    FREE = 0
    BASIC = 1
    PREMIUM = 2
    VIP = 3

    @classmethod
    def parse(cls, value: Any) -> "PlanTier":
        if isinstance(value, cls):
            return value
        return cls[str(value).strip().upper()]


class Direction(Enum):
    """Position / signal direction"""
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def opposite(self) -> "Direction":
        return Direction.SHORT if self is Direction.LONG else Direction.LONG

    @property
    def order_side(self) -> str:
        """Exchange order side that opens this direction"""
        return "BUY" if self is Direction.LONG else "SELL"


class VerdictDirection(Enum):
    """Process-wide directional gate"""
    LONG = "LONG"
    SHORT = "SHORT"
    BOTH = "BOTH"
    NONE = "NONE"

    def permits(self, direction: Direction) -> bool:
        if self is VerdictDirection.BOTH:
            return True
        if self is VerdictDirection.NONE:
            return False
        return self.value == direction.value


class SignalClass(Enum):
    """Signal classification consumed by the decision router"""
    NORMAL = "NORMAL"
    STRONG = "STRONG"
    CLOSE_WITH_POSITION = "CLOSE_WITH_POSITION"
    CLOSE_WITHOUT_POSITION = "CLOSE_WITHOUT_POSITION"
    UNCLASSIFIED = "UNCLASSIFIED"


class Priority(IntEnum):
    LOW = 0
    NORMAL = 1
    HIGH = 2


class ExecutionOutcome(Enum):
    EXECUTED = "executed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ProbeCategory(Enum):
    """Diagnostic probe categories, in execution order"""
    CONNECTIVITY = "connectivity"
    AUTHENTICATION = "authentication"
    PERMISSIONS = "permissions"
    BALANCE = "balance"
    TRADING = "trading"
    MARKET_DATA = "market_data"


class HealthStatus(Enum):
    """Overall connector health, best first"""
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    PARTIAL = "PARTIAL"
    LIMITED = "LIMITED"
    FAILED = "FAILED"


# Tuple keys

class CredentialKey(NamedTuple):
    user_id: str
    exchange: str
    environment: Environment

    def masked(self) -> str:
        return f"{self.user_id}@{self.exchange}/{self.environment.value}"


class BalanceKey(NamedTuple):
    user_id: str
    exchange: str
    asset: str


class PositionKey(NamedTuple):
    user_id: str
    exchange: str
    instrument: str
    side: Direction


# Entities

@dataclass
class RiskLimits:
    """Per-user risk limits layered on top of the tier policy"""
    max_open_positions: int = 2
    max_leverage: Optional[int] = None
    max_position_fraction: Optional[float] = None


@dataclass(frozen=True)
class ExchangeCredential:
    """A user's API key registration on one exchange environment"""
    user_id: str
    exchange: str
    environment: Environment = Environment.MAINNET
    key_ref: str = ""
    validation_status: ValidationStatus = ValidationStatus.PENDING
    last_checked: Optional[datetime] = None
    active: bool = True

    @property
    def key(self) -> CredentialKey:
        return CredentialKey(self.user_id, self.exchange, self.environment)

    @property
    def is_usable(self) -> bool:
        return self.active and self.validation_status is ValidationStatus.VALID


@dataclass
class User:
    id: str
    tier: PlanTier = PlanTier.BASIC
    credentials: List[ExchangeCredential] = field(default_factory=list)
    risk_limits: RiskLimits = field(default_factory=RiskLimits)
    active: bool = True
    name: str = ""


@dataclass
class Signal:
    """Inbound directional alert for one instrument"""
    id: str
    instrument: str
    direction: Optional[Direction]
    close_intent: bool
    strong: bool
    source: str
    timestamp: datetime
    received_at: datetime
    expires_at: datetime
    raw_type: str = ""
    price: Optional[float] = None
    exchange: Optional[str] = None

    def is_actionable(self, now: datetime) -> bool:
        return now < self.expires_at

    def age_seconds(self, now: datetime) -> float:
        return (now - self.timestamp).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "instrument": self.instrument,
            "direction": self.direction.value if self.direction else None,
            "close_intent": self.close_intent,
            "strong": self.strong,
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
            "received_at": self.received_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "raw_type": self.raw_type,
            "price": self.price,
            "exchange": self.exchange,
        }


@dataclass
class SentimentSnapshot:
    """Inputs the verdict was derived from"""
    fear_greed: float = 50.0
    btc_dominance: float = 50.0
    dominance_trend: str = "STABLE"
    pm_plus: float = 50.0
    pm_minus: float = 50.0
    vw_delta: float = 0.0
    instruments_sampled: int = 0
    feeds_ok: Dict[str, bool] = field(default_factory=dict)
    collected_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["collected_at"] = self.collected_at.isoformat()
        return data


@dataclass
class MarketVerdict:
    direction: VerdictDirection
    confidence: float
    generated_at: datetime
    snapshot: SentimentSnapshot = field(default_factory=SentimentSnapshot)
    source: str = "MARKET_PULSE"
    reason: str = ""

    @property
    def allows_execution(self) -> bool:
        return self.direction is not VerdictDirection.NONE

    def permits(self, direction: Direction) -> bool:
        return self.direction.permits(direction)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "direction": self.direction.value,
            "confidence": round(self.confidence, 4),
            "generated_at": self.generated_at.isoformat(),
            "source": self.source,
            "reason": self.reason,
            "snapshot": self.snapshot.to_dict(),
        }


@dataclass
class Position:
    user_id: str
    exchange: str
    instrument: str
    side: Direction
    size: float
    entry_price: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    leverage: int = 1
    is_open: bool = True
    opened_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    mark_price: Optional[float] = None
    unrealized_pnl: float = 0.0

    @property
    def key(self) -> PositionKey:
        return PositionKey(self.user_id, self.exchange, self.instrument, self.side)

    @property
    def has_protection(self) -> bool:
        return self.stop_loss is not None and self.take_profit is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "exchange": self.exchange,
            "instrument": self.instrument,
            "side": self.side.value,
            "size": self.size,
            "entry_price": self.entry_price,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "leverage": self.leverage,
            "is_open": self.is_open,
            "opened_at": self.opened_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "mark_price": self.mark_price,
            "unrealized_pnl": self.unrealized_pnl,
        }


@dataclass
class Balance:
    user_id: str
    exchange: str
    asset: str
    total: float
    available: float
    last_updated: datetime = field(default_factory=utc_now)

    @property
    def key(self) -> BalanceKey:
        return BalanceKey(self.user_id, self.exchange, self.asset)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "exchange": self.exchange,
            "asset": self.asset,
            "total": self.total,
            "available": self.available,
            "last_updated": self.last_updated.isoformat(),
        }


@dataclass
class OrderRequest:
    """Sized order handed to a connector"""
    instrument: str
    side: Direction
    quantity: float
    leverage: int = 1
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    reduce_only: bool = False
    client_order_id: Optional[str] = None


@dataclass(frozen=True)
class InstrumentRules:
    """Exchange lot and price increments for one instrument"""
    instrument: str
    qty_step: float
    tick_size: float
    min_qty: float = 0.0
    min_notional: float = 0.0

    @staticmethod
    def _to_increment(value: float, step: float, rounding: str) -> float:
        if step <= 0:
            return value
        increment = Decimal(str(step))
        units = (Decimal(str(value)) / increment).to_integral_value(rounding=rounding)
        return float(units * increment)

    def floor_quantity(self, quantity: float) -> float:
        """Largest multiple of the lot step not above quantity"""
        return self._to_increment(quantity, self.qty_step, ROUND_DOWN)

    def round_price(self, price: float) -> float:
        return self._to_increment(price, self.tick_size, ROUND_HALF_UP)


@dataclass
class OrderResult:
    order_id: str
    instrument: str
    side: Direction
    quantity: float
    price: float
    status: str
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class DiagnosticResult:
    """Outcome of one probe category against one credential"""
    connector: CredentialKey
    category: ProbeCategory
    success: bool
    status: str
    timestamp: datetime = field(default_factory=utc_now)
    error_kind: Optional[ErrorCode] = None
    raw_code: Optional[str] = None
    latency_ms: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connector": self.connector.masked(),
            "category": self.category.value,
            "success": self.success,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "error_kind": self.error_kind.value if self.error_kind else None,
            "raw_code": self.raw_code,
            "latency_ms": round(self.latency_ms, 2),
            "details": self.details,
        }


@dataclass
class ExecutionRecord:
    signal_id: str
    user_id: str
    exchange: str
    outcome: ExecutionOutcome
    error: Optional[ErrorCode] = None
    latency_ms: float = 0.0
    order_id: Optional[str] = None
    notional: float = 0.0
    quantity: float = 0.0
    leverage: int = 0
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    message: str = ""
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signal_id": self.signal_id,
            "user_id": self.user_id,
            "exchange": self.exchange,
            "outcome": self.outcome.value,
            "error": self.error.value if self.error else None,
            "latency_ms": round(self.latency_ms, 2),
            "order_id": self.order_id,
            "notional": round(self.notional, 8),
            "quantity": self.quantity,
            "leverage": self.leverage,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
        }
