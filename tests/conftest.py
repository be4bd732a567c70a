"""
Shared fixtures: a virtual clock, in-memory collaborators and a fan-out
harness wired to simulated exchanges
"""

from datetime import datetime, timezone
from typing import Dict, Optional

import pytest

from signal_trader.core.collaborators import InMemoryCredentialStore, InMemoryPersistence
from signal_trader.core.decision_router import Decision, RouteDecision
from signal_trader.core.diagnostics import CredentialRegistry
from signal_trader.core.exchange_client import ConnectorPool, SimulatedExchangeClient, default_registry
from signal_trader.core.execution_orchestrator import ExecutionOrchestrator
from signal_trader.core.models import (
    Direction,
    Environment,
    ExchangeCredential,
    MarketVerdict,
    PlanTier,
    Priority,
    RiskLimits,
    SentimentSnapshot,
    Signal,
    User,
    ValidationStatus,
    VerdictDirection,
)
from signal_trader.core.risk_policy import RiskPolicy
from signal_trader.core.scheduler import VirtualClock
from signal_trader.core.signal_intake import ClassifiedSignal, SignalIntake
from signal_trader.core.state_store import StateStore
from signal_trader.utils.config_loader import ExecutionConfig


NOW = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_credential(
    user_id: str,
    exchange: str = "bybit",
    status: ValidationStatus = ValidationStatus.VALID,
    environment: Environment = Environment.MAINNET,
    active: bool = True,
) -> ExchangeCredential:
    return ExchangeCredential(
        user_id=user_id,
        exchange=exchange,
        environment=environment,
        key_ref=f"{user_id}-key",
        validation_status=status,
        active=active,
    )


def make_user(
    user_id: str,
    tier: PlanTier = PlanTier.BASIC,
    exchange: str = "bybit",
    status: ValidationStatus = ValidationStatus.VALID,
    max_open_positions: int = 2,
    max_leverage: Optional[int] = None,
) -> User:
    return User(
        id=user_id,
        tier=tier,
        credentials=[make_credential(user_id, exchange, status)],
        risk_limits=RiskLimits(max_open_positions=max_open_positions, max_leverage=max_leverage),
    )


def make_verdict(
    direction: VerdictDirection,
    confidence: float = 0.85,
    at: datetime = NOW,
    fear_greed: float = 50.0,
) -> MarketVerdict:
    return MarketVerdict(
        direction=direction,
        confidence=confidence,
        generated_at=at,
        snapshot=SentimentSnapshot(fear_greed=fear_greed, collected_at=at),
        reason="fixture",
    )


def make_envelope(direction: str = "LONG", instrument: str = "BTCUSDT", timestamp=None, **extra) -> Dict:
    envelope = {
        "instrument": instrument,
        "direction": direction,
        "source": "tradingview",
        "timestamp": (timestamp or NOW).isoformat(),
    }
    envelope.update(extra)
    return envelope


def make_signal(
    direction: Optional[Direction] = Direction.LONG,
    instrument: str = "BTCUSDT",
    strong: bool = False,
    close: bool = False,
    signal_id: str = "sig-1",
    price: Optional[float] = None,
    exchange: Optional[str] = "bybit",
) -> Signal:
    return Signal(
        id=signal_id,
        instrument=instrument,
        direction=direction,
        close_intent=close,
        strong=strong,
        source="tradingview",
        timestamp=NOW,
        received_at=NOW,
        expires_at=NOW.replace(minute=5),
        raw_type=direction.value if direction else "???",
        price=price,
        exchange=exchange,
    )


def approved(direction: Direction = Direction.LONG, close: bool = False) -> Decision:
    route = RouteDecision(False, "NORMAL_FAST_PATH", Priority.NORMAL)
    return Decision(True, route, direction=direction, close=close)


class Harness:
    """Orchestrator with in-memory collaborators and one simulated exchange per credential"""

    def __init__(self, clock: VirtualClock, config: Optional[ExecutionConfig] = None):
        self.clock = clock
        self.credential_store = InMemoryCredentialStore()
        self.persistence = InMemoryPersistence()
        self.registry = CredentialRegistry()
        self.state_store = StateStore()
        self.pool = ConnectorPool(default_registry, self.credential_store)
        self.risk_policy = RiskPolicy()
        self.suspects = []
        self.orchestrator = ExecutionOrchestrator(
            registry=self.registry,
            pool=self.pool,
            state_store=self.state_store,
            risk_policy=self.risk_policy,
            persistence=self.persistence,
            config=config or ExecutionConfig(),
            clock=clock,
            on_suspect=self.suspects.append,
        )
        self.users = []
        self.clients: Dict[str, SimulatedExchangeClient] = {}

    def add_user(
        self, user: User, client: Optional[SimulatedExchangeClient] = None, **client_options
    ) -> SimulatedExchangeClient:
        client = client or SimulatedExchangeClient(environment=Environment.MAINNET, **client_options)
        for credential in user.credentials:
            self.pool.inject(credential.key, client)
        self.credential_store.add_user(user)
        self.registry.load([user])
        self.users.append(user)
        self.orchestrator.set_users(self.users)
        self.clients[user.id] = client
        return client

    def classify(self, signal: Signal) -> ClassifiedSignal:
        return SignalIntake().classify(signal, self.state_store.open_positions_by_instrument())


@pytest.fixture
def clock():
    return VirtualClock(NOW)


@pytest.fixture
def harness(clock):
    return Harness(clock)


@pytest.fixture
def long_verdict():
    return make_verdict(VerdictDirection.LONG)
