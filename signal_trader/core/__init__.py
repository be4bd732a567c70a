"""
Signal Trader Core Module
"""

from .errors import (
    ErrorCode,
    EngineError,
    SignalRejected,
    SizingError,
    ConnectorError,
    PersistenceError,
    CREDENTIAL_ERRORS,
    REFUSED_ERRORS
)
from .models import (
    Environment,
    ValidationStatus,
    PlanTier,
    Direction,
    VerdictDirection,
    SignalClass,
    Priority,
    ExecutionOutcome,
    ProbeCategory,
    HealthStatus,
    CredentialKey,
    BalanceKey,
    PositionKey,
    RiskLimits,
    ExchangeCredential,
    User,
    Signal,
    SentimentSnapshot,
    MarketVerdict,
    Position,
    Balance,
    OrderRequest,
    InstrumentRules,
    OrderResult,
    DiagnosticResult,
    ExecutionRecord
)
from .exchange_client import (
    ExchangeClient,
    ExchangeResponse,
    ConnectorRegistry,
    ConnectorPool,
    SimulatedExchangeClient,
    default_registry,
    register_connector
)
from .bybit_client import BybitClient
from .binance_client import BinanceClient
from .scheduler import (
    Clock,
    SystemClock,
    VirtualClock,
    CancellationToken,
    PeriodicTask,
    TaskScheduler
)
from .state_store import StateStore
from .collaborators import (
    CredentialStore,
    InMemoryCredentialStore,
    YamlCredentialStore,
    StoredCredential,
    Persistence,
    InMemoryPersistence,
    JsonFilePersistence,
    Notifier,
    LoggingNotifier,
    WebhookNotifier,
    Alert
)
from .diagnostics import (
    ConnectorDiagnostics,
    CredentialRegistry,
    DiagnosticReport,
    CriticalIssue
)
from .health_monitor import HealthMonitor
from .sentiment_feeds import (
    FearGreedFeed,
    DominanceFeed,
    MarketPulseFeed,
    compute_market_pulse
)
from .market_sentiment import MarketSentimentAggregator
from .signal_intake import SignalIntake, ClassifiedSignal
from .reasoning import (
    ReasoningOracle,
    OracleDecision,
    HttpReasoningOracle,
    CallableReasoningOracle,
    FallbackReasoningOracle
)
from .decision_router import DecisionRouter, RouterMetrics, RouteDecision, Decision
from .risk_policy import RiskPolicy, SizingResult
from .execution_orchestrator import ExecutionOrchestrator, RunSummary, RunStatus
from .trading_engine import TradingEngine

__all__ = [
    # Errors
    "ErrorCode",
    "EngineError",
    "SignalRejected",
    "SizingError",
    "ConnectorError",
    "PersistenceError",
    "CREDENTIAL_ERRORS",
    "REFUSED_ERRORS",
    # Model
    "Environment",
    "ValidationStatus",
    "PlanTier",
    "Direction",
    "VerdictDirection",
    "SignalClass",
    "Priority",
    "ExecutionOutcome",
    "ProbeCategory",
    "HealthStatus",
    "CredentialKey",
    "BalanceKey",
    "PositionKey",
    "RiskLimits",
    "ExchangeCredential",
    "User",
    "Signal",
    "SentimentSnapshot",
    "MarketVerdict",
    "Position",
    "Balance",
    "OrderRequest",
    "InstrumentRules",
    "OrderResult",
    "DiagnosticResult",
    "ExecutionRecord",
    # Connectors
    "ExchangeClient",
    "ExchangeResponse",
    "ConnectorRegistry",
    "ConnectorPool",
    "SimulatedExchangeClient",
    "BybitClient",
    "BinanceClient",
    "default_registry",
    "register_connector",
    # Scheduler
    "Clock",
    "SystemClock",
    "VirtualClock",
    "CancellationToken",
    "PeriodicTask",
    "TaskScheduler",
    # State and collaborators
    "StateStore",
    "CredentialStore",
    "InMemoryCredentialStore",
    "YamlCredentialStore",
    "StoredCredential",
    "Persistence",
    "InMemoryPersistence",
    "JsonFilePersistence",
    "Notifier",
    "LoggingNotifier",
    "WebhookNotifier",
    "Alert",
    # Diagnostics
    "ConnectorDiagnostics",
    "CredentialRegistry",
    "DiagnosticReport",
    "CriticalIssue",
    "HealthMonitor",
    # Sentiment
    "FearGreedFeed",
    "DominanceFeed",
    "MarketPulseFeed",
    "compute_market_pulse",
    "MarketSentimentAggregator",
    # Signal path
    "SignalIntake",
    "ClassifiedSignal",
    "ReasoningOracle",
    "OracleDecision",
    "HttpReasoningOracle",
    "CallableReasoningOracle",
    "FallbackReasoningOracle",
    "DecisionRouter",
    "RouterMetrics",
    "RouteDecision",
    "Decision",
    "RiskPolicy",
    "SizingResult",
    # Execution
    "ExecutionOrchestrator",
    "RunSummary",
    "RunStatus",
    # Engine
    "TradingEngine"
]
