"""
Signal Trading Engine
Wires sentiment, intake, routing, sizing, fan-out and diagnostics together
"""

import asyncio
from typing import Any, Dict, Iterable, List, Optional
import logging

from .collaborators import (
    CredentialStore,
    JsonFilePersistence,
    LoggingNotifier,
    Notifier,
    Persistence,
    WebhookNotifier,
    YamlCredentialStore,
)
from .decision_router import DecisionRouter, RouterMetrics
from .diagnostics import ConnectorDiagnostics, CredentialRegistry, DiagnosticReport
from .errors import CREDENTIAL_ERRORS, EngineError, ErrorCode, PersistenceError, SignalRejected
from .exchange_client import ConnectorPool, ConnectorRegistry, default_registry
from .execution_orchestrator import ExecutionOrchestrator, RunStatus, RunSummary
from .health_monitor import HealthMonitor
from .market_sentiment import MarketSentimentAggregator
from .models import Balance, CredentialKey, Direction, Position, User
from .reasoning import FallbackReasoningOracle, HttpReasoningOracle, ReasoningOracle
from .risk_policy import RiskPolicy
from .scheduler import Clock, SystemClock, TaskScheduler
from .signal_intake import SignalIntake
from .state_store import StateStore
from ..utils.config_loader import ConfigManager, get_config

# Bybit and Binance register themselves on import
from . import bybit_client, binance_client  # noqa: F401

logger = logging.getLogger(__name__)


class TradingEngine:
    """
    Signal trading engine

    Coordinates:
    - Periodic market verdict refresh
    - Signal intake, routing and the reasoning oracle
    - Tier-bounded sizing and multi-user fan-out
    - Balance/position refresh and credential health checks
    """

    def __init__(
        self,
        config: Optional[ConfigManager] = None,
        simulated: bool = False,
        clock: Optional[Clock] = None,
        credential_store: Optional[CredentialStore] = None,
        persistence: Optional[Persistence] = None,
        notifier: Optional[Notifier] = None,
        oracle: Optional[ReasoningOracle] = None,
        connectors: Optional[ConnectorRegistry] = None,
        sentiment: Optional[MarketSentimentAggregator] = None,
        simulated_options: Optional[Dict[str, Any]] = None,
    ):
        self.config = config or get_config()
        self.simulated = simulated
        self.clock = clock or SystemClock()

        paths = self.config.paths
        self.credential_store = credential_store or YamlCredentialStore(paths.users_file)
        self.persistence = persistence or JsonFilePersistence(paths.data_dir)
        self.notifier = notifier or self._build_notifier()
        self.oracle = oracle if oracle is not None else self._build_oracle()

        self._init_components(connectors, sentiment, simulated_options)

        self.users: List[User] = []
        self.initialized = False
        self.running = False

        mode = "SIMULATED" if simulated else "LIVE"
        logger.info(f"Trading engine created ({mode} mode, exchanges: {', '.join(self.exchanges)})")

    def _build_notifier(self) -> Notifier:
        url = self.config.diagnostics.alert_webhook_url
        if url:
            return WebhookNotifier(url)
        return LoggingNotifier()

    def _build_oracle(self) -> Optional[ReasoningOracle]:
        reasoning = self.config.reasoning
        if not reasoning.enabled:
            return None
        if reasoning.endpoint:
            return HttpReasoningOracle(reasoning.endpoint, reasoning.api_key, reasoning.timeout_seconds)
        logger.info("No reasoning endpoint configured, using local fallback scoring")
        return FallbackReasoningOracle()

    def _init_components(self, connectors, sentiment, simulated_options):
        """Initialize all engine components"""
        execution = self.config.execution
        exchange_configs = {
            name: cfg for name, cfg in self.config.exchanges.items() if cfg.enabled
        }
        self.exchanges = sorted(exchange_configs)

        # Connectors
        self.connectors = connectors or default_registry
        self.pool = ConnectorPool(
            self.connectors,
            self.credential_store,
            exchange_options={
                name: {"recv_window": cfg.recv_window, "timeout": cfg.timeout_seconds}
                for name, cfg in exchange_configs.items()
            },
            simulated=self.simulated,
            simulated_options=simulated_options,
        )

        # Shared state
        self.state_store = StateStore()
        self.registry = CredentialRegistry(on_invalidated=self.pool.invalidate)

        # Sentiment
        self.sentiment = sentiment or MarketSentimentAggregator(
            config=self.config.sentiment,
            clock=self.clock,
            persistence=self.persistence,
        )

        # Signal path
        self.intake = SignalIntake(
            self.config.signals,
            supported_exchanges=[e for e in self.exchanges if self.pool.supports(e)],
        )
        self.router_metrics = RouterMetrics()
        self.router = DecisionRouter(self.router_metrics)
        self.risk_policy = RiskPolicy(self.config.tiers, self.config.protection)

        # Diagnostics
        self.diagnostics = ConnectorDiagnostics(
            self.registry,
            self.config.diagnostics,
            state_store=self.state_store,
            persistence=self.persistence,
            settlement_asset=execution.settlement_asset,
        )
        self.health_monitor = HealthMonitor(
            self.diagnostics, self.registry, self.pool, self.notifier
        )

        # Execution
        self.orchestrator = ExecutionOrchestrator(
            registry=self.registry,
            pool=self.pool,
            state_store=self.state_store,
            risk_policy=self.risk_policy,
            persistence=self.persistence,
            config=execution,
            clock=self.clock,
            on_suspect=self.health_monitor.mark_suspect,
        )

        # Periodic tasks
        self.scheduler = TaskScheduler(self.clock)
        self.scheduler.every(
            "sentiment", self.config.sentiment.refresh_minutes * 60, self.sentiment.refresh
        )
        self.scheduler.every(
            "balances", execution.balance_refresh_minutes * 60, self.refresh_balances
        )
        self.scheduler.every(
            "health", self.config.diagnostics.monitor_interval_minutes * 60, self.check_health,
            run_immediately=False,
        )

    async def initialize(self, validate: bool = True) -> bool:
        """Load users, validate pending credentials and take a first balance snapshot"""
        logger.info("Initializing trading engine...")
        await self.reload_users()

        if validate:
            pending = [
                c.key for c in self.registry.all()
                if c.active and not c.is_usable and self.pool.supports(c.exchange)
            ]
            if pending:
                logger.info(f"Validating {len(pending)} pending credentials")
                await self.run_diagnostics(pending, full=False)

        await self.refresh_balances()
        self.initialized = True
        usable = sum(1 for c in self.registry.all() if c.is_usable)
        logger.info(f"Trading engine initialized: {len(self.users)} users, {usable} usable credentials")
        return True

    async def reload_users(self):
        self.users = await self.credential_store.list_users()
        self.registry.load(self.users)
        await self.pool.evict_rotated()
        self.orchestrator.set_users(self.users)

    # Signal processing

    async def process_signal(self, envelope: Dict[str, Any]) -> RunSummary:
        """
        Process one inbound signal end to end

        Raises PersistenceError if the run summary cannot be recorded; every
        other failure is reported through the summary's reason code.
        """
        now = self.clock.now()
        try:
            signal = self.intake.parse(envelope, now)
        except SignalRejected as e:
            summary = RunSummary(
                signal_id=str(envelope.get("id", "-")) if isinstance(envelope, dict) else "-",
                status=RunStatus.REJECTED,
                reason_code=e.code,
                message=e.message,
                started_at=now,
                finished_at=self.clock.now(),
            )
            await self._record_signal({"envelope": envelope, "rejected": e.code.value})
            await self._persist_summary(summary)
            return summary

        open_positions = self.state_store.open_positions_by_instrument()
        classified = self.intake.classify(signal, open_positions)
        verdict = self.sentiment.current(now)
        decision = await self.router.decide(classified, verdict, self.oracle, open_positions)

        # The oracle may have consumed the freshness window
        if decision.approved and not signal.is_actionable(self.clock.now()):
            decision.approved = False
            decision.reason_code = ErrorCode.STALE_SIGNAL
            decision.message = "signal expired while deciding"

        summary = await self.orchestrator.execute(classified, decision)
        summary.verdict = verdict.direction.value

        await self._record_signal({
            "signal": signal.to_dict(),
            "class": classified.signal_class.value,
            "verdict": verdict.to_dict(),
            "decision": decision.to_dict(),
            "executed": summary.executed,
        })
        await self._persist_summary(summary)
        return summary

    async def _record_signal(self, metrics: Dict[str, Any]):
        try:
            await self.persistence.record_signal(metrics)
        except Exception as e:
            logger.warning(f"Failed to persist signal metrics: {e}")

    async def _persist_summary(self, summary: RunSummary):
        try:
            await self.persistence.record_run_summary(summary.to_dict())
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"run summary for {summary.signal_id}: {e}") from e

    # Account state

    async def refresh_balances(self) -> int:
        """Replace cached balances and positions with exchange snapshots"""
        asset = self.config.execution.settlement_asset
        refreshed = 0

        async def refresh(user: User, key: CredentialKey):
            nonlocal refreshed
            try:
                client = await self.pool.get(key)
            except EngineError as e:
                logger.warning(f"Balance refresh skipped for {key.masked()}: {e}")
                return

            balance_resp = await client.get_balance(asset)
            positions_resp = await client.list_positions()
            now = self.clock.now()

            for response in (balance_resp, positions_resp):
                if not response.ok and response.error_kind in CREDENTIAL_ERRORS:
                    self.health_monitor.mark_suspect(key)

            if balance_resp.ok:
                balance = Balance(
                    user_id=user.id,
                    exchange=key.exchange,
                    asset=asset,
                    total=float(balance_resp.data.get("total", 0.0)),
                    available=float(balance_resp.data.get("available", 0.0)),
                    last_updated=now,
                )
                if self.state_store.put_balance(balance):
                    await self._upsert(self.persistence.upsert_balance, balance)
            else:
                logger.warning(f"Balance refresh failed for {key.masked()}: {balance_resp.message}")

            if positions_resp.ok:
                positions = [self._to_position(user.id, key.exchange, row, now) for row in positions_resp.data]
                self.state_store.replace_positions(user.id, key.exchange, positions, now)
                for position in self.state_store.open_positions(user.id, key.exchange):
                    await self._upsert(self.persistence.upsert_position, position)
            else:
                logger.warning(f"Position refresh failed for {key.masked()}: {positions_resp.message}")

            if balance_resp.ok and positions_resp.ok:
                refreshed += 1

        targets = [
            (user, credential.key)
            for user in self.users if user.active
            for credential in user.credentials
            if self.registry.is_usable(credential.key)
        ]
        results = await asyncio.gather(
            *(refresh(user, key) for user, key in targets), return_exceptions=True
        )
        for (user, key), result in zip(targets, results):
            if isinstance(result, Exception):
                logger.error(f"Account refresh for {key.masked()} failed: {result}")
        logger.debug(f"Refreshed {refreshed}/{len(targets)} accounts")
        return refreshed

    @staticmethod
    def _to_position(user_id: str, exchange: str, row: Dict[str, Any], now) -> Position:
        return Position(
            user_id=user_id,
            exchange=exchange,
            instrument=row["instrument"],
            side=Direction(str(row["side"]).upper()),
            size=float(row.get("size", 0.0)),
            entry_price=float(row.get("entry_price", 0.0)),
            stop_loss=row.get("stop_loss"),
            take_profit=row.get("take_profit"),
            leverage=int(row.get("leverage") or 1),
            opened_at=now,
            updated_at=now,
            mark_price=row.get("mark_price"),
            unrealized_pnl=float(row.get("unrealized_pnl") or 0.0),
        )

    async def _upsert(self, method, record):
        try:
            await method(record)
        except Exception as e:
            logger.warning(f"Failed to persist {type(record).__name__}: {e}")

    # Diagnostics

    async def run_diagnostics(
        self, keys: Optional[Iterable[CredentialKey]] = None, full: bool = True
    ) -> Dict[CredentialKey, DiagnosticReport]:
        """Run diagnostics on the given credentials (all active ones by default)"""
        targets = list(keys) if keys is not None else [c.key for c in self.registry.all() if c.active]
        reports: Dict[CredentialKey, DiagnosticReport] = {}
        for key in targets:
            try:
                client = await self.pool.get(key)
            except EngineError as e:
                logger.warning(f"Diagnostics skipped for {key.masked()}: {e}")
                continue
            if full:
                reports[key] = await self.diagnostics.run_full(key, client)
            else:
                reports[key] = await self.diagnostics.quick_check(key, client)
        return reports

    async def check_health(self) -> Dict[CredentialKey, DiagnosticReport]:
        return await self.health_monitor.check_once()

    # Lifecycle

    async def start(self):
        """Initialize and start the periodic tasks"""
        if not self.initialized:
            await self.initialize()
        self.running = True
        await self.scheduler.start()

        logger.info("=" * 60)
        logger.info("SIGNAL TRADER STARTED")
        logger.info(f"Mode: {'SIMULATED' if self.simulated else 'LIVE'}")
        logger.info(f"Users: {len(self.users)}")
        logger.info(f"Exchanges: {', '.join(self.exchanges)}")
        logger.info("=" * 60)

    async def stop(self):
        """Stop the engine gracefully"""
        logger.info("Stopping trading engine...")
        self.running = False
        await self.scheduler.stop()
        await self.health_monitor.drain()
        await self.pool.close_all()
        if self.oracle is not None:
            await self.oracle.close()

        report = self.router_metrics.savings_report()
        logger.info(
            f"Router: {report['total']} signals, {report['reasoning']} to reasoning, "
            f"{report['fast_path']} fast path ({report['fast_path_pct']:.1f}%)"
        )

    def get_status(self) -> Dict[str, Any]:
        """Get comprehensive engine status"""
        return {
            "running": self.running,
            "initialized": self.initialized,
            "simulated": self.simulated,
            "exchanges": self.exchanges,
            "users": len(self.users),
            "credentials": [
                {
                    "key": c.key.masked(),
                    "status": c.validation_status.value,
                    "active": c.active,
                    "last_checked": c.last_checked.isoformat() if c.last_checked else None,
                }
                for c in self.registry.all()
            ],
            "sentiment": self.sentiment.get_stats(),
            "intake": self.intake.get_stats(),
            "router": self.router_metrics.savings_report(),
            "oracle": self.oracle.get_stats() if self.oracle else None,
            "execution": self.orchestrator.get_stats(),
            "health": self.health_monitor.get_stats(),
            "scheduler": self.scheduler.get_stats(),
            "state": self.state_store.snapshot(),
        }
