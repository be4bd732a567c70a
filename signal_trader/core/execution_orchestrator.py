"""
Execution Orchestrator
Fans an approved decision out to every eligible user and records the outcome
"""

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from .collaborators import Persistence
from .decision_router import Decision, RouteDecision
from .diagnostics import CredentialRegistry
from .errors import CREDENTIAL_ERRORS, REFUSED_ERRORS, ConnectorError, EngineError, ErrorCode, SizingError
from .exchange_client import ConnectorPool, ExchangeClient, ExchangeResponse
from .models import (
    Balance,
    CredentialKey,
    Direction,
    ExchangeCredential,
    ExecutionOutcome,
    ExecutionRecord,
    Position,
    User,
)
from .risk_policy import RiskPolicy
from .scheduler import Clock, SystemClock
from .signal_intake import ClassifiedSignal
from .state_store import StateStore
from ..utils.config_loader import ExecutionConfig

logger = logging.getLogger(__name__)


class RunStatus(Enum):
    """Overall outcome of one signal"""
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    NO_OP = "NO_OP"


@dataclass
class RunSummary:
    """Outcome of processing one signal; reason codes only, never tracebacks"""
    signal_id: str
    status: RunStatus
    reason_code: Optional[ErrorCode] = None
    route: Optional[RouteDecision] = None
    verdict: Optional[str] = None
    approved: int = 0
    executed: int = 0
    failed: int = 0
    skipped: int = 0
    failures: Dict[str, int] = field(default_factory=dict)
    records: List[ExecutionRecord] = field(default_factory=list)
    suspects: List[str] = field(default_factory=list)
    message: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def add(self, record: ExecutionRecord):
        self.records.append(record)
        if record.outcome is ExecutionOutcome.EXECUTED:
            self.approved += 1
            self.executed += 1
        elif record.outcome is ExecutionOutcome.FAILED:
            self.approved += 1
            self.failed += 1
        else:
            self.skipped += 1
        if record.error is not None:
            self.failures[record.error.value] = self.failures.get(record.error.value, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signal_id": self.signal_id,
            "status": self.status.value,
            "reason_code": self.reason_code.value if self.reason_code else None,
            "route": self.route.to_dict() if self.route else None,
            "verdict": self.verdict,
            "approved": self.approved,
            "executed": self.executed,
            "failed": self.failed,
            "skipped": self.skipped,
            "failures": dict(self.failures),
            "records": [r.to_dict() for r in self.records],
            "suspects": list(self.suspects),
            "message": self.message,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class FanOutTarget:
    """One user selected for a fan-out, with the credential it will trade through"""
    user: User
    credential: ExchangeCredential
    position: Optional[Position] = None
    order_sent: bool = False

    @property
    def key(self) -> CredentialKey:
        return self.credential.key


class Skip(Exception):
    """Per-user exclusion raised inside a fan-out task"""

    def __init__(self, code: ErrorCode, message: str = ""):
        self.code = code
        self.message = message or code.value
        super().__init__(self.message)


class ExecutionOrchestrator:
    """
    Fan-out rules:
    - only users with a VALID, active credential for the target exchange
    - at most one execution per (signal, user), claimed before any order
    - open positions per user capped, no double entry on the same side
    - cooldown per (user, instrument) after a close
    - one order at a time per (user, instrument); opens for a user run one at a time
    - a claim is released again when no order reached the exchange
    - a per-user failure never aborts the batch
    """

    MAX_CLAIMS = 10000

    def __init__(
        self,
        registry: CredentialRegistry,
        pool: ConnectorPool,
        state_store: StateStore,
        risk_policy: RiskPolicy,
        persistence: Persistence,
        config: Optional[ExecutionConfig] = None,
        clock: Optional[Clock] = None,
        on_suspect: Optional[Callable[[CredentialKey], None]] = None,
    ):
        self.registry = registry
        self.pool = pool
        self.state_store = state_store
        self.risk_policy = risk_policy
        self.persistence = persistence
        self.config = config or ExecutionConfig()
        self.clock = clock or SystemClock()
        self.on_suspect = on_suspect

        self.users: Dict[str, User] = {}
        self._claims: "OrderedDict[Tuple[str, str], datetime]" = OrderedDict()
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._open_locks: Dict[str, asyncio.Lock] = {}
        self._semaphore = asyncio.Semaphore(self.config.max_concurrency)

    def set_users(self, users: List[User]):
        self.users = {u.id: u for u in users}

    # Idempotency

    def claim(self, signal_id: str, user_id: str) -> bool:
        """Atomically reserve (signal, user); False if already claimed"""
        key = (signal_id, user_id)
        if key in self._claims:
            return False
        self._claims[key] = self.clock.now()
        while len(self._claims) > self.MAX_CLAIMS:
            self._claims.popitem(last=False)
        return True

    def is_claimed(self, signal_id: str, user_id: str) -> bool:
        return (signal_id, user_id) in self._claims

    def release(self, signal_id: str, user_id: str):
        """Give a claim back so a retry of the same signal can execute"""
        self._claims.pop((signal_id, user_id), None)

    def _lock_for(self, user_id: str, instrument: str) -> asyncio.Lock:
        key = (user_id, instrument)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _open_lock_for(self, user_id: str) -> asyncio.Lock:
        # Position-limit check and the open it guards run under one lock per user
        lock = self._open_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._open_locks[user_id] = lock
        return lock

    # Target selection

    def _credential_for(self, user: User, exchange: Optional[str]) -> Optional[ExchangeCredential]:
        """Usable credential for the exchange (or the first usable one when unspecified)"""
        for credential in user.credentials:
            if exchange is not None and credential.exchange != exchange:
                continue
            if not self.pool.supports(credential.exchange):
                continue
            if self.registry.is_usable(credential.key):
                return self.registry.get(credential.key)
        return None

    def _has_credential(self, user: User, exchange: Optional[str]) -> bool:
        return any(exchange is None or c.exchange == exchange for c in user.credentials)

    # Fan-out

    async def execute(self, classified: ClassifiedSignal, decision: Decision) -> RunSummary:
        """Fan an approved decision out; a rejected decision yields zero orders"""
        signal = classified.signal
        summary = RunSummary(
            signal_id=signal.id,
            status=RunStatus.COMPLETED,
            route=decision.route,
            started_at=self.clock.now(),
        )

        if decision.no_op and decision.reason_code is None:
            summary.status = RunStatus.NO_OP
            summary.message = decision.message
            summary.finished_at = self.clock.now()
            return summary

        if not decision.approved:
            summary.status = RunStatus.REJECTED
            summary.reason_code = decision.reason_code
            summary.message = decision.message
            summary.finished_at = self.clock.now()
            return summary

        if decision.close:
            targets, excluded = self._close_targets(signal.instrument, decision.direction, signal.exchange)
        else:
            targets, excluded = self._open_targets(signal.exchange)

        for record in excluded:
            record.signal_id = signal.id
            summary.add(record)
            await self._persist_record(record)

        if targets:
            await self._run_batch(classified, decision, targets, summary)

        summary.finished_at = self.clock.now()
        logger.info(
            f"Signal {signal.id} {signal.instrument} {decision.direction.value if decision.direction else '-'}"
            f"{' close' if decision.close else ''}: executed={summary.executed} "
            f"failed={summary.failed} skipped={summary.skipped}"
        )
        return summary

    def _open_targets(self, exchange: Optional[str]) -> Tuple[List[FanOutTarget], List[ExecutionRecord]]:
        targets: List[FanOutTarget] = []
        excluded: List[ExecutionRecord] = []
        for user in self.users.values():
            if not user.active or not self._has_credential(user, exchange):
                continue
            credential = self._credential_for(user, exchange)
            if credential is None:
                excluded.append(self._record(
                    "", user.id, exchange or "-", ExecutionOutcome.SKIPPED,
                    ErrorCode.CREDENTIAL_INVALID, message="no validated credential",
                ))
                continue
            targets.append(FanOutTarget(user, credential))
        return targets, excluded

    def _close_targets(
        self, instrument: str, direction: Optional[Direction], exchange: Optional[str]
    ) -> Tuple[List[FanOutTarget], List[ExecutionRecord]]:
        targets: List[FanOutTarget] = []
        excluded: List[ExecutionRecord] = []
        for position in self.state_store.open_positions():
            if position.instrument != instrument or position.side is not direction:
                continue
            if exchange is not None and position.exchange != exchange:
                continue
            user = self.users.get(position.user_id)
            if user is None or not user.active:
                continue
            credential = self._credential_for(user, position.exchange)
            if credential is None:
                excluded.append(self._record(
                    "", user.id, position.exchange, ExecutionOutcome.SKIPPED,
                    ErrorCode.CREDENTIAL_INVALID, message="no validated credential",
                ))
                continue
            targets.append(FanOutTarget(user, credential, position))
        return targets, excluded

    async def _run_batch(
        self,
        classified: ClassifiedSignal,
        decision: Decision,
        targets: List[FanOutTarget],
        summary: RunSummary,
    ):
        tasks: Dict[asyncio.Task, FanOutTarget] = {}
        for target in targets:
            task = asyncio.create_task(self._execute_for(classified, decision, target))
            tasks[task] = target

        done, pending = await asyncio.wait(
            list(tasks), timeout=self.config.batch_timeout_seconds
        )

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        for task, target in tasks.items():
            if task in pending:
                if not target.order_sent:
                    self.release(classified.signal.id, target.user.id)
                record = self._record(
                    classified.signal.id, target.user.id, target.credential.exchange,
                    ExecutionOutcome.FAILED, ErrorCode.TIMEOUT,
                    message=f"batch timed out after {self.config.batch_timeout_seconds}s",
                )
                logger.warning(f"Execution for {target.user.id} on {classified.signal.id} timed out")
            elif task.exception() is not None:
                error = task.exception()
                logger.error(f"Execution for {target.user.id} raised: {error}")
                if not target.order_sent:
                    self.release(classified.signal.id, target.user.id)
                record = self._record(
                    classified.signal.id, target.user.id, target.credential.exchange,
                    ExecutionOutcome.FAILED, ErrorCode.EXECUTION_FAILED, message=str(error),
                )
            else:
                record = task.result()

            summary.add(record)
            if record.error in CREDENTIAL_ERRORS:
                summary.suspects.append(target.key.masked())
                self._report_suspect(target.key)
            await self._persist_record(record)

    async def _execute_for(
        self, classified: ClassifiedSignal, decision: Decision, target: FanOutTarget
    ) -> ExecutionRecord:
        signal = classified.signal
        user = target.user
        exchange = target.credential.exchange
        started = time.monotonic()

        if not self.claim(signal.id, user.id):
            return self._record(
                signal.id, user.id, exchange, ExecutionOutcome.SKIPPED,
                ErrorCode.DUPLICATE_EXECUTION, message="already processed for this user",
            )

        try:
            async with self._semaphore:
                client = await self.pool.get(target.key)
                async with self._lock_for(user.id, signal.instrument):
                    if decision.close:
                        record = await self._close(signal.id, target, client)
                    else:
                        async with self._open_lock_for(user.id):
                            record = await self._open(classified, decision.direction, target, client)
        except Skip as skip:
            record = self._record(
                signal.id, user.id, exchange, ExecutionOutcome.SKIPPED, skip.code, message=skip.message
            )
        except SizingError as e:
            record = self._record(
                signal.id, user.id, exchange, ExecutionOutcome.SKIPPED, e.code, message=e.message
            )
        except EngineError as e:
            record = self._record(
                signal.id, user.id, exchange, ExecutionOutcome.FAILED, e.code, message=e.message
            )

        if record.outcome is not ExecutionOutcome.EXECUTED and self._not_placed(target, record.error):
            self.release(signal.id, user.id)

        record.latency_ms = (time.monotonic() - started) * 1000
        return record

    @staticmethod
    def _not_placed(target: FanOutTarget, error: Optional[ErrorCode]) -> bool:
        """True when no order can have reached the exchange for this target"""
        return not target.order_sent or error in REFUSED_ERRORS

    async def _call(self, coro) -> ExchangeResponse:
        """Connector call under the hard timeout"""
        try:
            return await asyncio.wait_for(coro, timeout=self.config.connector_timeout_seconds)
        except asyncio.TimeoutError:
            return ExchangeResponse.failure(
                ErrorCode.TIMEOUT, f"connector call exceeded {self.config.connector_timeout_seconds}s"
            )

    async def _available_balance(self, user: User, exchange: str, client: ExchangeClient) -> float:
        asset = self.config.settlement_asset
        balance = self.state_store.get_balance(user.id, exchange, asset)
        if balance is None:
            response = await self._call(client.get_balance(asset))
            if not response.ok:
                raise ConnectorError(response.error_kind or ErrorCode.UNKNOWN, response.message, response.raw_code)
            balance = Balance(
                user_id=user.id,
                exchange=exchange,
                asset=asset,
                total=float(response.data.get("total", 0.0)),
                available=float(response.data.get("available", 0.0)),
                last_updated=self.clock.now(),
            )
            self.state_store.put_balance(balance)
        return balance.available

    def _check_eligibility(self, user: User, instrument: str, direction: Direction):
        now = self.clock.now()
        limit = user.risk_limits.max_open_positions or self.config.max_open_positions
        open_count = self.state_store.count_open_positions(user.id)
        if open_count >= limit:
            raise Skip(ErrorCode.POSITION_LIMIT, f"{open_count}/{limit} positions open")

        if self.state_store.holds(user.id, instrument, direction):
            raise Skip(ErrorCode.POSITION_LIMIT, f"already {direction.value} {instrument}")

        if (not self.config.allow_hedged_positions
                and self.state_store.holds(user.id, instrument, direction.opposite)):
            raise Skip(
                ErrorCode.POSITION_LIMIT,
                f"holds {direction.opposite.value} {instrument}; hedged positions disabled",
            )

        remaining = self.state_store.cooldown_remaining(
            user.id, instrument, now, self.config.cooldown_hours * 3600
        )
        if remaining > 0:
            raise Skip(ErrorCode.COOLDOWN_ACTIVE, f"{instrument} cooldown {remaining / 60:.0f}m left")

    async def _open(
        self,
        classified: ClassifiedSignal,
        direction: Direction,
        target: FanOutTarget,
        client: ExchangeClient,
    ) -> ExecutionRecord:
        signal = classified.signal
        user = target.user
        exchange = target.credential.exchange

        self._check_eligibility(user, signal.instrument, direction)

        available = await self._available_balance(user, exchange, client)
        if available <= 0:
            raise Skip(ErrorCode.INSUFFICIENT_BALANCE, f"available {available:.2f}")

        price = signal.price
        if price is None:
            response = await self._call(client.last_price(signal.instrument))
            if not response.ok:
                raise ConnectorError(response.error_kind or ErrorCode.UNKNOWN, response.message, response.raw_code)
            price = float(response.data)

        sizing = self.risk_policy.size(user, direction, available, price, strong=signal.strong)
        response = await self._call(client.instrument_rules(signal.instrument))
        if not response.ok:
            raise ConnectorError(response.error_kind or ErrorCode.UNKNOWN, response.message, response.raw_code)
        sizing = self.risk_policy.fit_to_instrument(sizing, response.data)

        if self.config.set_leverage:
            response = await self._call(client.set_leverage(signal.instrument, sizing.leverage))
            if not response.ok:
                if response.error_kind in CREDENTIAL_ERRORS or response.error_kind is ErrorCode.TIMEOUT:
                    raise ConnectorError(response.error_kind, response.message, response.raw_code)
                logger.warning(f"set_leverage failed for {user.id} on {signal.instrument}: {response.message}")

        order = sizing.to_order(signal.instrument, client_order_id=f"{signal.id[:20]}-{user.id[:12]}")
        target.order_sent = True
        response = await self._call(client.place_order(order))
        if not response.ok:
            raise ConnectorError(response.error_kind or ErrorCode.EXECUTION_FAILED, response.message, response.raw_code)

        result = response.data
        now = self.clock.now()
        fill_price = result.price or price
        position = Position(
            user_id=user.id,
            exchange=exchange,
            instrument=signal.instrument,
            side=direction,
            size=result.quantity or sizing.quantity,
            entry_price=fill_price,
            stop_loss=sizing.stop_loss,
            take_profit=sizing.take_profit,
            leverage=sizing.leverage,
            opened_at=now,
            updated_at=now,
            mark_price=fill_price,
        )
        self.state_store.put_position(position)
        self._reserve_margin(user.id, exchange, sizing.margin, now)
        await self._persist_position(position)

        logger.info(
            f"Opened {direction.value} {signal.instrument} for {user.id} on {exchange}: "
            f"qty={position.size} notional={sizing.notional:.2f} lev={sizing.leverage}x "
            f"SL={sizing.stop_loss} TP={sizing.take_profit}"
        )
        return self._record(
            signal.id, user.id, exchange, ExecutionOutcome.EXECUTED,
            order_id=result.order_id,
            notional=sizing.notional,
            quantity=position.size,
            leverage=sizing.leverage,
            stop_loss=sizing.stop_loss,
            take_profit=sizing.take_profit,
        )

    async def _close(self, signal_id: str, target: FanOutTarget, client: ExchangeClient) -> ExecutionRecord:
        position = target.position
        user = target.user
        current = self.state_store.get_position(user.id, position.exchange, position.instrument, position.side)
        if current is None or not current.is_open:
            raise Skip(ErrorCode.POSITION_LIMIT, "position already closed")

        target.order_sent = True
        response = await self._call(client.close_position(current.instrument, current.side, current.size))
        if not response.ok:
            raise ConnectorError(response.error_kind or ErrorCode.EXECUTION_FAILED, response.message, response.raw_code)

        now = self.clock.now()
        closed = Position(
            user_id=current.user_id,
            exchange=current.exchange,
            instrument=current.instrument,
            side=current.side,
            size=0.0,
            entry_price=current.entry_price,
            stop_loss=current.stop_loss,
            take_profit=current.take_profit,
            leverage=current.leverage,
            is_open=False,
            opened_at=current.opened_at,
            updated_at=now,
        )
        self.state_store.put_position(closed)
        self.state_store.record_close(user.id, current.instrument, now)
        await self._persist_position(closed)

        logger.info(f"Closed {current.side.value} {current.instrument} for {user.id} on {current.exchange}")
        result = response.data
        return self._record(
            signal_id, user.id, current.exchange, ExecutionOutcome.EXECUTED,
            order_id=getattr(result, "order_id", None),
            quantity=current.size,
            leverage=current.leverage,
            message="reduce-only close",
        )

    def _reserve_margin(self, user_id: str, exchange: str, margin: float, now: datetime):
        asset = self.config.settlement_asset
        balance = self.state_store.get_balance(user_id, exchange, asset)
        if balance is None:
            return
        updated_at = max(now, balance.last_updated + timedelta(microseconds=1))
        self.state_store.put_balance(Balance(
            user_id=user_id,
            exchange=exchange,
            asset=asset,
            total=balance.total,
            available=max(balance.available - margin, 0.0),
            last_updated=updated_at,
        ))

    # Bookkeeping

    def _record(
        self,
        signal_id: str,
        user_id: str,
        exchange: str,
        outcome: ExecutionOutcome,
        error: Optional[ErrorCode] = None,
        **kwargs,
    ) -> ExecutionRecord:
        return ExecutionRecord(
            signal_id=signal_id,
            user_id=user_id,
            exchange=exchange,
            outcome=outcome,
            error=error,
            created_at=self.clock.now(),
            **kwargs,
        )

    def _report_suspect(self, key: CredentialKey):
        if self.on_suspect is None:
            return
        try:
            self.on_suspect(key)
        except Exception as e:
            logger.error(f"Suspect callback failed for {key.masked()}: {e}")

    async def _persist_record(self, record: ExecutionRecord):
        try:
            await self.persistence.record_execution(record)
        except Exception as e:
            logger.error(f"Failed to persist execution record {record.signal_id}/{record.user_id}: {e}")

    async def _persist_position(self, position: Position):
        try:
            await self.persistence.upsert_position(position)
        except Exception as e:
            logger.error(f"Failed to persist position {position.key}: {e}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "users": len(self.users),
            "claims": len(self._claims),
            "max_concurrency": self.config.max_concurrency,
        }
