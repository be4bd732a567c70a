"""
Position / Balance State Store
Cached balances, positions, close cooldowns and latest diagnostics per (user, exchange)

Writes always replace the whole record. Concurrent writers are resolved
last-writer-wins on the record's own timestamp, with a monotonic write
sequence breaking ties, so a slow refresh can never overwrite a newer fill.
"""

import itertools
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Generic, Iterable, List, NamedTuple, Optional, Tuple, TypeVar
import logging

from .models import (
    Balance,
    BalanceKey,
    CredentialKey,
    DiagnosticResult,
    Direction,
    Position,
    PositionKey,
    ProbeCategory,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Versioned(NamedTuple):
    record: Any
    updated_at: datetime
    sequence: int


class VersionedTable(Generic[T]):
    """Keyed records with last-writer-wins replacement"""

    def __init__(self):
        self._rows: Dict[Any, Versioned] = {}
        self._sequence = itertools.count(1)

    def put(self, key, record: T, updated_at: datetime) -> bool:
        current = self._rows.get(key)
        sequence = next(self._sequence)
        if current is not None:
            if updated_at < current.updated_at:
                return False
            if updated_at == current.updated_at and sequence <= current.sequence:
                return False
        self._rows[key] = Versioned(record, updated_at, sequence)
        return True

    def get(self, key) -> Optional[T]:
        row = self._rows.get(key)
        return row.record if row else None

    def items(self) -> Iterable[Tuple[Any, T]]:
        return ((k, v.record) for k, v in self._rows.items())

    def values(self) -> List[T]:
        return [v.record for v in self._rows.values()]

    def __len__(self) -> int:
        return len(self._rows)


class StateStore:
    """
    Shared cache used by the orchestrator, the balance refresher and diagnostics

    Rows are keyed by tuple keys owned by one (user, exchange) pair.
    """

    def __init__(self):
        self._balances: VersionedTable[Balance] = VersionedTable()
        self._positions: VersionedTable[Position] = VersionedTable()
        self._last_close: Dict[Tuple[str, str], datetime] = {}
        self._diagnostics: Dict[CredentialKey, Dict[ProbeCategory, DiagnosticResult]] = defaultdict(dict)
        self.rejected_writes = 0

    # Balances

    def put_balance(self, balance: Balance) -> bool:
        accepted = self._balances.put(balance.key, balance, balance.last_updated)
        if not accepted:
            self.rejected_writes += 1
            logger.debug(f"Stale balance write rejected for {balance.key}")
        return accepted

    def get_balance(self, user_id: str, exchange: str, asset: str = "USDT") -> Optional[Balance]:
        return self._balances.get(BalanceKey(user_id, exchange, asset))

    def balances(self, user_id: Optional[str] = None) -> List[Balance]:
        return [b for b in self._balances.values() if user_id is None or b.user_id == user_id]

    # Positions

    def put_position(self, position: Position) -> bool:
        accepted = self._positions.put(position.key, position, position.updated_at)
        if not accepted:
            self.rejected_writes += 1
            logger.debug(f"Stale position write rejected for {position.key}")
        return accepted

    def get_position(
        self, user_id: str, exchange: str, instrument: str, side: Direction
    ) -> Optional[Position]:
        return self._positions.get(PositionKey(user_id, exchange, instrument, side))

    def replace_positions(
        self, user_id: str, exchange: str, positions: List[Position], as_of: datetime
    ) -> int:
        """
        Replace the (user, exchange) position set with an exchange snapshot

        Open rows missing from the snapshot are written back closed.
        Returns the number of accepted writes.
        """
        accepted = 0
        seen = set()
        for position in positions:
            seen.add(position.key)
            if self.put_position(position):
                accepted += 1

        for key, existing in list(self._positions.items()):
            if key.user_id != user_id or key.exchange != exchange or key in seen:
                continue
            if not existing.is_open or existing.updated_at > as_of:
                continue
            closed = Position(
                user_id=existing.user_id,
                exchange=existing.exchange,
                instrument=existing.instrument,
                side=existing.side,
                size=0.0,
                entry_price=existing.entry_price,
                stop_loss=existing.stop_loss,
                take_profit=existing.take_profit,
                leverage=existing.leverage,
                is_open=False,
                opened_at=existing.opened_at,
                updated_at=as_of,
            )
            if self.put_position(closed):
                accepted += 1
                self.record_close(existing.user_id, existing.instrument, as_of)
        return accepted

    def open_positions(
        self, user_id: Optional[str] = None, exchange: Optional[str] = None
    ) -> List[Position]:
        return [
            p for p in self._positions.values()
            if p.is_open
            and (user_id is None or p.user_id == user_id)
            and (exchange is None or p.exchange == exchange)
        ]

    def open_positions_by_instrument(self) -> Dict[str, List[Position]]:
        """Open positions across all users, grouped by instrument"""
        grouped: Dict[str, List[Position]] = defaultdict(list)
        for position in self.open_positions():
            grouped[position.instrument].append(position)
        return dict(grouped)

    def count_open_positions(self, user_id: str) -> int:
        return len(self.open_positions(user_id))

    def holds(self, user_id: str, instrument: str, side: Direction) -> bool:
        return any(
            p.instrument == instrument and p.side is side
            for p in self.open_positions(user_id)
        )

    # Cooldowns

    def record_close(self, user_id: str, instrument: str, at: datetime):
        key = (user_id, instrument)
        previous = self._last_close.get(key)
        if previous is None or at > previous:
            self._last_close[key] = at

    def cooldown_remaining(
        self, user_id: str, instrument: str, now: datetime, cooldown_seconds: float
    ) -> float:
        closed_at = self._last_close.get((user_id, instrument))
        if closed_at is None or cooldown_seconds <= 0:
            return 0.0
        remaining = (closed_at + timedelta(seconds=cooldown_seconds) - now).total_seconds()
        return max(0.0, remaining)

    # Diagnostics

    def put_diagnostic(self, result: DiagnosticResult):
        self._diagnostics[result.connector][result.category] = result

    def latest_diagnostics(self, key: CredentialKey) -> Dict[ProbeCategory, DiagnosticResult]:
        return dict(self._diagnostics.get(key, {}))

    def snapshot(self) -> Dict[str, Any]:
        return {
            "balances": [b.to_dict() for b in self._balances.values()],
            "open_positions": [p.to_dict() for p in self.open_positions()],
            "cooldowns": {
                f"{user}:{instrument}": at.isoformat()
                for (user, instrument), at in self._last_close.items()
            },
            "rejected_writes": self.rejected_writes,
        }
