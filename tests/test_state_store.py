"""
State store: last-writer-wins records, position snapshots and cooldowns
"""

from datetime import timedelta

from conftest import NOW
from signal_trader.core.models import Balance, Direction, Position
from signal_trader.core.state_store import StateStore


def balance(available: float, at) -> Balance:
    return Balance("alice", "bybit", "USDT", total=1000.0, available=available, last_updated=at)


def position(side=Direction.LONG, at=NOW, instrument="BTCUSDT", user="alice", is_open=True) -> Position:
    return Position(
        user_id=user, exchange="bybit", instrument=instrument, side=side,
        size=0.01 if is_open else 0.0, entry_price=67000.0,
        is_open=is_open, opened_at=at, updated_at=at,
    )


class TestLastWriterWins:

    def test_newer_write_replaces(self):
        store = StateStore()
        assert store.put_balance(balance(900.0, NOW))
        assert store.put_balance(balance(800.0, NOW + timedelta(seconds=1)))
        assert store.get_balance("alice", "bybit").available == 800.0

    def test_older_write_is_rejected(self):
        store = StateStore()
        store.put_balance(balance(800.0, NOW + timedelta(seconds=1)))

        assert not store.put_balance(balance(900.0, NOW))
        assert store.get_balance("alice", "bybit").available == 800.0
        assert store.rejected_writes == 1

    def test_equal_timestamp_resolved_by_write_order(self):
        store = StateStore()
        store.put_balance(balance(900.0, NOW))
        assert store.put_balance(balance(850.0, NOW))
        assert store.get_balance("alice", "bybit").available == 850.0


class TestPositions:

    def test_open_positions_grouped_by_instrument(self):
        store = StateStore()
        store.put_position(position())
        store.put_position(position(user="bob"))
        store.put_position(position(instrument="ETHUSDT"))

        grouped = store.open_positions_by_instrument()

        assert len(grouped["BTCUSDT"]) == 2
        assert len(grouped["ETHUSDT"]) == 1
        assert store.count_open_positions("alice") == 2
        assert store.holds("alice", "BTCUSDT", Direction.LONG)
        assert not store.holds("alice", "BTCUSDT", Direction.SHORT)

    def test_snapshot_closes_missing_positions_and_starts_cooldown(self):
        store = StateStore()
        store.put_position(position())
        later = NOW + timedelta(minutes=5)

        store.replace_positions("alice", "bybit", [], later)

        assert store.open_positions("alice") == []
        assert store.cooldown_remaining("alice", "BTCUSDT", later, 3600) == 3600

    def test_snapshot_does_not_close_newer_fill(self):
        store = StateStore()
        fill_at = NOW + timedelta(minutes=5)
        store.put_position(position(at=fill_at))

        store.replace_positions("alice", "bybit", [], NOW)

        assert store.count_open_positions("alice") == 1

    def test_snapshot_only_touches_its_account(self):
        store = StateStore()
        store.put_position(position(user="bob"))

        store.replace_positions("alice", "bybit", [], NOW + timedelta(minutes=1))

        assert store.count_open_positions("bob") == 1


class TestCooldown:

    def test_remaining_counts_down(self):
        store = StateStore()
        store.record_close("alice", "BTCUSDT", NOW)

        assert store.cooldown_remaining("alice", "BTCUSDT", NOW + timedelta(hours=1), 7200) == 3600
        assert store.cooldown_remaining("alice", "BTCUSDT", NOW + timedelta(hours=3), 7200) == 0.0
        assert store.cooldown_remaining("alice", "ETHUSDT", NOW, 7200) == 0.0

    def test_older_close_does_not_shorten_cooldown(self):
        store = StateStore()
        store.record_close("alice", "BTCUSDT", NOW)
        store.record_close("alice", "BTCUSDT", NOW - timedelta(hours=1))

        assert store.cooldown_remaining("alice", "BTCUSDT", NOW, 7200) == 7200
