"""
Signal intake: envelope validation, direction tokens and classification
"""

from datetime import timedelta

import pytest

from conftest import NOW, make_envelope
from signal_trader.core.errors import ErrorCode, SignalRejected
from signal_trader.core.models import Direction, Position, SignalClass
from signal_trader.core.signal_intake import (
    SignalIntake,
    normalize_instrument,
    parse_direction_token,
    parse_timestamp,
)
from signal_trader.utils.config_loader import SignalConfig


class TestDirectionTokens:

    @pytest.mark.parametrize("raw, direction, close, strong", [
        ("LONG", Direction.LONG, False, False),
        ("buy", Direction.LONG, False, False),
        ("SINAL_LONG", Direction.LONG, False, False),
        ("LONG_FORTE", Direction.LONG, False, True),
        ("SINAL_SHORT_FORTE", Direction.SHORT, False, True),
        ("CLOSE_LONG", Direction.LONG, True, False),
        ("FECHE_SHORT", Direction.SHORT, True, False),
        ("venda", Direction.SHORT, False, False),
        ("close-short", Direction.SHORT, True, False),
    ])
    def test_known_tokens(self, raw, direction, close, strong):
        token = parse_direction_token(raw)
        assert token.direction is direction
        assert token.close_intent is close
        assert token.strong is strong

    def test_unknown_token_has_no_direction(self):
        token = parse_direction_token("MOON")
        assert token.direction is None
        assert not token.recognised


class TestNormalization:

    @pytest.mark.parametrize("raw", ["BTCUSDT", "btc-usdt", "BTC/USDT", "BTCUSDT.P", "BTC/USDT:USDT"])
    def test_instrument_forms(self, raw):
        assert normalize_instrument(raw) == "BTCUSDT"

    def test_epoch_milliseconds_and_seconds_agree(self):
        seconds = NOW.timestamp()
        assert parse_timestamp(seconds) == NOW
        assert parse_timestamp(int(seconds * 1000)) == NOW

    def test_iso_with_zulu_suffix(self):
        assert parse_timestamp("2024-03-01T12:00:00Z") == NOW


class TestParse:

    def test_valid_envelope(self):
        intake = SignalIntake()
        signal = intake.parse(make_envelope("LONG", "BTC-USDT", price="67000"), NOW)

        assert signal.instrument == "BTCUSDT"
        assert signal.direction is Direction.LONG
        assert signal.price == 67000.0
        assert signal.exchange == "bybit"
        assert signal.expires_at == NOW + timedelta(seconds=30)
        assert intake.accepted == 1

    def test_alternate_field_names(self):
        envelope = {"ticker": "ETHUSDT", "signal": "SINAL_SHORT", "source": "bot", "timestamp": NOW.isoformat()}
        signal = SignalIntake().parse(envelope, NOW)
        assert signal.instrument == "ETHUSDT"
        assert signal.direction is Direction.SHORT

    def test_redelivered_envelope_keeps_its_id(self):
        intake = SignalIntake()
        first = intake.parse(make_envelope(), NOW)
        second = intake.parse(make_envelope(), NOW + timedelta(seconds=2))
        assert first.id == second.id

    def test_explicit_id_wins(self):
        signal = SignalIntake().parse(make_envelope(id="abc-123"), NOW)
        assert signal.id == "abc-123"

    def test_missing_field_is_invalid(self):
        envelope = make_envelope()
        del envelope["source"]
        with pytest.raises(SignalRejected) as exc:
            SignalIntake().parse(envelope, NOW)
        assert exc.value.code is ErrorCode.INVALID_SIGNAL

    def test_bad_timestamp_is_invalid(self):
        envelope = make_envelope()
        envelope["timestamp"] = "yesterday"
        with pytest.raises(SignalRejected) as exc:
            SignalIntake().parse(envelope, NOW)
        assert exc.value.code is ErrorCode.INVALID_SIGNAL

    def test_future_timestamp_is_invalid(self):
        with pytest.raises(SignalRejected) as exc:
            SignalIntake().parse(make_envelope(timestamp=NOW + timedelta(minutes=2)), NOW)
        assert exc.value.code is ErrorCode.INVALID_SIGNAL

    def test_non_positive_price_is_invalid(self):
        with pytest.raises(SignalRejected) as exc:
            SignalIntake().parse(make_envelope(price=0), NOW)
        assert exc.value.code is ErrorCode.INVALID_SIGNAL

    def test_stale_signal(self):
        intake = SignalIntake()
        with pytest.raises(SignalRejected) as exc:
            intake.parse(make_envelope(), NOW + timedelta(seconds=31))
        assert exc.value.code is ErrorCode.STALE_SIGNAL
        assert intake.rejected == {"STALE_SIGNAL": 1}

    def test_strong_signal_gets_longer_window(self):
        intake = SignalIntake(SignalConfig(freshness_seconds=30, strong_freshness_seconds=60))
        signal = intake.parse(make_envelope("LONG_FORTE"), NOW + timedelta(seconds=45))
        assert signal.strong
        assert signal.expires_at == NOW + timedelta(seconds=60)

    def test_strong_close_uses_normal_window(self):
        intake = SignalIntake(SignalConfig(freshness_seconds=30, strong_freshness_seconds=60))
        with pytest.raises(SignalRejected) as exc:
            intake.parse(make_envelope("CLOSE_LONG_FORTE"), NOW + timedelta(seconds=45))
        assert exc.value.code is ErrorCode.STALE_SIGNAL

    def test_unsupported_quote(self):
        with pytest.raises(SignalRejected) as exc:
            SignalIntake().parse(make_envelope(instrument="BTCEUR"), NOW)
        assert exc.value.code is ErrorCode.UNSUPPORTED_INSTRUMENT_OR_EXCHANGE

    def test_instrument_outside_allowed_list(self):
        intake = SignalIntake(SignalConfig(allowed_instruments=["ETHUSDT"]))
        with pytest.raises(SignalRejected) as exc:
            intake.parse(make_envelope(instrument="BTCUSDT"), NOW)
        assert exc.value.code is ErrorCode.UNSUPPORTED_INSTRUMENT_OR_EXCHANGE

    def test_unsupported_exchange(self):
        intake = SignalIntake(supported_exchanges=["bybit", "binance"])
        with pytest.raises(SignalRejected) as exc:
            intake.parse(make_envelope(exchange="kraken"), NOW)
        assert exc.value.code is ErrorCode.UNSUPPORTED_INSTRUMENT_OR_EXCHANGE


def _position(side: Direction, exchange: str = "bybit") -> Position:
    return Position(
        user_id="alice", exchange=exchange, instrument="BTCUSDT",
        side=side, size=0.01, entry_price=67000.0,
    )


class TestClassify:

    def test_normal_and_strong(self):
        intake = SignalIntake()
        normal = intake.classify(intake.parse(make_envelope("LONG"), NOW))
        strong = intake.classify(intake.parse(make_envelope("LONG_FORTE"), NOW))
        assert normal.signal_class is SignalClass.NORMAL
        assert strong.signal_class is SignalClass.STRONG

    def test_strength_field_marks_strong(self):
        intake = SignalIntake()
        classified = intake.classify(intake.parse(make_envelope("LONG", strength="strong"), NOW))
        assert classified.signal_class is SignalClass.STRONG

    def test_unrecognised_direction_is_unclassified(self):
        intake = SignalIntake()
        classified = intake.classify(intake.parse(make_envelope("PUMP_IT"), NOW))
        assert classified.signal_class is SignalClass.UNCLASSIFIED
        assert classified.signal.direction is None

    def test_close_with_matching_position(self):
        intake = SignalIntake()
        signal = intake.parse(make_envelope("CLOSE_LONG"), NOW)
        classified = intake.classify(signal, {"BTCUSDT": [_position(Direction.LONG)]})
        assert classified.signal_class is SignalClass.CLOSE_WITH_POSITION
        assert len(classified.matching_positions) == 1
        assert classified.is_close

    def test_close_without_matching_side(self):
        intake = SignalIntake()
        signal = intake.parse(make_envelope("CLOSE_LONG"), NOW)
        classified = intake.classify(signal, {"BTCUSDT": [_position(Direction.SHORT)]})
        assert classified.signal_class is SignalClass.CLOSE_WITHOUT_POSITION

    def test_close_only_matches_target_exchange(self):
        intake = SignalIntake()
        signal = intake.parse(make_envelope("CLOSE_LONG", exchange="binance"), NOW)
        classified = intake.classify(signal, {"BTCUSDT": [_position(Direction.LONG, "bybit")]})
        assert classified.signal_class is SignalClass.CLOSE_WITHOUT_POSITION
