"""
Signal Intake & Classifier
Validates inbound signal envelopes and tags direction, strength and close intent
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging

from .errors import ErrorCode, SignalRejected
from .models import Direction, Position, Signal, SignalClass, utc_now
from ..utils.config_loader import SignalConfig

logger = logging.getLogger(__name__)


INSTRUMENT_FIELDS = ("instrument", "ticker", "symbol")
DIRECTION_FIELDS = ("direction", "signal", "action")
STRENGTH_FIELDS = ("strength", "strong")

CLOSE_PREFIXES = ("CLOSE_", "FECHE_", "FECHAR_")
STRONG_SUFFIXES = ("_FORTE", "_STRONG")
SIGNAL_PREFIX = "SINAL_"

SIDE_TOKENS = {
    "LONG": Direction.LONG,
    "BUY": Direction.LONG,
    "COMPRA": Direction.LONG,
    "SHORT": Direction.SHORT,
    "SELL": Direction.SHORT,
    "VENDA": Direction.SHORT,
}

# Epoch values above this are milliseconds
EPOCH_MS_THRESHOLD = 10 ** 11

# Tolerated clock skew for timestamps slightly in the future
FUTURE_SKEW_SECONDS = 5.0


@dataclass
class ParsedToken:
    direction: Optional[Direction]
    close_intent: bool
    strong: bool

    @property
    def recognised(self) -> bool:
        return self.direction is not None


@dataclass
class ClassifiedSignal:
    """A signal plus its class and the open positions a close would act on"""
    signal: Signal
    signal_class: SignalClass
    matching_positions: List[Position] = field(default_factory=list)

    @property
    def is_close(self) -> bool:
        return self.signal_class in (
            SignalClass.CLOSE_WITH_POSITION,
            SignalClass.CLOSE_WITHOUT_POSITION,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signal": self.signal.to_dict(),
            "class": self.signal_class.value,
            "matching_positions": len(self.matching_positions),
        }


def matching_positions(
    signal: Signal,
    open_positions_by_instrument: Optional[Dict[str, List[Position]]],
) -> List[Position]:
    """Open positions a close signal acts on: same instrument, same side, same exchange when given"""
    positions = (open_positions_by_instrument or {}).get(signal.instrument, [])
    return [
        p for p in positions
        if p.is_open
        and p.side is signal.direction
        and (signal.exchange is None or p.exchange == signal.exchange)
    ]


def parse_direction_token(raw: str) -> ParsedToken:
    """
    Decode a direction token

    LONG / BUY / SINAL_LONG, *_FORTE for strong signals, CLOSE_* / FECHE_*
    for close intent. An unknown token returns direction None.
    """
    token = str(raw).strip().upper().replace("-", "_").replace(" ", "_")
    if token.startswith(SIGNAL_PREFIX):
        token = token[len(SIGNAL_PREFIX):]

    close_intent = False
    for prefix in CLOSE_PREFIXES:
        if token.startswith(prefix):
            close_intent = True
            token = token[len(prefix):]
            break

    strong = False
    for suffix in STRONG_SUFFIXES:
        if token.endswith(suffix):
            strong = True
            token = token[: -len(suffix)]
            break

    return ParsedToken(direction=SIDE_TOKENS.get(token), close_intent=close_intent, strong=strong)


def normalize_instrument(raw: str) -> str:
    """BTC-USDT, BTC/USDT, BTCUSDT.P, BTC/USDT:USDT -> BTCUSDT"""
    symbol = str(raw).strip().upper()
    if ":" in symbol:
        symbol = symbol.split(":", 1)[0]
    for suffix in (".P", ".PERP", "PERP"):
        if symbol.endswith(suffix):
            symbol = symbol[: -len(suffix)]
            break
    for sep in ("-", "/", "_", " "):
        symbol = symbol.replace(sep, "")
    return symbol


def parse_timestamp(value: Any) -> datetime:
    """ISO-8601 string, epoch seconds or epoch milliseconds -> aware UTC datetime"""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        epoch = float(value)
    else:
        text = str(value).strip()
        try:
            epoch = float(text)
        except ValueError:
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            parsed = datetime.fromisoformat(text)
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    if epoch > EPOCH_MS_THRESHOLD:
        epoch /= 1000.0
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


def _parse_strength(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().upper() in ("STRONG", "FORTE", "TRUE", "1", "YES", "HIGH")


def _first(envelope: Dict[str, Any], names: Tuple[str, ...]) -> Any:
    for name in names:
        value = envelope.get(name)
        if value not in (None, ""):
            return value
    return None


class SignalIntake:
    """
    Turns raw envelopes into validated, classified signals

    Freshness is configured per strength: strong signals may keep a longer
    window than normal ones. Rejections raise SignalRejected with a typed code.
    """

    def __init__(
        self,
        config: Optional[SignalConfig] = None,
        supported_exchanges: Optional[Iterable[str]] = None,
    ):
        self.config = config or SignalConfig()
        self.supported_exchanges = (
            {e.lower() for e in supported_exchanges} if supported_exchanges is not None else None
        )
        self.accepted = 0
        self.rejected: Dict[str, int] = {}

    def freshness_window(self, strong: bool) -> timedelta:
        seconds = self.config.strong_freshness_seconds if strong else self.config.freshness_seconds
        return timedelta(seconds=seconds)

    def _reject(self, code: ErrorCode, message: str):
        self.rejected[code.value] = self.rejected.get(code.value, 0) + 1
        logger.info(f"Signal rejected ({code.value}): {message}")
        raise SignalRejected(code, message)

    def _check_instrument(self, instrument: str):
        if not instrument:
            self._reject(ErrorCode.INVALID_SIGNAL, "empty instrument")
        if not any(
            instrument.endswith(quote) and len(instrument) > len(quote)
            for quote in self.config.quote_assets
        ):
            self._reject(
                ErrorCode.UNSUPPORTED_INSTRUMENT_OR_EXCHANGE,
                f"{instrument} is not quoted in {', '.join(self.config.quote_assets)}",
            )
        allowed = self.config.allowed_instruments
        if allowed and instrument not in allowed:
            self._reject(
                ErrorCode.UNSUPPORTED_INSTRUMENT_OR_EXCHANGE, f"{instrument} is not enabled"
            )

    def _check_exchange(self, exchange: Optional[str]):
        if exchange is None or self.supported_exchanges is None:
            return
        if exchange not in self.supported_exchanges:
            self._reject(
                ErrorCode.UNSUPPORTED_INSTRUMENT_OR_EXCHANGE, f"no connector for exchange {exchange}"
            )

    def parse(self, envelope: Dict[str, Any], now: Optional[datetime] = None) -> Signal:
        """Validate an envelope; raises SignalRejected"""
        now = now or utc_now()
        if not isinstance(envelope, dict):
            self._reject(ErrorCode.INVALID_SIGNAL, "envelope must be a mapping")

        raw_instrument = _first(envelope, INSTRUMENT_FIELDS)
        raw_direction = _first(envelope, DIRECTION_FIELDS)
        source = envelope.get("source")
        raw_timestamp = envelope.get("timestamp")

        missing = [
            name for name, value in (
                ("instrument", raw_instrument),
                ("direction", raw_direction),
                ("source", source),
                ("timestamp", raw_timestamp),
            )
            if value in (None, "")
        ]
        if missing:
            self._reject(ErrorCode.INVALID_SIGNAL, f"missing field(s): {', '.join(missing)}")

        try:
            timestamp = parse_timestamp(raw_timestamp)
        except (TypeError, ValueError, OverflowError, OSError) as e:
            self._reject(ErrorCode.INVALID_SIGNAL, f"bad timestamp {raw_timestamp!r}: {e}")

        instrument = normalize_instrument(raw_instrument)
        self._check_instrument(instrument)

        exchange = envelope.get("exchange") or self.config.default_exchange or None
        exchange = str(exchange).lower() if exchange else None
        self._check_exchange(exchange)

        token = parse_direction_token(raw_direction)
        strong = token.strong or _parse_strength(_first(envelope, STRENGTH_FIELDS))

        price = envelope.get("price")
        try:
            price = float(price) if price not in (None, "") else None
        except (TypeError, ValueError):
            self._reject(ErrorCode.INVALID_SIGNAL, f"bad price {price!r}")
        if price is not None and price <= 0:
            self._reject(ErrorCode.INVALID_SIGNAL, f"non-positive price {price}")

        if timestamp > now + timedelta(seconds=FUTURE_SKEW_SECONDS):
            self._reject(ErrorCode.INVALID_SIGNAL, f"timestamp {timestamp.isoformat()} is in the future")

        expires_at = timestamp + self.freshness_window(strong and not token.close_intent)
        if now >= expires_at:
            age = (now - timestamp).total_seconds()
            self._reject(ErrorCode.STALE_SIGNAL, f"{instrument} signal is {age:.1f}s old")

        signal_id = str(envelope.get("id") or self._derive_id(source, instrument, raw_direction, timestamp))

        signal = Signal(
            id=signal_id,
            instrument=instrument,
            direction=token.direction,
            close_intent=token.close_intent,
            strong=strong,
            source=str(source),
            timestamp=timestamp,
            received_at=now,
            expires_at=expires_at,
            raw_type=str(raw_direction),
            price=price,
            exchange=exchange,
        )
        self.accepted += 1
        logger.debug(f"Accepted signal {signal.id}: {signal.raw_type} {signal.instrument}")
        return signal

    @staticmethod
    def _derive_id(source: Any, instrument: str, raw_direction: Any, timestamp: datetime) -> str:
        """Deterministic id so a redelivered envelope maps to the same signal"""
        material = f"{source}|{instrument}|{raw_direction}|{timestamp.isoformat()}"
        return hashlib.sha1(material.encode("utf-8")).hexdigest()[:16]

    def classify(
        self,
        signal: Signal,
        open_positions_by_instrument: Optional[Dict[str, List[Position]]] = None,
    ) -> ClassifiedSignal:
        """Tag the signal; close intent is matched against open positions"""
        if signal.direction is None:
            return ClassifiedSignal(signal, SignalClass.UNCLASSIFIED)

        if signal.close_intent:
            matching = matching_positions(signal, open_positions_by_instrument)
            if matching:
                return ClassifiedSignal(signal, SignalClass.CLOSE_WITH_POSITION, matching)
            return ClassifiedSignal(signal, SignalClass.CLOSE_WITHOUT_POSITION)

        if signal.strong:
            return ClassifiedSignal(signal, SignalClass.STRONG)
        return ClassifiedSignal(signal, SignalClass.NORMAL)

    def get_stats(self) -> Dict[str, Any]:
        return {"accepted": self.accepted, "rejected": dict(self.rejected)}
