"""
Error Taxonomy
Typed reason codes shared by every component, and the exceptions that carry them
"""

from enum import Enum
from typing import Optional


class ErrorCode(Enum):
    """Typed reason codes reported in run summaries and execution records"""
    # Signal intake
    STALE_SIGNAL = "STALE_SIGNAL"
    INVALID_SIGNAL = "INVALID_SIGNAL"
    UNSUPPORTED_INSTRUMENT_OR_EXCHANGE = "UNSUPPORTED_INSTRUMENT_OR_EXCHANGE"

    # Decision
    NO_VERDICT = "NO_VERDICT"
    DIRECTION_NOT_ALLOWED = "DIRECTION_NOT_ALLOWED"
    REASONING_DECLINED = "REASONING_DECLINED"

    # Sizing
    BELOW_MINIMUM_NOTIONAL = "BELOW_MINIMUM_NOTIONAL"
    MISSING_PROTECTION = "MISSING_PROTECTION"

    # Eligibility
    CREDENTIAL_INVALID = "CREDENTIAL_INVALID"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    POSITION_LIMIT = "POSITION_LIMIT"
    COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"
    DUPLICATE_EXECUTION = "DUPLICATE_EXECUTION"

    # Connector
    CONNECTIVITY_FAILURE = "CONNECTIVITY_FAILURE"
    AUTH_FAILED = "AUTH_FAILED"
    IP_RESTRICTED = "IP_RESTRICTED"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
    RATE_LIMITED = "RATE_LIMITED"
    UNKNOWN = "UNKNOWN"

    # Execution / bookkeeping
    EXECUTION_FAILED = "EXECUTION_FAILED"
    TIMEOUT = "TIMEOUT"
    PERSISTENCE_FAILURE = "PERSISTENCE_FAILURE"


# Connector failures that point at the credential rather than the network
CREDENTIAL_ERRORS = frozenset({
    ErrorCode.AUTH_FAILED,
    ErrorCode.IP_RESTRICTED,
    ErrorCode.INSUFFICIENT_PERMISSIONS,
})

# Order responses proving the exchange refused the order, so nothing was placed
REFUSED_ERRORS = CREDENTIAL_ERRORS | {ErrorCode.RATE_LIMITED}


class EngineError(Exception):
    """Base exception carrying a typed reason code"""

    def __init__(self, code: ErrorCode, message: str = "", raw_code: Optional[str] = None):
        self.code = code
        self.message = message or code.value
        self.raw_code = raw_code
        super().__init__(f"{code.value}: {self.message}")


class SignalRejected(EngineError):
    """Raised by intake when an envelope cannot become an actionable signal"""


class SizingError(EngineError):
    """Raised by the risk policy when an order cannot be sized safely"""


class ConnectorError(EngineError):
    """Raised by exchange clients for a non-success response"""


class PersistenceError(EngineError):
    """Raised when bookkeeping cannot be written"""

    def __init__(self, message: str = ""):
        super().__init__(ErrorCode.PERSISTENCE_FAILURE, message)
