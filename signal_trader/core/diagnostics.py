"""
Connector Diagnostics
Ordered probe sequence against one credential, weighted health status,
critical issues with remediation hints, and the credential validation state
"""

import asyncio
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional
import logging

from .errors import CREDENTIAL_ERRORS, ErrorCode
from .exchange_client import ExchangeClient, ExchangeResponse
from .models import (
    CredentialKey,
    DiagnosticResult,
    ExchangeCredential,
    HealthStatus,
    ProbeCategory,
    User,
    ValidationStatus,
    utc_now,
)
from ..utils.config_loader import DiagnosticsConfig

logger = logging.getLogger(__name__)


PROBE_ORDER = [
    ProbeCategory.CONNECTIVITY,
    ProbeCategory.AUTHENTICATION,
    ProbeCategory.PERMISSIONS,
    ProbeCategory.BALANCE,
    ProbeCategory.TRADING,
    ProbeCategory.MARKET_DATA,
]

CATEGORY_WEIGHTS: Dict[ProbeCategory, float] = {
    ProbeCategory.CONNECTIVITY: 1.0,
    ProbeCategory.AUTHENTICATION: 2.0,
    ProbeCategory.PERMISSIONS: 1.5,
    ProbeCategory.BALANCE: 1.0,
    ProbeCategory.TRADING: 1.5,
    ProbeCategory.MARKET_DATA: 0.5,
}

# Exchange codes that mean the key itself is unknown or revoked
INVALID_KEY_CODES = {"10003", "33004", "-2014"}

REMEDIATION: Dict[str, str] = {
    "CONNECTIVITY_FAILURE": "Check network access to the exchange API and the exchange status page",
    "AUTHENTICATION_FAILURE": "Verify the API key and secret pair; regenerate the key if it was revoked",
    "INVALID_API_KEY": "The exchange does not recognise this key; create a new key and update the credential",
    "IP_WHITELIST_REQUIRED": "Add the engine's egress IP address to the API key whitelist",
    "PERMISSION_DENIED": "Enable read and contract-trade permissions on the API key",
    "RATE_LIMITED": "Reduce request frequency or wait for the rate-limit window to reset",
    "BALANCE_ACCESS_DENIED": "Grant wallet/account read access to the API key",
    "TRADING_ACCESS_DENIED": "Grant order and position access to the API key",
    "MARKET_DATA_UNAVAILABLE": "Public market data endpoints are unreachable; check the exchange status",
}


@dataclass
class CriticalIssue:
    code: str
    category: ProbeCategory
    message: str
    remediation: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "category": self.category.value,
            "message": self.message,
            "remediation": self.remediation,
        }


@dataclass
class DiagnosticReport:
    """Outcome of a diagnostic run against one credential"""
    connector: CredentialKey
    status: HealthStatus
    score: float
    results: List[DiagnosticResult]
    critical_issues: List[CriticalIssue] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    duration_ms: float = 0.0

    @property
    def healthy(self) -> bool:
        return not self.critical_issues and all(r.success for r in self.results)

    def result_for(self, category: ProbeCategory) -> Optional[DiagnosticResult]:
        return next((r for r in self.results if r.category is category), None)

    def issue_codes(self) -> List[str]:
        return [issue.code for issue in self.critical_issues]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connector": self.connector.masked(),
            "status": self.status.value,
            "score": round(self.score, 1),
            "results": [r.to_dict() for r in self.results],
            "critical_issues": [i.to_dict() for i in self.critical_issues],
            "recommendations": list(self.recommendations),
            "started_at": self.started_at.isoformat(),
            "duration_ms": round(self.duration_ms, 1),
        }


def classify_status(score: float, auth_failed: bool) -> HealthStatus:
    """Map a weighted success percentage onto a health status"""
    if score >= 100.0:
        status = HealthStatus.EXCELLENT
    elif score >= 80.0:
        status = HealthStatus.GOOD
    elif score >= 50.0:
        status = HealthStatus.PARTIAL
    elif score > 0.0:
        status = HealthStatus.LIMITED
    else:
        status = HealthStatus.FAILED

    if auth_failed and status in (HealthStatus.EXCELLENT, HealthStatus.GOOD):
        status = HealthStatus.PARTIAL
    return status


def weighted_score(results: Iterable[DiagnosticResult]) -> float:
    results = list(results)
    total = sum(CATEGORY_WEIGHTS[r.category] for r in results)
    if total == 0:
        return 0.0
    passed = sum(CATEGORY_WEIGHTS[r.category] for r in results if r.success)
    return passed / total * 100.0


def _issue(code: str, category: ProbeCategory, message: str) -> CriticalIssue:
    return CriticalIssue(code=code, category=category, message=message, remediation=REMEDIATION[code])


def derive_critical_issues(results: Iterable[DiagnosticResult]) -> List[CriticalIssue]:
    issues: Dict[str, CriticalIssue] = {}

    def add(code: str, result: DiagnosticResult):
        if code not in issues:
            issues[code] = _issue(code, result.category, result.status)

    for result in results:
        if result.success:
            continue
        kind = result.error_kind

        if kind is ErrorCode.RATE_LIMITED:
            add("RATE_LIMITED", result)
        if kind is ErrorCode.IP_RESTRICTED:
            add("IP_WHITELIST_REQUIRED", result)

        if result.category is ProbeCategory.CONNECTIVITY:
            if kind is not ErrorCode.RATE_LIMITED:
                add("CONNECTIVITY_FAILURE", result)
        elif result.category is ProbeCategory.AUTHENTICATION:
            add("AUTHENTICATION_FAILURE", result)
            if result.raw_code in INVALID_KEY_CODES:
                add("INVALID_API_KEY", result)
        elif result.category is ProbeCategory.PERMISSIONS:
            add("PERMISSION_DENIED", result)
        elif result.category is ProbeCategory.BALANCE:
            add("BALANCE_ACCESS_DENIED", result)
        elif result.category is ProbeCategory.TRADING:
            add("TRADING_ACCESS_DENIED", result)
        elif result.category is ProbeCategory.MARKET_DATA:
            add("MARKET_DATA_UNAVAILABLE", result)

    return list(issues.values())


class CredentialRegistry:
    """
    Credential validation state owned by the engine

    Only ConnectorDiagnostics moves a credential between PENDING, VALID
    and INVALID; everything else reads.
    """

    def __init__(self, on_invalidated: Optional[Callable[[CredentialKey], Any]] = None):
        self._credentials: Dict[CredentialKey, ExchangeCredential] = {}
        self.on_invalidated = on_invalidated

    def load(self, users: Iterable[User]):
        for user in users:
            for credential in user.credentials:
                # Keep state learned at runtime over the collaborator's copy
                if credential.key not in self._credentials:
                    self._credentials[credential.key] = credential

    def get(self, key: CredentialKey) -> Optional[ExchangeCredential]:
        return self._credentials.get(key)

    def status(self, key: CredentialKey) -> ValidationStatus:
        credential = self._credentials.get(key)
        return credential.validation_status if credential else ValidationStatus.PENDING

    def is_usable(self, key: CredentialKey) -> bool:
        credential = self._credentials.get(key)
        return credential is not None and credential.is_usable

    def all(self) -> List[ExchangeCredential]:
        return list(self._credentials.values())

    def _record_validation(self, key: CredentialKey, status: ValidationStatus, checked_at: datetime):
        credential = self._credentials.get(key)
        if credential is None:
            return
        if credential.validation_status is not status:
            logger.info(
                f"Credential {key.masked()}: {credential.validation_status.value} -> {status.value}"
            )
        self._credentials[key] = replace(credential, validation_status=status, last_checked=checked_at)
        if status is ValidationStatus.INVALID and self.on_invalidated is not None:
            self.on_invalidated(key)


ProbeCall = Callable[[], Awaitable[ExchangeResponse]]


class ConnectorDiagnostics:
    """
    Runs connectivity -> authentication -> permissions -> balance ->
    trading -> market data against one connector and scores the result
    """

    def __init__(
        self,
        registry: CredentialRegistry,
        config: Optional[DiagnosticsConfig] = None,
        state_store=None,
        persistence=None,
        settlement_asset: str = "USDT",
    ):
        self.registry = registry
        self.config = config or DiagnosticsConfig()
        self.state_store = state_store
        self.persistence = persistence
        self.settlement_asset = settlement_asset

    async def _probe(
        self, key: CredentialKey, category: ProbeCategory, calls: List[ProbeCall]
    ) -> DiagnosticResult:
        """Run the calls for one category in order; the first failure decides"""
        started = time.monotonic()
        details: Dict[str, Any] = {}
        for call in calls:
            try:
                response = await asyncio.wait_for(call(), timeout=self.config.probe_timeout_seconds)
            except asyncio.TimeoutError:
                return DiagnosticResult(
                    connector=key,
                    category=category,
                    success=False,
                    status=f"probe timed out after {self.config.probe_timeout_seconds}s",
                    error_kind=ErrorCode.TIMEOUT,
                    latency_ms=(time.monotonic() - started) * 1000,
                )
            if not response.ok:
                return DiagnosticResult(
                    connector=key,
                    category=category,
                    success=False,
                    status=response.message,
                    error_kind=response.error_kind,
                    raw_code=response.raw_code,
                    latency_ms=(time.monotonic() - started) * 1000,
                )
            details.update(self._summarize(category, response.data))

        success = True
        status = "ok"
        if category is ProbeCategory.PERMISSIONS and not details.get("trade", False):
            success = False
            status = "API key lacks trade permission"

        return DiagnosticResult(
            connector=key,
            category=category,
            success=success,
            status=status,
            error_kind=None if success else ErrorCode.INSUFFICIENT_PERMISSIONS,
            latency_ms=(time.monotonic() - started) * 1000,
            details=details,
        )

    def _summarize(self, category: ProbeCategory, data: Any) -> Dict[str, Any]:
        if category is ProbeCategory.CONNECTIVITY and isinstance(data, int):
            return {"clock_skew_ms": data - int(time.time() * 1000)}
        if category is ProbeCategory.PERMISSIONS and isinstance(data, dict):
            return {k: data.get(k) for k in ("read", "trade", "withdraw", "ip_restricted")}
        if category is ProbeCategory.BALANCE and isinstance(data, dict):
            return {"total": data.get("total"), "available": data.get("available")}
        if category is ProbeCategory.TRADING and isinstance(data, list):
            return {"orders_visible": len(data)}
        if category is ProbeCategory.MARKET_DATA:
            if isinstance(data, (int, float)):
                return {"last_price": data}
            if isinstance(data, dict):
                return {"book_levels": len(data.get("bids", []))}
        return {}

    def _calls_for(self, client: ExchangeClient, category: ProbeCategory) -> List[ProbeCall]:
        instrument = self.config.probe_instrument
        if category is ProbeCategory.CONNECTIVITY:
            return [client.server_time]
        if category is ProbeCategory.AUTHENTICATION:
            return [client.account_info]
        if category is ProbeCategory.PERMISSIONS:
            return [client.api_permissions]
        if category is ProbeCategory.BALANCE:
            return [lambda: client.get_balance(self.settlement_asset)]
        if category is ProbeCategory.TRADING:
            return [
                lambda: client.open_orders(instrument),
                lambda: client.order_history(instrument, 5),
                lambda: client.list_positions(),
            ]
        return [
            lambda: client.last_price(instrument),
            lambda: client.orderbook(instrument, 5),
        ]

    async def run(
        self,
        key: CredentialKey,
        client: ExchangeClient,
        categories: Optional[List[ProbeCategory]] = None,
    ) -> DiagnosticReport:
        categories = categories or PROBE_ORDER
        started_at = utc_now()
        started = time.monotonic()

        results = []
        for category in PROBE_ORDER:
            if category in categories:
                results.append(await self._probe(key, category, self._calls_for(client, category)))

        auth = next((r for r in results if r.category is ProbeCategory.AUTHENTICATION), None)
        score = weighted_score(results)
        report = DiagnosticReport(
            connector=key,
            status=classify_status(score, auth_failed=auth is not None and not auth.success),
            score=score,
            results=results,
            critical_issues=derive_critical_issues(results),
            recommendations=self._recommendations(results),
            started_at=started_at,
            duration_ms=(time.monotonic() - started) * 1000,
        )

        self._apply_validation(key, auth, started_at)
        await self._record(results)

        level = logging.INFO if report.status in (HealthStatus.EXCELLENT, HealthStatus.GOOD) else logging.WARNING
        logger.log(
            level,
            f"Diagnostics {key.masked()}: {report.status.value} ({score:.0f}%)"
            + (f" issues={','.join(report.issue_codes())}" if report.critical_issues else "")
        )
        return report

    async def run_full(self, key: CredentialKey, client: ExchangeClient) -> DiagnosticReport:
        return await self.run(key, client, PROBE_ORDER)

    async def quick_check(self, key: CredentialKey, client: ExchangeClient) -> DiagnosticReport:
        """Connectivity and authentication only"""
        return await self.run(key, client, [ProbeCategory.CONNECTIVITY, ProbeCategory.AUTHENTICATION])

    def _apply_validation(
        self, key: CredentialKey, auth: Optional[DiagnosticResult], checked_at: datetime
    ):
        if auth is None:
            return
        if auth.success:
            self.registry._record_validation(key, ValidationStatus.VALID, checked_at)
        elif auth.error_kind in CREDENTIAL_ERRORS:
            self.registry._record_validation(key, ValidationStatus.INVALID, checked_at)
        # Connectivity, timeout and rate limiting say nothing about the key

    async def _record(self, results: List[DiagnosticResult]):
        for result in results:
            if self.state_store is not None:
                self.state_store.put_diagnostic(result)
            if self.persistence is not None:
                try:
                    await self.persistence.record_diagnostic(result)
                except Exception as e:
                    logger.warning(f"Failed to persist diagnostic result: {e}")

    def _recommendations(self, results: List[DiagnosticResult]) -> List[str]:
        recommendations = []
        for result in results:
            if result.category is ProbeCategory.BALANCE and result.success:
                if (result.details.get("available") or 0) <= 0:
                    recommendations.append("Deposit funds to enable trading")
            if result.category is ProbeCategory.PERMISSIONS and result.details.get("withdraw"):
                recommendations.append("Disable withdrawal permission on trading keys")
            if result.category is ProbeCategory.PERMISSIONS and result.details.get("ip_restricted") is False:
                recommendations.append("Restrict the API key to known IP addresses")
        return recommendations
