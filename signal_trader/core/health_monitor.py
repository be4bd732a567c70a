"""
Credential Health Monitor
Periodic connectivity + authentication checks with alerts on degradation
"""

import asyncio
from typing import Dict, Iterable, List, Optional, Set
import logging

from .collaborators import Alert, Notifier
from .diagnostics import ConnectorDiagnostics, CredentialRegistry, DiagnosticReport
from .errors import EngineError
from .exchange_client import ConnectorPool
from .models import CredentialKey, utc_now

logger = logging.getLogger(__name__)


class HealthMonitor:
    """
    Re-runs the quick check for every active credential

    An alert is raised only on a transition from healthy to failing, so a
    key that stays broken does not alert on every tick. Credentials flagged
    as suspect during execution are checked first on the next pass.
    """

    def __init__(
        self,
        diagnostics: ConnectorDiagnostics,
        registry: CredentialRegistry,
        pool: ConnectorPool,
        notifier: Notifier,
        max_concurrency: int = 5,
    ):
        self.diagnostics = diagnostics
        self.registry = registry
        self.pool = pool
        self.notifier = notifier
        self.max_concurrency = max_concurrency
        self._healthy: Dict[CredentialKey, bool] = {}
        self._suspects: Set[CredentialKey] = set()
        self._alert_tasks: Set[asyncio.Task] = set()
        self.alerts_sent = 0
        self.checks_run = 0

    def mark_suspect(self, key: CredentialKey):
        """Queue a credential for revalidation after an execution-time auth/IP failure"""
        if key not in self._suspects:
            logger.info(f"Credential {key.masked()} flagged for revalidation")
        self._suspects.add(key)

    @property
    def suspects(self) -> Set[CredentialKey]:
        return set(self._suspects)

    def is_healthy(self, key: CredentialKey) -> Optional[bool]:
        return self._healthy.get(key)

    def _targets(self, keys: Optional[Iterable[CredentialKey]]) -> List[CredentialKey]:
        if keys is not None:
            return list(keys)
        active = [c.key for c in self.registry.all() if c.active]
        suspects = [k for k in self._suspects if k in active]
        return suspects + [k for k in active if k not in self._suspects]

    async def check_once(self, keys: Optional[Iterable[CredentialKey]] = None) -> Dict[CredentialKey, DiagnosticReport]:
        targets = self._targets(keys)
        semaphore = asyncio.Semaphore(self.max_concurrency)
        reports: Dict[CredentialKey, DiagnosticReport] = {}

        async def check(key: CredentialKey):
            async with semaphore:
                try:
                    client = await self.pool.get(key)
                except EngineError as e:
                    logger.warning(f"Health check skipped for {key.masked()}: {e}")
                    return
                report = await self.diagnostics.quick_check(key, client)
                reports[key] = report
                self._observe(key, report)

        await asyncio.gather(*(check(key) for key in targets))
        self._suspects.difference_update(reports)
        self.checks_run += 1

        failing = sum(1 for r in reports.values() if not r.healthy)
        logger.info(f"Health check: {len(reports)} credentials, {failing} failing")
        return reports

    def _observe(self, key: CredentialKey, report: DiagnosticReport):
        was_healthy = self._healthy.get(key)
        now_healthy = report.healthy
        self._healthy[key] = now_healthy

        if was_healthy and not now_healthy:
            issues = report.issue_codes() or [
                r.error_kind.value for r in report.results if not r.success and r.error_kind
            ]
            self._dispatch(Alert(account_id=key.masked(), issues=issues, timestamp=utc_now()))
        elif was_healthy is False and now_healthy:
            logger.info(f"Credential {key.masked()} recovered")

    def _dispatch(self, alert: Alert):
        """Fire-and-forget delivery"""
        logger.warning(f"Credential degraded: {alert.account_id} ({', '.join(alert.issues)})")
        task = asyncio.create_task(self._deliver(alert))
        self._alert_tasks.add(task)
        task.add_done_callback(self._alert_tasks.discard)
        self.alerts_sent += 1

    async def _deliver(self, alert: Alert):
        try:
            await self.notifier.notify(alert)
        except Exception as e:
            logger.error(f"Alert delivery failed for {alert.account_id}: {e}")

    async def drain(self):
        """Wait for in-flight alert deliveries"""
        if self._alert_tasks:
            await asyncio.gather(*list(self._alert_tasks), return_exceptions=True)

    def get_stats(self) -> Dict:
        return {
            "checks_run": self.checks_run,
            "alerts_sent": self.alerts_sent,
            "tracked": len(self._healthy),
            "failing": sorted(k.masked() for k, ok in self._healthy.items() if not ok),
            "suspects": sorted(k.masked() for k in self._suspects),
        }
