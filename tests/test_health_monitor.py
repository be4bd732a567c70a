"""
Health monitor: alerts only on the healthy -> failing transition
"""

import pytest

from conftest import make_user
from signal_trader.core.collaborators import InMemoryCredentialStore, LoggingNotifier
from signal_trader.core.diagnostics import ConnectorDiagnostics, CredentialRegistry
from signal_trader.core.errors import ConnectorError, ErrorCode
from signal_trader.core.exchange_client import ConnectorPool, SimulatedExchangeClient, default_registry
from signal_trader.core.health_monitor import HealthMonitor
from signal_trader.core.models import ValidationStatus


def build_monitor(*users):
    registry = CredentialRegistry()
    registry.load(users)
    pool = ConnectorPool(default_registry, InMemoryCredentialStore())
    clients = {}
    for user in users:
        for credential in user.credentials:
            clients[credential.key] = SimulatedExchangeClient()
            pool.inject(credential.key, clients[credential.key])
    notifier = LoggingNotifier()
    monitor = HealthMonitor(ConnectorDiagnostics(registry), registry, pool, notifier)
    return monitor, notifier, clients


class TestHealthMonitor:

    @pytest.mark.asyncio
    async def test_alert_on_degradation_only(self):
        user = make_user("alice")
        key = user.credentials[0].key
        monitor, notifier, clients = build_monitor(user)

        await monitor.check_once()
        assert monitor.is_healthy(key) is True
        assert notifier.sent == []

        clients[key].fail_operations["account_info"] = ErrorCode.AUTH_FAILED
        await monitor.check_once()
        await monitor.drain()

        assert monitor.is_healthy(key) is False
        assert len(notifier.sent) == 1
        alert = notifier.sent[0]
        assert alert.account_id == key.masked()
        assert "AUTHENTICATION_FAILURE" in alert.issues

        await monitor.check_once()
        await monitor.drain()
        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_first_failure_without_prior_health_is_silent(self):
        user = make_user("alice")
        monitor, notifier, clients = build_monitor(user)
        clients[user.credentials[0].key].fail_with = ErrorCode.CONNECTIVITY_FAILURE

        await monitor.check_once()
        await monitor.drain()

        assert notifier.sent == []
        assert monitor.get_stats()["failing"] == [user.credentials[0].key.masked()]

    @pytest.mark.asyncio
    async def test_recovery_clears_failure(self):
        user = make_user("alice")
        key = user.credentials[0].key
        monitor, _, clients = build_monitor(user)

        clients[key].fail_with = ErrorCode.CONNECTIVITY_FAILURE
        await monitor.check_once()
        clients[key].fail_with = None
        await monitor.check_once()

        assert monitor.is_healthy(key) is True

    @pytest.mark.asyncio
    async def test_suspects_checked_first_then_cleared(self):
        alice, bob = make_user("alice"), make_user("bob")
        monitor, _, _ = build_monitor(alice, bob)
        bob_key = bob.credentials[0].key

        monitor.mark_suspect(bob_key)
        assert monitor._targets(None)[0] == bob_key

        await monitor.check_once()
        assert monitor.suspects == set()

    @pytest.mark.asyncio
    async def test_missing_key_material_is_skipped(self):
        user = make_user("alice")
        registry = CredentialRegistry()
        registry.load([user])
        pool = ConnectorPool(default_registry, InMemoryCredentialStore())
        monitor = HealthMonitor(ConnectorDiagnostics(registry), registry, pool, LoggingNotifier())

        reports = await monitor.check_once()

        assert reports == {}
        assert monitor.checks_run == 1

    @pytest.mark.asyncio
    async def test_failing_notifier_does_not_break_checks(self):
        user = make_user("alice")
        key = user.credentials[0].key
        monitor, notifier, clients = build_monitor(user)

        async def broken(alert):
            raise RuntimeError("webhook down")
        notifier.notify = broken

        await monitor.check_once()
        clients[key].fail_operations["account_info"] = ErrorCode.AUTH_FAILED
        await monitor.check_once()
        await monitor.drain()

        assert monitor.alerts_sent == 1


class TestConnectorEviction:

    @pytest.mark.asyncio
    async def test_rejected_key_drops_cached_connector(self):
        user = make_user("alice")
        key = user.credentials[0].key
        pool = ConnectorPool(default_registry, InMemoryCredentialStore())
        registry = CredentialRegistry(on_invalidated=pool.invalidate)
        registry.load([user])
        client = SimulatedExchangeClient(fail_operations={"account_info": ErrorCode.AUTH_FAILED})
        pool.inject(key, client)

        await ConnectorDiagnostics(registry).quick_check(key, client)

        assert registry.status(key) is ValidationStatus.INVALID
        with pytest.raises(ConnectorError):
            await pool.get(key)

    @pytest.mark.asyncio
    async def test_rotated_key_is_rebuilt(self):
        user = make_user("alice")
        key = user.credentials[0].key
        store = InMemoryCredentialStore()
        store.add_user(user, secrets={key: ("old-key", "old-secret")})
        pool = ConnectorPool(default_registry, store)

        first = await pool.get(key)
        assert await pool.evict_rotated() == 0

        store.add_user(user, secrets={key: ("new-key", "new-secret")})
        assert await pool.evict_rotated() == 1

        second = await pool.get(key)
        assert second is not first
        assert second.api_key == "new-key"
        await pool.close_all()

    def test_simulated_pool_keeps_paper_state(self):
        user = make_user("alice")
        key = user.credentials[0].key
        pool = ConnectorPool(default_registry, InMemoryCredentialStore(), simulated=True)
        client = SimulatedExchangeClient()
        pool.inject(key, client)

        assert pool.invalidate(key) is None
        assert pool._clients[key] is client
