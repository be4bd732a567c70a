"""
Configuration, the YAML credential store, file persistence and log redaction
"""

import asyncio
import json
import logging

import pytest
import yaml

from conftest import NOW
from signal_trader.core.collaborators import JsonFilePersistence, YamlCredentialStore
from signal_trader.core.models import Balance, Environment, PlanTier, ValidationStatus
from signal_trader.utils.config_loader import ConfigManager, TierConfig, TierLimits, resolve_env_vars
from signal_trader.utils.logger import ColoredFormatter, RedactingFilter


class TestConfigManager:

    def test_defaults_without_sections(self):
        config = ConfigManager(raw={})

        assert config.sentiment.refresh_minutes == 15.0
        assert config.signals.freshness_seconds == 30.0
        assert config.signals.strong_freshness_seconds == 60.0
        assert config.execution.cooldown_hours == 2.0
        assert config.execution.allow_hedged_positions is False
        assert set(config.exchanges) == {"bybit", "binance"}
        assert config.tiers.tiers["BASIC"].leverage == 5

    def test_sections_override_defaults(self):
        config = ConfigManager(raw={
            "signals": {"quote_assets": ["usdt", "usdc"], "allowed_instruments": ["btcusdt"]},
            "execution": {"max_concurrency": 4, "allow_hedged_positions": True},
            "exchanges": {"Bybit": {"recv_window": 10000}, "binance": {"enabled": False}},
            "protection": {"exempt_tiers": ["vip"]},
        })

        assert config.signals.quote_assets == ["USDT", "USDC"]
        assert config.signals.allowed_instruments == ["BTCUSDT"]
        assert config.execution.max_concurrency == 4
        assert config.execution.allow_hedged_positions is True
        assert config.exchanges["bybit"].recv_window == 10000
        assert config.exchanges["binance"].enabled is False
        assert config.protection.exempt_tiers == ["VIP"]

    def test_env_var_references_are_resolved(self, monkeypatch):
        monkeypatch.setenv("REASONING_KEY", "sk-test")
        config = ConfigManager(raw={"reasoning": {"api_key": "${REASONING_KEY}"}})

        assert config.reasoning.api_key == "sk-test"
        assert resolve_env_vars("${UNSET_SIGNAL_TRADER_VAR}") == ""
        assert resolve_env_vars("plain") == "plain"

    def test_tier_overrides_are_validated(self):
        config = ConfigManager(raw={"tiers": {"levels": {"vip": {"leverage": 2}}}})

        with pytest.raises(ValueError):
            config.tiers

    def test_tier_override_within_bounds(self):
        config = ConfigManager(raw={"tiers": {"levels": {"premium": {"leverage": 8}}, "max_leverage": 12}})

        assert config.tiers.tiers["PREMIUM"].leverage == 8
        assert config.tiers.max_leverage == 12

    def test_tier_table_must_be_complete(self):
        table = TierConfig(tiers={"FREE": TierLimits(50.0, 0.1, 3)})
        with pytest.raises(ValueError):
            table.validate()

    def test_loads_yaml_file(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(yaml.safe_dump({"sentiment": {"refresh_minutes": 5}}))

        config = ConfigManager(str(path))

        assert config.sentiment.refresh_minutes == 5.0
        assert config.sentiment.stale_multiplier == 2.0

    def test_missing_file_uses_defaults(self, tmp_path):
        config = ConfigManager(str(tmp_path / "absent.yaml"))
        assert config.raw == {}


class TestYamlCredentialStore:

    @pytest.mark.asyncio
    async def test_loads_users_and_resolves_secrets(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ALICE_KEY", "ak")
        monkeypatch.setenv("ALICE_SECRET", "s3cret-value")
        path = tmp_path / "users.yaml"
        path.write_text(yaml.safe_dump({"users": [{
            "id": "alice",
            "tier": "premium",
            "risk_limits": {"max_open_positions": 3},
            "credentials": [{
                "exchange": "Bybit",
                "environment": "testnet",
                "api_key": "${ALICE_KEY}",
                "api_secret": "${ALICE_SECRET}",
                "validation_status": "valid",
            }],
        }]}))

        store = YamlCredentialStore(str(path))
        users = await store.list_users()

        assert len(users) == 1
        user = users[0]
        assert user.tier is PlanTier.PREMIUM
        assert user.risk_limits.max_open_positions == 3
        credential = user.credentials[0]
        assert credential.exchange == "bybit"
        assert credential.environment is Environment.TESTNET
        assert credential.validation_status is ValidationStatus.VALID

        stored = await store.lookup(credential.key)
        assert (stored.api_key, stored.api_secret) == ("ak", "s3cret-value")
        assert "s3cret-value" not in repr(stored)

    @pytest.mark.asyncio
    async def test_missing_file_yields_no_users(self, tmp_path):
        store = YamlCredentialStore(str(tmp_path / "users.yaml"))
        assert await store.list_users() == []


class TestJsonFilePersistence:

    @pytest.mark.asyncio
    async def test_streams_append_json_lines(self, tmp_path):
        persistence = JsonFilePersistence(str(tmp_path / "data"))

        await persistence.record_run_summary({"signal_id": "a", "executed": 1})
        await persistence.record_run_summary({"signal_id": "b", "executed": 0})

        lines = (tmp_path / "data" / "run_summaries.jsonl").read_text().splitlines()
        assert [json.loads(line)["signal_id"] for line in lines] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_balances_are_upserted_by_key(self, tmp_path):
        persistence = JsonFilePersistence(str(tmp_path))

        await persistence.upsert_balance(Balance("alice", "bybit", "USDT", 1000.0, 900.0, NOW))
        await persistence.upsert_balance(Balance("alice", "bybit", "USDT", 1000.0, 800.0, NOW))

        state = json.loads((tmp_path / "balances.json").read_text())
        assert list(state) == ["alice|bybit|USDT"]
        assert state["alice|bybit|USDT"]["available"] == 800.0

    @pytest.mark.asyncio
    async def test_concurrent_upserts_keep_every_key(self, tmp_path):
        persistence = JsonFilePersistence(str(tmp_path))

        await asyncio.gather(*(
            persistence.upsert_balance(Balance(f"user-{i}", "bybit", "USDT", 1000.0, float(i), NOW))
            for i in range(20)
        ))

        state = json.loads((tmp_path / "balances.json").read_text())
        assert sorted(state) == sorted(f"user-{i}|bybit|USDT" for i in range(20))
        assert state["user-7|bybit|USDT"]["available"] == 7.0
        assert not list(tmp_path.glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_concurrent_appends_are_whole_lines(self, tmp_path):
        persistence = JsonFilePersistence(str(tmp_path))

        await asyncio.gather(*(persistence.record_run_summary({"signal_id": f"s{i}"}) for i in range(20)))

        lines = (tmp_path / "run_summaries.jsonl").read_text().splitlines()
        assert sorted(json.loads(line)["signal_id"] for line in lines) == sorted(f"s{i}" for i in range(20))


class TestLogging:

    def record(self, msg, *args):
        return logging.LogRecord("signal_trader.core.bybit_client", logging.INFO, __file__, 1, msg, args, None)

    def test_signatures_are_redacted(self):
        record = self.record("GET /fapi/v2/balance?timestamp=1&signature=%s", "0123456789abcdef")

        assert RedactingFilter().filter(record)
        assert record.getMessage() == "GET /fapi/v2/balance?timestamp=1&signature=0123***"

    def test_plain_messages_are_untouched(self):
        record = self.record("Verdict: %s (%.2f)", "LONG", 0.9)

        RedactingFilter().filter(record)

        assert record.getMessage() == "Verdict: LONG (0.90)"

    def test_console_format_names_component(self):
        line = ColoredFormatter(use_color=False).format(self.record("Order placed"))
        assert "| bybit_client" in line
        assert line.endswith("| Order placed")
