"""
Collaborator Contracts
Credential store, persistence and notification channel consumed by the engine
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
import yaml
import logging

from .errors import PersistenceError
from .models import (
    Balance,
    CredentialKey,
    DiagnosticResult,
    Environment,
    ExchangeCredential,
    ExecutionRecord,
    MarketVerdict,
    PlanTier,
    Position,
    RiskLimits,
    User,
    ValidationStatus,
    utc_now,
)
from ..utils.config_loader import resolve_env_vars

logger = logging.getLogger(__name__)


# Credential store

@dataclass
class StoredCredential:
    """Key material for one (user, exchange, environment)"""
    key: CredentialKey
    api_key: str
    api_secret: str = field(repr=False)
    validation_status: ValidationStatus = ValidationStatus.PENDING


class CredentialStore(ABC):
    """Read-only source of users and their exchange key material"""

    @abstractmethod
    async def list_users(self) -> List[User]:
        pass

    @abstractmethod
    async def lookup(self, key: CredentialKey) -> Optional[StoredCredential]:
        pass


class InMemoryCredentialStore(CredentialStore):
    def __init__(self):
        self._users: Dict[str, User] = {}
        self._secrets: Dict[CredentialKey, StoredCredential] = {}

    def add_user(self, user: User, secrets: Optional[Dict[CredentialKey, Tuple[str, str]]] = None):
        self._users[user.id] = user
        for credential in user.credentials:
            api_key, api_secret = (secrets or {}).get(credential.key, ("", ""))
            self._secrets[credential.key] = StoredCredential(
                key=credential.key,
                api_key=api_key,
                api_secret=api_secret,
                validation_status=credential.validation_status,
            )

    async def list_users(self) -> List[User]:
        return list(self._users.values())

    async def lookup(self, key: CredentialKey) -> Optional[StoredCredential]:
        return self._secrets.get(key)


class YamlCredentialStore(InMemoryCredentialStore):
    """
    Users file loaded with PyYAML

    Secrets are written as ``${ENV_VAR}`` references and resolved from the
    environment at load time::

        users:
          - id: alice
            tier: BASIC
            credentials:
              - exchange: bybit
                environment: mainnet
                api_key: ${ALICE_BYBIT_KEY}
                api_secret: ${ALICE_BYBIT_SECRET}
    """

    def __init__(self, path: str):
        super().__init__()
        self.path = path
        self._load()

    def _load(self):
        if not os.path.exists(self.path):
            logger.warning(f"Users file not found: {self.path}")
            return

        with open(self.path, "r") as f:
            raw = yaml.safe_load(f) or {}

        for entry in raw.get("users", []):
            user_id = str(entry["id"])
            credentials = []
            secrets: Dict[CredentialKey, Tuple[str, str]] = {}

            for cred in entry.get("credentials", []):
                credential = ExchangeCredential(
                    user_id=user_id,
                    exchange=str(cred["exchange"]).lower(),
                    environment=Environment(str(cred.get("environment", "mainnet")).lower()),
                    key_ref=str(cred.get("api_key", "")),
                    validation_status=ValidationStatus(
                        str(cred.get("validation_status", "pending")).lower()
                    ),
                    active=bool(cred.get("active", True)),
                )
                credentials.append(credential)
                secrets[credential.key] = (
                    resolve_env_vars(cred.get("api_key", "")),
                    resolve_env_vars(cred.get("api_secret", "")),
                )

            limits = entry.get("risk_limits", {}) or {}
            user = User(
                id=user_id,
                name=entry.get("name", user_id),
                tier=PlanTier.parse(entry.get("tier", "BASIC")),
                credentials=credentials,
                risk_limits=RiskLimits(
                    max_open_positions=int(limits.get("max_open_positions", 2)),
                    max_leverage=limits.get("max_leverage"),
                    max_position_fraction=limits.get("max_position_fraction"),
                ),
                active=bool(entry.get("active", True)),
            )
            self.add_user(user, secrets)

        logger.info(f"Loaded {len(self._users)} users from {self.path}")


# Persistence

class Persistence(ABC):
    """Append/upsert sink for engine bookkeeping"""

    @abstractmethod
    async def record_signal(self, metrics: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def record_verdict(self, verdict: MarketVerdict) -> None:
        pass

    @abstractmethod
    async def upsert_position(self, position: Position) -> None:
        pass

    @abstractmethod
    async def upsert_balance(self, balance: Balance) -> None:
        pass

    @abstractmethod
    async def record_diagnostic(self, result: DiagnosticResult) -> None:
        pass

    @abstractmethod
    async def record_execution(self, record: ExecutionRecord) -> None:
        pass

    @abstractmethod
    async def record_run_summary(self, summary: Dict[str, Any]) -> None:
        pass


class InMemoryPersistence(Persistence):
    def __init__(self):
        self.signals: List[Dict[str, Any]] = []
        self.verdicts: List[MarketVerdict] = []
        self.positions: Dict[Any, Position] = {}
        self.balances: Dict[Any, Balance] = {}
        self.diagnostics: List[DiagnosticResult] = []
        self.executions: List[ExecutionRecord] = []
        self.run_summaries: List[Dict[str, Any]] = []

    async def record_signal(self, metrics: Dict[str, Any]) -> None:
        self.signals.append(metrics)

    async def record_verdict(self, verdict: MarketVerdict) -> None:
        self.verdicts.append(verdict)

    async def upsert_position(self, position: Position) -> None:
        self.positions[position.key] = position

    async def upsert_balance(self, balance: Balance) -> None:
        self.balances[balance.key] = balance

    async def record_diagnostic(self, result: DiagnosticResult) -> None:
        self.diagnostics.append(result)

    async def record_execution(self, record: ExecutionRecord) -> None:
        self.executions.append(record)

    async def record_run_summary(self, summary: Dict[str, Any]) -> None:
        self.run_summaries.append(summary)


class JsonFilePersistence(Persistence):
    """
    File-backed persistence

    Event streams are appended as JSON lines; positions and balances are
    kept as keyed state files rewritten on every upsert. File I/O runs in a
    worker thread, one writer per file at a time, and state files are
    replaced atomically.
    """

    def __init__(self, data_dir: str = "data"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.positions_file = self.data_dir / "positions.json"
        self.balances_file = self.data_dir / "balances.json"
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        return lock

    async def _write(self, name: str, func, *args):
        async with self._lock(name):
            await asyncio.to_thread(func, *args)

    def _append(self, stream: str, payload: Dict[str, Any]):
        try:
            with open(self.data_dir / f"{stream}.jsonl", "a") as f:
                f.write(json.dumps(payload, default=str) + "\n")
        except OSError as e:
            raise PersistenceError(f"cannot append to {stream}: {e}") from e

    def _upsert(self, path: Path, key: str, payload: Dict[str, Any]):
        try:
            state: Dict[str, Any] = {}
            if path.exists():
                with open(path, "r") as f:
                    state = json.load(f)
            state[key] = payload
            tmp = path.with_suffix(".tmp")
            with open(tmp, "w") as f:
                json.dump(state, f, indent=2, default=str)
            os.replace(tmp, path)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"cannot update {path.name}: {e}") from e

    async def record_signal(self, metrics: Dict[str, Any]) -> None:
        await self._write("signals", self._append, "signals", metrics)

    async def record_verdict(self, verdict: MarketVerdict) -> None:
        await self._write("verdicts", self._append, "verdicts", verdict.to_dict())

    async def upsert_position(self, position: Position) -> None:
        key = f"{position.user_id}|{position.exchange}|{position.instrument}|{position.side.value}"
        await self._write("positions", self._upsert, self.positions_file, key, position.to_dict())

    async def upsert_balance(self, balance: Balance) -> None:
        key = f"{balance.user_id}|{balance.exchange}|{balance.asset}"
        await self._write("balances", self._upsert, self.balances_file, key, balance.to_dict())

    async def record_diagnostic(self, result: DiagnosticResult) -> None:
        await self._write("diagnostics", self._append, "diagnostics", result.to_dict())

    async def record_execution(self, record: ExecutionRecord) -> None:
        await self._write("executions", self._append, "executions", record.to_dict())

    async def record_run_summary(self, summary: Dict[str, Any]) -> None:
        await self._write("run_summaries", self._append, "run_summaries", summary)


# Notification channel

@dataclass
class Alert:
    """Credential degradation alert"""
    account_id: str
    issues: List[str]
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "issues": list(self.issues),
            "timestamp": self.timestamp.isoformat(),
        }


class Notifier(ABC):
    @abstractmethod
    async def notify(self, alert: Alert) -> None:
        pass


class LoggingNotifier(Notifier):
    def __init__(self):
        self.sent: List[Alert] = []

    async def notify(self, alert: Alert) -> None:
        self.sent.append(alert)
        logger.warning(f"ALERT {alert.account_id}: {', '.join(alert.issues)}")


class WebhookNotifier(Notifier):
    """POSTs the alert payload as JSON"""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    async def notify(self, alert: Alert) -> None:
        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as session:
                async with session.post(self.url, json=alert.to_dict()) as response:
                    if response.status >= 400:
                        logger.warning(f"Alert webhook returned {response.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Alert webhook failed: {e}")
