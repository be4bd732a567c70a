"""
Exchange Connector Base
Signed REST transport, normalized responses, connector registry and the simulated exchange
"""

import asyncio
import hashlib
import hmac
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Type
from urllib.parse import urlencode

import aiohttp
import logging

from .errors import ConnectorError, ErrorCode
from .models import Direction, Environment, InstrumentRules, OrderRequest, OrderResult

logger = logging.getLogger(__name__)


@dataclass
class ExchangeResponse:
    """Normalized connector response: ok with data, or a typed failure"""
    ok: bool
    data: Any = None
    error_kind: Optional[ErrorCode] = None
    raw_code: Optional[str] = None
    message: str = ""
    http_status: Optional[int] = None
    latency_ms: float = 0.0

    @classmethod
    def success(cls, data: Any, http_status: int = 200, latency_ms: float = 0.0) -> "ExchangeResponse":
        return cls(ok=True, data=data, http_status=http_status, latency_ms=latency_ms)

    @classmethod
    def failure(
        cls,
        error_kind: ErrorCode,
        message: str = "",
        raw_code: Optional[str] = None,
        http_status: Optional[int] = None,
        latency_ms: float = 0.0,
    ) -> "ExchangeResponse":
        return cls(
            ok=False,
            error_kind=error_kind,
            raw_code=raw_code,
            message=message or error_kind.value,
            http_status=http_status,
            latency_ms=latency_ms,
        )

    def unwrap(self) -> Any:
        """Return data or raise ConnectorError"""
        if not self.ok:
            raise ConnectorError(self.error_kind or ErrorCode.UNKNOWN, self.message, self.raw_code)
        return self.data

    def with_data(self, data: Any) -> "ExchangeResponse":
        return ExchangeResponse(
            ok=self.ok,
            data=data,
            error_kind=self.error_kind,
            raw_code=self.raw_code,
            message=self.message,
            http_status=self.http_status,
            latency_ms=self.latency_ms,
        )


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        if value is None or value == "":
            return default
        return float(value)
    except (TypeError, ValueError):
        return default


def format_decimal(value: float) -> str:
    return f"{value:.8f}".rstrip("0").rstrip(".") or "0"


class ExchangeClient(ABC):
    """
    Base class for exchange connectors

    Subclasses provide the endpoint layout, the header scheme and the
    mapping from exchange error codes to ErrorCode. Every request goes
    through _request, which signs, applies the hard timeout and
    normalizes the result into an ExchangeResponse.
    """

    exchange_id: str = ""
    BASE_URLS: Dict[Environment, str] = {}

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        environment: Environment = Environment.MAINNET,
        timeout: float = 15.0,
        recv_window: int = 5000,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.environment = environment
        self.timeout = timeout
        self.recv_window = recv_window
        self.base_url = self.BASE_URLS.get(environment, "")
        self._session = session
        self._owns_session = session is None
        self._instrument_rules: Dict[str, InstrumentRules] = {}

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self):
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    # Signing

    def _timestamp_ms(self) -> int:
        return int(time.time() * 1000)

    def canonical_payload(self, timestamp: int, serialized: str) -> str:
        """Canonical string: timestamp + key + recv-window + serialized query/body"""
        return f"{timestamp}{self.api_key}{self.recv_window}{serialized}"

    def sign(self, payload: str) -> str:
        return hmac.new(
            self.api_secret.encode("utf-8"),
            payload.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    @abstractmethod
    def _build_signed(
        self, method: str, path: str, params: Dict[str, Any]
    ) -> Tuple[str, Dict[str, str], Optional[str]]:
        """Return (url, headers, body) for a signed request"""

    @abstractmethod
    def _interpret(self, http_status: int, payload: Any) -> ExchangeResponse:
        """Turn a raw HTTP status and decoded payload into an ExchangeResponse"""

    # Transport

    async def _execute(
        self, method: str, url: str, headers: Dict[str, str], body: Optional[str]
    ) -> Tuple[int, Any]:
        """Perform the HTTP call; returns (status, decoded JSON or text)"""
        session = await self._get_session()
        async with session.request(method, url, headers=headers, data=body) as response:
            text = await response.text()
            try:
                payload = json.loads(text) if text else {}
            except ValueError:
                payload = text
            return response.status, payload

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = True,
    ) -> ExchangeResponse:
        params = {k: v for k, v in (params or {}).items() if v is not None}

        if signed:
            url, headers, body = self._build_signed(method, path, params)
        else:
            query = urlencode(params)
            url = f"{self.base_url}{path}" + (f"?{query}" if query else "")
            headers, body = {}, None

        started = time.monotonic()
        try:
            status, payload = await asyncio.wait_for(
                self._execute(method, url, headers, body), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"{self.exchange_id} {method} {path} timed out after {self.timeout}s")
            return ExchangeResponse.failure(ErrorCode.TIMEOUT, f"timeout after {self.timeout}s")
        except aiohttp.ClientError as e:
            logger.warning(f"{self.exchange_id} {method} {path} connection error: {e}")
            return ExchangeResponse.failure(ErrorCode.CONNECTIVITY_FAILURE, str(e))

        response = self._interpret(status, payload)
        response.latency_ms = (time.monotonic() - started) * 1000
        if not response.ok:
            logger.debug(
                f"{self.exchange_id} {method} {path} failed: "
                f"{response.error_kind.value if response.error_kind else '?'} "
                f"(code={response.raw_code}) {response.message}"
            )
        return response

    # Operations

    @abstractmethod
    async def server_time(self) -> ExchangeResponse:
        """Unauthenticated connectivity check; data is server time in ms"""

    @abstractmethod
    async def account_info(self) -> ExchangeResponse:
        """Authenticated account metadata"""

    @abstractmethod
    async def api_permissions(self) -> ExchangeResponse:
        """Data: {"read": bool, "trade": bool, "withdraw": bool, "ip_restricted": bool}"""

    @abstractmethod
    async def get_balance(self, asset: str = "USDT") -> ExchangeResponse:
        """Data: {"asset": str, "total": float, "available": float}"""

    @abstractmethod
    async def list_positions(self, instrument: Optional[str] = None) -> ExchangeResponse:
        """Data: list of normalized position dicts"""

    @abstractmethod
    async def place_order(self, order: OrderRequest) -> ExchangeResponse:
        """Data: OrderResult"""

    @abstractmethod
    async def open_orders(self, instrument: Optional[str] = None) -> ExchangeResponse:
        pass

    @abstractmethod
    async def order_history(self, instrument: Optional[str] = None, limit: int = 20) -> ExchangeResponse:
        pass

    @abstractmethod
    async def last_price(self, instrument: str) -> ExchangeResponse:
        """Data: float"""

    @abstractmethod
    async def orderbook(self, instrument: str, depth: int = 5) -> ExchangeResponse:
        """Data: {"bids": [[price, qty], ...], "asks": [...]}"""

    @abstractmethod
    async def set_leverage(self, instrument: str, leverage: int) -> ExchangeResponse:
        pass

    @abstractmethod
    async def _fetch_instrument_rules(self, instrument: str) -> ExchangeResponse:
        """Data: {symbol: InstrumentRules}; may cover more symbols than asked for"""

    async def instrument_rules(self, instrument: str) -> ExchangeResponse:
        """Lot step and tick size for an instrument, fetched once per connector"""
        rules = self._instrument_rules.get(instrument)
        if rules is not None:
            return ExchangeResponse.success(rules)

        response = await self._fetch_instrument_rules(instrument)
        if not response.ok:
            return response
        self._instrument_rules.update(response.data or {})

        rules = self._instrument_rules.get(instrument)
        if rules is None:
            return ExchangeResponse.failure(ErrorCode.UNKNOWN, f"no trading rules for {instrument}")
        return response.with_data(rules)

    async def close_position(self, instrument: str, side: Direction, quantity: float) -> ExchangeResponse:
        """Reduce-only market order against an open position"""
        return await self.place_order(OrderRequest(
            instrument=instrument,
            side=side.opposite,
            quantity=quantity,
            reduce_only=True,
        ))

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(exchange={self.exchange_id}, env={self.environment.value})"


ConnectorFactory = Callable[..., ExchangeClient]


class ConnectorRegistry:
    """Maps exchange ids to connector factories"""

    def __init__(self):
        self._factories: Dict[str, ConnectorFactory] = {}

    def register(self, exchange_id: str, factory: ConnectorFactory):
        self._factories[exchange_id.lower()] = factory
        logger.debug(f"Registered connector: {exchange_id}")

    def supports(self, exchange_id: Optional[str]) -> bool:
        return bool(exchange_id) and exchange_id.lower() in self._factories

    @property
    def exchanges(self) -> List[str]:
        return sorted(self._factories)

    def create(
        self,
        exchange_id: str,
        api_key: str = "",
        api_secret: str = "",
        environment: Environment = Environment.MAINNET,
        **options,
    ) -> ExchangeClient:
        factory = self._factories.get(exchange_id.lower())
        if factory is None:
            raise ConnectorError(
                ErrorCode.UNKNOWN, f"No connector registered for exchange '{exchange_id}'"
            )
        return factory(api_key=api_key, api_secret=api_secret, environment=environment, **options)

    def copy(self) -> "ConnectorRegistry":
        clone = ConnectorRegistry()
        clone._factories = dict(self._factories)
        return clone


default_registry = ConnectorRegistry()


def register_connector(exchange_id: str):
    """Class decorator adding a connector to the default registry"""
    def decorator(cls: Type[ExchangeClient]) -> Type[ExchangeClient]:
        cls.exchange_id = exchange_id
        default_registry.register(exchange_id, cls)
        return cls
    return decorator


@register_connector("simulated")
class SimulatedExchangeClient(ExchangeClient):
    """
    In-memory exchange for paper trading and tests

    Fills market orders at the configured price. A failure can be injected
    for every call (``fail_with``) or for specific operations
    (``fail_operations``) to exercise error paths without a network.
    """

    BASE_URLS = {
        Environment.MAINNET: "simulated://mainnet",
        Environment.TESTNET: "simulated://testnet",
    }

    DEFAULT_PRICES = {
        "BTCUSDT": 67500.0,
        "ETHUSDT": 3450.0,
        "SOLUSDT": 145.0,
    }

    # (qty_step, tick_size) as listed for the linear perpetuals
    DEFAULT_RULES = {
        "BTCUSDT": (0.001, 0.1),
        "ETHUSDT": (0.01, 0.01),
        "SOLUSDT": (0.1, 0.001),
    }
    FALLBACK_RULES = (0.001, 0.01)

    def __init__(
        self,
        api_key: str = "simulated",
        api_secret: str = "simulated",
        environment: Environment = Environment.TESTNET,
        initial_balance: float = 1000.0,
        prices: Optional[Dict[str, float]] = None,
        fail_with: Optional[ErrorCode] = None,
        fail_operations: Optional[Dict[str, ErrorCode]] = None,
        latency: float = 0.0,
        **kwargs,
    ):
        super().__init__(api_key, api_secret, environment, **kwargs)
        self.balance = initial_balance
        self.prices = dict(self.DEFAULT_PRICES)
        if prices:
            self.prices.update(prices)
        self.fail_with = fail_with
        self.fail_operations = dict(fail_operations or {})
        self.latency = latency
        self.positions: Dict[Tuple[str, Direction], Dict[str, Any]] = {}
        self.orders: List[OrderResult] = []
        self.leverage: Dict[str, int] = {}
        self.calls: List[str] = []
        self._order_seq = 0

    def _build_signed(self, method, path, params):
        timestamp = self._timestamp_ms()
        serialized = urlencode(sorted(params.items()))
        signature = self.sign(self.canonical_payload(timestamp, serialized))
        return f"{self.base_url}{path}?{serialized}", {"X-SIM-SIGN": signature}, None

    def _interpret(self, http_status, payload):
        if http_status >= 400:
            return ExchangeResponse.failure(ErrorCode.UNKNOWN, str(payload), str(http_status), http_status)
        return ExchangeResponse.success(payload, http_status)

    async def _simulate(self, operation: str) -> Optional[ExchangeResponse]:
        self.calls.append(operation)
        if self.latency:
            await asyncio.sleep(self.latency)
        error = self.fail_operations.get(operation) or self.fail_with
        if error is not None:
            return ExchangeResponse.failure(error, f"simulated {error.value}", raw_code="SIM")
        return None

    def _margin_used(self) -> float:
        return sum(
            p["size"] * p["entry_price"] / max(p["leverage"], 1)
            for p in self.positions.values()
        )

    async def server_time(self) -> ExchangeResponse:
        failure = await self._simulate("server_time")
        if failure:
            return failure
        return ExchangeResponse.success(self._timestamp_ms())

    async def account_info(self) -> ExchangeResponse:
        failure = await self._simulate("account_info")
        if failure:
            return failure
        return ExchangeResponse.success({"account_type": "SIMULATED", "margin_mode": "ISOLATED"})

    async def api_permissions(self) -> ExchangeResponse:
        failure = await self._simulate("api_permissions")
        if failure:
            return failure
        return ExchangeResponse.success(
            {"read": True, "trade": True, "withdraw": False, "ip_restricted": True}
        )

    async def get_balance(self, asset: str = "USDT") -> ExchangeResponse:
        failure = await self._simulate("get_balance")
        if failure:
            return failure
        available = self.balance - self._margin_used()
        return ExchangeResponse.success(
            {"asset": asset, "total": self.balance, "available": max(available, 0.0)}
        )

    async def list_positions(self, instrument: Optional[str] = None) -> ExchangeResponse:
        failure = await self._simulate("list_positions")
        if failure:
            return failure
        positions = [
            dict(p) for (symbol, _), p in self.positions.items()
            if instrument is None or symbol == instrument
        ]
        return ExchangeResponse.success(positions)

    async def place_order(self, order: OrderRequest) -> ExchangeResponse:
        failure = await self._simulate("place_order")
        if failure:
            return failure

        price = self.prices.get(order.instrument)
        if price is None:
            return ExchangeResponse.failure(
                ErrorCode.UNKNOWN, f"unknown symbol {order.instrument}", raw_code="SIM"
            )

        self._order_seq += 1
        order_id = order.client_order_id or f"sim_{self._order_seq}"

        if order.reduce_only:
            key = (order.instrument, order.side.opposite)
            position = self.positions.get(key)
            if position is None:
                return ExchangeResponse.failure(
                    ErrorCode.UNKNOWN, "reduce-only order without position", raw_code="SIM"
                )
            position["size"] -= order.quantity
            if position["size"] <= 1e-12:
                del self.positions[key]
        else:
            key = (order.instrument, order.side)
            position = self.positions.get(key)
            if position:
                new_size = position["size"] + order.quantity
                position["entry_price"] = (
                    position["entry_price"] * position["size"] + price * order.quantity
                ) / new_size
                position["size"] = new_size
            else:
                self.positions[key] = {
                    "instrument": order.instrument,
                    "side": order.side.value,
                    "size": order.quantity,
                    "entry_price": price,
                    "leverage": order.leverage,
                    "stop_loss": order.stop_loss,
                    "take_profit": order.take_profit,
                    "mark_price": price,
                    "unrealized_pnl": 0.0,
                }

        result = OrderResult(
            order_id=order_id,
            instrument=order.instrument,
            side=order.side,
            quantity=order.quantity,
            price=price,
            status="FILLED",
            created_at=datetime.now(timezone.utc),
        )
        self.orders.append(result)
        logger.info(
            f"Simulated {order.side.order_side} {order.quantity} {order.instrument} @ {price}"
            + (" (reduce-only)" if order.reduce_only else "")
        )
        return ExchangeResponse.success(result)

    async def open_orders(self, instrument: Optional[str] = None) -> ExchangeResponse:
        failure = await self._simulate("open_orders")
        if failure:
            return failure
        return ExchangeResponse.success([])

    async def order_history(self, instrument: Optional[str] = None, limit: int = 20) -> ExchangeResponse:
        failure = await self._simulate("order_history")
        if failure:
            return failure
        history = [o for o in self.orders if instrument is None or o.instrument == instrument]
        return ExchangeResponse.success(history[-limit:])

    async def last_price(self, instrument: str) -> ExchangeResponse:
        failure = await self._simulate("last_price")
        if failure:
            return failure
        price = self.prices.get(instrument)
        if price is None:
            return ExchangeResponse.failure(ErrorCode.UNKNOWN, f"unknown symbol {instrument}", raw_code="SIM")
        return ExchangeResponse.success(price)

    async def orderbook(self, instrument: str, depth: int = 5) -> ExchangeResponse:
        failure = await self._simulate("orderbook")
        if failure:
            return failure
        price = self.prices.get(instrument, 100.0)
        tick = price * 0.0001
        return ExchangeResponse.success({
            "bids": [[price - tick * (i + 1), 1.0] for i in range(depth)],
            "asks": [[price + tick * (i + 1), 1.0] for i in range(depth)],
        })

    async def set_leverage(self, instrument: str, leverage: int) -> ExchangeResponse:
        failure = await self._simulate("set_leverage")
        if failure:
            return failure
        self.leverage[instrument] = leverage
        return ExchangeResponse.success({"instrument": instrument, "leverage": leverage})

    async def _fetch_instrument_rules(self, instrument: str) -> ExchangeResponse:
        failure = await self._simulate("instrument_rules")
        if failure:
            return failure
        if instrument not in self.prices:
            return ExchangeResponse.failure(ErrorCode.UNKNOWN, f"unknown symbol {instrument}", raw_code="SIM")
        qty_step, tick_size = self.DEFAULT_RULES.get(instrument, self.FALLBACK_RULES)
        return ExchangeResponse.success({
            instrument: InstrumentRules(instrument, qty_step, tick_size, min_qty=qty_step)
        })


class ConnectorPool:
    """
    One connector per credential, built on first use

    Key material is fetched from the credential store; in simulated mode
    every credential is served by the simulated exchange.
    """

    def __init__(
        self,
        registry: ConnectorRegistry,
        credential_store,
        exchange_options: Optional[Dict[str, Dict[str, Any]]] = None,
        simulated: bool = False,
        simulated_options: Optional[Dict[str, Any]] = None,
    ):
        self.registry = registry
        self.credential_store = credential_store
        self.exchange_options = exchange_options or {}
        self.simulated = simulated
        self.simulated_options = simulated_options or {}
        self._clients: Dict[Any, ExchangeClient] = {}
        self._retired: List[ExchangeClient] = []
        self._lock = asyncio.Lock()

    def inject(self, key, client: ExchangeClient):
        self._clients[key] = client

    def invalidate(self, key) -> Optional[ExchangeClient]:
        """Drop the cached connector so the next use rebuilds it from fresh key material"""
        if self.simulated:
            # Simulated connectors hold paper state, not key material
            return None
        client = self._clients.pop(key, None)
        if client is not None:
            # Closed with the pool; a diagnostic run may still hold it
            self._retired.append(client)
            logger.debug(f"Evicted connector for {key.masked()}")
        return client

    async def evict_rotated(self) -> int:
        """Evict connectors whose key material no longer matches the credential store"""
        if self.simulated:
            return 0
        evicted = 0
        for key, client in list(self._clients.items()):
            stored = await self.credential_store.lookup(key)
            if stored is None or (stored.api_key, stored.api_secret) != (client.api_key, client.api_secret):
                self.invalidate(key)
                evicted += 1
        if evicted:
            logger.info(f"Evicted {evicted} connector(s) after key rotation")
        return evicted

    def supports(self, exchange_id: Optional[str]) -> bool:
        return self.simulated or self.registry.supports(exchange_id)

    async def get(self, key) -> ExchangeClient:
        client = self._clients.get(key)
        if client is not None:
            return client

        async with self._lock:
            client = self._clients.get(key)
            if client is not None:
                return client

            if self.simulated:
                client = self.registry.create(
                    "simulated", environment=key.environment, **self.simulated_options
                )
            else:
                stored = await self.credential_store.lookup(key)
                if stored is None or not stored.api_key:
                    raise ConnectorError(
                        ErrorCode.CREDENTIAL_INVALID, f"No key material for {key.masked()}"
                    )
                client = self.registry.create(
                    key.exchange,
                    api_key=stored.api_key,
                    api_secret=stored.api_secret,
                    environment=key.environment,
                    **self.exchange_options.get(key.exchange, {}),
                )
            self._clients[key] = client
            logger.debug(f"Created connector {client!r} for {key.masked()}")
            return client

    async def close_all(self):
        for client in list(self._clients.values()) + self._retired:
            await client.close()
        self._clients.clear()
        self._retired.clear()
