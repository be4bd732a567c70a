"""
Exchange connectors: request signing, error mapping and the simulated exchange
"""

import asyncio
import hashlib
import hmac
import json
from unittest.mock import AsyncMock

import aiohttp
import pytest

from signal_trader.core.binance_client import BinanceClient
from signal_trader.core.bybit_client import BybitClient
from signal_trader.core.errors import ConnectorError, ErrorCode
from signal_trader.core.exchange_client import (
    ConnectorRegistry,
    ExchangeResponse,
    SimulatedExchangeClient,
    default_registry,
    format_decimal,
)
from signal_trader.core.models import Direction, Environment, InstrumentRules, OrderRequest

TIMESTAMP = 1700000000000


def expected_signature(secret: str, payload: str) -> str:
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def stubbed(cls, status=200, payload=None, **kwargs):
    client = cls(api_key="key123", api_secret="secret456", environment=Environment.TESTNET, **kwargs)
    client._timestamp_ms = lambda: TIMESTAMP
    client._execute = AsyncMock(return_value=(status, payload if payload is not None else {}))
    return client


class TestBybitSigning:

    @pytest.mark.asyncio
    async def test_get_signs_query_string(self):
        client = stubbed(BybitClient, payload={"retCode": 0, "result": {"list": []}})

        await client.get_balance("USDT")

        method, url, headers, body = client._execute.call_args.args
        assert method == "GET"
        assert url == "https://api-testnet.bybit.com/v5/account/wallet-balance?accountType=UNIFIED&coin=USDT"
        assert body is None
        assert headers["X-BAPI-API-KEY"] == "key123"
        assert headers["X-BAPI-TIMESTAMP"] == str(TIMESTAMP)
        assert headers["X-BAPI-RECV-WINDOW"] == "5000"
        assert headers["X-BAPI-SIGN"] == expected_signature(
            "secret456", f"{TIMESTAMP}key1235000accountType=UNIFIED&coin=USDT"
        )

    @pytest.mark.asyncio
    async def test_post_signs_json_body(self):
        client = stubbed(BybitClient, payload={"retCode": 0, "result": {"orderId": "abc"}})
        order = OrderRequest("BTCUSDT", Direction.LONG, 0.01, leverage=5, stop_loss=65000.0, take_profit=70000.0)

        response = await client.place_order(order)

        _, url, headers, body = client._execute.call_args.args
        assert url.endswith("/v5/order/create")
        sent = json.loads(body)
        assert sent["side"] == "Buy"
        assert sent["qty"] == "0.01"
        assert sent["stopLoss"] == "65000"
        assert sent["tpslMode"] == "Full"
        assert headers["X-BAPI-SIGN"] == expected_signature("secret456", f"{TIMESTAMP}key1235000{body}")
        assert response.ok
        assert response.data.order_id == "abc"

    @pytest.mark.asyncio
    async def test_unsigned_market_data(self):
        client = stubbed(BybitClient, payload={"retCode": 0, "result": {"timeNano": "1700000000123456789"}})

        response = await client.server_time()

        _, url, headers, _ = client._execute.call_args.args
        assert headers == {}
        assert url == "https://api-testnet.bybit.com/v5/market/time"
        assert response.data == 1700000000123


class TestBybitErrors:

    @pytest.mark.parametrize("status, payload, kind", [
        (200, {"retCode": 10003, "retMsg": "API key is invalid."}, ErrorCode.AUTH_FAILED),
        (200, {"retCode": 10004, "retMsg": "error sign!"}, ErrorCode.AUTH_FAILED),
        (200, {"retCode": 10010, "retMsg": "Unmatched IP"}, ErrorCode.IP_RESTRICTED),
        (200, {"retCode": 10005, "retMsg": "Permission denied"}, ErrorCode.INSUFFICIENT_PERMISSIONS),
        (200, {"retCode": 10006, "retMsg": "Too many visits"}, ErrorCode.RATE_LIMITED),
        (200, {"retCode": 99999, "retMsg": "ip not in whitelist"}, ErrorCode.IP_RESTRICTED),
        (401, "Unauthorized", ErrorCode.AUTH_FAILED),
        (403, "Forbidden", ErrorCode.IP_RESTRICTED),
        (502, "Bad Gateway", ErrorCode.CONNECTIVITY_FAILURE),
        (200, {"retCode": 12345, "retMsg": "something else"}, ErrorCode.UNKNOWN),
    ])
    def test_interpret(self, status, payload, kind):
        response = BybitClient()._interpret(status, payload)
        assert not response.ok
        assert response.error_kind is kind

    def test_raw_code_is_kept(self):
        response = BybitClient()._interpret(200, {"retCode": 10003, "retMsg": "API key is invalid."})
        assert response.raw_code == "10003"
        assert response.message == "API key is invalid."

    @pytest.mark.asyncio
    async def test_leverage_not_modified_is_success(self):
        client = stubbed(BybitClient, payload={"retCode": 110043, "retMsg": "leverage not modified"})

        response = await client.set_leverage("BTCUSDT", 5)

        assert response.ok

    @pytest.mark.asyncio
    async def test_positions_are_normalized(self):
        client = stubbed(BybitClient, payload={"retCode": 0, "result": {"list": [
            {"symbol": "BTCUSDT", "side": "Sell", "size": "0.02", "avgPrice": "67000",
             "leverage": "5", "stopLoss": "", "takeProfit": "60000", "unrealisedPnl": "1.5"},
            {"symbol": "ETHUSDT", "side": "None", "size": "0"},
        ]}})

        response = await client.list_positions()

        assert response.data == [{
            "instrument": "BTCUSDT", "side": "SHORT", "size": 0.02, "entry_price": 67000.0,
            "leverage": 5, "stop_loss": None, "take_profit": 60000.0, "mark_price": None,
            "unrealized_pnl": 1.5,
        }]

    @pytest.mark.asyncio
    async def test_instrument_rules_from_instruments_info(self):
        client = stubbed(BybitClient, payload={"retCode": 0, "result": {"list": [{
            "symbol": "BTCUSDT",
            "lotSizeFilter": {"qtyStep": "0.001", "minOrderQty": "0.001", "minNotionalValue": "5"},
            "priceFilter": {"tickSize": "0.10"},
        }]}})

        response = await client.instrument_rules("BTCUSDT")

        _, url, headers, _ = client._execute.call_args.args
        assert "/v5/market/instruments-info" in url
        assert "symbol=BTCUSDT" in url
        assert headers == {}
        assert response.ok
        assert response.data == InstrumentRules("BTCUSDT", 0.001, 0.1, min_qty=0.001, min_notional=5.0)

    @pytest.mark.asyncio
    async def test_unknown_instrument_has_no_rules(self):
        client = stubbed(BybitClient, payload={"retCode": 0, "result": {"list": []}})

        response = await client.instrument_rules("NOPEUSDT")

        assert not response.ok
        assert "no trading rules" in response.message


class TestBinance:

    @pytest.mark.asyncio
    async def test_query_string_signature(self):
        client = stubbed(BinanceClient, payload=[{"asset": "USDT", "balance": "100", "availableBalance": "80"}])

        response = await client.get_balance("USDT")

        _, url, headers, _ = client._execute.call_args.args
        query = f"recvWindow=5000&timestamp={TIMESTAMP}"
        assert url == (
            f"https://testnet.binancefuture.com/fapi/v2/balance?{query}"
            f"&signature={expected_signature('secret456', query)}"
        )
        assert headers["X-MBX-APIKEY"] == "key123"
        assert response.data == {"asset": "USDT", "total": 100.0, "available": 80.0}

    @pytest.mark.parametrize("status, payload, kind", [
        (401, {"code": -2015, "msg": "Invalid API-key, IP, or permissions for action."}, ErrorCode.AUTH_FAILED),
        (400, {"code": -1022, "msg": "Signature for this request is not valid."}, ErrorCode.AUTH_FAILED),
        (429, {"code": -1003, "msg": "Too many requests"}, ErrorCode.RATE_LIMITED),
        (418, "banned", ErrorCode.RATE_LIMITED),
        (403, "WAF", ErrorCode.IP_RESTRICTED),
        (503, "unavailable", ErrorCode.CONNECTIVITY_FAILURE),
        (400, {"code": -1121, "msg": "Invalid symbol."}, ErrorCode.UNKNOWN),
    ])
    def test_interpret(self, status, payload, kind):
        response = BinanceClient()._interpret(status, payload)
        assert not response.ok
        assert response.error_kind is kind

    def test_success_payload_passes_through(self):
        response = BinanceClient()._interpret(200, {"serverTime": 1})
        assert response.ok
        assert response.data == {"serverTime": 1}

    @pytest.mark.asyncio
    async def test_failed_protective_leg_flattens_entry(self):
        client = stubbed(BinanceClient)
        client._execute = AsyncMock(side_effect=[
            (200, {"orderId": 1, "avgPrice": "67000", "status": "FILLED"}),
            (400, {"code": -2021, "msg": "Order would immediately trigger."}),
            (200, {"orderId": 2, "avgPrice": "67000", "status": "FILLED"}),
        ])
        order = OrderRequest("BTCUSDT", Direction.LONG, 0.01, stop_loss=65000.0, take_profit=70000.0)

        response = await client.place_order(order)

        assert not response.ok
        assert "protective order rejected" in response.message
        assert response.error_kind is ErrorCode.EXECUTION_FAILED
        flatten_url = client._execute.call_args_list[2].args[1]
        assert "reduceOnly=true" in flatten_url
        assert "side=SELL" in flatten_url

    @pytest.mark.asyncio
    async def test_exchange_info_is_cached_for_every_symbol(self):
        client = stubbed(BinanceClient, payload={"symbols": [
            {"symbol": "BTCUSDT", "filters": [
                {"filterType": "PRICE_FILTER", "tickSize": "0.10"},
                {"filterType": "LOT_SIZE", "stepSize": "0.001", "minQty": "0.001"},
                {"filterType": "MARKET_LOT_SIZE", "stepSize": "0.001", "minQty": "0.001"},
                {"filterType": "MIN_NOTIONAL", "notional": "100"},
            ]},
            {"symbol": "ETHUSDT", "filters": [
                {"filterType": "PRICE_FILTER", "tickSize": "0.01"},
                {"filterType": "LOT_SIZE", "stepSize": "0.001", "minQty": "0.001"},
                {"filterType": "MARKET_LOT_SIZE", "stepSize": "0", "minQty": "0"},
            ]},
        ]})

        btc = await client.instrument_rules("BTCUSDT")
        eth = await client.instrument_rules("ETHUSDT")

        assert client._execute.call_count == 1
        assert client._execute.call_args.args[1].endswith("/fapi/v1/exchangeInfo")
        assert btc.data == InstrumentRules("BTCUSDT", 0.001, 0.1, min_qty=0.001, min_notional=100.0)
        assert eth.data.qty_step == 0.001
        assert eth.data.tick_size == 0.01


class TestTransport:

    @pytest.mark.asyncio
    async def test_timeout_is_typed(self):
        client = BybitClient(api_key="k", api_secret="s", timeout=0.05)

        async def hang(*args):
            await asyncio.sleep(1)

        client._execute = hang

        response = await client.account_info()

        assert response.error_kind is ErrorCode.TIMEOUT

    @pytest.mark.asyncio
    async def test_connection_error_is_connectivity_failure(self):
        client = BybitClient(api_key="k", api_secret="s")
        client._execute = AsyncMock(side_effect=aiohttp.ClientConnectionError("refused"))

        response = await client.server_time()

        assert response.error_kind is ErrorCode.CONNECTIVITY_FAILURE

    def test_unwrap_raises_connector_error(self):
        with pytest.raises(ConnectorError) as exc:
            ExchangeResponse.failure(ErrorCode.RATE_LIMITED, "slow down", raw_code="10006").unwrap()
        assert exc.value.code is ErrorCode.RATE_LIMITED
        assert exc.value.raw_code == "10006"

    def test_format_decimal(self):
        assert format_decimal(0.0148) == "0.0148"
        assert format_decimal(65000.0) == "65000"
        assert format_decimal(0.0) == "0"


class TestRegistry:

    def test_default_registry_knows_exchanges(self):
        assert {"bybit", "binance", "simulated"} <= set(default_registry.exchanges)
        assert default_registry.supports("BYBIT")
        assert not default_registry.supports("kraken")
        assert not default_registry.supports(None)

    def test_create_passes_credentials(self):
        client = default_registry.create("bybit", "k", "s", Environment.TESTNET, recv_window=10000)
        assert isinstance(client, BybitClient)
        assert client.base_url == "https://api-testnet.bybit.com"
        assert client.recv_window == 10000

    def test_unknown_exchange(self):
        with pytest.raises(ConnectorError):
            ConnectorRegistry().create("kraken")

    def test_copy_is_independent(self):
        clone = default_registry.copy()
        clone.register("paper", SimulatedExchangeClient)
        assert clone.supports("paper")
        assert not default_registry.supports("paper")


class TestSimulatedExchange:

    @pytest.mark.asyncio
    async def test_order_opens_and_closes_position(self):
        client = SimulatedExchangeClient(initial_balance=1000.0)

        opened = await client.place_order(OrderRequest("BTCUSDT", Direction.LONG, 0.01, leverage=5))
        balance = await client.get_balance()

        assert opened.ok and opened.data.price == 67500.0
        assert balance.data["available"] == pytest.approx(1000.0 - 0.01 * 67500.0 / 5)

        closed = await client.close_position("BTCUSDT", Direction.LONG, 0.01)
        positions = await client.list_positions()

        assert closed.ok
        assert positions.data == []

    @pytest.mark.asyncio
    async def test_reduce_only_without_position_fails(self):
        client = SimulatedExchangeClient()
        response = await client.close_position("BTCUSDT", Direction.SHORT, 0.01)
        assert not response.ok

    @pytest.mark.asyncio
    async def test_injected_failures(self):
        client = SimulatedExchangeClient(fail_operations={"place_order": ErrorCode.IP_RESTRICTED})

        assert (await client.server_time()).ok
        response = await client.place_order(OrderRequest("BTCUSDT", Direction.LONG, 0.01))

        assert response.error_kind is ErrorCode.IP_RESTRICTED
        assert client.calls == ["server_time", "place_order"]
        assert client.orders == []
