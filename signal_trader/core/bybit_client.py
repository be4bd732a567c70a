"""
Bybit v5 Unified Trading Connector
Linear USDT perpetuals over signed REST (X-BAPI-* header scheme)
"""

import json
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import logging

from .errors import ErrorCode
from .exchange_client import ExchangeClient, ExchangeResponse, _to_float, format_decimal, register_connector
from .models import Direction, Environment, InstrumentRules, OrderRequest, OrderResult

logger = logging.getLogger(__name__)


# retCode -> ErrorCode
BYBIT_ERROR_CODES: Dict[int, ErrorCode] = {
    10003: ErrorCode.AUTH_FAILED,        # invalid api key
    10004: ErrorCode.AUTH_FAILED,        # signature error
    33004: ErrorCode.AUTH_FAILED,        # api key expired
    10005: ErrorCode.INSUFFICIENT_PERMISSIONS,
    10006: ErrorCode.RATE_LIMITED,
    10018: ErrorCode.RATE_LIMITED,       # ip rate limit
    10010: ErrorCode.IP_RESTRICTED,      # unmatched ip
}

HTTP_ERROR_CODES: Dict[int, ErrorCode] = {
    401: ErrorCode.AUTH_FAILED,
    403: ErrorCode.IP_RESTRICTED,
    429: ErrorCode.RATE_LIMITED,
}

# "leverage not modified" is a success for our purposes
LEVERAGE_UNCHANGED = 110043


@register_connector("bybit")
class BybitClient(ExchangeClient):
    """Bybit v5 connector (category=linear)"""

    BASE_URLS = {
        Environment.MAINNET: "https://api.bybit.com",
        Environment.TESTNET: "https://api-testnet.bybit.com",
    }

    CATEGORY = "linear"
    SETTLE_COIN = "USDT"

    def _build_signed(
        self, method: str, path: str, params: Dict[str, Any]
    ) -> Tuple[str, Dict[str, str], Optional[str]]:
        timestamp = self._timestamp_ms()

        if method == "GET":
            serialized = urlencode(params)
            url = f"{self.base_url}{path}" + (f"?{serialized}" if serialized else "")
            body = None
        else:
            serialized = json.dumps(params, separators=(",", ":"))
            url = f"{self.base_url}{path}"
            body = serialized

        signature = self.sign(self.canonical_payload(timestamp, serialized))
        headers = {
            "X-BAPI-API-KEY": self.api_key,
            "X-BAPI-TIMESTAMP": str(timestamp),
            "X-BAPI-SIGN": signature,
            "X-BAPI-RECV-WINDOW": str(self.recv_window),
            "Content-Type": "application/json",
        }
        return url, headers, body

    def _interpret(self, http_status: int, payload: Any) -> ExchangeResponse:
        if http_status in HTTP_ERROR_CODES:
            return ExchangeResponse.failure(
                HTTP_ERROR_CODES[http_status], str(payload)[:200], str(http_status), http_status
            )
        if http_status >= 500:
            return ExchangeResponse.failure(
                ErrorCode.CONNECTIVITY_FAILURE, f"server error {http_status}", str(http_status), http_status
            )
        if not isinstance(payload, dict):
            return ExchangeResponse.failure(
                ErrorCode.UNKNOWN, f"unexpected payload: {str(payload)[:200]}", str(http_status), http_status
            )

        ret_code = payload.get("retCode", payload.get("ret_code"))
        message = payload.get("retMsg", payload.get("ret_msg", ""))

        if ret_code in (0, None) and http_status < 400:
            return ExchangeResponse.success(payload.get("result", {}), http_status)

        try:
            code = int(ret_code)
        except (TypeError, ValueError):
            code = -1

        kind = BYBIT_ERROR_CODES.get(code)
        if kind is None:
            lowered = str(message).lower()
            if "ip" in lowered and ("whitelist" in lowered or "unmatched" in lowered):
                kind = ErrorCode.IP_RESTRICTED
            elif "permission" in lowered:
                kind = ErrorCode.INSUFFICIENT_PERMISSIONS
            else:
                kind = ErrorCode.UNKNOWN
        return ExchangeResponse.failure(kind, message, str(ret_code), http_status)

    # Market data / connectivity

    async def server_time(self) -> ExchangeResponse:
        response = await self._request("GET", "/v5/market/time", signed=False)
        if not response.ok:
            return response
        result = response.data or {}
        if result.get("timeNano"):
            return response.with_data(int(result["timeNano"]) // 1_000_000)
        return response.with_data(int(_to_float(result.get("timeSecond")) * 1000))

    async def last_price(self, instrument: str) -> ExchangeResponse:
        response = await self._request(
            "GET", "/v5/market/tickers",
            {"category": self.CATEGORY, "symbol": instrument},
            signed=False,
        )
        if not response.ok:
            return response
        tickers = (response.data or {}).get("list", [])
        if not tickers:
            return ExchangeResponse.failure(ErrorCode.UNKNOWN, f"no ticker for {instrument}")
        return response.with_data(_to_float(tickers[0].get("lastPrice")))

    async def orderbook(self, instrument: str, depth: int = 5) -> ExchangeResponse:
        response = await self._request(
            "GET", "/v5/market/orderbook",
            {"category": self.CATEGORY, "symbol": instrument, "limit": depth},
            signed=False,
        )
        if not response.ok:
            return response
        book = response.data or {}
        return response.with_data({
            "bids": [[_to_float(p), _to_float(q)] for p, q in book.get("b", [])],
            "asks": [[_to_float(p), _to_float(q)] for p, q in book.get("a", [])],
        })

    async def _fetch_instrument_rules(self, instrument: str) -> ExchangeResponse:
        response = await self._request(
            "GET", "/v5/market/instruments-info",
            {"category": self.CATEGORY, "symbol": instrument},
            signed=False,
        )
        if not response.ok:
            return response

        rules: Dict[str, InstrumentRules] = {}
        for item in (response.data or {}).get("list", []):
            lot = item.get("lotSizeFilter", {}) or {}
            price = item.get("priceFilter", {}) or {}
            symbol = item.get("symbol", "")
            rules[symbol] = InstrumentRules(
                instrument=symbol,
                qty_step=_to_float(lot.get("qtyStep")),
                tick_size=_to_float(price.get("tickSize")),
                min_qty=_to_float(lot.get("minOrderQty")),
                min_notional=_to_float(lot.get("minNotionalValue")),
            )
        return response.with_data(rules)

    # Account

    async def account_info(self) -> ExchangeResponse:
        return await self._request("GET", "/v5/account/info")

    async def api_permissions(self) -> ExchangeResponse:
        response = await self._request("GET", "/v5/user/query-api")
        if not response.ok:
            return response

        info = response.data or {}
        permissions = info.get("permissions", {}) or {}
        read_only = int(info.get("readOnly", 0) or 0) == 1
        contract = permissions.get("ContractTrade", []) or permissions.get("Derivatives", [])
        ips = info.get("ips", []) or []

        return response.with_data({
            "read": True,
            "trade": not read_only and bool(contract),
            "withdraw": "Withdraw" in (permissions.get("Wallet", []) or []),
            "ip_restricted": bool(ips) and ips != ["*"],
            "raw": permissions,
        })

    async def get_balance(self, asset: str = "USDT") -> ExchangeResponse:
        response = await self._request(
            "GET", "/v5/account/wallet-balance",
            {"accountType": "UNIFIED", "coin": asset},
        )
        if not response.ok:
            return response

        accounts = (response.data or {}).get("list", [])
        if not accounts:
            return response.with_data({"asset": asset, "total": 0.0, "available": 0.0})

        account = accounts[0]
        total = 0.0
        available = None
        for coin in account.get("coin", []):
            if coin.get("coin") == asset:
                total = _to_float(coin.get("walletBalance"))
                if coin.get("availableToWithdraw") not in (None, ""):
                    available = _to_float(coin.get("availableToWithdraw"))
                break

        if available is None:
            available = _to_float(account.get("totalAvailableBalance"), total)

        return response.with_data({"asset": asset, "total": total, "available": available})

    async def list_positions(self, instrument: Optional[str] = None) -> ExchangeResponse:
        params = {"category": self.CATEGORY}
        if instrument:
            params["symbol"] = instrument
        else:
            params["settleCoin"] = self.SETTLE_COIN

        response = await self._request("GET", "/v5/position/list", params)
        if not response.ok:
            return response

        positions: List[Dict[str, Any]] = []
        for p in (response.data or {}).get("list", []):
            size = _to_float(p.get("size"))
            if size <= 0 or p.get("side") not in ("Buy", "Sell"):
                continue
            positions.append({
                "instrument": p.get("symbol", ""),
                "side": Direction.LONG.value if p.get("side") == "Buy" else Direction.SHORT.value,
                "size": size,
                "entry_price": _to_float(p.get("avgPrice")),
                "leverage": int(_to_float(p.get("leverage"), 1)),
                "stop_loss": _to_float(p.get("stopLoss")) or None,
                "take_profit": _to_float(p.get("takeProfit")) or None,
                "mark_price": _to_float(p.get("markPrice")) or None,
                "unrealized_pnl": _to_float(p.get("unrealisedPnl")),
            })
        return response.with_data(positions)

    # Orders

    async def place_order(self, order: OrderRequest) -> ExchangeResponse:
        body: Dict[str, Any] = {
            "category": self.CATEGORY,
            "symbol": order.instrument,
            "side": "Buy" if order.side is Direction.LONG else "Sell",
            "orderType": "Market",
            "qty": format_decimal(order.quantity),
            "reduceOnly": order.reduce_only,
        }
        if order.client_order_id:
            body["orderLinkId"] = order.client_order_id
        if not order.reduce_only:
            if order.stop_loss is not None:
                body["stopLoss"] = format_decimal(order.stop_loss)
            if order.take_profit is not None:
                body["takeProfit"] = format_decimal(order.take_profit)
            if order.stop_loss is not None or order.take_profit is not None:
                body["tpslMode"] = "Full"

        logger.info(
            f"Bybit order: {body['side']} {body['qty']} {order.instrument}"
            + (" reduce-only" if order.reduce_only else "")
        )
        response = await self._request("POST", "/v5/order/create", body)
        if not response.ok:
            return response

        result = response.data or {}
        return response.with_data(OrderResult(
            order_id=result.get("orderId", ""),
            instrument=order.instrument,
            side=order.side,
            quantity=order.quantity,
            price=0.0,
            status="SUBMITTED",
        ))

    async def open_orders(self, instrument: Optional[str] = None) -> ExchangeResponse:
        params = {"category": self.CATEGORY}
        if instrument:
            params["symbol"] = instrument
        else:
            params["settleCoin"] = self.SETTLE_COIN
        response = await self._request("GET", "/v5/order/realtime", params)
        if not response.ok:
            return response
        return response.with_data((response.data or {}).get("list", []))

    async def order_history(self, instrument: Optional[str] = None, limit: int = 20) -> ExchangeResponse:
        params = {"category": self.CATEGORY, "symbol": instrument, "limit": limit}
        response = await self._request("GET", "/v5/order/history", params)
        if not response.ok:
            return response
        return response.with_data((response.data or {}).get("list", []))

    async def set_leverage(self, instrument: str, leverage: int) -> ExchangeResponse:
        response = await self._request("POST", "/v5/position/set-leverage", {
            "category": self.CATEGORY,
            "symbol": instrument,
            "buyLeverage": str(leverage),
            "sellLeverage": str(leverage),
        })
        if not response.ok and response.raw_code == str(LEVERAGE_UNCHANGED):
            return ExchangeResponse.success({"instrument": instrument, "leverage": leverage})
        return response
