"""
Binance USDⓈ-M Futures Connector
Query-string HMAC signing with the X-MBX-APIKEY header
"""

from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import logging

from .errors import ErrorCode
from .exchange_client import ExchangeClient, ExchangeResponse, _to_float, format_decimal, register_connector
from .models import Direction, Environment, InstrumentRules, OrderRequest, OrderResult

logger = logging.getLogger(__name__)


BINANCE_ERROR_CODES: Dict[int, ErrorCode] = {
    -2015: ErrorCode.AUTH_FAILED,        # invalid key, IP or permissions
    -2014: ErrorCode.AUTH_FAILED,        # bad api key format
    -1022: ErrorCode.AUTH_FAILED,        # invalid signature
    -1002: ErrorCode.AUTH_FAILED,        # unauthorized
    -1003: ErrorCode.RATE_LIMITED,
    -1015: ErrorCode.RATE_LIMITED,       # too many orders
    -1021: ErrorCode.UNKNOWN,            # timestamp outside recv window
}

HTTP_ERROR_CODES: Dict[int, ErrorCode] = {
    401: ErrorCode.AUTH_FAILED,
    403: ErrorCode.IP_RESTRICTED,
    418: ErrorCode.RATE_LIMITED,
    429: ErrorCode.RATE_LIMITED,
}

# Valid /fapi/v1/depth limits
DEPTH_LIMITS = (5, 10, 20, 50, 100, 500, 1000)


@register_connector("binance")
class BinanceClient(ExchangeClient):
    """Binance USDⓈ-M futures connector"""

    BASE_URLS = {
        Environment.MAINNET: "https://fapi.binance.com",
        Environment.TESTNET: "https://testnet.binancefuture.com",
    }

    DEFAULT_HISTORY_SYMBOL = "BTCUSDT"

    def canonical_payload(self, timestamp: int, serialized: str) -> str:
        # Binance signs the full query string, which already carries timestamp and recvWindow
        return serialized

    def _build_signed(
        self, method: str, path: str, params: Dict[str, Any]
    ) -> Tuple[str, Dict[str, str], Optional[str]]:
        timestamp = self._timestamp_ms()
        query_params = dict(params)
        query_params["recvWindow"] = self.recv_window
        query_params["timestamp"] = timestamp

        serialized = urlencode(query_params)
        signature = self.sign(self.canonical_payload(timestamp, serialized))
        url = f"{self.base_url}{path}?{serialized}&signature={signature}"
        headers = {
            "X-MBX-APIKEY": self.api_key,
            "Content-Type": "application/x-www-form-urlencoded",
        }
        return url, headers, None

    def _interpret(self, http_status: int, payload: Any) -> ExchangeResponse:
        code = None
        message = ""
        if isinstance(payload, dict) and "code" in payload and "msg" in payload:
            try:
                code = int(payload["code"])
            except (TypeError, ValueError):
                code = None
            message = str(payload.get("msg", ""))

        is_error = http_status >= 400 or (code is not None and code < 0)
        if not is_error:
            return ExchangeResponse.success(payload, http_status)

        if code is not None and code in BINANCE_ERROR_CODES:
            kind = BINANCE_ERROR_CODES[code]
        elif http_status in HTTP_ERROR_CODES:
            kind = HTTP_ERROR_CODES[http_status]
        elif http_status >= 500:
            kind = ErrorCode.CONNECTIVITY_FAILURE
        else:
            kind = ErrorCode.UNKNOWN

        raw = str(code) if code is not None else str(http_status)
        return ExchangeResponse.failure(kind, message or str(payload)[:200], raw, http_status)

    # Market data / connectivity

    async def server_time(self) -> ExchangeResponse:
        response = await self._request("GET", "/fapi/v1/time", signed=False)
        if not response.ok:
            return response
        return response.with_data(int((response.data or {}).get("serverTime", 0)))

    async def last_price(self, instrument: str) -> ExchangeResponse:
        response = await self._request(
            "GET", "/fapi/v1/ticker/price", {"symbol": instrument}, signed=False
        )
        if not response.ok:
            return response
        return response.with_data(_to_float((response.data or {}).get("price")))

    async def orderbook(self, instrument: str, depth: int = 5) -> ExchangeResponse:
        limit = next((d for d in DEPTH_LIMITS if d >= depth), DEPTH_LIMITS[-1])
        response = await self._request(
            "GET", "/fapi/v1/depth", {"symbol": instrument, "limit": limit}, signed=False
        )
        if not response.ok:
            return response
        book = response.data or {}
        return response.with_data({
            "bids": [[_to_float(p), _to_float(q)] for p, q in book.get("bids", [])[:depth]],
            "asks": [[_to_float(p), _to_float(q)] for p, q in book.get("asks", [])[:depth]],
        })

    async def _fetch_instrument_rules(self, instrument: str) -> ExchangeResponse:
        # exchangeInfo lists every symbol; the whole table is cached on first use
        response = await self._request("GET", "/fapi/v1/exchangeInfo", signed=False)
        if not response.ok:
            return response

        rules: Dict[str, InstrumentRules] = {}
        for item in (response.data or {}).get("symbols", []):
            filters = {f.get("filterType"): f for f in item.get("filters", [])}
            lot = filters.get("MARKET_LOT_SIZE") or filters.get("LOT_SIZE") or {}
            if _to_float(lot.get("stepSize")) <= 0:
                lot = filters.get("LOT_SIZE") or {}
            symbol = item.get("symbol", "")
            rules[symbol] = InstrumentRules(
                instrument=symbol,
                qty_step=_to_float(lot.get("stepSize")),
                tick_size=_to_float((filters.get("PRICE_FILTER") or {}).get("tickSize")),
                min_qty=_to_float(lot.get("minQty")),
                min_notional=_to_float((filters.get("MIN_NOTIONAL") or {}).get("notional")),
            )
        return response.with_data(rules)

    # Account

    async def account_info(self) -> ExchangeResponse:
        response = await self._request("GET", "/fapi/v2/account")
        if not response.ok:
            return response
        account = response.data or {}
        return response.with_data({
            "can_trade": bool(account.get("canTrade", False)),
            "can_deposit": bool(account.get("canDeposit", False)),
            "can_withdraw": bool(account.get("canWithdraw", False)),
            "total_wallet_balance": _to_float(account.get("totalWalletBalance")),
            "available_balance": _to_float(account.get("availableBalance")),
        })

    async def api_permissions(self) -> ExchangeResponse:
        # Futures has no dedicated restrictions endpoint; the account flags carry the grants
        response = await self.account_info()
        if not response.ok:
            return response
        info = response.data
        return response.with_data({
            "read": True,
            "trade": info["can_trade"],
            "withdraw": info["can_withdraw"],
            "ip_restricted": None,
        })

    async def get_balance(self, asset: str = "USDT") -> ExchangeResponse:
        response = await self._request("GET", "/fapi/v2/balance")
        if not response.ok:
            return response

        for entry in response.data or []:
            if entry.get("asset") == asset:
                return response.with_data({
                    "asset": asset,
                    "total": _to_float(entry.get("balance")),
                    "available": _to_float(entry.get("availableBalance")),
                })
        return response.with_data({"asset": asset, "total": 0.0, "available": 0.0})

    async def list_positions(self, instrument: Optional[str] = None) -> ExchangeResponse:
        response = await self._request(
            "GET", "/fapi/v2/positionRisk", {"symbol": instrument} if instrument else {}
        )
        if not response.ok:
            return response

        # Protective prices live on separate conditional orders
        protection: Dict[str, Dict[str, float]] = {}
        orders = await self.open_orders(instrument)
        if orders.ok:
            for o in orders.data or []:
                entry = protection.setdefault(o.get("symbol", ""), {})
                if o.get("type") == "STOP_MARKET":
                    entry["stop_loss"] = _to_float(o.get("stopPrice"))
                elif o.get("type") == "TAKE_PROFIT_MARKET":
                    entry["take_profit"] = _to_float(o.get("stopPrice"))

        positions: List[Dict[str, Any]] = []
        for p in response.data or []:
            amount = _to_float(p.get("positionAmt"))
            if amount == 0:
                continue
            position_side = p.get("positionSide", "BOTH")
            if position_side in ("LONG", "SHORT"):
                side = Direction(position_side)
            else:
                side = Direction.LONG if amount > 0 else Direction.SHORT
            symbol = p.get("symbol", "")
            prot = protection.get(symbol, {})
            positions.append({
                "instrument": symbol,
                "side": side.value,
                "size": abs(amount),
                "entry_price": _to_float(p.get("entryPrice")),
                "leverage": int(_to_float(p.get("leverage"), 1)),
                "stop_loss": prot.get("stop_loss"),
                "take_profit": prot.get("take_profit"),
                "mark_price": _to_float(p.get("markPrice")) or None,
                "unrealized_pnl": _to_float(p.get("unRealizedProfit")),
            })
        return response.with_data(positions)

    # Orders

    async def _protective_order(
        self, instrument: str, side: Direction, order_type: str, stop_price: float
    ) -> ExchangeResponse:
        return await self._request("POST", "/fapi/v1/order", {
            "symbol": instrument,
            "side": side.opposite.order_side,
            "type": order_type,
            "stopPrice": format_decimal(stop_price),
            "closePosition": "true",
            "workingType": "MARK_PRICE",
        })

    async def place_order(self, order: OrderRequest) -> ExchangeResponse:
        params: Dict[str, Any] = {
            "symbol": order.instrument,
            "side": order.side.order_side,
            "type": "MARKET",
            "quantity": format_decimal(order.quantity),
        }
        if order.reduce_only:
            params["reduceOnly"] = "true"
        if order.client_order_id:
            params["newClientOrderId"] = order.client_order_id

        logger.info(
            f"Binance order: {params['side']} {params['quantity']} {order.instrument}"
            + (" reduce-only" if order.reduce_only else "")
        )
        response = await self._request("POST", "/fapi/v1/order", params)
        if not response.ok:
            return response

        filled = response.data or {}
        result = OrderResult(
            order_id=str(filled.get("orderId", "")),
            instrument=order.instrument,
            side=order.side,
            quantity=order.quantity,
            price=_to_float(filled.get("avgPrice")),
            status=filled.get("status", "NEW"),
        )

        if order.reduce_only:
            return response.with_data(result)

        for order_type, price in (
            ("STOP_MARKET", order.stop_loss),
            ("TAKE_PROFIT_MARKET", order.take_profit),
        ):
            if price is None:
                continue
            protective = await self._protective_order(order.instrument, order.side, order_type, price)
            if not protective.ok:
                # An entry without its protective leg is not left open
                logger.error(
                    f"Binance {order_type} for {order.instrument} failed "
                    f"({protective.raw_code}); flattening entry"
                )
                await self.close_position(order.instrument, order.side, order.quantity)
                # The entry did reach the exchange, so this is never reported as a refusal
                kind = protective.error_kind or ErrorCode.UNKNOWN
                return ExchangeResponse.failure(
                    ErrorCode.EXECUTION_FAILED,
                    f"protective order rejected ({kind.value}): {protective.message}",
                    protective.raw_code,
                    protective.http_status,
                )

        return response.with_data(result)

    async def open_orders(self, instrument: Optional[str] = None) -> ExchangeResponse:
        return await self._request(
            "GET", "/fapi/v1/openOrders", {"symbol": instrument} if instrument else {}
        )

    async def order_history(self, instrument: Optional[str] = None, limit: int = 20) -> ExchangeResponse:
        return await self._request("GET", "/fapi/v1/allOrders", {
            "symbol": instrument or self.DEFAULT_HISTORY_SYMBOL,
            "limit": limit,
        })

    async def set_leverage(self, instrument: str, leverage: int) -> ExchangeResponse:
        return await self._request(
            "POST", "/fapi/v1/leverage", {"symbol": instrument, "leverage": leverage}
        )
