"""Binance USD-M futures brokerage.

Requests are signed HMAC-SHA256 over exactly the query string that is sent.
Nothing here retries: a failed call is classified and raised, and the next
scheduler tick is the retry.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
import uuid
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

import requests

from copytrade.errors import CredentialError, TransientExecutionError, VenueRejectedError
from copytrade.log_utils import utc_now
from copytrade.models import Fill, IntentKind, MarginType, OrderIntent, Position, Side
from copytrade.runtime_config import BrokerConfig

LOGGER = logging.getLogger("copytrade.exchange")

MAINNET_URL = "https://fapi.binance.com"
TESTNET_URL = "https://testnet.binancefuture.com"

# API-key / signature failures
_AUTH_CODES = {-1002, -1022, -2014, -2015}
# "No need to change margin type."
_MARGIN_TYPE_UNCHANGED = -4046
_TIME_SYNC_INTERVAL = 600  # seconds


def _coerce_float(value: Any) -> float:
    if value in (None, "", "null"):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _dec(val: Any) -> Decimal:
    return val if isinstance(val, Decimal) else Decimal(str(val))


def _quant_floor(value: Decimal, step: Decimal) -> Decimal:
    if step == 0:
        return value
    return (value / step).to_integral_value(rounding=ROUND_DOWN) * step


def _format_qty(value: Decimal) -> str:
    text = f"{value.normalize():f}"
    return text if text else "0"


def _error_code(resp: Optional[requests.Response]) -> Optional[int]:
    if resp is None:
        return None
    try:
        payload = resp.json()
    except ValueError:
        return None
    code = payload.get("code") if isinstance(payload, dict) else None
    return int(code) if isinstance(code, int) else None


def classify_http_error(resp: requests.Response, context: str) -> Exception:
    """Map a failed Binance response onto the execution error taxonomy."""
    status = resp.status_code
    code = _error_code(resp)
    text = (resp.text or "")[:300]
    message = f"{context}: HTTP {status} code={code} {text}".strip()
    if status in (401, 403) or code in _AUTH_CODES:
        return CredentialError(message, code=code, status=status)
    if status >= 500 or status in (408, 418, 429):
        return TransientExecutionError(message, code=code, status=status)
    return VenueRejectedError(message, code=code, status=status)


class BinanceFuturesBroker:
    """Positions and market orders on one Binance USD-M account."""

    def __init__(self, config: BrokerConfig, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.base_url = TESTNET_URL if config.testnet else MAINNET_URL
        self._session = session or requests.Session()
        self._session.headers["X-MBX-APIKEY"] = config.api_key
        self._time_offset_ms: Optional[int] = None
        self._last_time_sync = 0.0
        self._filters: Dict[str, Dict[str, Any]] = {}
        self._dry_positions: Dict[str, Position] = {}
        self._dry_seeded = False
        LOGGER.info("[exchange] base=%s testnet=%s dry_run=%s", self.base_url, config.testnet, config.dry_run)

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    # -- transport --------------------------------------------------------------
    def _sync_server_time(self) -> None:
        now = time.time()
        if self._time_offset_ms is not None and (now - self._last_time_sync) < _TIME_SYNC_INTERVAL:
            return
        data = self._req("GET", "/fapi/v1/time").json() or {}
        self._time_offset_ms = int(data.get("serverTime", 0)) - int(time.time() * 1000)
        self._last_time_sync = now
        LOGGER.info("[exchange] server_time_offset_ms=%s", self._time_offset_ms)

    def _req(self, method: str, path: str, *, signed: bool = False, params: Mapping[str, Any] | None = None) -> requests.Response:
        method = method.upper()
        url = self.base_url + path
        query = {k: v for k, v in (params or {}).items() if v is not None}
        if signed:
            if not self.config.has_credentials:
                raise CredentialError("BINANCE_API_KEY / BINANCE_API_SECRET are not set")
            self._sync_server_time()
            query["recvWindow"] = self.config.recv_window
            query["timestamp"] = int(time.time() * 1000) + (self._time_offset_ms or 0)
        qs = urlencode([(str(k), str(v)) for k, v in query.items()], safe=":/")
        if signed:
            sig = hmac.new(self.config.api_secret.encode(), qs.encode(), hashlib.sha256).hexdigest()
            qs = f"{qs}&signature={sig}"
        headers = {"X-MBX-APIKEY": self.config.api_key}
        data = None
        if method in ("GET", "DELETE"):
            if qs:
                url = f"{url}?{qs}"
        else:
            data = qs
            headers["Content-Type"] = "application/x-www-form-urlencoded"
        try:
            resp = self._session.request(method, url, data=data, headers=headers, timeout=self.config.timeout)
        except requests.RequestException as exc:
            raise TransientExecutionError(f"{method} {path}: {exc}") from exc
        if resp.status_code >= 400:
            err = classify_http_error(resp, f"{method} {path}")
            if isinstance(err, CredentialError):
                LOGGER.error(
                    "[exchange] AUTH_ERR code=%s testnet=%s key=%s… url=%s",
                    err.code,
                    self.config.testnet,
                    self.config.api_key[:6] or "NONE",
                    path,
                )
            raise err
        return resp

    # -- market metadata --------------------------------------------------------
    def symbol_filters(self, symbol: str) -> Dict[str, Any]:
        if not self._filters:
            payload = self._req("GET", "/fapi/v1/exchangeInfo").json() or {}
            for entry in payload.get("symbols", []) or []:
                name = str(entry.get("symbol", "")).upper()
                if name:
                    self._filters[name] = {
                        str(f.get("filterType")): f for f in entry.get("filters", []) or [] if f.get("filterType")
                    }
        try:
            return self._filters[symbol.upper()]
        except KeyError:
            raise VenueRejectedError(f"unknown symbol {symbol}") from None

    def normalize_quantity(self, symbol: str, quantity: float) -> Decimal:
        filters = self.symbol_filters(symbol)
        lot = filters.get("MARKET_LOT_SIZE") or filters.get("LOT_SIZE") or {}
        step = _dec(lot.get("stepSize", "0.001"))
        min_qty = _dec(lot.get("minQty", "0"))
        qty = _quant_floor(_dec(quantity), step)
        if qty <= 0 or qty < min_qty:
            raise VenueRejectedError(f"{symbol}: quantity {quantity} below minimum {min_qty} (step {step})")
        return qty

    # -- account ----------------------------------------------------------------
    def get_positions(self) -> List[Position]:
        if not self.dry_run:
            return self._fetch_positions()
        if not self._dry_seeded:
            # simulated book starts from the real account when keys are present
            if self.config.has_credentials:
                self._dry_positions = {p.key: p for p in self._fetch_positions()}
            self._dry_seeded = True
        return list(self._dry_positions.values())

    def _fetch_positions(self) -> List[Position]:
        rows = self._req("GET", "/fapi/v2/positionRisk", signed=True).json() or []
        out: List[Position] = []
        for row in rows:
            amt = _coerce_float(row.get("positionAmt"))
            if amt == 0:
                continue
            side = str(row.get("positionSide") or "BOTH").upper()
            if side not in ("LONG", "SHORT"):
                side = "LONG" if amt > 0 else "SHORT"
            margin_type = str(row.get("marginType") or "").upper()
            entry = _coerce_float(row.get("entryPrice"))
            leverage = max(1, int(_coerce_float(row.get("leverage")) or 1))
            isolated = margin_type == "ISOLATED"
            out.append(
                Position(
                    symbol=str(row.get("symbol")),
                    side=side,
                    quantity=abs(amt),
                    leverage=leverage,
                    entry_price=entry,
                    current_price=_coerce_float(row.get("markPrice")),
                    margin=_coerce_float(row.get("isolatedMargin")) if isolated else abs(amt * entry) / leverage,
                    unrealized_pnl=_coerce_float(row.get("unRealizedProfit")),
                    margin_type=MarginType.ISOLATED if isolated else MarginType.CROSSED,
                )
            )
        return out

    def set_margin_type(self, symbol: str, margin_type: MarginType) -> None:
        try:
            self._req("POST", "/fapi/v1/marginType", signed=True, params={"symbol": symbol, "marginType": margin_type.value})
        except VenueRejectedError as exc:
            if exc.code != _MARGIN_TYPE_UNCHANGED:
                raise

    def set_leverage(self, symbol: str, leverage: int) -> None:
        self._req("POST", "/fapi/v1/leverage", signed=True, params={"symbol": symbol, "leverage": int(leverage)})

    # -- orders -----------------------------------------------------------------
    def place_order(self, intent: OrderIntent) -> Fill:
        if self.dry_run:
            return self._dry_run_fill(intent)
        qty = self.normalize_quantity(intent.symbol, intent.quantity)
        if not intent.reduce_only:
            self.set_margin_type(intent.symbol, intent.margin_type)
            self.set_leverage(intent.symbol, intent.leverage)
        params: Dict[str, Any] = {
            "symbol": intent.symbol,
            "side": intent.order_side,
            "type": "MARKET",
            "quantity": _format_qty(qty),
            "newClientOrderId": f"ct_{uuid.uuid4().hex[:24]}",
            "newOrderRespType": "RESULT",
        }
        if intent.reduce_only:
            params["reduceOnly"] = "true"
        LOGGER.info("[exchange] order %s", params)
        payload = self._req("POST", "/fapi/v1/order", signed=True, params=params).json() or {}
        executed = _coerce_float(payload.get("executedQty"))
        order_id = payload.get("orderId")
        realized = fee = 0.0
        for trade in self._fetch_order_trades(intent.symbol, order_id):
            realized += _coerce_float(trade.get("realizedPnl"))
            fee += _coerce_float(trade.get("commission"))
        return Fill(
            order_id=str(order_id or params["newClientOrderId"]),
            symbol=intent.symbol,
            side=intent.order_side,
            quantity=executed or float(qty),
            price=_coerce_float(payload.get("avgPrice")) or intent.reference_price,
            realized_pnl=realized,
            fee=fee,
            status=str(payload.get("status") or "FILLED"),
        )

    def _fetch_order_trades(self, symbol: str, order_id: Any) -> List[Dict[str, Any]]:
        """Trades behind one order; realized PnL and commission only come back here."""
        if not order_id:
            return []
        params = {"symbol": symbol, "orderId": int(order_id)}
        try:
            data = self._req("GET", "/fapi/v1/userTrades", signed=True, params=params).json() or []
        except (TransientExecutionError, VenueRejectedError) as exc:
            LOGGER.warning("[exchange] order_trades_fetch_failed symbol=%s order_id=%s err=%s", symbol, order_id, exc)
            return []
        return data if isinstance(data, list) else []

    def _dry_run_fill(self, intent: OrderIntent) -> Fill:
        LOGGER.info("[dry-run] stubbed %s %s qty=%s", intent.order_side, intent.symbol, intent.quantity)
        price = intent.reference_price
        key = f"{intent.symbol}:{intent.position_side.value}"
        held = self._dry_positions.get(key)
        realized = 0.0
        if intent.reduce_only and held is not None:
            closed = min(intent.quantity, held.quantity)
            move = price - held.entry_price if held.side is Side.LONG else held.entry_price - price
            realized = move * closed
        if intent.kind is IntentKind.CLOSE or (intent.reduce_only and held is not None and intent.quantity >= held.quantity):
            self._dry_positions.pop(key, None)
        elif intent.reduce_only and held is not None:
            self._dry_positions[key] = Position(
                intent.symbol, intent.position_side, held.quantity - intent.quantity, held.leverage, held.entry_price, price
            )
        elif not intent.reduce_only:
            qty = intent.quantity + (held.quantity if held else 0.0)
            entry = price if held is None else (held.quantity * held.entry_price + intent.quantity * price) / qty
            self._dry_positions[key] = Position(
                intent.symbol, intent.position_side, qty, intent.leverage, entry, price, margin_type=intent.margin_type
            )
        return Fill(
            order_id=f"dry_{uuid.uuid4().hex[:12]}",
            symbol=intent.symbol,
            side=intent.order_side,
            quantity=intent.quantity,
            price=price,
            realized_pnl=realized,
            status="DRY_RUN",
            dry_run=True,
            ts=utc_now(),
        )


__all__ = ["BinanceFuturesBroker", "classify_http_error", "MAINNET_URL", "TESTNET_URL"]
