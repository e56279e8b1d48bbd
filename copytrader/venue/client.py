"""
REST client for the futures venue.

Private endpoints are signed with HMAC-SHA256 over the compact JSON body and
authenticated with X-AUTH-APIKEY / X-AUTH-SIGNATURE headers. Every call
carries its own aiohttp timeout. Failures surface as typed exceptions:

    - no HTTP response (DNS, reset, timeout)  -> VenueTransportError
    - 401 / 403                               -> AuthenticationError
    - 429                                     -> RateLimitError
    - any other non-2xx                       -> VenueHTTPError
"""
import asyncio
import hashlib
import hmac
import json
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import aiohttp

from copytrader import constants
from copytrader.domain.models import (
    Credentials,
    InstrumentMeta,
    LedgerEntry,
    OrderResult,
    OrderSpec,
)
from copytrader.exceptions import (
    AuthenticationError,
    RateLimitError,
    VenueHTTPError,
    VenueTransportError,
)
from copytrader.monitoring.logger import get_logger

logger = get_logger(__name__)


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def extract_venue_message(payload: Any, fallback: str = "") -> str:
    """Pull the human message out of a venue error body."""
    if isinstance(payload, dict):
        for key in ("message", "error", "msg", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
            if isinstance(value, dict) and value.get("message"):
                return str(value["message"])
    if isinstance(payload, str) and payload:
        return payload
    return fallback


def extract_order_id(payload: Any) -> str:
    """Venue order id from a create-order response; 'unknown' when absent."""
    if isinstance(payload, list):
        payload = payload[0] if payload else {}
    if isinstance(payload, dict) and isinstance(payload.get("orders"), list):
        orders = payload["orders"]
        payload = orders[0] if orders else {}
    if isinstance(payload, dict):
        order_id = payload.get("id") or payload.get("orderId") or payload.get("order_id")
        if order_id:
            return str(order_id)
    return "unknown"


def to_venue_pair(pair: str) -> str:
    return pair if pair.startswith(constants.FUTURES_PAIR_PREFIX) else constants.FUTURES_PAIR_PREFIX + pair


def parse_instrument(pair: str, payload: Dict[str, Any]) -> Optional[InstrumentMeta]:
    """Build InstrumentMeta from the venue's instrument payload, None when incomplete."""
    data = payload.get("instrument", payload) if isinstance(payload, dict) else {}
    step = _to_decimal(data.get("quantity_increment") or data.get("step_size"))
    min_qty = _to_decimal(data.get("min_quantity") or data.get("min_qty"))
    min_notional = _to_decimal(data.get("min_notional")) or Decimal("0")
    max_leverage = _to_decimal(
        data.get("max_leverage") or data.get("max_leverage_long") or data.get("max_leverage_short")
    )
    if step is None or step <= 0 or min_qty is None or max_leverage is None:
        return None
    return InstrumentMeta(
        pair=pair,
        step_size=step,
        min_qty=min_qty,
        min_notional=min_notional,
        max_leverage=max_leverage,
    )


def parse_ledger_entry(row: Dict[str, Any]) -> Optional[LedgerEntry]:
    amount = _to_decimal(row.get("amount"))
    if amount is None:
        return None
    return LedgerEntry(
        parent_id=str(row.get("parent_id") or ""),
        position_id=str(row.get("position_id") or row.get("pos_id") or ""),
        amount=amount,
        currency=row.get("currency_short_name") or row.get("currency"),
        raw=row,
    )


class VenueRestClient:
    """aiohttp implementation of the VenueClient protocol."""

    def __init__(
        self,
        base_url: str = constants.VENUE_BASE_URL,
        order_timeout_seconds: float = constants.ORDER_TIMEOUT_SECONDS,
        request_timeout_seconds: float = constants.REQUEST_TIMEOUT_SECONDS,
    ):
        self.base_url = base_url.rstrip("/")
        self.order_timeout = order_timeout_seconds
        self.request_timeout = request_timeout_seconds

    @staticmethod
    def sign(secret: str, body: str) -> str:
        return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()

    def _signed(self, credentials: Credentials, payload: Dict[str, Any]) -> tuple[str, Dict[str, str]]:
        body = json.dumps(payload, separators=(",", ":"))
        headers = {
            "Content-Type": "application/json",
            "X-AUTH-APIKEY": credentials.api_key,
            "X-AUTH-SIGNATURE": self.sign(credentials.api_secret, body),
        }
        return body, headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        timeout: float,
        body: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        try:
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.request(method, url, data=body, headers=headers, params=params) as response:
                    text = await response.text()
                    try:
                        payload = json.loads(text) if text else {}
                    except json.JSONDecodeError:
                        payload = text
                    if response.status >= 400:
                        self._raise_for_status(response.status, payload)
                    return payload
        except asyncio.TimeoutError as e:
            raise VenueTransportError(f"Request to {path} timed out after {timeout}s", timeout=True) from e
        except aiohttp.ClientConnectionError as e:
            raise VenueTransportError(f"Connection failed for {path}: {e}") from e
        except aiohttp.ClientError as e:
            raise VenueTransportError(f"Transport error for {path}: {e}") from e

    @staticmethod
    def _raise_for_status(status: int, payload: Any) -> None:
        message = extract_venue_message(payload, fallback=f"HTTP {status}")
        body = payload if isinstance(payload, dict) else {"body": payload}
        if status in (401, 403):
            raise AuthenticationError(status, message, body)
        if status == 429:
            raise RateLimitError(status, message, body)
        raise VenueHTTPError(status, message, body)

    async def get_instrument_meta(self, pair: str) -> Optional[InstrumentMeta]:
        payload = await self._request(
            "GET",
            constants.INSTRUMENT_PATH,
            timeout=self.request_timeout,
            params={"pair": to_venue_pair(pair), "margin_currency_short_name": "USDT"},
        )
        meta = parse_instrument(pair, payload)
        if meta is None:
            logger.warning("INSTRUMENT_META_INCOMPLETE", pair=pair)
        return meta

    async def create_order(self, credentials: Credentials, order: OrderSpec) -> OrderResult:
        payload = {
            "timestamp": int(time.time() * 1000),
            "order": {
                "side": order.side.value,
                "pair": to_venue_pair(order.pair),
                "order_type": "limit_order",
                "price": str(order.price),
                "total_quantity": str(order.quantity),
                "leverage": order.leverage,
                "notification": "email_notification",
                "time_in_force": "good_till_cancel",
                "hidden": False,
                "post_only": False,
            },
        }
        body, headers = self._signed(credentials, payload)
        logger.info(
            "VENUE_ORDER_SUBMIT",
            pair=order.pair,
            side=order.side.value,
            quantity=str(order.quantity),
            price=str(order.price),
            leverage=order.leverage,
            api_key=credentials.api_key,
        )
        data = await self._request(
            "POST", constants.ORDER_CREATE_PATH, timeout=self.order_timeout, body=body, headers=headers
        )
        return OrderResult(
            success=True,
            order_id=extract_order_id(data),
            message="Order placed",
            executed_price=order.price,
            raw=data if isinstance(data, dict) else {"orders": data},
        )

    async def get_transactions(self, credentials: Credentials, order_id: str) -> List[LedgerEntry]:
        body, headers = self._signed(
            credentials, {"timestamp": int(time.time() * 1000), "order_id": order_id}
        )
        data = await self._request(
            "POST", constants.TRANSACTIONS_PATH, timeout=self.request_timeout, body=body, headers=headers
        )
        rows = data if isinstance(data, list) else (data.get("transactions") or [])
        entries = []
        for row in rows:
            entry = parse_ledger_entry(row) if isinstance(row, dict) else None
            if entry is not None:
                entries.append(entry)
        return entries

    async def get_wallet_balance(self, credentials: Credentials, currency: str = "USDT") -> Decimal:
        """Available futures wallet balance in `currency` (GET with a signed body)."""
        body, headers = self._signed(credentials, {"timestamp": int(time.time() * 1000)})
        data = await self._request(
            "GET", constants.WALLETS_PATH, timeout=self.request_timeout, body=body, headers=headers
        )
        wallets = data if isinstance(data, list) else (data.get("wallets") or [data])
        for wallet in wallets:
            if not isinstance(wallet, dict):
                continue
            if (wallet.get("currency_short_name") or currency).upper() != currency:
                continue
            balance = _to_decimal(wallet.get("balance")) or Decimal("0")
            locked = _to_decimal(wallet.get("locked_balance")) or Decimal("0")
            return balance - locked
        return Decimal("0")
