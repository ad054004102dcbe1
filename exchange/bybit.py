"""
Bybit Exchange Adapter.

============================================================
PURPOSE
============================================================
Read-only adapter for the Bybit V5 Unified API, used by the
journal to pull fills, positions, closed PnL, candles and
wallet balance.

EXCHANGE SPECIFICS:
- V5 category-based endpoints (spot, linear, inverse, option)
- HMAC-SHA256 signing over timestamp + key + recv_window + query
- Cursor pagination (`nextPageCursor`)
- Kline rows are returned newest-first

============================================================
FAILURE SEMANTICS
============================================================
- retCode != 0        -> ExchangeException (provider message kept)
- HTTP 429            -> ExchangeException(RATE_LIMIT)
- undecodable body    -> ExchangeException(MALFORMED_PAYLOAD)
- one bad record      -> logged, skipped, rest of list returned
- no internal retry

============================================================
API DOCUMENTATION
============================================================
https://bybit-exchange.github.io/docs/v5/intro

============================================================
"""

import hmac
import hashlib
import time
import logging
import asyncio
from datetime import datetime
from decimal import InvalidOperation
from typing import Optional, Dict, Any, List, Callable

import aiohttp

from .base import (
    ExchangeAdapter,
    ExecutionRecord,
    PositionRecord,
    ClosedPnLRecord,
    Candle,
    WalletBalance,
    Page,
    ms_to_datetime,
    datetime_to_ms,
    to_decimal,
)
from .errors import (
    ExchangeException,
    map_bybit_error,
    create_network_error,
    create_timeout_error,
    create_rate_limit_error,
    create_malformed_payload_error,
)
from .metrics import AdapterMetrics
from .logging_utils import AdapterLogger


logger = logging.getLogger(__name__)


# ============================================================
# CONSTANTS
# ============================================================

BYBIT_REST_URL = "https://api.bybit.com"
BYBIT_TESTNET_URL = "https://api-testnet.bybit.com"

# Categories
BYBIT_CAT_LINEAR = "linear"      # USDT perpetual
BYBIT_CAT_INVERSE = "inverse"    # Inverse perpetual
BYBIT_CAT_SPOT = "spot"
BYBIT_CAT_OPTION = "option"

BYBIT_CATEGORIES = (BYBIT_CAT_SPOT, BYBIT_CAT_LINEAR, BYBIT_CAT_INVERSE, BYBIT_CAT_OPTION)

# Endpoints
EXECUTION_LIST = "/v5/execution/list"
POSITION_LIST = "/v5/position/list"
CLOSED_PNL = "/v5/position/closed-pnl"
MARKET_KLINE = "/v5/market/kline"
WALLET_BALANCE = "/v5/account/wallet-balance"

PARSE_ERRORS = (KeyError, ValueError, TypeError, InvalidOperation)


def normalize_side(side: Optional[str]) -> str:
    """Bybit `Buy`/`Sell` -> `buy`/`sell`; anything else -> ''."""
    side = (side or "").lower()
    return side if side in ("buy", "sell") else ""


# ============================================================
# RECORD PARSERS
# ============================================================

def parse_execution(item: Dict[str, Any], category: Optional[str] = None) -> ExecutionRecord:
    """Parse one `/v5/execution/list` (or `execution` topic) entry."""
    side = normalize_side(item["side"])
    if not side:
        raise ValueError(f"unknown side {item['side']!r}")

    exec_type = item.get("execType") or "Trade"
    quantity = to_decimal(item["execQty"])
    price = to_decimal(item["execPrice"])
    if exec_type == "Trade" and (quantity <= 0 or price <= 0):
        raise ValueError(f"non-positive execQty {quantity} / execPrice {price}")

    exec_pnl = item.get("execPnl")
    return ExecutionRecord(
        execution_id=str(item["execId"]),
        order_id=str(item["orderId"]),
        symbol=item["symbol"],
        side=side,
        quantity=quantity,
        price=price,
        execution_time=ms_to_datetime(item["execTime"]),
        closed_size=to_decimal(item.get("closedSize")),
        fee=to_decimal(item.get("execFee")),
        fee_currency=item.get("feeCurrency") or None,
        exec_type=exec_type,
        exec_pnl=to_decimal(exec_pnl) if exec_pnl not in (None, "") else None,
        category=item.get("category") or category,
        raw=item,
    )


def parse_position(item: Dict[str, Any], category: Optional[str] = None) -> PositionRecord:
    """Parse one `/v5/position/list` (or `position` topic) entry."""
    created = item.get("createdTime")
    updated = item.get("updatedTime")
    return PositionRecord(
        symbol=item["symbol"],
        side=normalize_side(item.get("side")),
        size=to_decimal(item["size"]),
        entry_price=to_decimal(item.get("avgPrice") or item.get("entryPrice")),
        unrealized_pnl=to_decimal(item.get("unrealisedPnl")),
        created_time=ms_to_datetime(created) if created else None,
        updated_time=ms_to_datetime(updated) if updated else None,
        category=item.get("category") or category,
        raw=item,
    )


def parse_closed_pnl(item: Dict[str, Any]) -> ClosedPnLRecord:
    """Parse one `/v5/position/closed-pnl` entry."""
    created = item.get("createdTime")
    updated = item.get("updatedTime")
    return ClosedPnLRecord(
        order_id=str(item["orderId"]),
        symbol=item["symbol"],
        side=normalize_side(item.get("side")),
        closed_size=abs(to_decimal(item["closedSize"])),
        avg_entry_price=to_decimal(item["avgEntryPrice"]),
        avg_exit_price=to_decimal(item["avgExitPrice"]),
        closed_pnl=to_decimal(item["closedPnl"]),
        open_fee=to_decimal(item.get("openFee")),
        close_fee=to_decimal(item.get("closeFee")),
        created_time=ms_to_datetime(created) if created else None,
        updated_time=ms_to_datetime(updated) if updated else None,
        raw=item,
    )


def parse_kline_row(row: List[Any]) -> Candle:
    """Parse `[startTime, open, high, low, close, volume, turnover]`."""
    return Candle(
        timestamp=ms_to_datetime(row[0]),
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
    )


# ============================================================
# BYBIT ADAPTER
# ============================================================

class BybitAdapter(ExchangeAdapter):
    """
    Bybit V5 read-only adapter.

    Credentials are only needed for signed endpoints; kline
    requests are sent unsigned.
    """

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        testnet: bool = False,
        recv_window: int = 20000,
        timeout_seconds: float = 30.0,
        base_url: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize Bybit adapter.

        Args:
            api_key: Bybit API key
            api_secret: Bybit API secret
            testnet: Use testnet
            recv_window: Request validity window in ms
            timeout_seconds: Request timeout
            base_url: Override REST base URL
            session: Externally owned aiohttp session
        """
        self._api_key = api_key or ""
        self._api_secret = api_secret or ""
        self._testnet = testnet
        self._recv_window = recv_window
        self._timeout = timeout_seconds
        self._base_url = base_url or (BYBIT_TESTNET_URL if testnet else BYBIT_REST_URL)

        self._session = session
        self._owns_session = session is None

        self._metrics = AdapterMetrics("bybit")
        self._logger = AdapterLogger("bybit")

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def exchange_id(self) -> str:
        return "bybit"

    @property
    def metrics(self) -> AdapterMetrics:
        return self._metrics

    @property
    def has_credentials(self) -> bool:
        return bool(self._api_key and self._api_secret)

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self) -> None:
        """Create the HTTP session if needed."""
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def close(self) -> None:
        """Close the HTTP session if this adapter created it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    # --------------------------------------------------------
    # SIGNING
    # --------------------------------------------------------

    def sign_request(self, timestamp: str, payload: str) -> str:
        """
        Create request signature.

        Bybit V5 signature: HMAC-SHA256(timestamp + api_key + recv_window + payload)
        """
        param_str = f"{timestamp}{self._api_key}{self._recv_window}{payload}"
        return hmac.new(
            self._api_secret.encode(),
            param_str.encode(),
            hashlib.sha256,
        ).hexdigest()

    def _get_timestamp(self) -> str:
        return str(int(time.time() * 1000))

    # --------------------------------------------------------
    # REQUEST HANDLING
    # --------------------------------------------------------

    async def _request(
        self,
        endpoint: str,
        params: Dict[str, Any] = None,
        signed: bool = True,
    ) -> Dict[str, Any]:
        """
        Make a GET request to Bybit.

        Args:
            endpoint: API endpoint
            params: Query parameters (None values dropped)
            signed: Attach authentication headers

        Returns:
            The `result` object of the response envelope
        """
        await self.connect()

        params = {k: v for k, v in (params or {}).items() if v is not None}
        param_str = "&".join(f"{k}={v}" for k, v in params.items())
        url = f"{self._base_url}{endpoint}"
        if param_str:
            url = f"{url}?{param_str}"

        headers = {"Content-Type": "application/json"}
        if signed:
            timestamp = self._get_timestamp()
            headers.update({
                "X-BAPI-API-KEY": self._api_key,
                "X-BAPI-SIGN": self.sign_request(timestamp, param_str),
                "X-BAPI-SIGN-TYPE": "2",
                "X-BAPI-TIMESTAMP": timestamp,
                "X-BAPI-RECV-WINDOW": str(self._recv_window),
            })

        operation = endpoint.rsplit("/", 1)[-1]
        request_id = self._logger.log_request(
            operation=operation,
            method="GET",
            endpoint=endpoint,
            headers=headers,
            params=params,
        )

        start_time = time.time()

        try:
            async with self._session.get(url, headers=headers) as resp:
                return await self._handle_response(resp, request_id, endpoint, start_time)
        except ExchangeException:
            raise
        except aiohttp.ClientError as e:
            self._metrics.record_request(
                endpoint=endpoint,
                latency_ms=(time.time() - start_time) * 1000,
                success=False,
                error_code="NETWORK_ERROR",
            )
            raise ExchangeException(
                create_network_error("bybit", str(e), endpoint)
            ) from e
        except asyncio.TimeoutError as e:
            self._metrics.record_request(
                endpoint=endpoint,
                latency_ms=(time.time() - start_time) * 1000,
                success=False,
                error_code="TIMEOUT",
            )
            raise ExchangeException(
                create_timeout_error("bybit", int(self._timeout * 1000), endpoint)
            ) from e

    async def _handle_response(
        self,
        response: aiohttp.ClientResponse,
        request_id: str,
        endpoint: str,
        start_time: float,
    ) -> Dict[str, Any]:
        """Decode the response envelope or raise."""
        latency_ms = (time.time() - start_time) * 1000
        operation = endpoint.rsplit("/", 1)[-1]

        self._track_rate_limit(response.headers)

        if response.status == 429:
            error = create_rate_limit_error("bybit", operation=endpoint)
            self._record_failure(endpoint, operation, request_id, latency_ms, response.status, error.code, "HTTP 429")
            raise ExchangeException(error)

        try:
            data = await response.json(content_type=None)
        except ValueError:
            text = await response.text()
            if response.status >= 500:
                error = map_bybit_error(-1, text[:200], response.status)
            else:
                error = create_malformed_payload_error(
                    "bybit", f"Undecodable response body: {text[:100]}", response.status, endpoint
                )
            self._record_failure(endpoint, operation, request_id, latency_ms, response.status, error.code, error.message)
            raise ExchangeException(error)

        if not isinstance(data, dict):
            error = create_malformed_payload_error(
                "bybit", "Response envelope is not an object", response.status, endpoint
            )
            self._record_failure(endpoint, operation, request_id, latency_ms, response.status, error.code, error.message)
            raise ExchangeException(error)

        # Bybit returns retCode 0 for success
        ret_code = data.get("retCode", 0)
        ret_msg = data.get("retMsg", "")

        if ret_code != 0:
            error = map_bybit_error(int(ret_code), ret_msg, response.status)
            error.operation = endpoint
            self._record_failure(endpoint, operation, request_id, latency_ms, response.status, error.code, ret_msg)
            raise ExchangeException(error)

        self._metrics.record_request(
            endpoint=endpoint,
            latency_ms=latency_ms,
            success=True,
            status_code=response.status,
        )
        self._logger.log_response(
            operation=operation,
            request_id=request_id,
            status_code=response.status,
            latency_ms=latency_ms,
            success=True,
            response_body=data,
        )

        return data.get("result") or {}

    def _record_failure(
        self,
        endpoint: str,
        operation: str,
        request_id: str,
        latency_ms: float,
        status_code: int,
        error_code: str,
        error_message: str,
    ) -> None:
        self._metrics.record_request(
            endpoint=endpoint,
            latency_ms=latency_ms,
            success=False,
            status_code=status_code,
            error_code=error_code,
        )
        self._logger.log_response(
            operation=operation,
            request_id=request_id,
            status_code=status_code,
            latency_ms=latency_ms,
            success=False,
            error_code=error_code,
            error_message=error_message,
        )

    def _track_rate_limit(self, headers) -> None:
        remaining = headers.get("X-Bapi-Limit-Status")
        limit = headers.get("X-Bapi-Limit")
        try:
            self._metrics.record_rate_limit_headers(
                int(remaining) if remaining is not None else None,
                int(limit) if limit is not None else None,
            )
        except ValueError:
            logger.debug(f"Ignoring non-numeric rate limit headers: {remaining}/{limit}")

    def _parse_items(
        self,
        items: List[Any],
        parser: Callable[[Any], Any],
        endpoint: str,
    ) -> List[Any]:
        """Parse a result list, skipping records that fail to parse."""
        parsed = []
        for item in items or []:
            try:
                parsed.append(parser(item))
            except PARSE_ERRORS as e:
                self._metrics.record_malformed(endpoint)
                logger.warning(f"Skipping malformed record from {endpoint}: {e}")
        return parsed

    # --------------------------------------------------------
    # ACCOUNT DATA
    # --------------------------------------------------------

    async def fetch_executions(
        self,
        category: str,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        cursor: Optional[str] = None,
        limit: int = 50,
        symbol: Optional[str] = None,
    ) -> Page[ExecutionRecord]:
        """Fetch one page of executions (window must not exceed 7 days)."""
        data = await self._request(EXECUTION_LIST, {
            "category": category,
            "symbol": symbol,
            "startTime": datetime_to_ms(start_time) if start_time else None,
            "endTime": datetime_to_ms(end_time) if end_time else None,
            "limit": limit,
            "cursor": cursor,
        })
        items = self._parse_items(
            data.get("list", []),
            lambda item: parse_execution(item, category),
            EXECUTION_LIST,
        )
        return Page(items=items, next_cursor=data.get("nextPageCursor") or None)

    async def fetch_positions(
        self,
        category: str,
        symbol: Optional[str] = None,
    ) -> List[PositionRecord]:
        """Fetch current positions; linear positions are filtered by USDT settle coin."""
        params: Dict[str, Any] = {"category": category, "symbol": symbol}
        if symbol is None and category == BYBIT_CAT_LINEAR:
            params["settleCoin"] = "USDT"
        data = await self._request(POSITION_LIST, params)
        return self._parse_items(
            data.get("list", []),
            lambda item: parse_position(item, category),
            POSITION_LIST,
        )

    async def fetch_closed_pnl(
        self,
        category: str,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        cursor: Optional[str] = None,
        limit: int = 50,
    ) -> Page[ClosedPnLRecord]:
        """Fetch one page of closed-PnL records."""
        data = await self._request(CLOSED_PNL, {
            "category": category,
            "startTime": datetime_to_ms(start_time) if start_time else None,
            "endTime": datetime_to_ms(end_time) if end_time else None,
            "limit": limit,
            "cursor": cursor,
        })
        items = self._parse_items(data.get("list", []), parse_closed_pnl, CLOSED_PNL)
        return Page(items=items, next_cursor=data.get("nextPageCursor") or None)

    async def fetch_wallet_balance(self, account_type: str = "UNIFIED") -> WalletBalance:
        """Fetch wallet balance."""
        data = await self._request(WALLET_BALANCE, {"accountType": account_type})

        accounts = data.get("list", [])
        if not accounts:
            return WalletBalance(account_type=account_type, total_equity=to_decimal(None))

        account = accounts[0]
        coins = {}
        for coin in account.get("coin", []):
            try:
                coins[coin["coin"]] = to_decimal(coin.get("walletBalance"))
            except PARSE_ERRORS as e:
                self._metrics.record_malformed(WALLET_BALANCE)
                logger.warning(f"Skipping malformed coin balance: {e}")

        return WalletBalance(
            account_type=account.get("accountType", account_type),
            total_equity=to_decimal(account.get("totalEquity")),
            total_available=to_decimal(account.get("totalAvailableBalance")),
            coins=coins,
        )

    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------

    async def fetch_kline(
        self,
        symbol: str,
        interval: str,
        limit: int = 200,
        category: str = BYBIT_CAT_LINEAR,
    ) -> List[Candle]:
        """Fetch candles (unsigned) sorted ascending by timestamp."""
        data = await self._request(
            MARKET_KLINE,
            {"category": category, "symbol": symbol, "interval": interval, "limit": limit},
            signed=False,
        )
        candles = self._parse_items(data.get("list", []), parse_kline_row, MARKET_KLINE)
        candles.sort(key=lambda c: c.timestamp)
        return candles
