"""
Exchange Client Tests.

============================================================
PURPOSE
============================================================
Unit tests for the exchange client.

TEST CATEGORIES:
- Parsing tests: Bybit record parsing
- Signing tests: request signatures
- Request tests: envelope handling against a fake HTTP session
- Error mapping tests: retCode / pattern classification
- Logging tests: Credential masking
- Mock adapter tests: scripted pages and error injection

============================================================
"""

import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from exchange import (
    AdapterFactory,
    BybitAdapter,
    ErrorCategory,
    ExchangeException,
    MetricType,
    MockExchangeAdapter,
    classify_error_message,
    create_adapter,
    create_network_error,
    is_auth_failure,
    map_bybit_error,
    mask_headers,
    mask_params,
    mask_value,
)
from exchange.base import Page, datetime_to_ms, ms_to_datetime
from exchange.bybit import parse_closed_pnl, parse_execution, parse_kline_row, parse_position

from conftest import make_fill


# ============================================================
# FAKE HTTP SESSION
# ============================================================

class FakeResponse:
    def __init__(self, status=200, body=None, text=None, headers=None):
        self.status = status
        self._body = body
        self._text = text
        self.headers = headers or {}

    async def json(self, content_type=None):
        if self._body is None:
            raise ValueError("not json")
        return self._body

    async def text(self):
        return self._text or ""

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, *responses):
        self._responses = list(responses)
        self.requests = []

    def get(self, url, headers=None):
        self.requests.append((url, headers))
        return self._responses.pop(0)

    async def close(self):
        pass


def ok(result):
    return FakeResponse(body={"retCode": 0, "retMsg": "OK", "result": result})


EXEC_ITEM = {
    "execId": "e-1",
    "orderId": "o-1",
    "symbol": "BTCUSDT",
    "side": "Buy",
    "execQty": "0.5",
    "execPrice": "65000.5",
    "execTime": "1717243200000",
    "closedSize": "0",
    "execFee": "0.01",
    "feeCurrency": "USDT",
    "execType": "Trade",
}


# ============================================================
# PARSING TESTS
# ============================================================

class TestParsing:
    """Tests for Bybit record parsers."""

    def test_parse_execution(self):
        record = parse_execution(EXEC_ITEM, "linear")

        assert record.execution_id == "e-1"
        assert record.side == "buy"
        assert record.quantity == Decimal("0.5")
        assert record.price == Decimal("65000.5")
        assert record.execution_time == datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        assert record.category == "linear"
        assert record.is_trade
        assert not record.is_closing
        assert record.exec_pnl is None

    def test_parse_execution_unknown_side_rejected(self):
        with pytest.raises(ValueError):
            parse_execution({**EXEC_ITEM, "side": "None"})

    def test_parse_execution_non_positive_quantity_rejected(self):
        with pytest.raises(ValueError):
            parse_execution({**EXEC_ITEM, "execQty": "0"})
        with pytest.raises(ValueError):
            parse_execution({**EXEC_ITEM, "execPrice": "-1"})

    def test_zero_quantity_funding_still_parses(self):
        record = parse_execution({**EXEC_ITEM, "execType": "Funding", "execQty": "0"})
        assert record.quantity == Decimal("0")

    def test_funding_execution_is_not_trade(self):
        record = parse_execution({**EXEC_ITEM, "execType": "Funding"})
        assert not record.is_trade

    def test_parse_position_flat(self):
        position = parse_position({"symbol": "ETHUSDT", "side": "", "size": "0", "avgPrice": "0"})

        assert position.is_flat
        assert position.side == ""
        assert position.created_time is None

    def test_parse_closed_pnl_size_is_absolute(self):
        record = parse_closed_pnl({
            "orderId": "c-1",
            "symbol": "BTCUSDT",
            "side": "Sell",
            "closedSize": "-2",
            "avgEntryPrice": "105",
            "avgExitPrice": "120",
            "closedPnl": "30",
            "openFee": "0.1",
            "closeFee": "0.2",
            "updatedTime": "1717243200000",
        })

        assert record.closed_size == Decimal("2")
        assert record.total_fee == Decimal("0.3")
        assert record.side == "sell"

    def test_parse_kline_row(self):
        candle = parse_kline_row(["1717243200000", "1", "3", "0.5", "2", "10", "20"])

        assert candle.high == 3.0
        assert candle.is_bullish
        assert candle.range == 2.5

    def test_ms_round_trip(self):
        moment = datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert ms_to_datetime(datetime_to_ms(moment)) == moment

    def test_naive_datetime_taken_as_utc(self):
        assert datetime_to_ms(datetime(1970, 1, 1, 0, 0, 1)) == 1000


# ============================================================
# SIGNING TESTS
# ============================================================

class TestSigning:
    """Tests for request signatures."""

    def test_bybit_signature_covers_timestamp_key_window_payload(self):
        adapter = BybitAdapter(api_key="key", api_secret="secret", recv_window=5000)

        expected = hmac.new(b"secret", b"1700000000000key5000category=linear", hashlib.sha256).hexdigest()
        assert adapter.sign_request("1700000000000", "category=linear") == expected

    def test_signature_is_deterministic(self):
        adapter = BybitAdapter(api_key="key", api_secret="secret")
        assert adapter.sign_request("1", "a=b") == adapter.sign_request("1", "a=b")
        assert adapter.sign_request("1", "a=b") != adapter.sign_request("2", "a=b")


# ============================================================
# REQUEST TESTS
# ============================================================

class TestBybitRequests:
    """Tests for envelope handling."""

    @pytest.mark.asyncio
    async def test_fetch_executions_page(self):
        session = FakeSession(ok({"list": [EXEC_ITEM], "nextPageCursor": "abc"}))
        adapter = BybitAdapter(api_key="key", api_secret="secret", session=session)

        page = await adapter.fetch_executions(
            "linear",
            start_time=datetime(2024, 6, 1, tzinfo=timezone.utc),
            limit=50,
        )

        assert len(page.items) == 1
        assert page.next_cursor == "abc"
        url, headers = session.requests[0]
        assert "/v5/execution/list?category=linear" in url
        assert "cursor" not in url
        assert headers["X-BAPI-API-KEY"] == "key"
        assert "X-BAPI-SIGN" in headers

    @pytest.mark.asyncio
    async def test_malformed_record_skipped(self):
        bad = {**EXEC_ITEM, "execId": "e-2", "execQty": "not-a-number"}
        session = FakeSession(ok({"list": [bad, EXEC_ITEM]}))
        adapter = BybitAdapter(api_key="key", api_secret="secret", session=session)

        page = await adapter.fetch_executions("linear")

        assert [r.execution_id for r in page.items] == ["e-1"]
        assert adapter.metrics.count(MetricType.MALFORMED_RECORD) == 1

    @pytest.mark.asyncio
    async def test_zero_quantity_record_skipped(self):
        empty = {**EXEC_ITEM, "execId": "e-0", "execQty": "0"}
        session = FakeSession(ok({"list": [empty, EXEC_ITEM]}))
        adapter = BybitAdapter(api_key="key", api_secret="secret", session=session)

        page = await adapter.fetch_executions("linear")

        assert [r.execution_id for r in page.items] == ["e-1"]
        assert adapter.metrics.count(MetricType.MALFORMED_RECORD) == 1

    @pytest.mark.asyncio
    async def test_ret_code_raises_with_provider_message(self):
        session = FakeSession(FakeResponse(body={"retCode": 10003, "retMsg": "API key is invalid."}))
        adapter = BybitAdapter(api_key="key", api_secret="secret", session=session)

        with pytest.raises(ExchangeException) as info:
            await adapter.fetch_positions("linear")

        assert info.value.category == ErrorCategory.AUTHENTICATION
        assert info.value.error.exchange_message == "API key is invalid."
        assert is_auth_failure(info.value)

    @pytest.mark.asyncio
    async def test_http_429_is_rate_limit(self):
        adapter = BybitAdapter(api_key="key", api_secret="secret", session=FakeSession(FakeResponse(status=429)))

        with pytest.raises(ExchangeException) as info:
            await adapter.fetch_closed_pnl("linear")

        assert info.value.category == ErrorCategory.RATE_LIMIT
        assert info.value.is_retryable()

    @pytest.mark.asyncio
    async def test_undecodable_body_is_malformed_payload(self):
        session = FakeSession(FakeResponse(status=200, text="<html>"))
        adapter = BybitAdapter(api_key="key", api_secret="secret", session=session)

        with pytest.raises(ExchangeException) as info:
            await adapter.fetch_wallet_balance()

        assert info.value.category == ErrorCategory.MALFORMED_PAYLOAD

    @pytest.mark.asyncio
    async def test_kline_unsigned_and_sorted_ascending(self):
        rows = [
            ["1717250400000", "2", "3", "1", "2.5", "10", "0"],
            ["1717246800000", "1", "2", "0.5", "2", "10", "0"],
        ]
        session = FakeSession(ok({"list": rows}))
        adapter = BybitAdapter(session=session)

        candles = await adapter.fetch_kline("BTCUSDT", "60")

        assert candles[0].timestamp < candles[1].timestamp
        _, headers = session.requests[0]
        assert "X-BAPI-SIGN" not in headers

    @pytest.mark.asyncio
    async def test_linear_positions_filter_by_settle_coin(self):
        session = FakeSession(ok({"list": []}))
        adapter = BybitAdapter(api_key="key", api_secret="secret", session=session)

        await adapter.fetch_positions("linear")

        assert "settleCoin=USDT" in session.requests[0][0]

    @pytest.mark.asyncio
    async def test_wallet_balance(self):
        session = FakeSession(ok({"list": [{
            "accountType": "UNIFIED",
            "totalEquity": "1500.5",
            "totalAvailableBalance": "1000",
            "coin": [{"coin": "USDT", "walletBalance": "1500.5"}],
        }]}))
        adapter = BybitAdapter(api_key="key", api_secret="secret", session=session)

        balance = await adapter.fetch_wallet_balance()

        assert balance.total_equity == Decimal("1500.5")
        assert balance.coins == {"USDT": Decimal("1500.5")}


# ============================================================
# ERROR MAPPING TESTS
# ============================================================

class TestErrorMapping:
    """Tests for error classification."""

    def test_permission_code(self):
        error = map_bybit_error(10005, "Permission denied for current apikey")
        assert error.category == ErrorCategory.PERMISSION
        assert error.is_auth_error
        assert not error.is_retryable()

    def test_unknown_code_falls_back_to_patterns(self):
        error = map_bybit_error(99999, "Signature verification failed")
        assert error.category == ErrorCategory.AUTHENTICATION

    def test_unknown_code_without_pattern_is_retryable(self):
        error = map_bybit_error(99999, "something odd")
        assert error.category == ErrorCategory.UNKNOWN
        assert error.is_retryable()

    def test_server_error_is_exchange_error(self):
        assert map_bybit_error(-1, "bad gateway", 502).category == ErrorCategory.EXCHANGE_ERROR

    def test_classify_error_message(self):
        assert classify_error_message("IP not in whitelist") == ErrorCategory.PERMISSION
        assert classify_error_message("timeout") is None
        assert classify_error_message(None) is None

    def test_network_error_is_not_auth(self):
        exc = ExchangeException(create_network_error("bybit", "connection reset"))
        assert not is_auth_failure(exc)

    def test_plain_exception_classified_by_message(self):
        assert is_auth_failure(RuntimeError("API key expired"))
        assert not is_auth_failure(RuntimeError("disk full"))


# ============================================================
# LOGGING TESTS
# ============================================================

class TestMasking:
    """Tests for credential masking."""

    def test_mask_value(self):
        assert mask_value("abcdefghijkl") == "abcd...***"
        assert mask_value("short") == "***"
        assert mask_value("") == "***"

    def test_mask_headers(self):
        masked = mask_headers({"X-BAPI-API-KEY": "abcdefghijkl", "Content-Type": "application/json"})
        assert masked["X-BAPI-API-KEY"] == "abcd...***"
        assert masked["Content-Type"] == "application/json"

    def test_mask_params_scans_signatures(self):
        masked = mask_params({"api_key": "abcdefghijkl", "note": "sig " + "a" * 64})
        assert masked["api_key"] == "abcd...***"
        assert masked["note"] == "sig ***SIGN***"


# ============================================================
# FACTORY / MOCK ADAPTER TESTS
# ============================================================

class TestFactory:
    """Tests for AdapterFactory."""

    def test_supported(self):
        assert {"bybit", "mock"} <= set(AdapterFactory.list_supported())

    def test_create_bybit(self):
        adapter = create_adapter("bybit", api_key="k", api_secret="s", testnet=True)
        assert isinstance(adapter, BybitAdapter)
        assert adapter.has_credentials

    def test_unknown_exchange(self):
        with pytest.raises(ValueError):
            create_adapter("kraken")


class TestMockAdapter:
    """Tests for the scripted adapter."""

    @pytest.mark.asyncio
    async def test_pagination_shape(self, now):
        adapter = MockExchangeAdapter()
        adapter.add_executions("linear", [
            make_fill(f"e{i}", f"o{i}", "buy", 1, 100, now + timedelta(minutes=i)) for i in range(5)
        ])

        first = await adapter.fetch_executions("linear", limit=2)
        second = await adapter.fetch_executions("linear", cursor=first.next_cursor, limit=2)
        third = await adapter.fetch_executions("linear", cursor=second.next_cursor, limit=2)

        assert [len(p.items) for p in (first, second, third)] == [2, 2, 1]
        assert third.next_cursor is None
        assert third.is_last(2)

    @pytest.mark.asyncio
    async def test_error_injection_per_category(self):
        adapter = MockExchangeAdapter()
        error = ExchangeException(create_network_error("mock", "boom"))
        adapter.inject_error("fetch_executions", error, category="spot")

        await adapter.fetch_executions("linear")
        with pytest.raises(ExchangeException):
            await adapter.fetch_executions("spot")
        await adapter.fetch_executions("spot")

        assert adapter.call_count("fetch_executions") == 3

    def test_page_is_last(self):
        assert Page(items=[1], next_cursor="x").is_last(2)
        assert Page(items=[1, 2], next_cursor=None).is_last(2)
        assert not Page(items=[1, 2], next_cursor="x").is_last(2)
