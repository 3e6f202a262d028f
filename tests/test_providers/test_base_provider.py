"""Tests for shared provider behavior: HTTP error classification and record factories."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from market_data_aggregator.providers.base import (
    AuthenticationError, MalformedResponseError, RateLimitError, SymbolNotFoundError,
    UpstreamError, finalize_bars, lookback_window, optional_number,
)
from market_data_aggregator.providers.finnhub_provider import FinnhubProvider
from shared_models.market_data import Bar, BarInterval, DataProvider, ErrorKind, OutputSize


def _provider(handler, api_key: str = "test_key") -> FinnhubProvider:
    return FinnhubProvider(api_key=api_key, transport=httpx.MockTransport(handler))


class TestMakeRequest:
    """Tests for BaseDataProvider._make_request error mapping."""

    @pytest.mark.asyncio
    async def test_success_appends_auth_params(self) -> None:
        """Test the API key travels as a query parameter."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = dict(request.url.params)
            seen["path"] = request.url.path
            return httpx.Response(200, json={"ok": True})

        async with _provider(handler) as provider:
            data = await provider._make_request("/quote", params={"symbol": "AAPL"}, symbol="AAPL")

        assert data == {"ok": True}
        assert seen["path"] == "/api/v1/quote"
        assert seen["params"] == {"symbol": "AAPL", "token": "test_key"}

    @pytest.mark.asyncio
    async def test_429_is_rate_limit_with_retry_after(self) -> None:
        """Test HTTP 429 maps to RateLimitError carrying Retry-After."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, headers={"Retry-After": "30"}, json={})

        async with _provider(handler) as provider:
            with pytest.raises(RateLimitError) as exc_info:
                await provider._make_request("/quote", symbol="AAPL")

        assert exc_info.value.retry_after == 30.0
        assert exc_info.value.transient is True
        assert exc_info.value.kind == ErrorKind.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_401_is_authentication_error(self) -> None:
        """Test rejected credentials map to a non-transient upstream error."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": "Invalid API key"})

        async with _provider(handler) as provider:
            with pytest.raises(AuthenticationError) as exc_info:
                await provider._make_request("/quote")

        assert isinstance(exc_info.value, UpstreamError)
        assert exc_info.value.transient is False

    @pytest.mark.asyncio
    async def test_404_is_symbol_not_found(self) -> None:
        """Test HTTP 404 maps to SymbolNotFoundError."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, text="not found")

        async with _provider(handler) as provider:
            with pytest.raises(SymbolNotFoundError):
                await provider._make_request("/quote", symbol="NOPE")

    @pytest.mark.asyncio
    async def test_5xx_is_transient_upstream_error(self) -> None:
        """Test server errors are transient upstream errors with the status code."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        async with _provider(handler) as provider:
            with pytest.raises(UpstreamError) as exc_info:
                await provider._make_request("/quote")

        assert exc_info.value.status_code == 503
        assert exc_info.value.transient is True

    @pytest.mark.asyncio
    async def test_4xx_is_permanent_upstream_error(self) -> None:
        """Test client errors other than 401/403/404/429 are not transient."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, text="bad request")

        async with _provider(handler) as provider:
            with pytest.raises(UpstreamError) as exc_info:
                await provider._make_request("/quote")

        assert exc_info.value.transient is False

    @pytest.mark.asyncio
    async def test_timeout_is_upstream_error_with_timeout_cause(self) -> None:
        """Test client timeouts are reported as UpstreamError(cause='timeout')."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        async with _provider(handler) as provider:
            with pytest.raises(UpstreamError) as exc_info:
                await provider._make_request("/quote")

        assert exc_info.value.cause == "timeout"
        assert exc_info.value.transient is True

    @pytest.mark.asyncio
    async def test_network_failure_is_upstream_error(self) -> None:
        """Test connection failures are reported as UpstreamError(cause='network')."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _provider(handler) as provider:
            with pytest.raises(UpstreamError) as exc_info:
                await provider._make_request("/quote")

        assert exc_info.value.cause == "network"

    @pytest.mark.asyncio
    async def test_non_json_body_is_malformed(self) -> None:
        """Test a 200 response that is not JSON maps to MalformedResponseError."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>oops</html>")

        async with _provider(handler) as provider:
            with pytest.raises(MalformedResponseError):
                await provider._make_request("/quote")

    @pytest.mark.asyncio
    async def test_missing_api_key_fails_without_calling(self) -> None:
        """Test a provider without a key fails fast."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={})

        async with _provider(handler, api_key=None) as provider:
            with pytest.raises(AuthenticationError):
                await provider._make_request("/quote")

        assert calls == []


class TestCreateQuote:
    """Tests for the canonical quote factory."""

    def setup_method(self) -> None:
        self.provider = FinnhubProvider(api_key="test_key")

    def test_percent_change_recomputed_from_previous_close(self) -> None:
        """Test provider-supplied change values are replaced by computed ones."""
        quote = self.provider._create_quote(
            symbol="AAPL", price=150.0, change=9.0, change_percent=9.0, previous_close=148.0
        )
        assert quote.change == 2.0
        assert quote.change_percent == round(2.0 / 148.0 * 100, 4)
        assert quote.source == DataProvider.FINNHUB

    def test_provider_values_kept_without_previous_close(self) -> None:
        """Test change values are used as given when there is no previous close."""
        quote = self.provider._create_quote(symbol="AAPL", price=150.0, change=1.5, change_percent=1.0)
        assert quote.change == 1.5
        assert quote.change_percent == 1.0

    def test_all_zero_quote_rejected(self) -> None:
        """Test a zeroed quote is treated as no data."""
        with pytest.raises(SymbolNotFoundError):
            self.provider._create_quote(symbol="AAPL", price=0.0, change=0.0, change_percent=0.0)

    def test_zero_price_with_missing_change_rejected(self) -> None:
        """Test a zero price without change information is treated as no data."""
        with pytest.raises(SymbolNotFoundError):
            self.provider._create_quote(symbol="AAPL", price=0.0)

    def test_missing_price_rejected(self) -> None:
        """Test a quote without a price is never returned."""
        with pytest.raises(SymbolNotFoundError):
            self.provider._create_quote(symbol="AAPL", price=None)

    def test_invariant_violation_is_malformed(self) -> None:
        """Test values breaking the OHLC invariant surface as MalformedResponseError."""
        with pytest.raises(MalformedResponseError):
            self.provider._create_quote(symbol="AAPL", price=150.0, high=140.0, low=145.0)


class TestBarHelpers:
    """Tests for bar window and ordering helpers."""

    def _bar(self, day: datetime) -> Bar:
        return Bar(date=day, open=1.0, high=2.0, low=0.5, close=1.5, volume=10)

    def test_finalize_sorts_ascending(self) -> None:
        """Test bars come out ascending by date."""
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        bars = [self._bar(start + timedelta(days=d)) for d in (3, 1, 2)]
        assert [b.date.day for b in finalize_bars(bars, OutputSize.FULL)] == [2, 3, 4]

    def test_compact_keeps_latest_hundred(self) -> None:
        """Test compact output keeps only the most recent 100 bars."""
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        bars = [self._bar(start + timedelta(days=d)) for d in range(150)]
        compact = finalize_bars(bars, OutputSize.COMPACT)
        assert len(compact) == 100
        assert compact[0].date == start + timedelta(days=50)
        assert compact[-1].date == start + timedelta(days=149)

    def test_lookback_windows(self) -> None:
        """Test date ranges requested for each size."""
        assert lookback_window(OutputSize.COMPACT, BarInterval.DAILY) == timedelta(days=150)
        assert lookback_window(OutputSize.FULL, BarInterval.DAILY) == timedelta(days=365 * 20)
        assert lookback_window(OutputSize.FULL, BarInterval.FIVE_MINUTES) == timedelta(days=30)
        assert lookback_window(OutputSize.COMPACT, BarInterval.ONE_MINUTE) == timedelta(days=5)

    def test_optional_number(self) -> None:
        """Test provider placeholders parse to None."""
        assert optional_number("1.23%") == 1.23
        assert optional_number("None") is None
        assert optional_number("") is None
        assert optional_number(None) is None
        assert optional_number("abc") is None
        assert optional_number(5) == 5.0
