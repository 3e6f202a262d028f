"""Tests for the Finnhub provider."""

from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from market_data_aggregator.providers.base import (
    Capability, MalformedResponseError, RateLimitError, SymbolNotFoundError, UpstreamError,
)
from market_data_aggregator.providers.finnhub_provider import FinnhubProvider
from shared_models.market_data import BarInterval, DataProvider, OutputSize, Sentiment


class TestFinnhubProvider:
    """Tests for FinnhubProvider."""

    def setup_method(self) -> None:
        self.provider = FinnhubProvider(api_key="test_key")

    def test_capabilities(self) -> None:
        """Test Finnhub offers social sentiment but not market status."""
        assert self.provider.supports(Capability.SOCIAL_SENTIMENT)
        assert not self.provider.supports(Capability.MARKET_STATUS)

    def test_auth_params(self) -> None:
        """Test the key is sent as token."""
        assert self.provider._get_auth_params() == {"token": "test_key"}

    @pytest.mark.asyncio
    async def test_fetch_quote_success(self) -> None:
        """Test /quote fields are mapped onto a Quote."""
        with patch.object(self.provider, "_make_request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {
                "c": 150.0, "d": 2.0, "dp": 1.3514,
                "h": 151.0, "l": 147.0, "o": 148.0,
                "pc": 148.0, "t": 1704474000
            }
            quote = await self.provider.fetch_quote("aapl")

            mock_request.assert_called_once()
            assert mock_request.call_args.args[0] == "/quote"
            assert mock_request.call_args.kwargs["params"] == {"symbol": "AAPL"}

        assert quote.symbol == "AAPL"
        assert quote.price == 150.0
        assert quote.change == 2.0
        assert quote.change_percent == 1.3514
        assert quote.high == 151.0
        assert quote.low == 147.0
        assert quote.volume is None
        assert quote.as_of == datetime.fromtimestamp(1704474000, tz=timezone.utc)
        assert quote.source == DataProvider.FINNHUB

    @pytest.mark.asyncio
    async def test_zero_quote_is_symbol_not_found(self) -> None:
        """Test the all-zero answer for unknown symbols is rejected."""
        with patch.object(self.provider, "_make_request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {"c": 0, "d": None, "dp": None, "h": 0, "l": 0, "o": 0, "pc": 0, "t": 0}

            with pytest.raises(SymbolNotFoundError):
                await self.provider.fetch_quote("NOPE")

    @pytest.mark.asyncio
    async def test_in_band_limit_error_is_rate_limit(self) -> None:
        """Test an error body mentioning the limit maps to RateLimitError."""
        with patch.object(self.provider, "_make_request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {"error": "API limit reached. Please try again later."}

            with pytest.raises(RateLimitError):
                await self.provider.fetch_quote("AAPL")

    @pytest.mark.asyncio
    async def test_in_band_error_is_upstream_error(self) -> None:
        """Test other error bodies map to UpstreamError."""
        with patch.object(self.provider, "_make_request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {"error": "You don't have access to this resource."}

            with pytest.raises(UpstreamError):
                await self.provider.fetch_time_series("AAPL")

    @pytest.mark.asyncio
    async def test_fetch_profile_converts_millions(self) -> None:
        """Test capitalization and share counts are scaled to units."""
        with patch.object(self.provider, "_make_request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {
                "country": "US",
                "currency": "USD",
                "exchange": "NASDAQ NMS - GLOBAL MARKET",
                "finnhubIndustry": "Technology",
                "ipo": "1980-12-12",
                "logo": "https://static.finnhub.io/logo/aapl.png",
                "marketCapitalization": 2900000.5,
                "name": "Apple Inc",
                "shareOutstanding": 15500.25,
                "ticker": "AAPL",
                "weburl": "https://www.apple.com/"
            }
            profile = await self.provider.fetch_profile("AAPL")

        assert profile.company_name == "Apple Inc"
        assert profile.industry == "Technology"
        assert profile.market_cap == 2900000.5 * 1_000_000
        assert profile.shares_outstanding == 15500.25 * 1_000_000
        assert profile.ipo_date == "1980-12-12"
        assert profile.website == "https://www.apple.com/"

    @pytest.mark.asyncio
    async def test_empty_profile_is_symbol_not_found(self) -> None:
        """Test the empty object for unknown symbols is rejected."""
        with patch.object(self.provider, "_make_request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {}

            with pytest.raises(SymbolNotFoundError):
                await self.provider.fetch_profile("NOPE")

    @pytest.mark.asyncio
    async def test_candles_are_zipped_into_bars(self) -> None:
        """Test parallel candle arrays become ascending bars with exact values."""
        with patch.object(self.provider, "_make_request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {
                "s": "ok",
                "t": [1704412800, 1704326400],
                "o": [105.0, 100.0],
                "h": [107.0, 102.0],
                "l": [104.0, 99.0],
                "c": [106.0, 101.0],
                "v": [2000, 1000]
            }
            bars = await self.provider.fetch_time_series("AAPL", OutputSize.COMPACT, BarInterval.DAILY)

            params = mock_request.call_args.kwargs["params"]
            assert params["resolution"] == "D"
            assert params["to"] > params["from"]

        assert [bar.date for bar in bars] == [
            datetime(2024, 1, 4, tzinfo=timezone.utc),
            datetime(2024, 1, 5, tzinfo=timezone.utc),
        ]
        assert (bars[0].open, bars[0].high, bars[0].low, bars[0].close, bars[0].volume) == (100.0, 102.0, 99.0, 101.0, 1000)
        assert (bars[1].open, bars[1].high, bars[1].low, bars[1].close, bars[1].volume) == (105.0, 107.0, 104.0, 106.0, 2000)

    @pytest.mark.asyncio
    async def test_intraday_resolution(self) -> None:
        """Test intraday intervals use numeric resolutions."""
        with patch.object(self.provider, "_make_request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {
                "s": "ok", "t": [1704465000], "o": [1.0], "h": [1.0], "l": [1.0], "c": [1.0], "v": [5]
            }
            bars = await self.provider.fetch_time_series("AAPL", interval=BarInterval.FIFTEEN_MINUTES)

            assert mock_request.call_args.kwargs["params"]["resolution"] == "15"

        assert bars[0].interval == BarInterval.FIFTEEN_MINUTES

    @pytest.mark.asyncio
    async def test_no_data_is_symbol_not_found(self) -> None:
        """Test the no_data status maps to SymbolNotFoundError."""
        with patch.object(self.provider, "_make_request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {"s": "no_data"}

            with pytest.raises(SymbolNotFoundError):
                await self.provider.fetch_time_series("AAPL")

    @pytest.mark.asyncio
    async def test_mismatched_candle_arrays_are_malformed(self) -> None:
        """Test candle arrays of different lengths are rejected."""
        with patch.object(self.provider, "_make_request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {
                "s": "ok", "t": [1, 2], "o": [1.0], "h": [1.0], "l": [1.0], "c": [1.0], "v": [1]
            }

            with pytest.raises(MalformedResponseError):
                await self.provider.fetch_time_series("AAPL")

    @pytest.mark.asyncio
    async def test_company_news(self) -> None:
        """Test company news maps fields and splits related symbols."""
        with patch.object(self.provider, "_make_request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = [
                {
                    "category": "company",
                    "datetime": 1704474000,
                    "headline": "Apple shares rally on strong iPhone demand",
                    "id": 125,
                    "image": "",
                    "related": "AAPL,msft",
                    "source": "Yahoo",
                    "summary": "Demand surge.",
                    "url": "https://example.com/news/125"
                },
                {"headline": "no url or time"}
            ]
            articles = await self.provider.fetch_company_news(
                "AAPL", from_date=date(2024, 1, 1), to_date=date(2024, 1, 7)
            )

            params = mock_request.call_args.kwargs["params"]
            assert params["from"] == "2024-01-01"
            assert params["to"] == "2024-01-07"

        assert len(articles) == 1
        article = articles[0]
        assert article.id == "125"
        assert article.source == "Yahoo"
        assert article.image_url is None
        assert article.published_at == datetime.fromtimestamp(1704474000, tz=timezone.utc)
        assert [s.symbol for s in article.related_symbols] == ["AAPL", "MSFT"]
        assert article.sentiment == Sentiment.POSITIVE

    @pytest.mark.asyncio
    async def test_market_news_not_a_list_is_malformed(self) -> None:
        """Test a non-list news body is rejected."""
        with patch.object(self.provider, "_make_request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {"unexpected": True}

            with pytest.raises(MalformedResponseError):
                await self.provider.fetch_market_news("general")

    @pytest.mark.asyncio
    async def test_search_symbols(self) -> None:
        """Test /search results are normalized."""
        with patch.object(self.provider, "_make_request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {
                "count": 2,
                "result": [
                    {"description": "APPLE INC", "displaySymbol": "AAPL", "symbol": "AAPL", "type": "Common Stock"},
                    {"description": "", "displaySymbol": "X", "symbol": "X", "type": ""}
                ]
            }
            matches = await self.provider.search_symbols("apple")

            assert mock_request.call_args.kwargs["params"] == {"q": "apple"}

        assert len(matches) == 1
        assert matches[0].symbol == "AAPL"
        assert matches[0].name == "APPLE INC"
        assert matches[0].type == "Common Stock"

    @pytest.mark.asyncio
    async def test_social_sentiment_averages_networks(self) -> None:
        """Test the overall score is the mean of per-network means."""
        with patch.object(self.provider, "_make_request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {
                "symbol": "AAPL",
                "reddit": [{"mention": 10, "score": 0.75}, {"mention": 5, "score": 0.25}],
                "twitter": [{"mention": 20, "score": 0.25}]
            }
            sentiment = await self.provider.fetch_social_sentiment("AAPL")

        assert sentiment.reddit_score == pytest.approx(0.5)
        assert sentiment.twitter_score == pytest.approx(0.25)
        assert sentiment.score == pytest.approx(0.375)
        assert sentiment.sentiment == Sentiment.POSITIVE
        assert sentiment.mentions == 35

    @pytest.mark.asyncio
    async def test_empty_social_sentiment_is_symbol_not_found(self) -> None:
        """Test no data points means no sentiment."""
        with patch.object(self.provider, "_make_request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {"symbol": "AAPL", "reddit": [], "twitter": []}

            with pytest.raises(SymbolNotFoundError):
                await self.provider.fetch_social_sentiment("AAPL")
