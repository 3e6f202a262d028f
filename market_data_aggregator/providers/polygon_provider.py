"""
Polygon.io data provider implementation.
Provides last trades, ticker details, aggregate bars, news and market
status using the versioned Polygon REST API.
"""

from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from dateutil import parser as date_parser
from pydantic import BaseModel, Field

from shared_models.market_data import (
    Bar, BarInterval, DataProvider, MarketStatus, NewsArticle, OutputSize,
    Profile, Quote, Sentiment, SymbolMatch, utc_now,
)
from .base import (
    BaseDataProvider, Capability, MalformedResponseError, ProviderError, SymbolNotFoundError,
    UpstreamError, finalize_bars, format_date, lookback_window,
)
from ..core.logging_config import create_logger
from ..services.sentiment import KEYWORD_SCORE

logger = create_logger(__name__)


# Wire schemas

class PolygonEnvelope(BaseModel):
    status: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None


class PolygonTrade(BaseModel):
    p: float                      # Trade price
    s: Optional[float] = None     # Trade size
    t: Optional[int] = None       # SIP timestamp in nanoseconds
    x: Optional[int] = None       # Exchange id


class PolygonLastTrade(PolygonEnvelope):
    results: Optional[PolygonTrade] = None


class PolygonBranding(BaseModel):
    logo_url: Optional[str] = None
    icon_url: Optional[str] = None


class PolygonTickerDetails(BaseModel):
    ticker: str
    name: Optional[str] = None
    locale: Optional[str] = None
    market: Optional[str] = None
    primary_exchange: Optional[str] = None
    currency_name: Optional[str] = None
    market_cap: Optional[float] = None
    share_class_shares_outstanding: Optional[float] = None
    description: Optional[str] = None
    sic_description: Optional[str] = None
    homepage_url: Optional[str] = None
    list_date: Optional[str] = None
    branding: Optional[PolygonBranding] = None


class PolygonTickerDetailsResponse(PolygonEnvelope):
    results: Optional[PolygonTickerDetails] = None


class PolygonAggregate(BaseModel):
    o: float
    h: float
    l: float
    c: float
    v: float
    t: int                        # Window start in milliseconds
    vw: Optional[float] = None
    n: Optional[int] = None


class PolygonAggregatesResponse(PolygonEnvelope):
    results_count: int = Field(0, alias="resultsCount")
    results: List[PolygonAggregate] = Field(default_factory=list)


class PolygonPublisher(BaseModel):
    name: Optional[str] = None


class PolygonInsight(BaseModel):
    ticker: str
    sentiment: Optional[str] = None


class PolygonNewsItem(BaseModel):
    id: str
    title: str
    article_url: str
    published_utc: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    publisher: Optional[PolygonPublisher] = None
    tickers: List[str] = Field(default_factory=list)
    insights: List[PolygonInsight] = Field(default_factory=list)


class PolygonNewsResponse(PolygonEnvelope):
    results: List[Dict[str, Any]] = Field(default_factory=list)


class PolygonTickerSummary(BaseModel):
    ticker: str
    name: Optional[str] = None
    market: Optional[str] = None
    locale: Optional[str] = None
    type: Optional[str] = None
    currency_name: Optional[str] = None


class PolygonTickerSearchResponse(PolygonEnvelope):
    results: List[PolygonTickerSummary] = Field(default_factory=list)


class PolygonMarketStatus(BaseModel):
    market: str
    server_time: Optional[str] = Field(None, alias="serverTime")
    early_hours: bool = Field(False, alias="earlyHours")
    after_hours: bool = Field(False, alias="afterHours")
    exchanges: Dict[str, str] = Field(default_factory=dict)


# Aggregate bar size (multiplier, timespan) per interval
_TIMESPANS: Dict[BarInterval, Tuple[int, str]] = {
    BarInterval.ONE_MINUTE: (1, "minute"),
    BarInterval.FIVE_MINUTES: (5, "minute"),
    BarInterval.FIFTEEN_MINUTES: (15, "minute"),
    BarInterval.THIRTY_MINUTES: (30, "minute"),
    BarInterval.SIXTY_MINUTES: (1, "hour"),
    BarInterval.DAILY: (1, "day"),
    BarInterval.WEEKLY: (1, "week"),
    BarInterval.MONTHLY: (1, "month"),
}

_INSIGHT_SENTIMENT = {
    "positive": (Sentiment.POSITIVE, KEYWORD_SCORE),
    "negative": (Sentiment.NEGATIVE, -KEYWORD_SCORE),
    "neutral": (Sentiment.NEUTRAL, 0.0),
}

NEWS_LIMIT = 50
AGGREGATES_LIMIT = 50000


class PolygonProvider(BaseDataProvider):
    """Polygon.io data provider for US equities."""

    provider = DataProvider.POLYGON
    default_base_url = "https://api.polygon.io"
    capabilities = frozenset({
        Capability.QUOTE,
        Capability.PROFILE,
        Capability.TIME_SERIES,
        Capability.SEARCH,
        Capability.COMPANY_NEWS,
        Capability.MARKET_NEWS,
        Capability.MARKET_STATUS,
    })

    def _get_auth_params(self) -> Dict[str, str]:
        """Polygon accepts the API key as a query parameter."""
        return {"apiKey": self.api_key}

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None, symbol: Optional[str] = None) -> Dict[str, Any]:
        """Make a request and unwrap Polygon's status envelope."""
        data = await self._make_request(path, params=params, symbol=symbol)
        if not isinstance(data, dict):
            raise MalformedResponseError(f"Expected a JSON object from Polygon {path}", self.provider, symbol)

        envelope = self._parse(PolygonEnvelope, data, symbol)
        if envelope.status == "NOT_FOUND":
            raise SymbolNotFoundError(
                f"Polygon has no data for {symbol}: {envelope.message or envelope.error}", self.provider, symbol
            )
        if envelope.status == "ERROR":
            raise UpstreamError(
                f"Polygon error: {envelope.error or envelope.message}", self.provider, symbol
            )
        return data

    async def fetch_quote(self, symbol: str) -> Quote:
        """Get the last trade, priced against the previous session's close."""
        symbol = self._normalize_symbol(symbol)
        data = await self._get(f"/v2/last/trade/{symbol}", symbol=symbol)
        response = self._parse(PolygonLastTrade, data, symbol)

        if response.results is None:
            raise SymbolNotFoundError(f"Polygon has no trades for {symbol}", self.provider, symbol)

        trade = response.results
        as_of = datetime.fromtimestamp(trade.t / 1e9, tz=timezone.utc) if trade.t else None

        # The previous session's high and low stay off the quote; they need not bracket the last trade
        try:
            previous = await self.fetch_previous_close(symbol)
        except ProviderError as e:
            logger.warning("Polygon previous close unavailable", extra={
                "provider": self.name,
                "symbol": symbol,
                "error": e.message
            })
            previous = None

        return self._create_quote(
            symbol=symbol,
            price=trade.p,
            previous_close=previous.close if previous else None,
            as_of=as_of
        )

    async def fetch_previous_close(self, symbol: str) -> Bar:
        """Get the previous session's daily bar from /v2/aggs/ticker/{symbol}/prev."""
        symbol = self._normalize_symbol(symbol)
        data = await self._get(f"/v2/aggs/ticker/{symbol}/prev", {"adjusted": "true"}, symbol)
        response = self._parse(PolygonAggregatesResponse, data, symbol)

        if not response.results:
            raise SymbolNotFoundError(f"Polygon has no previous close for {symbol}", self.provider, symbol)
        return self._aggregate_bar(BarInterval.DAILY, symbol, response.results[0])

    def _aggregate_bar(self, interval: BarInterval, symbol: str, agg: PolygonAggregate) -> Bar:
        return self._create_bar(
            interval,
            symbol,
            date=datetime.fromtimestamp(agg.t / 1000, tz=timezone.utc),
            open=agg.o,
            high=agg.h,
            low=agg.l,
            close=agg.c,
            volume=int(agg.v),
            vwap=agg.vw
        )

    async def fetch_profile(self, symbol: str) -> Profile:
        """Get ticker details from /v3/reference/tickers/{symbol}."""
        symbol = self._normalize_symbol(symbol)
        details = await self._fetch_ticker_details(symbol)

        return self._create_profile(
            symbol=symbol,
            company_name=details.name,
            country=details.locale.upper() if details.locale else None,
            currency=details.currency_name.upper() if details.currency_name else None,
            exchange=details.primary_exchange,
            industry=details.sic_description,
            market_cap=details.market_cap,
            shares_outstanding=details.share_class_shares_outstanding,
            ipo_date=details.list_date,
            website=details.homepage_url,
            logo=details.branding.logo_url if details.branding else None,
            description=details.description
        )

    async def _fetch_ticker_details(self, symbol: str) -> PolygonTickerDetails:
        data = await self._get(f"/v3/reference/tickers/{symbol}", symbol=symbol)
        response = self._parse(PolygonTickerDetailsResponse, data, symbol)
        if response.results is None:
            raise SymbolNotFoundError(f"Polygon has no ticker details for {symbol}", self.provider, symbol)
        return response.results

    async def probe(self, symbol: str) -> Dict[str, Any]:
        """Polygon is probed with ticker details, which the free tier serves."""
        details = await self._fetch_ticker_details(self._normalize_symbol(symbol))
        return {
            "ticker": details.ticker,
            "name": details.name,
            "market": details.market,
            "primary_exchange": details.primary_exchange,
        }

    async def fetch_company_news(
        self,
        symbol: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None
    ) -> List[NewsArticle]:
        """Get ticker news from /v2/reference/news."""
        symbol = self._normalize_symbol(symbol)
        params: Dict[str, Any] = {
            "ticker": symbol,
            "limit": NEWS_LIMIT,
            "sort": "published_utc",
            "order": "desc",
        }
        if from_date:
            params["published_utc.gte"] = format_date(from_date)
        if to_date:
            params["published_utc.lte"] = format_date(to_date)

        data = await self._get("/v2/reference/news", params, symbol)
        return self._parse_news(data, symbol)

    async def fetch_market_news(self, category: str = "general") -> List[NewsArticle]:
        """Get the latest news across all tickers; Polygon has no news categories."""
        data = await self._get("/v2/reference/news", {
            "limit": NEWS_LIMIT,
            "sort": "published_utc",
            "order": "desc",
        })
        return self._parse_news(data, category=category)

    def _parse_news(
        self,
        data: Dict[str, Any],
        symbol: Optional[str] = None,
        category: Optional[str] = None
    ) -> List[NewsArticle]:
        response = self._parse(PolygonNewsResponse, data, symbol)

        articles = []
        for raw_item in response.results:
            try:
                item = self._parse(PolygonNewsItem, raw_item, symbol)
                articles.append(self._create_article_from_polygon(item, symbol, category))
            except MalformedResponseError as e:
                logger.warning("Failed to process news article", extra={
                    "provider": self.name,
                    "symbol": symbol,
                    "error": e.message
                })
                continue

        logger.info("Retrieved news from Polygon", extra={
            "provider": self.name,
            "symbol": symbol,
            "count": len(articles)
        })
        return articles

    def _create_article_from_polygon(
        self,
        item: PolygonNewsItem,
        symbol: Optional[str],
        category: Optional[str]
    ) -> NewsArticle:
        """Create NewsArticle from a Polygon news item."""
        try:
            published_at = date_parser.isoparse(item.published_utc)
        except ValueError as e:
            raise MalformedResponseError(
                f"Invalid published_utc {item.published_utc!r}", self.provider, symbol
            ) from e
        if published_at.tzinfo is None:
            published_at = published_at.replace(tzinfo=timezone.utc)

        # Use Polygon's insight for the requested ticker when it has one
        sentiment, score = None, None
        for insight in item.insights:
            if (symbol is None or insight.ticker.upper() == symbol) and insight.sentiment in _INSIGHT_SENTIMENT:
                sentiment, score = _INSIGHT_SENTIMENT[insight.sentiment]
                break

        symbols = [symbol] if symbol else []
        symbols.extend(item.tickers)

        return self._create_article(
            symbols=symbols,
            sentiment=sentiment,
            sentiment_score=score,
            id=item.id,
            title=item.title,
            summary=item.description or None,
            source=item.publisher.name if item.publisher and item.publisher.name else "Polygon",
            source_url=item.article_url,
            published_at=published_at,
            category=category,
            image_url=item.image_url or None
        )

    async def fetch_time_series(
        self,
        symbol: str,
        size: OutputSize = OutputSize.COMPACT,
        interval: BarInterval = BarInterval.DAILY
    ) -> List[Bar]:
        """Get aggregate bars from /v2/aggs over an explicit date range."""
        symbol = self._normalize_symbol(symbol)
        multiplier, timespan = _TIMESPANS[interval]
        to_date = utc_now().date()
        from_date = to_date - lookback_window(size, interval)

        data = await self._get(
            f"/v2/aggs/ticker/{symbol}/range/{multiplier}/{timespan}/{format_date(from_date)}/{format_date(to_date)}",
            {"adjusted": "true", "sort": "asc", "limit": AGGREGATES_LIMIT},
            symbol
        )
        response = self._parse(PolygonAggregatesResponse, data, symbol)

        if not response.results:
            raise SymbolNotFoundError(f"Polygon has no aggregates for {symbol}", self.provider, symbol)

        bars = [self._aggregate_bar(interval, symbol, agg) for agg in response.results]

        logger.info("Retrieved aggregates from Polygon", extra={
            "provider": self.name,
            "symbol": symbol,
            "timespan": timespan,
            "count": len(bars)
        })
        return finalize_bars(bars, size)

    async def search_symbols(self, keywords: str) -> List[SymbolMatch]:
        """Search active tickers with /v3/reference/tickers."""
        data = await self._get("/v3/reference/tickers", {
            "search": keywords,
            "active": "true",
            "limit": 100,
        })
        response = self._parse(PolygonTickerSearchResponse, data)

        return [
            SymbolMatch(
                symbol=ticker.ticker,
                name=ticker.name,
                type=ticker.type,
                region=ticker.locale.upper() if ticker.locale else None,
                currency=ticker.currency_name.upper() if ticker.currency_name else None,
                source=self.provider
            )
            for ticker in response.results
            if ticker.name
        ]

    async def fetch_market_status(self) -> MarketStatus:
        """Get the current trading session from /v1/marketstatus/now."""
        data = await self._get("/v1/marketstatus/now")
        wire = self._parse(PolygonMarketStatus, data)

        if wire.market == "extended-hours":
            market = "pre_market" if wire.early_hours else "after_market"
        elif wire.market in ("open", "closed"):
            market = wire.market
        else:
            raise MalformedResponseError(f"Unknown Polygon market state {wire.market!r}", self.provider)

        server_time = utc_now()
        if wire.server_time:
            try:
                server_time = date_parser.isoparse(wire.server_time)
            except ValueError:
                logger.warning("Unparseable Polygon server time", extra={"server_time": wire.server_time})

        return MarketStatus(
            market=market,
            exchanges=wire.exchanges,
            server_time=server_time,
            source=self.provider
        )
