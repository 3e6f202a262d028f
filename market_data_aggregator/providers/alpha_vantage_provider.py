"""
Alpha Vantage data provider implementation.
Provides stock quotes, company overviews, time series, symbol search and
scored news using the Alpha Vantage query API.
"""

from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

import pytz
from dateutil import parser as date_parser
from pydantic import BaseModel, Field

from shared_models.market_data import (
    Bar, BarInterval, DataProvider, NewsArticle, OutputSize, Profile, Quote,
    Sentiment, SymbolMatch,
)
from .base import (
    AuthenticationError, BaseDataProvider, Capability, MalformedResponseError,
    ProviderError, RateLimitError, SymbolNotFoundError, UpstreamError, finalize_bars,
    optional_number,
)
from ..core.logging_config import create_logger
from ..services.sentiment import clamp_score

logger = create_logger(__name__)

# Call-frequency and daily quota notices
QUOTA_MARKERS = ("rate limit", "call frequency", "requests per", "calls per")

# Notices no retry will clear
ACCESS_MARKERS = ("premium", "demo", "api key", "apikey")


# Wire schemas. Alpha Vantage keys carry numbered prefixes and values are strings.

class AlphaVantageGlobalQuote(BaseModel):
    symbol: str = Field(..., alias="01. symbol")
    open: Optional[str] = Field(None, alias="02. open")
    high: Optional[str] = Field(None, alias="03. high")
    low: Optional[str] = Field(None, alias="04. low")
    price: str = Field(..., alias="05. price")
    volume: Optional[str] = Field(None, alias="06. volume")
    latest_trading_day: Optional[str] = Field(None, alias="07. latest trading day")
    previous_close: Optional[str] = Field(None, alias="08. previous close")
    change: Optional[str] = Field(None, alias="09. change")
    change_percent: Optional[str] = Field(None, alias="10. change percent")


class AlphaVantageOverview(BaseModel):
    symbol: str = Field(..., alias="Symbol")
    name: Optional[str] = Field(None, alias="Name")
    description: Optional[str] = Field(None, alias="Description")
    exchange: Optional[str] = Field(None, alias="Exchange")
    currency: Optional[str] = Field(None, alias="Currency")
    country: Optional[str] = Field(None, alias="Country")
    industry: Optional[str] = Field(None, alias="Industry")
    market_cap: Optional[str] = Field(None, alias="MarketCapitalization")
    shares_outstanding: Optional[str] = Field(None, alias="SharesOutstanding")
    website: Optional[str] = Field(None, alias="OfficialSite")


class AlphaVantageBarPoint(BaseModel):
    open: float = Field(..., alias="1. open")
    high: float = Field(..., alias="2. high")
    low: float = Field(..., alias="3. low")
    close: float = Field(..., alias="4. close")
    volume: float = Field(..., alias="5. volume")


class AlphaVantageTickerSentiment(BaseModel):
    ticker: str
    ticker_sentiment_score: Optional[str] = None
    ticker_sentiment_label: Optional[str] = None


class AlphaVantageNewsItem(BaseModel):
    title: str
    url: str
    time_published: str
    summary: Optional[str] = None
    source: Optional[str] = None
    banner_image: Optional[str] = None
    category_within_source: Optional[str] = None
    overall_sentiment_score: Optional[float] = None
    overall_sentiment_label: Optional[str] = None
    ticker_sentiment: List[AlphaVantageTickerSentiment] = Field(default_factory=list)


class AlphaVantageNewsFeed(BaseModel):
    feed: List[Dict[str, Any]] = Field(default_factory=list)


class AlphaVantageSearchMatch(BaseModel):
    symbol: str = Field(..., alias="1. symbol")
    name: str = Field(..., alias="2. name")
    type: Optional[str] = Field(None, alias="3. type")
    region: Optional[str] = Field(None, alias="4. region")
    currency: Optional[str] = Field(None, alias="8. currency")
    match_score: Optional[float] = Field(None, alias="9. matchScore")


class AlphaVantageSearchResult(BaseModel):
    best_matches: List[AlphaVantageSearchMatch] = Field(default_factory=list, alias="bestMatches")


# Series functions per bar interval; intraday intervals share one function
_SERIES_FUNCTIONS = {
    BarInterval.DAILY: "TIME_SERIES_DAILY",
    BarInterval.WEEKLY: "TIME_SERIES_WEEKLY",
    BarInterval.MONTHLY: "TIME_SERIES_MONTHLY",
}

# News categories mapped to Alpha Vantage topics
_NEWS_TOPICS = {
    "general": "financial_markets",
    "forex": "economy_monetary",
    "crypto": "blockchain",
    "merger": "mergers_and_acquisitions",
}

_SENTIMENT_LABELS = {
    "bullish": Sentiment.POSITIVE,
    "somewhat-bullish": Sentiment.POSITIVE,
    "neutral": Sentiment.NEUTRAL,
    "somewhat-bearish": Sentiment.NEGATIVE,
    "bearish": Sentiment.NEGATIVE,
}

NEWS_LIMIT = 50


class AlphaVantageProvider(BaseDataProvider):
    """Alpha Vantage data provider for stock data and scored news."""

    provider = DataProvider.ALPHA_VANTAGE
    default_base_url = "https://www.alphavantage.co/query"
    capabilities = frozenset({
        Capability.QUOTE,
        Capability.PROFILE,
        Capability.TIME_SERIES,
        Capability.SEARCH,
        Capability.COMPANY_NEWS,
        Capability.MARKET_NEWS,
    })

    def _get_auth_params(self) -> Dict[str, str]:
        """Alpha Vantage uses API key in query parameters."""
        return {"apikey": self.api_key}

    async def _query(self, function: str, symbol: Optional[str] = None, **params) -> Dict[str, Any]:
        """Call the single query endpoint and unwrap in-band errors."""
        params["function"] = function
        if symbol:
            params.setdefault("symbol", symbol)

        data = await self._make_request("", params=params, symbol=symbol)
        if not isinstance(data, dict):
            raise MalformedResponseError(
                f"Expected a JSON object from Alpha Vantage {function}", self.provider, symbol
            )

        # Notes and Information messages arrive with HTTP 200
        message = data.get("Note") or data.get("Information")
        if message:
            raise self._classify_message(function, message, symbol)

        if "Error Message" in data:
            raise SymbolNotFoundError(
                f"Alpha Vantage {function} error: {data['Error Message']}", self.provider, symbol
            )

        return data

    def _classify_message(self, function: str, message: str, symbol: Optional[str]) -> ProviderError:
        """Map an in-band Note or Information message to a provider error."""
        text = message.lower()
        if any(marker in text for marker in QUOTA_MARKERS):
            logger.warning("Alpha Vantage quota message", extra={
                "provider": self.name,
                "function": function,
                "detail": message
            })
            return RateLimitError(f"Alpha Vantage rate limit: {message}", self.provider, symbol)
        if "invalid inputs" in text:
            return SymbolNotFoundError(f"Alpha Vantage {function} error: {message}", self.provider, symbol)
        if any(marker in text for marker in ACCESS_MARKERS):
            return AuthenticationError(f"Alpha Vantage {function} unavailable: {message}", self.provider, symbol)
        return UpstreamError(f"Alpha Vantage {function} error: {message}", self.provider, symbol, cause="in_band")

    async def fetch_quote(self, symbol: str) -> Quote:
        """Get a real-time quote from GLOBAL_QUOTE."""
        symbol = self._normalize_symbol(symbol)
        data = await self._query("GLOBAL_QUOTE", symbol)

        raw_quote = data.get("Global Quote")
        if raw_quote is None:
            raise MalformedResponseError("Alpha Vantage response has no Global Quote", self.provider, symbol)
        if not raw_quote:
            raise SymbolNotFoundError(f"Alpha Vantage has no quote for {symbol}", self.provider, symbol)

        wire = self._parse(AlphaVantageGlobalQuote, raw_quote, symbol)
        volume = optional_number(wire.volume)

        quote = self._create_quote(
            symbol=symbol,
            price=optional_number(wire.price),
            change=optional_number(wire.change),
            change_percent=optional_number(wire.change_percent),
            previous_close=optional_number(wire.previous_close) or None,
            open=optional_number(wire.open) or None,
            high=optional_number(wire.high) or None,
            low=optional_number(wire.low) or None,
            volume=int(volume) if volume is not None else None
        )

        logger.debug("Retrieved quote from Alpha Vantage", extra={
            "provider": self.name,
            "symbol": symbol,
            "price": quote.price
        })
        return quote

    async def fetch_profile(self, symbol: str) -> Profile:
        """Get company fundamentals from OVERVIEW."""
        symbol = self._normalize_symbol(symbol)
        data = await self._query("OVERVIEW", symbol)

        if not data:
            raise SymbolNotFoundError(f"Alpha Vantage has no overview for {symbol}", self.provider, symbol)

        wire = self._parse(AlphaVantageOverview, data, symbol)
        return self._create_profile(
            symbol=symbol,
            company_name=_clean(wire.name),
            country=_clean(wire.country),
            currency=_clean(wire.currency),
            exchange=_clean(wire.exchange),
            industry=_clean(wire.industry),
            market_cap=optional_number(wire.market_cap),
            shares_outstanding=optional_number(wire.shares_outstanding),
            website=_clean(wire.website),
            description=_clean(wire.description)
        )

    async def fetch_company_news(
        self,
        symbol: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None
    ) -> List[NewsArticle]:
        """Get scored news for one ticker from NEWS_SENTIMENT."""
        symbol = self._normalize_symbol(symbol)
        params = {"tickers": symbol, "limit": NEWS_LIMIT, "sort": "LATEST"}
        if from_date:
            params["time_from"] = from_date.strftime("%Y%m%dT0000")
        if to_date:
            params["time_to"] = to_date.strftime("%Y%m%dT2359")

        data = await self._query("NEWS_SENTIMENT", **params)
        return self._parse_feed(data, symbol)

    async def fetch_market_news(self, category: str = "general") -> List[NewsArticle]:
        """Get market news for a topic from NEWS_SENTIMENT."""
        topic = _NEWS_TOPICS.get(category, category)
        data = await self._query("NEWS_SENTIMENT", topics=topic, limit=NEWS_LIMIT, sort="LATEST")
        return self._parse_feed(data, category=category)

    def _parse_feed(
        self,
        data: Dict[str, Any],
        symbol: Optional[str] = None,
        category: Optional[str] = None
    ) -> List[NewsArticle]:
        """Convert a NEWS_SENTIMENT feed into articles, skipping unusable items."""
        feed = self._parse(AlphaVantageNewsFeed, data, symbol)

        articles = []
        for raw_item in feed.feed[:NEWS_LIMIT]:
            try:
                item = self._parse(AlphaVantageNewsItem, raw_item, symbol)
                articles.append(self._create_article_from_alpha_vantage(item, symbol, category))
            except MalformedResponseError as e:
                logger.warning("Failed to process news article", extra={
                    "provider": self.name,
                    "symbol": symbol,
                    "error": e.message
                })
                continue

        logger.info("Retrieved news from Alpha Vantage", extra={
            "provider": self.name,
            "symbol": symbol,
            "category": category,
            "count": len(articles)
        })
        return articles

    def _create_article_from_alpha_vantage(
        self,
        item: AlphaVantageNewsItem,
        symbol: Optional[str],
        category: Optional[str]
    ) -> NewsArticle:
        """Create NewsArticle from an Alpha Vantage feed item."""
        try:
            published_at = date_parser.isoparse(item.time_published)
        except ValueError as e:
            raise MalformedResponseError(
                f"Invalid time_published {item.time_published!r}", self.provider, symbol
            ) from e
        if published_at.tzinfo is None:
            published_at = published_at.replace(tzinfo=timezone.utc)

        label = item.overall_sentiment_label
        score = item.overall_sentiment_score

        # Prefer the sentiment scored for the requested ticker
        if symbol:
            for ticker in item.ticker_sentiment:
                if ticker.ticker.upper() == symbol:
                    label = ticker.ticker_sentiment_label or label
                    ticker_score = optional_number(ticker.ticker_sentiment_score)
                    score = ticker_score if ticker_score is not None else score
                    break

        sentiment = _SENTIMENT_LABELS.get((label or "").lower())
        symbols = [symbol] if symbol else []
        symbols.extend(t.ticker for t in item.ticker_sentiment)

        return self._create_article(
            symbols=symbols,
            sentiment=sentiment,
            sentiment_score=clamp_score(score) if score is not None and sentiment else None,
            id=item.url,
            title=item.title,
            summary=item.summary or None,
            source=item.source or "Alpha Vantage",
            source_url=item.url,
            published_at=published_at,
            category=category or item.category_within_source,
            image_url=item.banner_image or None
        )

    async def fetch_time_series(
        self,
        symbol: str,
        size: OutputSize = OutputSize.COMPACT,
        interval: BarInterval = BarInterval.DAILY
    ) -> List[Bar]:
        """Get OHLCV bars from the TIME_SERIES_* family, ascending by date."""
        symbol = self._normalize_symbol(symbol)
        params = {"outputsize": size.value}
        if interval.is_intraday:
            function = "TIME_SERIES_INTRADAY"
            params["interval"] = interval.value
        else:
            function = _SERIES_FUNCTIONS[interval]

        data = await self._query(function, symbol, **params)
        meta = data.get("Meta Data") or {}
        series = next(
            (value for key, value in data.items() if key != "Meta Data" and isinstance(value, dict)),
            None
        )
        if series is None:
            raise MalformedResponseError(
                f"Alpha Vantage {function} response has no time series", self.provider, symbol
            )
        if not series:
            raise SymbolNotFoundError(f"Alpha Vantage has no bars for {symbol}", self.provider, symbol)

        tz_name = next((value for key, value in meta.items() if key.endswith("Time Zone")), "US/Eastern")
        bars = []
        for stamp, raw_point in series.items():
            point = self._parse(AlphaVantageBarPoint, raw_point, symbol)
            bars.append(self._create_bar(
                interval,
                symbol,
                date=self._parse_bar_date(stamp, tz_name, symbol),
                open=point.open,
                high=point.high,
                low=point.low,
                close=point.close,
                volume=int(point.volume)
            ))

        logger.info("Retrieved time series from Alpha Vantage", extra={
            "provider": self.name,
            "symbol": symbol,
            "interval": interval.value,
            "count": len(bars)
        })
        return finalize_bars(bars, size)

    def _parse_bar_date(self, stamp: str, tz_name: str, symbol: str) -> datetime:
        """Intraday stamps are exchange-local; daily and longer are calendar dates."""
        try:
            parsed = datetime.strptime(stamp, "%Y-%m-%d %H:%M:%S")
        except ValueError:
            try:
                parsed = datetime.strptime(stamp, "%Y-%m-%d")
            except ValueError as e:
                raise MalformedResponseError(f"Invalid bar date {stamp!r}", self.provider, symbol) from e
            return parsed.replace(tzinfo=timezone.utc)

        try:
            exchange_tz = pytz.timezone(tz_name)
        except pytz.UnknownTimeZoneError:
            exchange_tz = pytz.timezone("US/Eastern")
        return exchange_tz.localize(parsed).astimezone(timezone.utc)

    async def search_symbols(self, keywords: str) -> List[SymbolMatch]:
        """Search for symbols with SYMBOL_SEARCH."""
        data = await self._query("SYMBOL_SEARCH", keywords=keywords)
        result = self._parse(AlphaVantageSearchResult, data)

        return [
            SymbolMatch(
                symbol=match.symbol,
                name=match.name,
                type=match.type,
                region=match.region,
                currency=match.currency,
                match_score=match.match_score,
                source=self.provider
            )
            for match in result.best_matches
        ]


def _clean(value: Optional[str]) -> Optional[str]:
    """Alpha Vantage reports missing overview fields as the string 'None'."""
    if value is None:
        return None
    value = value.strip()
    if value in ("", "None", "-"):
        return None
    return value
