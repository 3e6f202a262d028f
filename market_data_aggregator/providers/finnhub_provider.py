"""
Finnhub data provider implementation.
Provides stock quotes, company profiles, candles, news and social
sentiment using the Finnhub REST API.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from shared_models.market_data import (
    Bar, BarInterval, DataProvider, NewsArticle, OutputSize, Profile, Quote,
    SocialSentiment, SymbolMatch, utc_now,
)
from .base import (
    BaseDataProvider, Capability, MalformedResponseError, RateLimitError,
    SymbolNotFoundError, UpstreamError, finalize_bars, format_date, lookback_window,
)
from ..core.logging_config import create_logger
from ..services.sentiment import clamp_score, classify_score

logger = create_logger(__name__)


# Wire schemas

class FinnhubQuote(BaseModel):
    c: Optional[float] = None   # Current price
    d: Optional[float] = None   # Change
    dp: Optional[float] = None  # Percent change
    h: Optional[float] = None   # High price of the day
    l: Optional[float] = None   # Low price of the day
    o: Optional[float] = None   # Open price of the day
    pc: Optional[float] = None  # Previous close
    t: Optional[int] = None     # Unix timestamp


class FinnhubProfile(BaseModel):
    name: Optional[str] = None
    ticker: Optional[str] = None
    country: Optional[str] = None
    currency: Optional[str] = None
    exchange: Optional[str] = None
    industry: Optional[str] = Field(None, alias="finnhubIndustry")
    ipo: Optional[str] = None
    logo: Optional[str] = None
    market_cap: Optional[float] = Field(None, alias="marketCapitalization")
    shares_outstanding: Optional[float] = Field(None, alias="shareOutstanding")
    website: Optional[str] = Field(None, alias="weburl")


class FinnhubNewsItem(BaseModel):
    id: Optional[int] = None
    headline: str
    url: str
    datetime: int
    summary: Optional[str] = None
    source: Optional[str] = None
    category: Optional[str] = None
    image: Optional[str] = None
    related: Optional[str] = None


class FinnhubCandles(BaseModel):
    s: str
    t: List[int] = Field(default_factory=list)
    o: List[float] = Field(default_factory=list)
    h: List[float] = Field(default_factory=list)
    l: List[float] = Field(default_factory=list)
    c: List[float] = Field(default_factory=list)
    v: List[float] = Field(default_factory=list)


class FinnhubSearchItem(BaseModel):
    symbol: str
    description: str
    display_symbol: Optional[str] = Field(None, alias="displaySymbol")
    type: Optional[str] = None


class FinnhubSearchResult(BaseModel):
    count: int = 0
    result: List[FinnhubSearchItem] = Field(default_factory=list)


class FinnhubSocialPoint(BaseModel):
    mention: int = 0
    score: float = 0.0


class FinnhubSocialSentiment(BaseModel):
    symbol: Optional[str] = None
    reddit: List[FinnhubSocialPoint] = Field(default_factory=list)
    twitter: List[FinnhubSocialPoint] = Field(default_factory=list)


# Candle resolutions per bar interval
_RESOLUTIONS = {
    BarInterval.ONE_MINUTE: "1",
    BarInterval.FIVE_MINUTES: "5",
    BarInterval.FIFTEEN_MINUTES: "15",
    BarInterval.THIRTY_MINUTES: "30",
    BarInterval.SIXTY_MINUTES: "60",
    BarInterval.DAILY: "D",
    BarInterval.WEEKLY: "W",
    BarInterval.MONTHLY: "M",
}

COMPANY_NEWS_DAYS = 7
COMPANY_NEWS_LIMIT = 30
MARKET_NEWS_LIMIT = 50


class FinnhubProvider(BaseDataProvider):
    """Finnhub data provider for stock market data."""

    provider = DataProvider.FINNHUB
    default_base_url = "https://finnhub.io/api/v1"
    capabilities = frozenset({
        Capability.QUOTE,
        Capability.PROFILE,
        Capability.TIME_SERIES,
        Capability.SEARCH,
        Capability.COMPANY_NEWS,
        Capability.MARKET_NEWS,
        Capability.SOCIAL_SENTIMENT,
    })

    def _get_auth_params(self) -> Dict[str, str]:
        """Finnhub uses API key in query parameters, not headers."""
        return {"token": self.api_key}

    async def _get(self, path: str, params: Dict[str, Any], symbol: Optional[str] = None) -> Any:
        """Make a request and unwrap Finnhub's in-band error object."""
        data = await self._make_request(path, params=params, symbol=symbol)

        if isinstance(data, dict) and data.get("error"):
            message = str(data["error"])
            if "limit" in message.lower():
                raise RateLimitError(f"Finnhub rate limit: {message}", self.provider, symbol)
            raise UpstreamError(f"Finnhub error: {message}", self.provider, symbol)

        return data

    async def fetch_quote(self, symbol: str) -> Quote:
        """Get a real-time quote from /quote."""
        symbol = self._normalize_symbol(symbol)
        data = await self._get("/quote", {"symbol": symbol}, symbol)
        wire = self._parse(FinnhubQuote, data, symbol)

        # Finnhub answers unknown symbols with zeros rather than an error
        as_of = datetime.fromtimestamp(wire.t, tz=timezone.utc) if wire.t else None
        return self._create_quote(
            symbol=symbol,
            price=wire.c,
            change=wire.d,
            change_percent=wire.dp,
            previous_close=wire.pc or None,
            open=wire.o or None,
            high=wire.h or None,
            low=wire.l or None,
            as_of=as_of
        )

    async def fetch_profile(self, symbol: str) -> Profile:
        """Get company reference data from /stock/profile2."""
        symbol = self._normalize_symbol(symbol)
        data = await self._get("/stock/profile2", {"symbol": symbol}, symbol)

        if not data:
            raise SymbolNotFoundError(f"Finnhub has no profile for {symbol}", self.provider, symbol)

        wire = self._parse(FinnhubProfile, data, symbol)

        # Finnhub reports capitalization and share count in millions
        return self._create_profile(
            symbol=symbol,
            company_name=wire.name,
            country=wire.country or None,
            currency=wire.currency or None,
            exchange=wire.exchange or None,
            industry=wire.industry or None,
            market_cap=wire.market_cap * 1_000_000 if wire.market_cap else None,
            shares_outstanding=wire.shares_outstanding * 1_000_000 if wire.shares_outstanding else None,
            ipo_date=wire.ipo or None,
            website=wire.website or None,
            logo=wire.logo or None
        )

    async def fetch_company_news(
        self,
        symbol: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None
    ) -> List[NewsArticle]:
        """Get company-specific news from /company-news, last 7 days by default."""
        symbol = self._normalize_symbol(symbol)
        to_date = to_date or utc_now().date()
        from_date = from_date or to_date - timedelta(days=COMPANY_NEWS_DAYS)

        news_data = await self._get("/company-news", {
            "symbol": symbol,
            "from": format_date(from_date),
            "to": format_date(to_date)
        }, symbol)

        return self._parse_news(news_data, COMPANY_NEWS_LIMIT, symbol)

    async def fetch_market_news(self, category: str = "general") -> List[NewsArticle]:
        """Get general market news from /news."""
        news_data = await self._get("/news", {"category": category})
        return self._parse_news(news_data, MARKET_NEWS_LIMIT)

    def _parse_news(self, news_data: Any, limit: int, symbol: Optional[str] = None) -> List[NewsArticle]:
        if not isinstance(news_data, list):
            raise MalformedResponseError("Expected a list of Finnhub news items", self.provider, symbol)

        articles = []
        for item in news_data[:limit]:
            try:
                articles.append(self._create_news_article_from_finnhub(item, symbol))
            except MalformedResponseError as e:
                logger.warning("Failed to process news article", extra={
                    "provider": self.name,
                    "symbol": symbol,
                    "error": e.message
                })
                continue

        logger.info("Retrieved news from Finnhub", extra={
            "provider": self.name,
            "symbol": symbol,
            "count": len(articles)
        })
        return articles

    def _create_news_article_from_finnhub(self, item: Any, symbol: Optional[str] = None) -> NewsArticle:
        """Create NewsArticle from Finnhub news data."""
        wire = self._parse(FinnhubNewsItem, item, symbol)

        # Company news is always about the requested symbol
        symbols = [symbol] if symbol else []
        if wire.related:
            symbols.extend(s.strip().upper() for s in wire.related.split(','))

        return self._create_article(
            symbols=symbols,
            id=wire.id if wire.id else wire.url,
            title=wire.headline,
            summary=wire.summary or None,
            source=wire.source or "Finnhub",
            source_url=wire.url,
            published_at=datetime.fromtimestamp(wire.datetime, tz=timezone.utc),
            category=wire.category or None,
            image_url=wire.image or None
        )

    async def fetch_time_series(
        self,
        symbol: str,
        size: OutputSize = OutputSize.COMPACT,
        interval: BarInterval = BarInterval.DAILY
    ) -> List[Bar]:
        """Get OHLCV bars from /stock/candle, zipping the parallel arrays."""
        symbol = self._normalize_symbol(symbol)
        end = utc_now()
        start = end - lookback_window(size, interval)

        data = await self._get("/stock/candle", {
            "symbol": symbol,
            "resolution": _RESOLUTIONS[interval],
            "from": int(start.timestamp()),
            "to": int(end.timestamp())
        }, symbol)
        candles = self._parse(FinnhubCandles, data, symbol)

        # "no_data" is an empty range, not an error
        if candles.s == "no_data":
            raise SymbolNotFoundError(f"Finnhub has no candles for {symbol}", self.provider, symbol)
        if candles.s != "ok":
            raise MalformedResponseError(f"Unexpected Finnhub candle status {candles.s!r}", self.provider, symbol)

        columns = (candles.t, candles.o, candles.h, candles.l, candles.c, candles.v)
        if len({len(column) for column in columns}) != 1:
            raise MalformedResponseError("Finnhub candle arrays differ in length", self.provider, symbol)

        bars = [
            self._create_bar(
                interval,
                symbol,
                date=datetime.fromtimestamp(stamp, tz=timezone.utc),
                open=open_,
                high=high,
                low=low,
                close=close,
                volume=int(volume)
            )
            for stamp, open_, high, low, close, volume in zip(*columns)
        ]

        logger.info("Retrieved candles from Finnhub", extra={
            "provider": self.name,
            "symbol": symbol,
            "resolution": _RESOLUTIONS[interval],
            "count": len(bars)
        })
        return finalize_bars(bars, size)

    async def search_symbols(self, keywords: str) -> List[SymbolMatch]:
        """Search for symbols with /search."""
        data = await self._get("/search", {"q": keywords})
        result = self._parse(FinnhubSearchResult, data)

        return [
            SymbolMatch(
                symbol=item.symbol,
                name=item.description,
                type=item.type or None,
                source=self.provider
            )
            for item in result.result
            if item.symbol and item.description
        ]

    async def fetch_social_sentiment(self, symbol: str) -> SocialSentiment:
        """
        Get Reddit and Twitter sentiment from /stock/social-sentiment.

        The overall score is the mean of the per-network mean scores.
        """
        symbol = self._normalize_symbol(symbol)
        data = await self._get("/stock/social-sentiment", {"symbol": symbol}, symbol)
        wire = self._parse(FinnhubSocialSentiment, data, symbol)

        if not wire.reddit and not wire.twitter:
            raise SymbolNotFoundError(f"Finnhub has no social sentiment for {symbol}", self.provider, symbol)

        reddit_score = _mean_score(wire.reddit)
        twitter_score = _mean_score(wire.twitter)
        network_scores = [s for s in (reddit_score, twitter_score) if s is not None]
        score = clamp_score(sum(network_scores) / len(network_scores))

        return SocialSentiment(
            symbol=symbol,
            reddit_score=reddit_score,
            twitter_score=twitter_score,
            score=score,
            sentiment=classify_score(score),
            mentions=sum(p.mention for p in wire.reddit) + sum(p.mention for p in wire.twitter),
            source=self.provider
        )


def _mean_score(points: List[FinnhubSocialPoint]) -> Optional[float]:
    if not points:
        return None
    return sum(p.score for p in points) / len(points)
