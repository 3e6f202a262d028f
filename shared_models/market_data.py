"""
Shared market data models for the market data aggregator.
Defines the provider-agnostic records that every adapter normalizes into.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, validator


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class DataProvider(str, Enum):
    """Supported upstream data providers."""
    ALPHA_VANTAGE = "alpha_vantage"
    FINNHUB = "finnhub"
    POLYGON = "polygon"


class Sentiment(str, Enum):
    """News sentiment classification."""
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class BarInterval(str, Enum):
    """Supported bar intervals."""
    ONE_MINUTE = "1min"
    FIVE_MINUTES = "5min"
    FIFTEEN_MINUTES = "15min"
    THIRTY_MINUTES = "30min"
    SIXTY_MINUTES = "60min"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @property
    def is_intraday(self) -> bool:
        return self not in (BarInterval.DAILY, BarInterval.WEEKLY, BarInterval.MONTHLY)


class OutputSize(str, Enum):
    """Time series size: the latest 100 bars or the full history."""
    COMPACT = "compact"
    FULL = "full"


COMPACT_SIZE = 100


class SortOrder(str, Enum):
    """Direction of a bar sequence."""
    ASC = "asc"
    DESC = "desc"


class ErrorKind(str, Enum):
    """Classification of a provider failure."""
    SYMBOL_NOT_FOUND = "symbol_not_found"
    RATE_LIMITED = "rate_limited"
    UPSTREAM_ERROR = "upstream_error"
    MALFORMED_RESPONSE = "malformed_response"


class HealthStatus(str, Enum):
    """Outcome of a single provider probe."""
    SUCCESS = "success"
    ERROR = "error"


class _ValueModel(BaseModel):
    """Base for immutable value records."""

    class Config:
        """Pydantic configuration."""
        frozen = True
        json_encoders = {
            datetime: lambda v: v.isoformat(),
        }


def _normalize_symbol(v: str) -> str:
    if not v or not v.strip():
        raise ValueError("Symbol cannot be empty")
    return v.strip().upper()


def _check_ohlc(low: Optional[float], high: Optional[float], **points: Optional[float]) -> None:
    """Raise when a price range is inverted or a point falls outside it."""
    if low is None or high is None:
        return
    if high < low:
        raise ValueError(f"high ({high}) must be greater than or equal to low ({low})")
    for name, value in points.items():
        if value is not None and not (low <= value <= high):
            raise ValueError(f"{name} ({value}) must lie between low ({low}) and high ({high})")


class Quote(_ValueModel):
    """Model for a real-time market quote."""
    symbol: str = Field(..., description="Asset symbol/ticker")
    price: float = Field(..., ge=0, description="Current price")
    change: Optional[float] = Field(None, description="Absolute price change")
    change_percent: Optional[float] = Field(None, description="Percentage price change")
    open: Optional[float] = Field(None, description="Opening price")
    high: Optional[float] = Field(None, description="Session high")
    low: Optional[float] = Field(None, description="Session low")
    previous_close: Optional[float] = Field(None, description="Previous close price")
    volume: Optional[int] = Field(None, ge=0, description="Trading volume")
    source: DataProvider = Field(..., description="Data provider source")
    as_of: datetime = Field(default_factory=utc_now, description="Quote timestamp")

    @validator('symbol')
    def validate_symbol(cls, v: str) -> str:
        """Validate and normalize symbol."""
        return _normalize_symbol(v)

    @validator('change_percent')
    def validate_change_percent(cls, v: Optional[float]) -> Optional[float]:
        """Round percent change."""
        if v is not None:
            return round(v, 4)
        return v

    @validator('low')
    def validate_range(cls, v: Optional[float], values: Dict[str, Any]) -> Optional[float]:
        """Validate the session range against open and current price."""
        _check_ohlc(v, values.get('high'), open=values.get('open'), price=values.get('price'))
        return v


class Profile(_ValueModel):
    """Model for company reference data."""
    symbol: str = Field(..., description="Asset symbol/ticker")
    company_name: str = Field(..., description="Company name")
    country: Optional[str] = Field(None, description="Country of incorporation or listing locale")
    currency: Optional[str] = Field(None, description="Trading currency")
    exchange: Optional[str] = Field(None, description="Primary exchange")
    industry: Optional[str] = Field(None, description="Industry classification")
    market_cap: Optional[float] = Field(None, description="Market capitalization in currency units")
    shares_outstanding: Optional[float] = Field(None, description="Shares outstanding")
    ipo_date: Optional[str] = Field(None, description="IPO or listing date")
    website: Optional[str] = Field(None, description="Company website")
    logo: Optional[str] = Field(None, description="Logo URL")
    description: Optional[str] = Field(None, description="Business description")
    source: DataProvider = Field(..., description="Data provider source")

    @validator('symbol')
    def validate_symbol(cls, v: str) -> str:
        """Validate and normalize symbol."""
        return _normalize_symbol(v)

    @validator('company_name')
    def validate_company_name(cls, v: str) -> str:
        """Validate company name."""
        if not v or not v.strip():
            raise ValueError("Company name cannot be empty")
        return v.strip()


class RelatedSymbol(_ValueModel):
    """Symbol and market a news article refers to."""
    symbol: str
    market: str = "US"

    @validator('symbol')
    def validate_symbol(cls, v: str) -> str:
        return _normalize_symbol(v)


class NewsArticle(_ValueModel):
    """Model for news articles."""
    id: str = Field(..., description="Provider article identifier")
    title: str = Field(..., description="Article title")
    summary: Optional[str] = Field(None, description="Article summary/description")
    source: str = Field(..., description="Publisher name")
    source_url: str = Field(..., description="Article URL")
    published_at: datetime = Field(..., description="Publication timestamp")
    sentiment: Sentiment = Field(Sentiment.NEUTRAL, description="Article sentiment")
    sentiment_score: float = Field(0.0, ge=-1.0, le=1.0, description="Sentiment score in [-1, 1]")
    related_symbols: List[RelatedSymbol] = Field(default_factory=list, description="Related symbols")
    category: Optional[str] = Field(None, description="News category")
    image_url: Optional[str] = Field(None, description="Article image URL")
    provider: DataProvider = Field(..., description="Data provider source")

    @validator('id', pre=True)
    def validate_id(cls, v: Any) -> str:
        """Provider ids may be numeric."""
        if v is None or str(v).strip() == "":
            raise ValueError("Article id cannot be empty")
        return str(v)

    @validator('title')
    def validate_title(cls, v: str) -> str:
        """Validate article title."""
        if not v or not v.strip():
            raise ValueError("Article title cannot be empty")
        return v.strip()

    @validator('source_url')
    def validate_url(cls, v: str) -> str:
        """Validate article URL."""
        if not v or not v.strip():
            raise ValueError("Article URL cannot be empty")
        return v.strip()

    @validator('related_symbols')
    def dedupe_related_symbols(cls, v: List[RelatedSymbol]) -> List[RelatedSymbol]:
        """Related symbols behave as a set; keep first-seen order."""
        seen = set()
        unique = []
        for item in v:
            key = (item.symbol, item.market)
            if key not in seen:
                seen.add(key)
                unique.append(item)
        return unique


class Bar(_ValueModel):
    """Model for one OHLCV time-series point."""
    date: datetime = Field(..., description="Bar start time")
    open: float = Field(..., description="Opening price")
    high: float = Field(..., description="High price")
    low: float = Field(..., description="Low price")
    close: float = Field(..., description="Closing price")
    volume: int = Field(..., ge=0, description="Traded volume")
    interval: BarInterval = Field(BarInterval.DAILY, description="Bar interval")
    vwap: Optional[float] = Field(None, description="Volume weighted average price")

    @validator('close')
    def validate_range(cls, v: float, values: Dict[str, Any]) -> float:
        """Validate OHLC ordering."""
        _check_ohlc(values.get('low'), values.get('high'), open=values.get('open'), close=v)
        return v


class SymbolMatch(_ValueModel):
    """Model for a symbol search result."""
    symbol: str
    name: str
    type: Optional[str] = None
    region: Optional[str] = None
    currency: Optional[str] = None
    match_score: Optional[float] = None
    source: DataProvider


class SocialSentiment(_ValueModel):
    """Aggregated social media sentiment for a symbol."""
    symbol: str
    reddit_score: Optional[float] = Field(None, description="Mean Reddit score")
    twitter_score: Optional[float] = Field(None, description="Mean Twitter score")
    score: float = Field(0.0, ge=-1.0, le=1.0, description="Overall score")
    sentiment: Sentiment = Sentiment.NEUTRAL
    mentions: int = Field(0, ge=0, description="Total mentions in the window")
    source: DataProvider


class MarketStatus(_ValueModel):
    """Current trading session state."""
    market: Literal["open", "closed", "pre_market", "after_market"]
    exchanges: Dict[str, str] = Field(default_factory=dict)
    server_time: datetime = Field(default_factory=utc_now)
    source: Optional[DataProvider] = Field(None, description="None when derived from local trading hours")


class ProviderFailure(_ValueModel):
    """One failed provider attempt."""
    provider: DataProvider
    operation: str
    kind: ErrorKind
    message: str
    transient: bool = False


class ComprehensiveRecord(_ValueModel):
    """Every provider's view of one symbol, gathered concurrently."""
    symbol: str
    quotes: Dict[DataProvider, Quote] = Field(default_factory=dict)
    profiles: Dict[DataProvider, Profile] = Field(default_factory=dict)
    successful_providers: int = Field(0, ge=0)
    errors: List[ProviderFailure] = Field(default_factory=list, description="Providers that returned nothing")
    partial_errors: List[ProviderFailure] = Field(
        default_factory=list, description="Failed sub-calls of providers that still answered"
    )
    as_of: datetime = Field(default_factory=utc_now)


class ProviderHealth(_ValueModel):
    """Probe outcome for one provider."""
    status: HealthStatus
    message: str
    data: Optional[Dict[str, Any]] = None
    latency_ms: Optional[float] = None


class HealthReport(_ValueModel):
    """Result of one health probe round."""
    results: Dict[DataProvider, ProviderHealth] = Field(default_factory=dict)
    success_count: int = 0
    total_providers: int = 0
    score: int = Field(0, ge=0, le=100)
    checked_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_results(cls, results: Dict[DataProvider, ProviderHealth]) -> "HealthReport":
        """Build a report and its composite score from per-provider results."""
        total = len(results)
        successes = sum(1 for r in results.values() if r.status == HealthStatus.SUCCESS)
        score = round(successes / total * 100) if total else 0
        return cls(results=results, success_count=successes, total_providers=total, score=score)


class MarketOverview(_ValueModel):
    """Market news plus the major index ETF quotes."""
    market_news: List[NewsArticle] = Field(default_factory=list)
    indices: Dict[str, Optional[Quote]] = Field(default_factory=dict)
    successful_calls: int = 0
    total_calls: int = 0
    errors: List[ProviderFailure] = Field(default_factory=list)
    as_of: datetime = Field(default_factory=utc_now)
