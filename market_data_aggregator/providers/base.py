"""
Abstract base class for data providers in Market Data Aggregator.
Defines the interface that all data providers must implement and the
error taxonomy they report through.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from shared_models.market_data import (
    COMPACT_SIZE, Bar, BarInterval, DataProvider, ErrorKind, NewsArticle,
    OutputSize, Profile, ProviderFailure, Quote, RelatedSymbol, Sentiment,
    SymbolMatch,
)
from ..core.logging_config import create_logger
from ..services.sentiment import analyze_sentiment

logger = create_logger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


class Capability(str, Enum):
    """Operations a provider can be asked for."""
    QUOTE = "quote"
    PROFILE = "profile"
    TIME_SERIES = "time_series"
    SEARCH = "search"
    COMPANY_NEWS = "company_news"
    MARKET_NEWS = "market_news"
    SOCIAL_SENTIMENT = "social_sentiment"
    MARKET_STATUS = "market_status"


class ProviderError(Exception):
    """Base exception for provider errors."""

    kind = ErrorKind.UPSTREAM_ERROR

    def __init__(self, message: str, provider: DataProvider, symbol: Optional[str] = None):
        self.message = message
        self.provider = provider
        self.symbol = symbol
        super().__init__(self.message)

    @property
    def transient(self) -> bool:
        """Whether retrying later may succeed."""
        return False

    def to_failure(self, operation: str) -> ProviderFailure:
        """Describe this error as a failure record."""
        return ProviderFailure(
            provider=self.provider,
            operation=operation,
            kind=self.kind,
            message=self.message,
            transient=self.transient
        )


class SymbolNotFoundError(ProviderError):
    """Raised when the provider has no data for the requested symbol."""

    kind = ErrorKind.SYMBOL_NOT_FOUND


class RateLimitError(ProviderError):
    """Raised when the provider signals quota exhaustion."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        provider: DataProvider,
        symbol: Optional[str] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, provider, symbol)
        self.retry_after = retry_after

    @property
    def transient(self) -> bool:
        return True


class UpstreamError(ProviderError):
    """Raised for network failures, timeouts and non-2xx responses."""

    kind = ErrorKind.UPSTREAM_ERROR

    def __init__(
        self,
        message: str,
        provider: DataProvider,
        symbol: Optional[str] = None,
        cause: str = "http",
        status_code: Optional[int] = None
    ):
        super().__init__(message, provider, symbol)
        self.cause = cause
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        if self.cause in ("timeout", "network"):
            return True
        return self.status_code is not None and self.status_code >= 500


class AuthenticationError(UpstreamError):
    """Raised when the API key is missing or rejected."""

    def __init__(self, message: str, provider: DataProvider, symbol: Optional[str] = None,
                 status_code: Optional[int] = None):
        super().__init__(message, provider, symbol, cause="auth", status_code=status_code)


class MalformedResponseError(ProviderError):
    """Raised when a successful response lacks the expected fields."""

    kind = ErrorKind.MALFORMED_RESPONSE


# Calendar span of a single bar, used to size date-range queries
_BAR_SPAN = {
    BarInterval.ONE_MINUTE: timedelta(minutes=1),
    BarInterval.FIVE_MINUTES: timedelta(minutes=5),
    BarInterval.FIFTEEN_MINUTES: timedelta(minutes=15),
    BarInterval.THIRTY_MINUTES: timedelta(minutes=30),
    BarInterval.SIXTY_MINUTES: timedelta(hours=1),
    BarInterval.DAILY: timedelta(days=1),
    BarInterval.WEEKLY: timedelta(weeks=1),
    BarInterval.MONTHLY: timedelta(days=31),
}


def lookback_window(size: OutputSize, interval: BarInterval) -> timedelta:
    """
    Calendar window to request so that the provider returns enough bars.

    Compact asks for 1.5x the compact bar count to cover weekends and
    holidays; full asks for 20 years (30 days for intraday bars).
    """
    if size == OutputSize.FULL:
        return timedelta(days=30) if interval.is_intraday else timedelta(days=365 * 20)
    return max(_BAR_SPAN[interval] * COMPACT_SIZE * 3 // 2, timedelta(days=5))


def finalize_bars(bars: List[Bar], size: OutputSize) -> List[Bar]:
    """Sort bars ascending by date and trim compact series to the latest bars."""
    ordered = sorted(bars, key=lambda bar: bar.date)
    if size == OutputSize.COMPACT:
        return ordered[-COMPACT_SIZE:]
    return ordered


def format_date(value: date) -> str:
    return value.strftime("%Y-%m-%d")


class BaseDataProvider(ABC):
    """Abstract base class for market data providers."""

    provider: DataProvider
    capabilities: FrozenSet[Capability] = frozenset()
    default_base_url: str = ""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 12.0,
        connect_timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.name = self.provider.value
        self.api_key = api_key
        self.base_url = (base_url or self.default_base_url).rstrip('/')
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.client: Optional[httpx.AsyncClient] = None
        self._transport = transport

    async def __aenter__(self):
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.disconnect()

    async def connect(self) -> None:
        """Initialize HTTP client connection."""
        if self.client is None:
            timeout = httpx.Timeout(self.timeout, connect=min(self.connect_timeout, self.timeout))
            limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)

            self.client = httpx.AsyncClient(
                timeout=timeout,
                limits=limits,
                headers=self._get_default_headers(),
                follow_redirects=True,
                transport=self._transport
            )

            logger.debug("Connected to provider", extra={"provider": self.name})

    async def disconnect(self) -> None:
        """Close HTTP client connection."""
        if self.client:
            await self.client.aclose()
            self.client = None
            logger.debug("Disconnected from provider", extra={"provider": self.name})

    def _get_default_headers(self) -> Dict[str, str]:
        """Get default HTTP headers for requests."""
        return {
            'User-Agent': 'Market-Data-Aggregator/1.0.0',
            'Accept': 'application/json',
        }

    @abstractmethod
    def _get_auth_params(self) -> Dict[str, str]:
        """Get the query parameters that carry the API key."""
        pass

    def supports(self, capability: Capability) -> bool:
        """Check if this provider implements the given operation."""
        return capability in self.capabilities

    async def _make_request(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        symbol: Optional[str] = None
    ) -> Any:
        """
        Make a single GET request and classify any failure.

        Args:
            path: Path relative to the provider base URL, or an absolute URL
            params: Query parameters, without the API key
            symbol: Symbol the request is about, for error context

        Returns:
            Decoded JSON body

        Raises:
            AuthenticationError: If the API key is missing or rejected
            RateLimitError: If the provider answers 429
            SymbolNotFoundError: If the provider answers 404
            UpstreamError: On timeout, network failure or other non-2xx status
            MalformedResponseError: If the body is not JSON
        """
        if not self.api_key:
            raise AuthenticationError(f"{self.name} API key is not configured", self.provider, symbol)

        if not self.client:
            await self.connect()

        url = path if path.startswith("http") else f"{self.base_url}{path}"
        request_params = dict(params or {})
        request_params.update(self._get_auth_params())

        logger.debug("Making request to provider", extra={
            "provider": self.name,
            "url": url,
            "symbol": symbol
        })

        try:
            response = await self.client.get(url, params=request_params)
        except httpx.TimeoutException as e:
            logger.warning("Request timeout", extra={"provider": self.name, "url": url})
            raise UpstreamError(
                f"Request to {self.name} timed out", self.provider, symbol, cause="timeout"
            ) from e
        except httpx.HTTPError as e:
            logger.warning("HTTP error", extra={"provider": self.name, "error": str(e)})
            raise UpstreamError(
                f"HTTP error for {self.name}: {str(e)}", self.provider, symbol, cause="network"
            ) from e

        if response.status_code == 429:
            retry_after = _parse_retry_after(response.headers.get('Retry-After'))
            logger.warning("Rate limited by provider", extra={
                "provider": self.name,
                "retry_after": retry_after
            })
            raise RateLimitError(f"Rate limited by {self.name}", self.provider, symbol, retry_after)

        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"Authentication failed for {self.name}", self.provider, symbol,
                status_code=response.status_code
            )

        if response.status_code == 404:
            raise SymbolNotFoundError(f"{self.name} has no data for {symbol or url}", self.provider, symbol)

        if response.status_code >= 400:
            raise UpstreamError(
                f"{self.name} returned HTTP {response.status_code}", self.provider, symbol,
                cause="http", status_code=response.status_code
            )

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"Invalid JSON response from {self.name}: {str(e)}", self.provider, symbol
            ) from e

        logger.debug("Received response from provider", extra={
            "provider": self.name,
            "status_code": response.status_code,
            "response_size": len(response.content)
        })
        return data

    def _parse(self, schema: Type[SchemaT], data: Any, symbol: Optional[str] = None) -> SchemaT:
        """Validate a raw payload against a provider wire schema."""
        try:
            return schema.parse_obj(data)
        except ValidationError as e:
            logger.warning("Provider payload failed validation", extra={
                "provider": self.name,
                "schema": schema.__name__,
                "symbol": symbol,
                "error_count": e.error_count()
            })
            raise MalformedResponseError(
                f"Unexpected {schema.__name__} payload from {self.name}: {e.errors()[0]['msg']}",
                self.provider, symbol
            ) from e

    def _normalize_symbol(self, symbol: str) -> str:
        """Normalize a caller symbol for this provider."""
        normalized = (symbol or "").upper().strip()
        if not normalized:
            raise SymbolNotFoundError("Symbol cannot be empty", self.provider)
        return normalized

    # Abstract provider operations

    @abstractmethod
    async def fetch_quote(self, symbol: str) -> Quote:
        """
        Get the latest quote for a symbol.

        Raises:
            SymbolNotFoundError: If the provider returned an empty or zeroed quote
            RateLimitError, UpstreamError, MalformedResponseError
        """
        pass

    @abstractmethod
    async def fetch_profile(self, symbol: str) -> Profile:
        """Get company reference data for a symbol."""
        pass

    @abstractmethod
    async def fetch_company_news(
        self,
        symbol: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None
    ) -> List[NewsArticle]:
        """Get news about one company, newest first."""
        pass

    @abstractmethod
    async def fetch_market_news(self, category: str = "general") -> List[NewsArticle]:
        """Get general market news, newest first."""
        pass

    @abstractmethod
    async def fetch_time_series(
        self,
        symbol: str,
        size: OutputSize = OutputSize.COMPACT,
        interval: BarInterval = BarInterval.DAILY
    ) -> List[Bar]:
        """Get OHLCV bars sorted ascending by date."""
        pass

    @abstractmethod
    async def search_symbols(self, keywords: str) -> List[SymbolMatch]:
        """Search for symbols matching free-text keywords."""
        pass

    async def probe(self, symbol: str) -> Dict[str, Any]:
        """
        Issue the representative request used by the health probe.

        Returns:
            Sample payload of the normalized record
        """
        quote = await self.fetch_quote(symbol)
        return quote.dict()

    # Canonical record factories

    def _create_quote(
        self,
        symbol: str,
        price: Optional[float],
        change: Optional[float] = None,
        change_percent: Optional[float] = None,
        previous_close: Optional[float] = None,
        as_of: Optional[datetime] = None,
        **kwargs
    ) -> Quote:
        """
        Create a standardized Quote object.

        A quote whose price, change and percent change are all zero is how
        providers report a closed market or unknown symbol, so it is rejected.
        Change and percent change are recomputed from the previous close when
        it is known.

        Raises:
            SymbolNotFoundError: For a missing or all-zero quote
            MalformedResponseError: If the values break the quote invariants
        """
        if price is None:
            raise SymbolNotFoundError(f"{self.name} returned no price for {symbol}", self.provider, symbol)

        if price == 0 and not change and not change_percent:
            raise SymbolNotFoundError(
                f"{self.name} returned an all-zero quote for {symbol} (market closed or unknown symbol)",
                self.provider, symbol
            )

        if previous_close:
            change = round(price - previous_close, 6)
            change_percent = change / previous_close * 100

        fields = dict(
            symbol=symbol,
            price=price,
            change=change,
            change_percent=change_percent,
            previous_close=previous_close,
            source=self.provider,
            **kwargs
        )
        if as_of is not None:
            fields['as_of'] = as_of
        return self._build(Quote, fields, symbol)

    def _create_profile(self, symbol: str, company_name: Optional[str], **kwargs) -> Profile:
        """Create a standardized Profile object."""
        if not company_name:
            raise SymbolNotFoundError(f"{self.name} has no profile for {symbol}", self.provider, symbol)
        return self._build(Profile, dict(symbol=symbol, company_name=company_name, source=self.provider, **kwargs), symbol)

    def _create_bar(self, interval: BarInterval, symbol: Optional[str] = None, **kwargs) -> Bar:
        """Create a standardized Bar object."""
        return self._build(Bar, dict(interval=interval, **kwargs), symbol)

    def _create_article(
        self,
        symbols: Optional[List[str]] = None,
        market: str = "US",
        sentiment: Optional[Sentiment] = None,
        sentiment_score: Optional[float] = None,
        **kwargs
    ) -> NewsArticle:
        """
        Create a standardized NewsArticle object.

        Articles without a provider sentiment are scored from their title
        and summary.
        """
        if sentiment is None or sentiment_score is None:
            sentiment, sentiment_score = analyze_sentiment(kwargs.get('title'), kwargs.get('summary'))

        related = [RelatedSymbol(symbol=s, market=market) for s in (symbols or []) if s and s.strip()]
        return self._build(NewsArticle, dict(
            related_symbols=related,
            sentiment=sentiment,
            sentiment_score=sentiment_score,
            provider=self.provider,
            **kwargs
        ))

    def _build(self, model: Type[SchemaT], fields: Dict[str, Any], symbol: Optional[str] = None) -> SchemaT:
        try:
            return model(**fields)
        except ValidationError as e:
            raise MalformedResponseError(
                f"{self.name} returned an invalid {model.__name__}: {e.errors()[0]['msg']}",
                self.provider, symbol
            ) from e


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def optional_number(value: Any) -> Optional[float]:
    """Parse provider numbers that may be missing, empty or placeholder strings."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip().rstrip('%')
        if value in ("", "None", "-", "N/A"):
            return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
