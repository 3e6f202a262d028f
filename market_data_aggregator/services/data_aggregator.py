"""
Data aggregator service for Market Data Aggregator.
Routes each operation across providers, either as a priority-ordered
fallback chain or as a concurrent fan-out that keeps every outcome.
"""

import asyncio
from datetime import date
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential,
)
from tenacity.wait import wait_base

from shared_models.market_data import (
    Bar, BarInterval, ComprehensiveRecord, DataProvider, ErrorKind, HealthReport,
    MarketOverview, MarketStatus, NewsArticle, OutputSize, Profile, ProviderFailure,
    Quote, SocialSentiment, SortOrder, SymbolMatch,
)
from ..core.config import Settings, provider_config, settings as default_settings
from ..core.logging_config import create_logger
from ..providers.alpha_vantage_provider import AlphaVantageProvider
from ..providers.base import (
    BaseDataProvider, Capability, ProviderError, RateLimitError, UpstreamError,
)
from ..providers.finnhub_provider import FinnhubProvider
from ..providers.polygon_provider import PolygonProvider
from .health_probe import HealthProbe
from .market_status import local_market_status

logger = create_logger(__name__)

T = TypeVar("T")


def _clean_symbol(symbol: Optional[str]) -> str:
    return (symbol or "").strip().upper()


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.transient


class wait_retry_after(wait_base):
    """Wait for a rate limit's Retry-After, capped, and otherwise defer to another wait."""

    def __init__(self, fallback: wait_base, cap: float):
        self.fallback = fallback
        self.cap = cap

    def __call__(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            return min(error.retry_after, self.cap)
        return self.fallback(retry_state)


class AllProvidersFailedError(Exception):
    """Raised when every provider attempted for an operation failed."""

    def __init__(
        self,
        operation: str,
        failures: List[ProviderFailure],
        last_error: Optional[ProviderError] = None,
        symbol: Optional[str] = None,
        retry_after: Optional[float] = None
    ):
        self.operation = operation
        self.failures = failures
        self.last_error = last_error
        self.symbol = symbol
        self.retry_after = retry_after

        if failures:
            tried = ", ".join(f"{f.provider.value} ({f.kind.value})" for f in failures)
            message = f"All providers failed for {operation}: {tried}"
        else:
            message = f"No provider available for {operation}"
        super().__init__(message)

    @property
    def all_not_found(self) -> bool:
        """True when every provider reported the symbol as unknown."""
        return bool(self.failures) and all(f.kind == ErrorKind.SYMBOL_NOT_FOUND for f in self.failures)

    @property
    def transient(self) -> bool:
        """True when at least one failure may clear on retry."""
        return any(f.transient for f in self.failures)


class DataAggregatorService:
    """Service that orchestrates data fetching from multiple providers."""

    provider_classes = {
        'alpha_vantage': AlphaVantageProvider,
        'finnhub': FinnhubProvider,
        'polygon': PolygonProvider,
    }

    def __init__(self, providers: Iterable[BaseDataProvider], settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self._providers: Dict[str, BaseDataProvider] = {}
        for provider in providers:
            self._providers[provider.name] = provider
        self._timeout = self.settings.provider_timeout

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "DataAggregatorService":
        """Build all providers from configuration."""
        settings = settings or default_settings
        api_keys = settings.get_api_keys()
        base_urls = {
            'alpha_vantage': settings.alpha_vantage_base_url,
            'finnhub': settings.finnhub_base_url,
            'polygon': settings.polygon_base_url,
        }

        providers = []
        for name, provider_class in cls.provider_classes.items():
            if not api_keys[name]:
                logger.warning("API key not configured, provider calls will fail", extra={"provider": name})
            providers.append(provider_class(
                api_key=api_keys[name],
                base_url=base_urls[name],
                timeout=settings.provider_timeout,
                connect_timeout=settings.provider_connect_timeout
            ))

        return cls(providers, settings)

    @property
    def providers(self) -> List[BaseDataProvider]:
        return list(self._providers.values())

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()

    async def connect(self) -> None:
        """Open every provider's HTTP client."""
        logger.info("Initializing data aggregator service")

        for provider in self._providers.values():
            await provider.connect()

        logger.info("Data aggregator service initialized successfully", extra={
            "active_providers": list(self._providers.keys())
        })

    async def disconnect(self) -> None:
        """Close every provider's HTTP client."""
        logger.info("Shutting down data aggregator service")

        for provider in self._providers.values():
            try:
                await provider.disconnect()
            except Exception as e:
                logger.warning("Error disconnecting provider", extra={
                    "provider": provider.name,
                    "error": str(e)
                })

        logger.info("Data aggregator service shutdown complete")

    # Execution primitives

    def _ordered_providers(self, operation: str, capability: Capability) -> List[BaseDataProvider]:
        """Providers for an operation in priority order, skipping those without the capability."""
        ordered = []
        for name in self.settings.get_priority(operation):
            provider = self._providers.get(name)
            if provider is not None and provider.supports(capability):
                ordered.append(provider)
        return ordered

    async def _call(
        self,
        provider: BaseDataProvider,
        operation: str,
        factory: Callable[[], Awaitable[T]],
        symbol: Optional[str] = None
    ) -> T:
        """
        Run one provider call bounded by the per-call timeout.

        Every failure comes out as a ProviderError; cancellation propagates.
        """
        try:
            return await asyncio.wait_for(factory(), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamError(
                f"{provider.name} {operation} timed out after {self._timeout:g}s",
                provider.provider, symbol, cause="timeout"
            ) from e
        except ProviderError:
            raise
        except Exception as e:
            logger.error("Unexpected provider error", extra={
                "provider": provider.name,
                "operation": operation,
                "symbol": symbol,
                "error": str(e)
            })
            raise UpstreamError(
                f"{provider.name} {operation} failed unexpectedly: {str(e)}",
                provider.provider, symbol, cause="unexpected"
            ) from e

    def _retry_wait(self) -> wait_base:
        """Exponential backoff capped at retry_backoff_max; Retry-After wins when given."""
        return wait_retry_after(
            wait_exponential(multiplier=self.settings.retry_backoff_base, max=self.settings.retry_backoff_max),
            cap=self.settings.retry_backoff_max
        )

    async def _call_with_retry(
        self,
        provider: BaseDataProvider,
        operation: str,
        factory: Callable[[], Awaitable[T]],
        symbol: Optional[str] = None
    ) -> T:
        """Run a provider call, retrying transient failures with backoff."""
        def log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            logger.info("Retrying transient provider failure", extra={
                "provider": provider.name,
                "operation": operation,
                "symbol": symbol,
                "attempt": retry_state.attempt_number,
                "delay_seconds": retry_state.next_action.sleep,
                "error": str(error)
            })

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.settings.max_retries + 1),
            wait=self._retry_wait(),
            retry=retry_if_exception(_is_transient),
            before_sleep=log_retry,
            reraise=True,
        ):
            with attempt:
                return await self._call(provider, operation, factory, symbol)

    async def _fallback(
        self,
        operation: str,
        capability: Capability,
        call: Callable[[BaseDataProvider], Awaitable[T]],
        symbol: Optional[str] = None
    ) -> Tuple[T, BaseDataProvider]:
        """
        Try providers one at a time in priority order and stop at the first success.

        Returns:
            Tuple of (result, provider that produced it)

        Raises:
            AllProvidersFailedError: With the ordered attempt history
        """
        if symbol is not None:
            symbol = _clean_symbol(symbol)
        failures: List[ProviderFailure] = []
        last_error: Optional[ProviderError] = None
        retry_after: Optional[float] = None

        for provider in self._ordered_providers(operation, capability):
            try:
                result = await self._call_with_retry(provider, operation, lambda: call(provider), symbol)
            except ProviderError as e:
                logger.warning("Provider failed, trying next", extra={
                    "provider": provider.name,
                    "operation": operation,
                    "symbol": symbol,
                    "error_kind": e.kind.value,
                    "error": e.message
                })
                failures.append(e.to_failure(operation))
                last_error = e
                if isinstance(e, RateLimitError) and e.retry_after is not None:
                    retry_after = max(retry_after or 0, e.retry_after)
                continue

            if failures:
                logger.info("Fallback provider succeeded", extra={
                    "provider": provider.name,
                    "operation": operation,
                    "symbol": symbol,
                    "failed_providers": [f.provider.value for f in failures]
                })
            return result, provider

        logger.error("All providers failed", extra={
            "operation": operation,
            "symbol": symbol,
            "attempts": len(failures)
        })
        raise AllProvidersFailedError(operation, failures, last_error, symbol, retry_after)

    # Fallback operations

    async def get_quote(self, symbol: str) -> Quote:
        """Get the latest quote from the first provider that answers."""
        quote, _ = await self._fallback(
            'quote', Capability.QUOTE, lambda p: p.fetch_quote(symbol), symbol
        )
        return quote

    async def get_profile(self, symbol: str) -> Profile:
        """Get company reference data from the first provider that answers."""
        profile, _ = await self._fallback(
            'profile', Capability.PROFILE, lambda p: p.fetch_profile(symbol), symbol
        )
        return profile

    async def get_time_series(
        self,
        symbol: str,
        size: OutputSize = OutputSize.COMPACT,
        interval: BarInterval = BarInterval.DAILY,
        order: SortOrder = SortOrder.ASC
    ) -> List[Bar]:
        """Get OHLCV bars ordered by date in the requested direction."""
        bars, _ = await self._fallback(
            'time_series', Capability.TIME_SERIES,
            lambda p: p.fetch_time_series(symbol, size, interval), symbol
        )
        bars = sorted(bars, key=lambda bar: bar.date)
        if order == SortOrder.DESC:
            bars.reverse()
        return bars

    async def search(self, keywords: str) -> List[SymbolMatch]:
        """Search symbols by free text."""
        keywords = (keywords or "").strip()
        if not keywords:
            raise ValueError("Search keywords cannot be empty")

        matches, _ = await self._fallback(
            'search', Capability.SEARCH, lambda p: p.search_symbols(keywords)
        )
        return matches

    async def get_market_news(self, category: str = "general") -> List[NewsArticle]:
        """Get general market news."""
        articles, _ = await self._fallback(
            'market_news', Capability.MARKET_NEWS, lambda p: p.fetch_market_news(category)
        )
        return articles

    async def get_company_news(
        self,
        symbol: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None
    ) -> List[NewsArticle]:
        """Get news about one company, optionally within a date range."""
        if from_date and to_date and from_date > to_date:
            raise ValueError("from_date must not be after to_date")

        articles, _ = await self._fallback(
            'company_news', Capability.COMPANY_NEWS,
            lambda p: p.fetch_company_news(symbol, from_date, to_date), symbol
        )
        return articles

    async def get_social_sentiment(self, symbol: str) -> SocialSentiment:
        """Get social media sentiment from providers that offer it."""
        sentiment, _ = await self._fallback(
            'social_sentiment', Capability.SOCIAL_SENTIMENT,
            lambda p: p.fetch_social_sentiment(symbol), symbol
        )
        return sentiment

    async def get_market_status(self) -> MarketStatus:
        """Get the trading session from a provider, or from local trading hours."""
        try:
            status, _ = await self._fallback(
                'market_status', Capability.MARKET_STATUS, lambda p: p.fetch_market_status()
            )
            return status
        except AllProvidersFailedError as e:
            logger.warning("Falling back to local market hours", extra={"error": str(e)})
            return local_market_status()

    # Fan-out operations

    async def get_comprehensive(self, symbol: str) -> ComprehensiveRecord:
        """
        Get every provider's quote and profile for a symbol concurrently.

        A provider counts as successful when either of its calls succeeds.
        Providers that produced nothing are listed in errors; failed
        sub-calls of providers that did answer are listed in partial_errors.

        Raises:
            AllProvidersFailedError: If no provider produced anything
        """
        symbol = _clean_symbol(symbol)
        providers = [
            p for p in self._providers.values()
            if p.supports(Capability.QUOTE) or p.supports(Capability.PROFILE)
        ]

        async def gather_provider(provider: BaseDataProvider):
            calls = []
            if provider.supports(Capability.QUOTE):
                calls.append(('quote', provider.fetch_quote))
            if provider.supports(Capability.PROFILE):
                calls.append(('profile', provider.fetch_profile))

            async def settle(operation, fetch):
                try:
                    return operation, await self._call(provider, operation, lambda: fetch(symbol), symbol), None
                except ProviderError as e:
                    return operation, None, e

            return provider, await asyncio.gather(*(settle(op, fetch) for op, fetch in calls))

        settled = await asyncio.gather(*(gather_provider(p) for p in providers))

        quotes: Dict[DataProvider, Quote] = {}
        profiles: Dict[DataProvider, Profile] = {}
        errors: List[ProviderFailure] = []
        partial_errors: List[ProviderFailure] = []
        last_error: Optional[ProviderError] = None

        for provider, outcomes in settled:
            failed = []
            for operation, value, error in outcomes:
                if error is not None:
                    failed.append(error.to_failure(operation))
                    last_error = error
                elif operation == 'quote':
                    quotes[provider.provider] = value
                else:
                    profiles[provider.provider] = value

            if len(failed) == len(outcomes):
                # One entry per provider, carrying the primary (first) failure
                errors.append(failed[0])
            else:
                partial_errors.extend(failed)

        successful = len(providers) - len(errors)
        logger.info("Comprehensive data gathered", extra={
            "symbol": symbol,
            "successful_providers": successful,
            "failed_providers": [f.provider.value for f in errors]
        })

        if providers and successful == 0:
            raise AllProvidersFailedError('comprehensive', errors + partial_errors, last_error, symbol)

        return ComprehensiveRecord(
            symbol=symbol,
            quotes=quotes,
            profiles=profiles,
            successful_providers=successful,
            errors=errors,
            partial_errors=partial_errors
        )

    async def get_market_overview(self) -> MarketOverview:
        """
        Get market news and the index ETF quotes concurrently.

        Each part uses its own fallback chain; a failed part leaves a gap
        rather than failing the overview.
        """
        indices = provider_config.MARKET_OVERVIEW_INDICES
        results = await asyncio.gather(
            self.get_market_news(),
            *(self.get_quote(symbol) for symbol in indices.values()),
            return_exceptions=True
        )

        errors: List[ProviderFailure] = []
        successful = 0
        parts = []
        for result in results:
            if isinstance(result, AllProvidersFailedError):
                errors.extend(result.failures)
                parts.append(None)
            elif isinstance(result, BaseException):
                raise result
            else:
                successful += 1
                parts.append(result)

        news, quotes = parts[0], parts[1:]
        return MarketOverview(
            market_news=news or [],
            indices=dict(zip(indices.keys(), quotes)),
            successful_calls=successful,
            total_calls=len(results),
            errors=errors
        )

    async def test_all_providers(self) -> HealthReport:
        """Probe every provider concurrently and score availability."""
        probe = HealthProbe(
            self._providers.values(),
            symbol=self.settings.health_check_symbol,
            timeout=self._timeout
        )
        return await probe.run()
