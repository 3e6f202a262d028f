"""Shared fixtures: in-process fake providers and fast settings."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import pytest

from market_data_aggregator.core.config import Settings
from market_data_aggregator.providers.base import BaseDataProvider, Capability, SymbolNotFoundError
from shared_models.market_data import (
    Bar, BarInterval, DataProvider, NewsArticle, Profile, Quote, SymbolMatch,
)

HANG = object()


class FakeProvider(BaseDataProvider):
    """Provider double that answers from canned outcomes and records every call.

    Each outcome is a value to return, an exception to raise, or HANG to
    block until cancelled. ``sequences`` gives per-operation outcome lists
    consumed one call at a time.
    """

    def __init__(
        self,
        provider: DataProvider,
        capabilities: Optional[Iterable[Capability]] = None,
        sequences: Optional[Dict[str, List[Any]]] = None,
        **outcomes: Any
    ):
        self.provider = provider
        super().__init__(api_key="test-key")
        self.capabilities = frozenset(capabilities if capabilities is not None else Capability)
        self.outcomes = outcomes
        self.sequences = {key: list(value) for key, value in (sequences or {}).items()}
        self.calls: List[tuple] = []
        self.cancelled = 0
        self.connected = False

    def _get_auth_params(self) -> Dict[str, str]:
        return {}

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    def call_count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    async def _respond(self, operation: str, *args: Any) -> Any:
        self.calls.append((operation,) + args)

        if self.sequences.get(operation):
            outcome = self.sequences[operation].pop(0)
        else:
            outcome = self.outcomes.get(operation)

        if outcome is HANG:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled += 1
                raise
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            raise SymbolNotFoundError(f"{self.name} has no {operation}", self.provider)
        return outcome

    async def fetch_quote(self, symbol):
        return await self._respond("quote", symbol)

    async def fetch_profile(self, symbol):
        return await self._respond("profile", symbol)

    async def fetch_company_news(self, symbol, from_date=None, to_date=None):
        return await self._respond("company_news", symbol, from_date, to_date)

    async def fetch_market_news(self, category="general"):
        return await self._respond("market_news", category)

    async def fetch_time_series(self, symbol, size=None, interval=None):
        return await self._respond("time_series", symbol, size, interval)

    async def search_symbols(self, keywords):
        return await self._respond("search", keywords)

    async def fetch_social_sentiment(self, symbol):
        return await self._respond("social_sentiment", symbol)

    async def fetch_market_status(self):
        return await self._respond("market_status")


def build_quote(source: DataProvider, symbol: str = "AAPL", price: float = 150.0, **kwargs) -> Quote:
    fields = dict(open=148.0, high=151.0, low=147.0, previous_close=148.0, volume=1_000_000)
    fields.update(kwargs)
    return Quote(symbol=symbol, price=price, source=source, **fields)


def build_profile(source: DataProvider, symbol: str = "AAPL") -> Profile:
    return Profile(symbol=symbol, company_name="Apple Inc", exchange="NASDAQ", source=source)


def build_bar(day: int, close: float = 100.0) -> Bar:
    return Bar(
        date=datetime(2024, 1, day, tzinfo=timezone.utc),
        open=close - 1,
        high=close + 2,
        low=close - 2,
        close=close,
        volume=1000 * day,
        interval=BarInterval.DAILY
    )


def build_article(source: DataProvider, article_id: str = "1", title: str = "Apple ships new iPhone") -> NewsArticle:
    return NewsArticle(
        id=article_id,
        title=title,
        source="Reuters",
        source_url=f"https://example.com/{article_id}",
        published_at=datetime(2024, 1, 2, tzinfo=timezone.utc),
        provider=source
    )


def build_match(source: DataProvider, symbol: str = "AAPL") -> SymbolMatch:
    return SymbolMatch(symbol=symbol, name="Apple Inc", source=source)


@pytest.fixture
def make_provider():
    """Factory for FakeProvider instances."""
    return FakeProvider


@pytest.fixture
def make_quote():
    return build_quote


@pytest.fixture
def make_profile():
    return build_profile


@pytest.fixture
def make_bar():
    return build_bar


@pytest.fixture
def make_article():
    return build_article


@pytest.fixture
def make_match():
    return build_match


@pytest.fixture
def test_settings():
    """Settings with short timeouts and no retries, independent of the environment."""
    return Settings(
        _env_file=None,
        provider_timeout=0.2,
        max_retries=0,
        retry_backoff_base=0,
        retry_backoff_max=0,
        health_check_symbol="AAPL",
        quote_priority=None,
        profile_priority=None,
        time_series_priority=None,
        search_priority=None,
        company_news_priority=None,
        market_news_priority=None
    )
