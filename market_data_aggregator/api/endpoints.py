"""
FastAPI endpoints for Market Data Aggregator Service.
Thin routing over DataAggregatorService; provider failures are mapped to
HTTP responses by the exception handlers in main.
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from shared_models.market_data import (
    BarInterval, ComprehensiveRecord, HealthReport, MarketOverview, MarketStatus,
    OutputSize, Profile, Quote, SocialSentiment, SortOrder, utc_now,
)
from ..api.schemas import HealthResponse, NewsResponse, SearchResponse, TimeSeriesResponse
from ..core.logging_config import create_logger
from ..services.data_aggregator import DataAggregatorService

logger = create_logger(__name__)

# Create API router
router = APIRouter()


def get_aggregator(request: Request) -> DataAggregatorService:
    """Aggregator built at startup and stored on the application state."""
    return request.app.state.aggregator


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request, aggregator: DataAggregatorService = Depends(get_aggregator)):
    """
    Liveness check.
    Does not contact providers; use /v1/providers/test for that.
    """
    uptime_seconds = (utc_now() - request.app.state.started_at).total_seconds()

    return HealthResponse(
        status="healthy",
        version=aggregator.settings.app_version,
        uptime_seconds=uptime_seconds,
        providers=[provider.name for provider in aggregator.providers]
    )


@router.get("/v1/quote/{symbol}", response_model=Quote)
async def get_quote(symbol: str, aggregator: DataAggregatorService = Depends(get_aggregator)):
    """Get the latest quote, falling back across providers in priority order."""
    logger.info("Quote request received", extra={"symbol": symbol})
    return await aggregator.get_quote(symbol)


@router.get("/v1/profile/{symbol}", response_model=Profile)
async def get_profile(symbol: str, aggregator: DataAggregatorService = Depends(get_aggregator)):
    """Get company reference data."""
    return await aggregator.get_profile(symbol)


@router.get("/v1/comprehensive/{symbol}", response_model=ComprehensiveRecord)
async def get_comprehensive(symbol: str, aggregator: DataAggregatorService = Depends(get_aggregator)):
    """
    Get every provider's quote and profile side by side.

    Conflicting values are not reconciled; each provider's answer is keyed
    by provider name.
    """
    logger.info("Comprehensive request received", extra={"symbol": symbol})
    return await aggregator.get_comprehensive(symbol)


@router.get("/v1/timeseries/{symbol}", response_model=TimeSeriesResponse)
async def get_time_series(
    symbol: str,
    size: OutputSize = Query(OutputSize.COMPACT, description="compact (latest 100 bars) or full"),
    interval: BarInterval = Query(BarInterval.DAILY, description="Bar interval"),
    order: SortOrder = Query(SortOrder.ASC, description="Date order of the bars"),
    aggregator: DataAggregatorService = Depends(get_aggregator)
):
    """Get historical OHLCV bars."""
    bars = await aggregator.get_time_series(symbol, size=size, interval=interval, order=order)

    return TimeSeriesResponse(
        symbol=symbol.upper(),
        interval=interval,
        size=size,
        order=order,
        bars=bars,
        total=len(bars)
    )


@router.get("/v1/search", response_model=SearchResponse)
async def search_symbols(
    keywords: str = Query(..., min_length=1, description="Free-text search keywords"),
    aggregator: DataAggregatorService = Depends(get_aggregator)
):
    """Search for symbols."""
    try:
        matches = await aggregator.search(keywords)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return SearchResponse(keywords=keywords.strip(), matches=matches, total=len(matches))


@router.get("/v1/news", response_model=NewsResponse)
async def get_market_news(
    category: str = Query("general", description="News category"),
    aggregator: DataAggregatorService = Depends(get_aggregator)
):
    """Get general market news."""
    articles = await aggregator.get_market_news(category)
    return NewsResponse(articles=articles, total=len(articles), category=category)


@router.get("/v1/news/{symbol}", response_model=NewsResponse)
async def get_company_news(
    symbol: str,
    from_date: Optional[date] = Query(None, description="Earliest publication date"),
    to_date: Optional[date] = Query(None, description="Latest publication date"),
    aggregator: DataAggregatorService = Depends(get_aggregator)
):
    """Get news about one company."""
    try:
        articles = await aggregator.get_company_news(symbol, from_date, to_date)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return NewsResponse(
        articles=articles,
        total=len(articles),
        symbol=symbol.upper(),
        from_date=from_date,
        to_date=to_date
    )


@router.get("/v1/sentiment/{symbol}", response_model=SocialSentiment)
async def get_social_sentiment(symbol: str, aggregator: DataAggregatorService = Depends(get_aggregator)):
    """Get Reddit and Twitter sentiment for a symbol."""
    return await aggregator.get_social_sentiment(symbol)


@router.get("/v1/market/status", response_model=MarketStatus)
async def get_market_status(aggregator: DataAggregatorService = Depends(get_aggregator)):
    """Get the current trading session."""
    return await aggregator.get_market_status()


@router.get("/v1/market/overview", response_model=MarketOverview)
async def get_market_overview(aggregator: DataAggregatorService = Depends(get_aggregator)):
    """Get market news plus SPY, QQQ and DIA quotes."""
    return await aggregator.get_market_overview()


@router.get("/v1/providers/test", response_model=HealthReport)
async def test_providers(aggregator: DataAggregatorService = Depends(get_aggregator)):
    """Probe every provider and report a composite availability score."""
    report = await aggregator.test_all_providers()

    logger.info("Provider test completed", extra={
        "score": report.score,
        "success_count": report.success_count
    })
    return report
