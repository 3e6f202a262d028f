"""
Pydantic schemas for Market Data Aggregator Service.
Uses shared models for consistency across services.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from shared_models.market_data import (
    Bar, BarInterval, NewsArticle, OutputSize, SortOrder, SymbolMatch, utc_now,
)


class HealthResponse(BaseModel):
    """Model for the liveness endpoint."""
    status: Literal["healthy", "unhealthy"] = Field(..., description="Service status")
    timestamp: datetime = Field(default_factory=utc_now, description="Health check timestamp")
    version: str = Field(..., description="Service version")
    uptime_seconds: float = Field(..., description="Service uptime in seconds")
    providers: List[str] = Field(default_factory=list, description="Configured data providers")


class ErrorResponse(BaseModel):
    """Model for error responses."""
    error: str = Field(..., description="Error message")
    error_code: str = Field(..., description="Error code")
    timestamp: datetime = Field(default_factory=utc_now, description="Error timestamp")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")


class TimeSeriesResponse(BaseModel):
    """Model for time series responses."""
    symbol: str = Field(..., description="Requested symbol")
    interval: BarInterval = Field(..., description="Bar interval")
    size: OutputSize = Field(..., description="Requested output size")
    order: SortOrder = Field(..., description="Direction of the bar sequence")
    bars: List[Bar] = Field(default_factory=list, description="OHLCV bars")
    total: int = Field(..., description="Number of bars")


class SearchResponse(BaseModel):
    """Model for symbol search responses."""
    keywords: str = Field(..., description="Search keywords")
    matches: List[SymbolMatch] = Field(default_factory=list, description="Matching symbols")
    total: int = Field(..., description="Number of matches")


class NewsResponse(BaseModel):
    """Model for news responses."""
    articles: List[NewsArticle] = Field(default_factory=list, description="News articles")
    total: int = Field(..., description="Number of articles")
    symbol: Optional[str] = Field(None, description="Symbol for company news")
    category: Optional[str] = Field(None, description="Category for market news")
    from_date: Optional[date] = Field(None, description="Start of the requested range")
    to_date: Optional[date] = Field(None, description="End of the requested range")
