"""
Configuration management for Market Data Aggregator.
Uses pydantic-settings for environment variable management.
"""

from typing import Dict, List, Optional
from pydantic import Field, validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application metadata
    app_name: str = Field(default="Market Data Aggregator")
    app_version: str = Field(default="1.0.0")
    debug: bool = Field(default=False)
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=8001)

    # API keys for data providers; a missing key fails that provider only
    alpha_vantage_api_key: Optional[str] = Field(default=None)
    finnhub_api_key: Optional[str] = Field(default=None)
    polygon_api_key: Optional[str] = Field(default=None)

    # Provider endpoints
    alpha_vantage_base_url: str = Field(default="https://www.alphavantage.co/query")
    finnhub_base_url: str = Field(default="https://finnhub.io/api/v1")
    polygon_base_url: str = Field(default="https://api.polygon.io")

    # Per-request timeouts (in seconds)
    provider_timeout: float = Field(default=12.0, gt=0)
    provider_connect_timeout: float = Field(default=5.0, gt=0)

    # Retry policy for fallback-mode calls
    max_retries: int = Field(default=2, ge=0)
    retry_backoff_base: float = Field(default=0.5, ge=0)
    retry_backoff_max: float = Field(default=8.0, ge=0)

    # Health probe
    health_check_symbol: str = Field(default="AAPL")

    # Logging configuration
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    # Comma-separated provider priority overrides, e.g. "finnhub,alpha_vantage"
    quote_priority: Optional[str] = Field(default=None)
    profile_priority: Optional[str] = Field(default=None)
    time_series_priority: Optional[str] = Field(default=None)
    search_priority: Optional[str] = Field(default=None)
    company_news_priority: Optional[str] = Field(default=None)
    market_news_priority: Optional[str] = Field(default=None)

    @validator('log_level')
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(valid_levels)}")
        return v.upper()

    @validator('log_format')
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        valid_formats = {'json', 'text'}
        if v.lower() not in valid_formats:
            raise ValueError(f"log_format must be one of: {', '.join(valid_formats)}")
        return v.lower()

    @validator(
        'quote_priority', 'profile_priority', 'time_series_priority',
        'search_priority', 'company_news_priority', 'market_news_priority'
    )
    def validate_priority(cls, v: Optional[str]) -> Optional[str]:
        """Validate that a priority override only names known providers."""
        if v is None:
            return v
        names = [name.strip().lower() for name in v.split(',') if name.strip()]
        if not names:
            raise ValueError("priority list cannot be empty")
        unknown = [name for name in names if name not in ProviderConfig.PROVIDER_NAMES]
        if unknown:
            raise ValueError(f"unknown providers in priority list: {', '.join(unknown)}")
        return ','.join(names)

    def get_priority(self, operation: str) -> List[str]:
        """Get the provider priority order for an operation."""
        override = getattr(self, f"{operation}_priority", None)
        if override:
            return override.split(',')
        return list(ProviderConfig.DEFAULT_PRIORITIES.get(operation, ProviderConfig.PROVIDER_NAMES))

    def get_api_keys(self) -> Dict[str, Optional[str]]:
        """Get API keys keyed by provider name."""
        return {
            'alpha_vantage': self.alpha_vantage_api_key,
            'finnhub': self.finnhub_api_key,
            'polygon': self.polygon_api_key,
        }

    class Config:
        """Pydantic configuration."""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


# Provider configuration
class ProviderConfig:
    """Configuration for data providers and their fallback order."""

    PROVIDER_NAMES = ('alpha_vantage', 'finnhub', 'polygon')

    # Fallback order per operation, first entry is the primary provider
    DEFAULT_PRIORITIES = {
        'quote': ('alpha_vantage', 'finnhub', 'polygon'),
        'profile': ('finnhub', 'polygon', 'alpha_vantage'),
        'time_series': ('alpha_vantage', 'finnhub', 'polygon'),
        'search': ('alpha_vantage', 'polygon', 'finnhub'),
        'company_news': ('finnhub', 'polygon', 'alpha_vantage'),
        'market_news': ('finnhub', 'alpha_vantage', 'polygon'),
        'social_sentiment': ('finnhub',),
        'market_status': ('polygon',),
    }

    # Index ETFs used for the market overview
    MARKET_OVERVIEW_INDICES = {
        'spy': 'SPY',
        'qqq': 'QQQ',
        'dia': 'DIA',
    }


provider_config = ProviderConfig()


# Global settings instance
settings = Settings()
