"""Tests for settings and provider configuration."""

import logging

import pytest
from pydantic import ValidationError

from market_data_aggregator.core.config import ProviderConfig, Settings
from market_data_aggregator.core.logging_config import (
    build_logging_config, create_logger, setup_logging,
)


class TestSettings:
    """Tests for Settings."""

    def test_default_priorities(self) -> None:
        """Test operations fall back to the built-in provider order."""
        settings = Settings(_env_file=None, quote_priority=None, profile_priority=None)
        assert settings.get_priority("quote") == ["alpha_vantage", "finnhub", "polygon"]
        assert settings.get_priority("profile") == ["finnhub", "polygon", "alpha_vantage"]
        assert settings.get_priority("market_status") == ["polygon"]

    def test_priority_override_is_normalized(self) -> None:
        """Test comma-separated overrides are trimmed and lower-cased."""
        settings = Settings(_env_file=None, quote_priority=" Finnhub , polygon ")
        assert settings.get_priority("quote") == ["finnhub", "polygon"]

    def test_unknown_provider_in_priority_rejected(self) -> None:
        """Test priority overrides may only name known providers."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, quote_priority="finnhub,yahoo")

    def test_unknown_operation_uses_all_providers(self) -> None:
        """Test an operation without a default tries every provider."""
        settings = Settings(_env_file=None)
        assert settings.get_priority("something_else") == list(ProviderConfig.PROVIDER_NAMES)

    def test_log_level_is_upper_cased(self) -> None:
        """Test log level is normalized."""
        assert Settings(_env_file=None, log_level="debug").log_level == "DEBUG"

    def test_invalid_log_format_rejected(self) -> None:
        """Test only json and text formats are accepted."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, log_format="xml")

    def test_api_keys_by_provider(self) -> None:
        """Test API keys are exposed by provider name."""
        settings = Settings(
            _env_file=None,
            alpha_vantage_api_key="a",
            finnhub_api_key="f",
            polygon_api_key=None
        )
        assert settings.get_api_keys() == {"alpha_vantage": "a", "finnhub": "f", "polygon": None}


class TestLoggingConfig:
    """Tests for logging configuration."""

    def test_json_config_uses_json_formatter(self) -> None:
        """Test the JSON config wires the python-json-logger formatter."""
        config = build_logging_config("WARNING", "json")
        assert config["handlers"]["console"]["formatter"] == "json"
        assert config["formatters"]["json"]["rename_fields"] == {"asctime": "timestamp", "levelname": "level"}
        assert config["loggers"]["market_data_aggregator"]["level"] == "WARNING"
        assert config["loggers"]["market_data_aggregator"]["propagate"] is False

    def test_text_config_detailed_below_info(self) -> None:
        """Test non-INFO levels use the detailed text format."""
        assert build_logging_config("DEBUG", "text")["handlers"]["console"]["formatter"] == "detailed"
        assert build_logging_config("INFO", "text")["handlers"]["console"]["formatter"] == "standard"

    def test_setup_logging_applies_level(self) -> None:
        """Test the package logger takes the configured level."""
        setup_logging(Settings(_env_file=None, log_level="debug", log_format="text"))
        assert logging.getLogger("market_data_aggregator").level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING
        setup_logging(Settings(_env_file=None))

    def test_create_logger_namespaces_module(self) -> None:
        """Test loggers live under the package namespace."""
        assert create_logger("market_data_aggregator.services.x").name == "market_data_aggregator.services.x"
        assert create_logger("tests").name == "market_data_aggregator.tests"
        assert create_logger("market_data_aggregator_other").name == "market_data_aggregator.market_data_aggregator_other"
        assert isinstance(create_logger("tests"), logging.Logger)
