"""
Health probe for Market Data Aggregator.
Runs one representative request against every provider concurrently and
scores overall availability.
"""

import asyncio
import time
from typing import Iterable, List

from shared_models.market_data import HealthReport, HealthStatus, ProviderHealth
from ..core.logging_config import create_logger
from ..providers.base import BaseDataProvider, ProviderError

logger = create_logger(__name__)


class HealthProbe:
    """Probe every provider in parallel; never raises to its caller."""

    def __init__(self, providers: Iterable[BaseDataProvider], symbol: str = "AAPL", timeout: float = 12.0):
        self.providers: List[BaseDataProvider] = list(providers)
        self.symbol = symbol
        self.timeout = timeout

    async def run(self) -> HealthReport:
        """
        Probe all providers and build a report.

        Each probe is bounded by the timeout, so the round takes at most
        one timeout regardless of how many providers hang.
        """
        outcomes = await asyncio.gather(*(self._probe(provider) for provider in self.providers))
        report = HealthReport.from_results({
            provider.provider: outcome for provider, outcome in zip(self.providers, outcomes)
        })

        logger.info("Provider health probe completed", extra={
            "success_count": report.success_count,
            "total_providers": report.total_providers,
            "score": report.score
        })
        return report

    async def _probe(self, provider: BaseDataProvider) -> ProviderHealth:
        started = time.perf_counter()
        try:
            data = await asyncio.wait_for(provider.probe(self.symbol), timeout=self.timeout)
        except asyncio.TimeoutError:
            message = f"Timed out after {self.timeout:g}s"
        except ProviderError as e:
            message = e.message
        except Exception as e:
            logger.error("Unexpected error probing provider", extra={
                "provider": provider.name,
                "error": str(e)
            })
            message = f"Unexpected error: {str(e)}"
        else:
            return ProviderHealth(
                status=HealthStatus.SUCCESS,
                message=f"{provider.name} is working",
                data=data,
                latency_ms=_elapsed_ms(started)
            )

        logger.warning("Provider health probe failed", extra={
            "provider": provider.name,
            "error": message
        })
        return ProviderHealth(
            status=HealthStatus.ERROR,
            message=message,
            latency_ms=_elapsed_ms(started)
        )


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)
