"""
Market Data Aggregator Service
Normalizes market data from multiple providers behind one interface, with
priority fallback, concurrent fan-out and provider health probing.
"""

__version__ = "1.0.0"
__author__ = "Market Data Aggregator Team"
__description__ = "Multi-provider market data aggregation with fallback and health probing"
