"""Provider interfaces for ingestion services."""

from .market import (
    AuthError,
    CoinGeckoMarketProvider,
    FetchError,
    FetchRange,
    MarketDataError,
    MarketDataProvider,
    PricePoint,
    RateLimitError,
    chunk_ranges,
    chunk_width,
)

__all__ = [
    "AuthError",
    "CoinGeckoMarketProvider",
    "FetchError",
    "FetchRange",
    "MarketDataError",
    "MarketDataProvider",
    "PricePoint",
    "RateLimitError",
    "chunk_ranges",
    "chunk_width",
]
