"""Ingestion service interfaces."""

from .live import LivePriceService, LiveViews, TickReport
from .market import IngestionCancelled, MarketIngestionService, SeedResult
from .repositories import NotInitializedError, PriceRepository

__all__ = [
    "IngestionCancelled",
    "LivePriceService",
    "LiveViews",
    "MarketIngestionService",
    "NotInitializedError",
    "PriceRepository",
    "SeedResult",
    "TickReport",
]
