"""Analytics derived from stored price points."""

from .movers import MoverAnalysisService, MoverRow, top_movers

__all__ = ["MoverAnalysisService", "MoverRow", "top_movers"]
