"""Top mover analytics over trailing windows."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, List, Mapping, Optional, Sequence

if TYPE_CHECKING:
    from cryptopulse.services.ingestion.providers.market import PricePoint
    from cryptopulse.services.ingestion.repositories import PriceRepository

HUNDRED = Decimal(100)


@dataclass(frozen=True)
class MoverRow:
    asset_id: str
    start_price: Decimal
    end_price: Decimal
    change_pct: Decimal


def top_movers(
    snapshot: Mapping[str, Sequence["PricePoint"]],
    window: timedelta,
    limit: int = 20,
    now: Optional[datetime] = None,
) -> List[MoverRow]:
    """Rank assets by absolute percentage change over ``window``.

    The end price is the latest point of each series.  The start price is the
    first earlier point inside the window, or the earliest point when only the
    latest point falls inside it.  Series with fewer than two points are skipped.
    """
    cutoff = (now or datetime.now(timezone.utc)) - window
    rows: List[MoverRow] = []
    for asset_id, points in snapshot.items():
        if len(points) < 2:
            continue
        last = points[-1]
        first = next((p for p in points[:-1] if p.timestamp >= cutoff), points[0])
        start, end = first.price, last.price
        change = Decimal(0) if start == 0 else (end - start) / start * HUNDRED
        rows.append(MoverRow(asset_id, start, end, change))

    # sorted() is stable, so equal moves keep snapshot order
    rows = sorted(rows, key=lambda row: abs(row.change_pct), reverse=True)
    return rows[: max(0, limit)]


class MoverAnalysisService:
    """Reads a fresh snapshot from the store and ranks its movers."""

    def __init__(self, repository: "PriceRepository", *, default_limit: int = 20):
        self.repository = repository
        self.default_limit = default_limit

    async def compute(self, window: timedelta, limit: Optional[int] = None) -> List[MoverRow]:
        now = datetime.now(timezone.utc)
        snapshot = await self.repository.snapshot(window, now=now)
        return top_movers(snapshot, window, self.default_limit if limit is None else limit, now=now)


__all__ = ["MoverAnalysisService", "MoverRow", "top_movers"]
