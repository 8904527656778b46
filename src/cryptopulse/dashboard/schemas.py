from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel


class PricePointRecord(BaseModel):
    asset_id: str
    timestamp: datetime
    price: Decimal


class MoverRecord(BaseModel):
    asset_id: str
    start_price: Decimal
    end_price: Decimal
    change_pct: Decimal


class TickSummary(BaseModel):
    started_at: datetime
    updated: List[str]
    failures: Dict[str, str]
    degraded: bool


class SeedSummary(BaseModel):
    rows_written: int
    assets: int
    failures: Dict[str, str]
    stopped_early: bool


class StatusResponse(BaseModel):
    row_count: int
    seed_status: str
    seed_running: bool
    seed_progress: float
    live_status: str
    live_running: bool
    last_tick: Optional[TickSummary] = None
    last_seed: Optional[SeedSummary] = None


class PageResponse(BaseModel):
    page: int
    page_size: int
    total_rows: int
    total_pages: int
    rows: List[PricePointRecord]


class SeriesResponse(BaseModel):
    asset_id: str
    points: List[PricePointRecord]


class MoversResponse(BaseModel):
    window_hours: float
    movers: List[MoverRecord]


class CommandResponse(BaseModel):
    accepted: bool
    status: str
