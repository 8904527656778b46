from __future__ import annotations

import math
from datetime import timedelta
from typing import Any, Dict, Optional

from cryptopulse.orchestration.context import AppContext
from cryptopulse.services.analysis import MoverRow
from cryptopulse.services.ingestion import SeedResult, TickReport
from cryptopulse.services.ingestion.providers import PricePoint


def _point(point: PricePoint) -> Dict[str, Any]:
    return {"asset_id": point.asset_id, "timestamp": point.timestamp, "price": point.price}


def _mover(row: MoverRow) -> Dict[str, Any]:
    return {
        "asset_id": row.asset_id,
        "start_price": row.start_price,
        "end_price": row.end_price,
        "change_pct": row.change_pct,
    }


def _tick(report: Optional[TickReport]) -> Optional[Dict[str, Any]]:
    if report is None:
        return None
    return {
        "started_at": report.started_at,
        "updated": list(report.updated),
        "failures": dict(report.failures),
        "degraded": report.degraded,
    }


def _seed(result: Optional[SeedResult]) -> Optional[Dict[str, Any]]:
    if result is None:
        return None
    return {
        "rows_written": result.rows_written,
        "assets": len(result.assets),
        "failures": dict(result.failures),
        "stopped_early": result.stopped_early,
    }


async def fetch_status(context: AppContext) -> Dict[str, Any]:
    return {
        "row_count": await context.repository.count(),
        "seed_status": context.ingestion.status,
        "seed_running": context.seed_guard.busy,
        "seed_progress": context.seed_progress,
        "live_status": context.live.status,
        "live_running": context.live.running,
        "last_tick": _tick(context.live.last_report),
        "last_seed": _seed(context.last_seed),
    }


async def fetch_page(context: AppContext, page: int, page_size: int) -> Dict[str, Any]:
    total = await context.repository.count()
    rows = await context.repository.page(page_size, page - 1)
    return {
        "page": page,
        "page_size": page_size,
        "total_rows": total,
        "total_pages": max(1, math.ceil(total / page_size)),
        "rows": [_point(p) for p in rows],
    }


async def fetch_series(context: AppContext, asset_id: str, limit: int) -> Dict[str, Any]:
    points = await context.repository.latest_series(asset_id, limit)
    return {"asset_id": asset_id, "points": [_point(p) for p in points]}


async def fetch_movers(context: AppContext, window_hours: float, limit: int) -> Dict[str, Any]:
    movers = await context.analysis.compute(timedelta(hours=window_hours), limit)
    return {"window_hours": window_hours, "movers": [_mover(row) for row in movers]}
