from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import RedirectResponse

from cryptopulse.config import load_settings
from cryptopulse.config.logging import configure_logging
from cryptopulse.dashboard import repository
from cryptopulse.dashboard.schemas import (
    CommandResponse,
    MoversResponse,
    PageResponse,
    SeriesResponse,
    StatusResponse,
)
from cryptopulse.orchestration.context import AlreadyRunning, AppContext, build_context


def create_app(context: Optional[AppContext] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = context or build_context()
        app.state.context = ctx
        await ctx.initialize()
        try:
            yield
        finally:
            await ctx.aclose()

    app = FastAPI(title="CryptoPulse", lifespan=lifespan)

    def get_context(request: Request) -> AppContext:
        return request.app.state.context

    @app.get("/")
    def index() -> RedirectResponse:
        return RedirectResponse(url="/docs")

    @app.get("/status", response_model=StatusResponse)
    async def read_status(ctx: AppContext = Depends(get_context)):
        return await repository.fetch_status(ctx)

    @app.get("/prices", response_model=PageResponse)
    async def read_prices(
        page: int = Query(1, ge=1),
        page_size: int = Query(500, ge=1, le=5000),
        ctx: AppContext = Depends(get_context),
    ):
        return await repository.fetch_page(ctx, page, page_size)

    @app.get("/series/{asset_id}", response_model=SeriesResponse)
    async def read_series(
        asset_id: str,
        limit: int = Query(500, ge=1, le=5000),
        ctx: AppContext = Depends(get_context),
    ):
        return await repository.fetch_series(ctx, asset_id, limit)

    @app.get("/movers", response_model=MoversResponse)
    async def read_movers(
        window_hours: float = Query(24.0, gt=0),
        limit: int = Query(20, ge=1, le=200),
        ctx: AppContext = Depends(get_context),
    ):
        return await repository.fetch_movers(ctx, window_hours, limit)

    @app.post("/seed", response_model=CommandResponse, status_code=202)
    async def start_seed(
        target_rows: Optional[int] = Query(None, ge=0),
        clear_first: bool = Query(True),
        ctx: AppContext = Depends(get_context),
    ):
        try:
            ctx.start_seed(target_rows=target_rows, clear_first=clear_first)
        except AlreadyRunning as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return CommandResponse(accepted=True, status=ctx.ingestion.status)

    @app.post("/seed/cancel", response_model=CommandResponse)
    async def cancel_seed(ctx: AppContext = Depends(get_context)):
        accepted = ctx.cancel_seed()
        return CommandResponse(accepted=accepted, status=ctx.ingestion.status)

    @app.post("/live/start", response_model=CommandResponse)
    async def start_live(ctx: AppContext = Depends(get_context)):
        accepted = ctx.live.start()
        return CommandResponse(accepted=accepted, status=ctx.live.status)

    @app.post("/live/stop", response_model=CommandResponse)
    async def stop_live(ctx: AppContext = Depends(get_context)):
        accepted = ctx.live.running
        await ctx.live.stop()
        return CommandResponse(accepted=accepted, status=ctx.live.status)

    return app


def main(host: Optional[str] = None, port: Optional[int] = None) -> None:
    settings = load_settings()
    configure_logging(settings.get("logging", "level", default="INFO"))
    uvicorn.run(
        create_app(build_context(settings)),
        host=host or settings.get("dashboard", "host", default="127.0.0.1"),
        port=int(port or settings.get("dashboard", "port", default=8081)),
    )


if __name__ == "__main__":
    main()
