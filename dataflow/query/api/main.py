"""
Query API

FastAPI read-model service for the synchronized chart and ticker board.

HTTP Endpoints:
- GET  /              - Health check
- GET  /health        - Detailed health status
- POST /select        - Switch the chart to a symbol/interval
- GET  /chart         - Current candle window with loading/error flags
- GET  /tickers       - Coalesced ticker board
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel
import uvicorn

from dataflow.feeds import MarketFeed, build_feed
from engine.config.loader import ConfigLoader, SyncConfig, DEFAULT_CONFIG_PATH
from engine.runtime.lifecycle import ChartSubscriptionManager, ChartView
from engine.runtime.tickers import TickerAggregator
from schemas.market_data import Candle, Ticker

logger = logging.getLogger(__name__)


# Request/response models (Pydantic)
class SelectRequest(BaseModel):
    """Chart selection"""
    symbol: str
    interval: str


class SelectResponse(BaseModel):
    symbol: str
    interval: str
    generation: int


class CandleResponse(BaseModel):
    """Single candle response"""
    bucket_start_time: int  # epoch ms
    open: float
    high: float
    low: float
    close: float
    volume: float
    is_closed: bool


class ErrorResponse(BaseModel):
    message: str
    reason: str


class ChartResponse(BaseModel):
    """Current chart read model"""
    symbol: str
    interval: str
    generation: int
    is_loading: bool
    error: Optional[ErrorResponse]
    is_stale: bool
    stream_state: str
    change_percent: Optional[float]
    count: int
    candles: list[CandleResponse]


class TickerResponse(BaseModel):
    symbol: str
    last_price: float
    price_change_percent: float
    updated_at: int


class TickersResponse(BaseModel):
    is_loading: bool
    count: int
    tickers: Dict[str, TickerResponse]


def _candle_response(candle: Candle) -> CandleResponse:
    return CandleResponse(
        bucket_start_time=candle.bucket_start_time,
        open=float(candle.open),
        high=float(candle.high),
        low=float(candle.low),
        close=float(candle.close),
        volume=float(candle.volume),
        is_closed=candle.is_closed,
    )


def _chart_response(view: ChartView) -> ChartResponse:
    change = view.series.change_percent
    return ChartResponse(
        symbol=view.symbol,
        interval=view.interval,
        generation=view.generation,
        is_loading=view.is_loading,
        error=(
            ErrorResponse(message=str(view.error), reason=view.error.reason)
            if view.error is not None else None
        ),
        is_stale=view.is_stale,
        stream_state=view.stream_state.value,
        change_percent=float(change) if change is not None else None,
        count=len(view.series),
        candles=[_candle_response(c) for c in view.series],
    )


def _ticker_response(ticker: Ticker) -> TickerResponse:
    return TickerResponse(
        symbol=ticker.symbol,
        last_price=float(ticker.last_price),
        price_change_percent=float(ticker.price_change_percent),
        updated_at=ticker.updated_at,
    )


def create_app(
    config: Optional[SyncConfig] = None,
    feed_factory: Callable[[SyncConfig], MarketFeed] = build_feed,
) -> FastAPI:
    """
    Build the API application.

    Args:
        config: Sync configuration (defaults to CONFIG_PATH plus env overrides)
        feed_factory: Creates the market feed from the config
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler for feed, chart and tickers"""
        logger.info("Starting Query API...")

        cfg = config
        if cfg is None:
            path = Path(os.getenv("CONFIG_PATH", str(DEFAULT_CONFIG_PATH)))
            cfg = SyncConfig.from_env(ConfigLoader(path).load())

        feed = feed_factory(cfg)
        backoff = cfg.backoff.to_policy()
        manager = ChartSubscriptionManager(
            feed,
            capacity=cfg.chart.capacity,
            snapshot_limit=cfg.snapshot.limit,
            snapshot_timeout=cfg.snapshot.timeout,
            backoff=backoff,
            fallback_poll_interval=cfg.chart.fallback_poll_interval,
        )
        tickers = TickerAggregator(
            feed,
            cfg.tickers.symbols,
            coalesce_interval=cfg.tickers.coalesce_interval,
            backoff=backoff,
        )

        app.state.config = cfg
        app.state.feed = feed
        app.state.manager = manager
        app.state.tickers = tickers

        manager.select(cfg.chart.symbol, cfg.chart.interval)
        tickers.start()

        yield

        # Shutdown
        await manager.aclose()
        await tickers.aclose()
        await feed.close()
        logger.info("Query API shutdown complete")

    app = FastAPI(
        title="Market Sync - Query API",
        description="Live candle window and ticker board",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.get("/")
    async def root():
        """Health check endpoint"""
        return {
            "status": "running",
            "service": "query-api",
            "timestamp": datetime.now().isoformat(),
        }

    @app.get("/health")
    async def health(request: Request):
        """Detailed health status"""
        manager: ChartSubscriptionManager = request.app.state.manager
        tickers: TickerAggregator = request.app.state.tickers
        view = manager.view
        return {
            "status": "degraded" if view is not None and view.is_stale else "healthy",
            "service": "query-api",
            "feed": request.app.state.feed.name,
            "chart": manager.get_metrics(),
            "tickers_loading": tickers.is_loading,
            "timestamp": datetime.now().isoformat(),
        }

    @app.post("/select", status_code=202)
    async def select(request: Request, body: SelectRequest) -> SelectResponse:
        """
        Switch the chart selection.

        Returns immediately; the new window fills in as the snapshot and
        stream arrive (poll GET /chart).

        Raises:
            400: Invalid interval or symbol
            503: Chart manager closed
        """
        manager: ChartSubscriptionManager = request.app.state.manager
        try:
            handle = manager.select(body.symbol, body.interval)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except RuntimeError as e:
            raise HTTPException(status_code=503, detail=str(e))

        return SelectResponse(
            symbol=handle.symbol,
            interval=handle.interval,
            generation=handle.generation,
        )

    @app.get("/chart")
    async def chart(request: Request) -> ChartResponse:
        """
        Current chart window.

        Raises:
            503: No active selection
        """
        view = request.app.state.manager.view
        if view is None:
            raise HTTPException(status_code=503, detail="No active chart selection")
        return _chart_response(view)

    @app.get("/tickers")
    async def get_tickers(request: Request) -> TickersResponse:
        """Latest published ticker board"""
        tickers: TickerAggregator = request.app.state.tickers
        board = tickers.tickers
        return TickersResponse(
            is_loading=tickers.is_loading,
            count=len(board),
            tickers={symbol: _ticker_response(t) for symbol, t in board.items()},
        )

    return app


app = create_app()


if __name__ == "__main__":
    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    port = int(os.getenv("PORT", "8001"))
    host = os.getenv("HOST", "0.0.0.0")

    logger.info(f"Starting Query API on {host}:{port}")

    uvicorn.run(app, host=host, port=port)
