"""
Market Sync - Main Entry Point

Follows one chart selection and the ticker board from the configured feed
and periodically logs what a consumer would see.
"""

import asyncio
import logging
import os
from pathlib import Path

from dataflow.feeds import build_feed
from engine.config.loader import ConfigLoader, SyncConfig, DEFAULT_CONFIG_PATH
from engine.runtime.lifecycle import ChartSubscriptionManager
from engine.runtime.tickers import TickerAggregator

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def main():
    """
    Main entry point for market sync.

    Environment Variables:
        CONFIG_PATH: YAML config path (default: "config/market_sync.yaml")
        SYMBOL: Chart symbol (default: chart.symbol from config)
        INTERVAL: Chart interval (default: chart.interval from config)
        LOG_EVERY: Seconds between status lines (default: 10)
    """
    config_path = Path(os.getenv("CONFIG_PATH", str(DEFAULT_CONFIG_PATH)))
    config = SyncConfig.from_env(ConfigLoader(config_path).load())

    symbol = os.getenv("SYMBOL", config.chart.symbol)
    interval = os.getenv("INTERVAL", config.chart.interval)
    log_every = float(os.getenv("LOG_EVERY", "10"))

    logger.info("=" * 60)
    logger.info("Market Sync Starting")
    logger.info("=" * 60)
    logger.info(f"Feed: {config.feed}")
    logger.info(f"Chart: {symbol} {interval} (capacity {config.chart.capacity})")
    logger.info(f"Tickers: {', '.join(config.tickers.symbols)}")

    feed = build_feed(config)
    backoff = config.backoff.to_policy()
    manager = ChartSubscriptionManager(
        feed,
        capacity=config.chart.capacity,
        snapshot_limit=config.snapshot.limit,
        snapshot_timeout=config.snapshot.timeout,
        backoff=backoff,
        fallback_poll_interval=config.chart.fallback_poll_interval,
    )
    tickers = TickerAggregator(
        feed,
        config.tickers.symbols,
        coalesce_interval=config.tickers.coalesce_interval,
        backoff=backoff,
    )

    try:
        manager.select(symbol, interval)
        tickers.start()

        logger.info("Press Ctrl+C to stop")

        while True:
            await asyncio.sleep(log_every)

            view = manager.view
            if view is None:
                continue
            last = view.series.last
            logger.info(
                f"Chart [{view.symbol} {view.interval}]: "
                f"{len(view.series)} candles, "
                f"last close {last.close if last else '-'}, "
                f"stream {view.stream_state.value}"
                f"{', loading' if view.is_loading else ''}"
                f"{', STALE' if view.is_stale else ''}"
                f"{f', error: {view.error}' if view.error else ''}"
            )
            logger.info(
                f"Tickers: {len(tickers.tickers)}/{len(tickers.symbols)} published"
                f"{' (loading)' if tickers.is_loading else ''}"
            )

    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        raise
    finally:
        await manager.aclose()
        await tickers.aclose()
        await feed.close()
        logger.info("Market sync stopped")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Shutting down...")
