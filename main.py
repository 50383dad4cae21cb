# Price Service Client - Demo Runner
# Streams price updates for the configured feeds until interrupted

"""
Price Service Client Runner

Flow:
Config → HTTP snapshot of latest prices → WebSocket subscription → logged updates

Usage:
    python main.py                     # uses config/config.yaml if present
    PRICE_SERVICE_ENDPOINT=... python main.py
"""

import asyncio
import signal
import sys
from pathlib import Path

import aiohttp

from price_service.client import PriceServiceConnection
from price_service.config import build_connection_config, load_config, validate_config
from price_service.exceptions import PriceServiceError
from price_service.processors.price_feed import PriceFeed
from price_service.utils.logger import set_level, setup_logger

# Global flag for shutdown
shutdown_event = asyncio.Event()


class PriceStreamRunner:
    """
    Main application class - wires the connection to logging output
    """

    def __init__(self, config: dict):
        logging_config = config.get('logging') or {}
        self.logger = setup_logger(
            "PriceStream",
            logging_config.get('level', 'INFO'),
            logging_config.get('file')
        )
        self.price_ids = config.get('price_ids', [])
        self.stats_interval = config.get('stats_interval', 60)
        self.connection = PriceServiceConnection(
            config['endpoint'],
            build_connection_config(config, logger=self.logger)
        )
        self.connection.on_ws_error = self.on_error
        self.update_count = 0

    def on_price_update(self, price_feed: PriceFeed):
        """Called for every streamed update"""
        self.update_count += 1
        price = price_feed.price
        if price is None:
            self.logger.info(f"📨 {price_feed.id[:8]}… update without price")
            return
        self.logger.info(
            f"📨 {price_feed.id[:8]}… price={price.get_price_as_number():.6f} "
            f"±{price.get_conf_as_number():.6f} t={price.publish_time}"
        )

    def on_error(self, error: Exception):
        """Streaming errors are logged; the connection recovers by itself"""
        self.logger.warning(f"Stream error: {error!r}")

    async def print_snapshot(self):
        """Log the current prices fetched over HTTP"""
        try:
            feeds = await self.connection.get_latest_price_feeds(self.price_ids)
        except (PriceServiceError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.error(f"Snapshot request failed: {e}")
            return

        for feed in feeds:
            if feed.price is not None:
                self.logger.info(
                    f"Snapshot {feed.id[:8]}… price={feed.price.get_price_as_number():.6f}"
                )

    async def stats_reporter(self):
        """Periodic stats output"""
        while not shutdown_event.is_set():
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.stats_interval)
                break
            except asyncio.TimeoutError:
                pass

            subscriptions = self.connection.subscriptions
            if subscriptions is None:
                continue
            ws_stats = subscriptions.websocket_client.get_stats()
            self.logger.info(
                f"📊 updates={self.update_count} state={ws_stats['state']} "
                f"reconnects={ws_stats['reconnects']} errors={ws_stats['errors']}"
            )

    async def run(self):
        """Run until shutdown_event is set"""
        self.logger.info(f"Streaming {len(self.price_ids)} price feeds")
        try:
            await self.print_snapshot()
            await self.connection.subscribe_price_feed_updates(
                self.price_ids, self.on_price_update
            )
            await self.stats_reporter()
        finally:
            await self.connection.close()
            self.logger.info(f"✅ Stopped after {self.update_count} updates")


def handle_shutdown(signum=None, frame=None):
    """Handle shutdown signals"""
    print("\n🛑 Received shutdown signal")
    shutdown_event.set()


async def main():
    """Main entry point"""
    logger = setup_logger("Main", "INFO")

    project_root = Path(__file__).parent
    logger.info("Loading configuration...")
    config = load_config(
        project_root / "config" / "config.yaml",
        project_root / "config" / "secrets.env"
    )

    is_valid, errors = validate_config(config)
    if not is_valid:
        logger.error("❌ Configuration validation failed:")
        for error in errors:
            logger.error(f"  - {error}")
        return 1

    if not config.get('price_ids'):
        logger.error("❌ No price_ids configured!")
        logger.info("Add feed ids to config/config.yaml")
        return 1

    set_level((config.get('logging') or {}).get('level', 'INFO'))

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handle_shutdown)
        except NotImplementedError:
            signal.signal(sig, handle_shutdown)

    runner = PriceStreamRunner(config)
    await runner.run()
    return 0


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\n👋 Goodbye!")
