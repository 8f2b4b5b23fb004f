"""Main application entry point."""

import asyncio
import signal
import sys
from typing import Optional

from dotenv import load_dotenv

from .config import AppSettings, ConfigLoader, ConfigurationError, load_config_from_env
from .core import SyncService
from .utils.logging import setup_logging, get_logger


class StockSyncApp:
    """Process wrapper around the sync service."""

    def __init__(self, settings: AppSettings):
        self.settings = settings
        self.logger = get_logger("StockSync")
        self.running = False
        self.service: Optional[SyncService] = None

    async def startup(self):
        self.logger.info(
            "Starting stock sync",
            version=self.settings.version,
            environment=self.settings.environment
        )
        for warning in ConfigLoader().validate(self.settings):
            self.logger.warning("Configuration warning", detail=warning)

        self.service = SyncService(self.settings)
        auto_sync = await self.service.start()

        self.running = True
        self.logger.info("Stock sync started", auto_sync=auto_sync)

    async def shutdown(self):
        self.logger.info("Shutting down stock sync")
        self.running = False
        if self.service:
            await self.service.stop()
        self.logger.info("Stock sync stopped")

    async def run(self):
        """Run until a shutdown signal arrives."""
        await self.startup()
        try:
            while self.running:
                await asyncio.sleep(1)
        finally:
            await self.shutdown()


def setup_signal_handlers(app: StockSyncApp):
    """Set up signal handlers for graceful shutdown."""
    def signal_handler(signum, frame):
        app.logger.info("Received signal", signal=signum)
        app.running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


async def main():
    """Main entry point."""
    load_dotenv()
    settings = load_config_from_env()
    setup_logging(settings.logging)

    logger = get_logger("main")
    logger.info("Initializing stock sync application")

    app = StockSyncApp(settings)
    setup_signal_handlers(app)
    await app.run()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
        sys.exit(0)
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        sys.exit(2)
    except Exception as e:
        print(f"Application failed with error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()
