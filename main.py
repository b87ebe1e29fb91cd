#!/usr/bin/env python3
"""
Main entry point for the knowledge crawler.
"""

import asyncio
import argparse
import logging
import signal
import sys
from typing import Optional

from aiohttp import web

from knowledge_crawler import __version__
from knowledge_crawler.api import create_app
from knowledge_crawler.crawler.controller import CrawlController
from knowledge_crawler.utils.config import load_config, Config, ConfigError
from knowledge_crawler.utils.logger import setup_logging


class CrawlerApp:
    """Main application class for the crawler."""

    def __init__(self, config: Config):
        self.config = config
        self.controller: Optional[CrawlController] = None
        self.logger = logging.getLogger(__name__)
        self._shutdown_event = asyncio.Event()

    def setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self._request_shutdown, signum)

    def _request_shutdown(self, signum):
        self.logger.info(f"Received signal {signum}, initiating shutdown...")
        self._shutdown_event.set()

    async def crawl(self, max_duration: Optional[int] = None) -> int:
        """Seed the queue and run workers until the queue drains."""
        self.setup_signal_handlers()
        self.logger.info("=== KNOWLEDGE CRAWLER STARTING ===")
        self.logger.info(f"Start URL: {self.config.crawler.start_url}")
        self.logger.info(f"Concurrency: {self.config.crawler.concurrency}")
        self.logger.info(f"Database type: {self.config.database.type}")

        try:
            async with CrawlController(self.config) as controller:
                self.controller = controller
                await controller.start_crawl()

                crawl_task = asyncio.create_task(controller.run(max_duration=max_duration))
                shutdown_task = asyncio.create_task(self._shutdown_event.wait())

                done, pending = await asyncio.wait(
                    [crawl_task, shutdown_task],
                    return_when=asyncio.FIRST_COMPLETED
                )

                if shutdown_task in done:
                    self.logger.info("Shutdown requested, waiting for active jobs...")
                    await controller.stop()
                else:
                    shutdown_task.cancel()

                await asyncio.gather(crawl_task, return_exceptions=True)

        except Exception as e:
            self.logger.error(f"Fatal error: {e}", exc_info=True)
            return 1

        finally:
            self.logger.info("=== KNOWLEDGE CRAWLER FINISHED ===")

        return 0

    async def test_storage(self) -> int:
        """Write and read back a synthetic article."""
        try:
            async with CrawlController(self.config) as controller:
                stored = await controller.test_storage()
                self.logger.info(f"Storage test passed: {stored['url']}")
        except Exception as e:
            self.logger.error(f"Storage test failed: {e}", exc_info=True)
            return 1
        return 0

    async def dry_run(self) -> int:
        """Test configuration and connections without crawling."""
        controller = CrawlController(self.config)
        try:
            await controller.initialize()
            self.logger.info("Redis and storage connections successful")

            result = await controller.fetcher.fetch(self.config.crawler.start_url)
            self.logger.info(f"Test fetch successful: {result.status_code} after {result.attempts} attempt(s)")
        except Exception as e:
            self.logger.error(f"Dry run failed: {e}")
            return 1
        finally:
            await controller.close()

        self.logger.info("Dry run completed")
        return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Knowledge site crawler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py crawl                     # Crawl from the start URL until the queue drains
  python main.py crawl --max-duration 3600 # Run for 1 hour max
  python main.py serve                     # Start the HTTP trigger server
  python main.py test-storage              # Write and read back a test article
  python main.py --dry-run                 # Test configuration only
        """
    )

    parser.add_argument(
        '--config',
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )

    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Test configuration and connections without crawling'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'Knowledge Crawler {__version__}'
    )

    subparsers = parser.add_subparsers(dest='command')

    crawl_parser = subparsers.add_parser('crawl', help='Seed the queue and crawl')
    crawl_parser.add_argument(
        '--max-duration',
        type=int,
        help='Maximum crawl duration in seconds'
    )

    subparsers.add_parser('serve', help='Run the HTTP trigger server')
    subparsers.add_parser('test-storage', help='Validate the storage adapter')

    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: invalid configuration: {e}")
        return 1

    setup_logging(config.logging)

    if args.command == 'serve':
        web.run_app(create_app(CrawlController(config)),
                    host=config.api.host, port=config.api.port)
        return 0

    app = CrawlerApp(config)
    try:
        if args.dry_run:
            return asyncio.run(app.dry_run())
        if args.command == 'test-storage':
            return asyncio.run(app.test_storage())
        if args.command == 'crawl':
            return asyncio.run(app.crawl(max_duration=args.max_duration))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 1

    parser.print_help()
    return 1


if __name__ == '__main__':
    sys.exit(main())
