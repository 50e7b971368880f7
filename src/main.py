"""
Main entry point for the image reflector.

Wires the stores, registry client, reconciler, controller and HTTP API
together and runs them until a shutdown signal arrives.
"""

import asyncio
import logging
import os
import signal
from typing import Optional

from api import APIServer, create_app
from config import get_config
from controller import Controller, ControllerConfig
from db import DatabaseManager
from events import EventBus
from reconciler import ImageRepositoryReconciler
from registry import RegistryGateway
from registry_client import RegistryClient

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the controller and the API."""

    def __init__(self):
        self.config = get_config()
        self.db: Optional[DatabaseManager] = None
        self.registry_client: Optional[RegistryClient] = None
        self.controller: Optional[Controller] = None
        self.event_bus: Optional[EventBus] = None
        self.api_server: Optional[APIServer] = None
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing image reflector")

        # Initialize database
        db_config = self.config.database
        self.db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
        )
        await self.db.connect()
        await self.db.initialize_schema()
        logger.info("Database initialized")

        self.event_bus = EventBus()

        registry_config = self.config.registry
        self.registry_client = RegistryClient(
            insecure_registries=registry_config.insecure_registries,
            page_size=registry_config.page_size,
            user_agent=registry_config.user_agent,
        )
        await self.registry_client.connect()

        ctrl_config = self.config.controller
        reconciler = ImageRepositoryReconciler(
            records=self.db,
            secrets=self.db,
            tags=self.db,
            gateway=RegistryGateway(self.registry_client, ctrl_config.scan_timeout),
            event_bus=self.event_bus,
            scan_timeout=ctrl_config.scan_timeout,
            default_scan_interval=ctrl_config.default_scan_interval,
        )

        self.controller = Controller(
            reconciler=reconciler,
            records=self.db,
            config=ControllerConfig(
                max_concurrent_reconciles=ctrl_config.max_concurrent_reconciles,
                resync_interval=ctrl_config.resync_interval,
                backoff_base_delay=ctrl_config.backoff_base_delay,
                backoff_max_delay=ctrl_config.backoff_max_delay,
                backoff_jitter_factor=ctrl_config.backoff_jitter_factor,
            ),
        )

        api_config = self.config.api
        self.api_server = APIServer(
            create_app(self.db, self.event_bus, self.controller),
            host=api_config.host,
            port=api_config.port,
        )

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting image reflector")

        tasks = [
            asyncio.create_task(self.controller.start()),
            asyncio.create_task(self.api_server.start()),
        ]

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping image reflector")
        self.running = False

        if self.api_server:
            await self.api_server.stop()

        if self.controller:
            await self.controller.stop()

        if self.registry_client:
            await self.registry_client.close()

        if self.db:
            await self.db.close()

        logger.info("Image reflector stopped")


async def main():
    """Main entry point."""
    app = Application()

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


if __name__ == "__main__":
    asyncio.run(main())
