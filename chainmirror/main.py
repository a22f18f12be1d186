"""
main.py - Mirror service entry point.

Single-process service combining:
 - SQLite store via StorageManager
 - Remote ledger client (GraphQL over HTTP)
 - Synchronizer running the block and transaction loops
 - Optional read-only status/query API (FastAPI on uvicorn)

Usage:
    python -m chainmirror [--endpoint URL] [--db-path data/chainmirror.db] [--api-port 8081]
    chainmirror --env-file .env --block-start 101900 --no-transactions
"""

import asyncio
import logging
import os
import signal
from typing import Optional

import uvicorn

from chainmirror.api import create_app
from chainmirror.config import SyncConfig, load_config
from chainmirror.ledger_client import LedgerClient
from chainmirror.storage import StorageManager
from chainmirror.synchronizer import Synchronizer

logger = logging.getLogger("main")


class MirrorService:
    """Wires store, client, synchronizer and API from one SyncConfig."""

    def __init__(self, config: SyncConfig):
        self.config = config
        self.storage: Optional[StorageManager] = None
        self.client: Optional[LedgerClient] = None
        self.synchronizer: Optional[Synchronizer] = None
        self._uvicorn_server: Optional[uvicorn.Server] = None
        self._api_task: Optional[asyncio.Task] = None

    async def start(self):
        """Open the store, start the client, the loops and the API."""
        db_dir = os.path.dirname(self.config.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        # Store failures at startup are fatal; everything later is retried
        self.storage = StorageManager(self.config.db_path)
        await self.storage.initialize()

        self.client = LedgerClient(self.config.endpoint, self.config.request_timeout)
        await self.client.start()

        self.synchronizer = Synchronizer(self.storage, self.client, self.config)
        await self.synchronizer.start()

        if self.config.api_port:
            app = create_app(self.storage, self.synchronizer)
            uv_config = uvicorn.Config(
                app,
                host=self.config.api_host,
                port=self.config.api_port,
                log_level=self.config.log_level.lower(),
            )
            self._uvicorn_server = uvicorn.Server(uv_config)
            self._api_task = asyncio.create_task(self._uvicorn_server.serve())
            logger.info("Status API starting on port %d", self.config.api_port)

    async def stop(self):
        """Stop the loops (letting in-flight steps finish), then the API and store."""
        if self.synchronizer:
            await self.synchronizer.stop()
        if self._uvicorn_server:
            self._uvicorn_server.should_exit = True
            await self._api_task
        if self.client:
            await self.client.stop()
        if self.storage:
            await self.storage.close()

    async def run(self):
        """Run until SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()
        shutdown = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown.set)

        await self.start()
        try:
            await shutdown.wait()
            logger.info("Shutting down...")
        finally:
            await self.stop()


def main(argv=None):
    """CLI entry point for the mirror service."""
    config = load_config(argv)

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(name)-10s] %(levelname)-5s %(message)s",
        datefmt="%H:%M:%S",
    )

    logger.info("=" * 60)
    logger.info("  chainmirror")
    logger.info("  Ledger:       %s", config.endpoint)
    logger.info("  Database:     %s", config.db_path)
    logger.info("  Blocks:       %s (start %d, window %d)",
                "enabled" if config.enable_blocks else "disabled",
                config.block_start_height, config.block_window)
    logger.info("  Transactions: %s (start %d, window %d)",
                "enabled" if config.enable_transactions else "disabled",
                config.tx_start_height, config.tx_window)
    if config.api_port:
        logger.info("  Status API:   http://localhost:%d/api/status", config.api_port)
    logger.info("=" * 60)

    asyncio.run(MirrorService(config).run())


if __name__ == "__main__":
    main()
