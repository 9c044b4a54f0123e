"""
Main entry point for the indexer service.
Runs one sync orchestrator per configured chain.
"""

import asyncio
import signal
from typing import Any, Dict, List, Optional

import structlog

from basepulse.core.config import ChainSettings, settings
from basepulse.core.database import close_database, init_database
from basepulse.core.logging import setup_logging
from basepulse.services.chain_client import BaseChainClient, Web3ChainClient

from .core.sync_orchestrator import SyncOrchestrator


logger = structlog.get_logger(__name__)


class IndexerMain:
    """
    Indexer service coordinator.

    Each chain gets its own client, orchestrator and asyncio task. A chain
    whose loop fails is logged; the others keep running.
    """

    def __init__(self, chains: Optional[List[ChainSettings]] = None, client_factory=None):
        self.chains = chains if chains is not None else settings.chains
        self.client_factory = client_factory or Web3ChainClient
        self.clients: Dict[int, BaseChainClient] = {}
        self.orchestrators: Dict[int, SyncOrchestrator] = {}
        self.running = False
        self.tasks: List[asyncio.Task] = []

    async def initialize(self, database_url: Optional[str] = None):
        """Initialize the database and one orchestrator per chain."""
        try:
            logger.info("Initializing indexer service", chains=[c.chain_id for c in self.chains])

            await init_database(database_url)

            for chain in self.chains:
                client = self.client_factory(chain)
                self.clients[chain.chain_id] = client
                self.orchestrators[chain.chain_id] = SyncOrchestrator(chain, client)

            logger.info("Indexer service initialized")

        except Exception as e:
            logger.error("Failed to initialize indexer", error=str(e))
            raise

    async def start(self):
        """Run every chain until stopped."""
        self.running = True
        logger.info("Starting indexer service")

        self.tasks = [
            asyncio.create_task(orchestrator.run(), name=f"sync-{chain_id}")
            for chain_id, orchestrator in self.orchestrators.items()
        ]

        results = await asyncio.gather(*self.tasks, return_exceptions=True)
        for chain_id, result in zip(self.orchestrators, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Chain sync terminated with error",
                    chain_id=chain_id,
                    error=str(result),
                    error_type=type(result).__name__
                )

    async def stop(self):
        """Stop every orchestrator and release connections."""
        if not self.running and not self.orchestrators:
            return
        logger.info("Stopping indexer service")
        self.running = False

        await asyncio.gather(
            *(orchestrator.stop() for orchestrator in self.orchestrators.values()),
            return_exceptions=True
        )
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)

        for client in self.clients.values():
            await client.close()

        logger.info("Indexer service stopped")

    async def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "chains": [await o.get_status() for o in self.orchestrators.values()],
        }


async def main():
    """Main function to run the indexer service."""
    setup_logging()

    indexer = IndexerMain()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        asyncio.create_task(indexer.stop())

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await indexer.initialize()
        await indexer.start()
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
    except Exception as e:
        logger.error("Indexer service failed", error=str(e))
        raise
    finally:
        await indexer.stop()
        await close_database()


if __name__ == "__main__":
    asyncio.run(main())
