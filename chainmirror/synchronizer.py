"""
synchronizer.py - Owns the reconciliation loops.

Starts one task per enabled stream, shares a single stop event between
them and waits for every loop to reach STOPPED on shutdown. The loops
never coordinate directly; they only meet in the store.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Dict, List, Optional

from chainmirror.models import StreamKind
from chainmirror.reconciler import BlockLoop, ReconciliationLoop, TransactionLoop

if TYPE_CHECKING:
    from chainmirror.config import SyncConfig
    from chainmirror.ledger_client import LedgerClient
    from chainmirror.storage import StorageManager

logger = logging.getLogger("synchronizer")


class Synchronizer:
    """Runs the block and transaction loops as independent tasks."""

    def __init__(
        self,
        store: "StorageManager",
        client: "LedgerClient",
        config: "SyncConfig",
    ):
        self._store = store
        self._client = client
        self._config = config
        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self.loops: Dict[StreamKind, ReconciliationLoop] = {}
        if config.enable_blocks:
            self.loops[StreamKind.BLOCKS] = BlockLoop(store, client, config, self._stop)
        if config.enable_transactions:
            self.loops[StreamKind.TRANSACTIONS] = TransactionLoop(store, client, config, self._stop)

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def start(self):
        """Launch every loop as a background task."""
        if self._tasks:
            raise RuntimeError("synchronizer already started")
        self._stop.clear()
        for kind, loop in self.loops.items():
            task = asyncio.create_task(loop.run(), name=f"sync-{kind.value}")
            self._tasks.append(task)
        logger.info("Synchronizer started (%s)", ", ".join(k.value for k in self.loops))

    async def stop(self, timeout: Optional[float] = None):
        """Signal every loop and wait for them to finish their current step.

        With ``timeout``, loops still busy afterwards (e.g. stuck in a slow
        request) are cancelled.
        """
        self._stop.set()
        if not self._tasks:
            return
        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            logger.warning("Cancelling %s after %.1fs", task.get_name(), timeout)
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error("%s ended with %r", task.get_name(), task.exception())
        self._tasks = []
        logger.info("Synchronizer stopped")

    async def wait(self):
        """Block until every loop has exited."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def run_until_stopped(self):
        """Start the loops and return once stop() has let all of them exit."""
        await self.start()
        await self.wait()

    def status(self) -> Dict[str, dict]:
        return {kind.value: loop.snapshot() for kind, loop in self.loops.items()}
