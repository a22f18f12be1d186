"""
reconciler.py - Per-stream reconciliation loops.

Each loop is a small state machine:

    PLANNING -> FETCHING -> RECONCILING -> ADVANCING -> PLANNING ...
        \\-> WAITING (window beyond the ledger tip) -> PLANNING
    any failure -> BACKOFF -> state that failed

The cursor (next height not yet confirmed processed) only moves in
ADVANCING. No error leaves a loop: ledger and store failures are logged and
retried after a backoff that doubles with every consecutive failure. The
stop event is checked before every transition and interrupts sleeps, never
an in-flight request or write.
"""

import asyncio
import enum
import logging
from collections import defaultdict
from datetime import datetime
from typing import TYPE_CHECKING, Dict, List, Optional

from chainmirror.errors import DecodeError, NotFound, SyncError
from chainmirror.models import Block, StreamKind, Transaction
from chainmirror.planner import WindowPlan, WindowPlanner

if TYPE_CHECKING:
    from chainmirror.config import SyncConfig
    from chainmirror.ledger_client import LedgerClient
    from chainmirror.storage import StorageManager


class LoopState(str, enum.Enum):
    PLANNING = "PLANNING"
    FETCHING = "FETCHING"
    RECONCILING = "RECONCILING"
    ADVANCING = "ADVANCING"
    WAITING = "WAITING"
    BACKOFF = "BACKOFF"
    STOPPED = "STOPPED"


class _Interrupted(Exception):
    """Stop requested while a reconcile step was sleeping."""


class ReconciliationLoop:
    """Shared loop logic; subclasses supply fetch() and reconcile()."""

    kind: StreamKind = None

    def __init__(
        self,
        store: "StorageManager",
        client: "LedgerClient",
        config: "SyncConfig",
        stop_event: Optional[asyncio.Event] = None,
    ):
        self._store = store
        self._client = client
        self._config = config
        self._stop = stop_event or asyncio.Event()
        self.logger = logging.getLogger(f"sync.{self.kind.value}")
        self.planner = WindowPlanner(self.kind, store, client, window=self.window_size(config))

        self.start_height = self.start_height_of(config)
        self.cursor: Optional[int] = None
        self.state = LoopState.PLANNING
        self._resume_state = LoopState.PLANNING
        self._plan: Optional[WindowPlan] = None
        self._records: list = []

        self.consecutive_failures = 0
        self.failures = 0
        self.cycles = 0
        self.written = 0
        self.skipped = 0
        self.last_error: Optional[str] = None

    # Subclass hooks ------------------------------------------------------

    @staticmethod
    def window_size(config: "SyncConfig") -> int:
        raise NotImplementedError

    @staticmethod
    def start_height_of(config: "SyncConfig") -> int:
        raise NotImplementedError

    async def fetch(self, from_height: int, to_height: int) -> list:
        raise NotImplementedError

    async def reconcile(self, plan: WindowPlan, records: list):
        raise NotImplementedError

    # Driving -------------------------------------------------------------

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def run(self):
        """Step the state machine until the stop event is set."""
        self.logger.info("%s loop started (window=%d)", self.kind.value, self.planner.window)
        if self.state is LoopState.STOPPED:
            # Restarted after stop(): re-plan from the cursor kept in memory
            self.state = LoopState.PLANNING
            self._plan = None
            self._records = []
        while not self.stopping:
            try:
                await self.step()
            except Exception as e:
                # Unclassified failure: same treatment as a retryable one
                self.logger.exception("Unexpected error in %s loop", self.kind.value)
                self._fail(e, LoopState.PLANNING)
        self.state = LoopState.STOPPED
        self.logger.info("%s loop stopped at cursor %s", self.kind.value, self.cursor)

    async def step(self):
        """Perform exactly one state transition."""
        state = self.state
        if state is LoopState.PLANNING:
            await self._do_planning()
        elif state is LoopState.FETCHING:
            await self._do_fetching()
        elif state is LoopState.RECONCILING:
            await self._do_reconciling()
        elif state is LoopState.ADVANCING:
            self._do_advancing()
        elif state is LoopState.WAITING:
            await self._pause(self._config.poll_interval)
            self.state = LoopState.PLANNING
        elif state is LoopState.BACKOFF:
            await self._pause(self.backoff_delay())
            self.state = self._resume_state

    async def restore_cursor(self) -> int:
        """Seed the cursor from the store.

        Blocks resume one past the highest persisted height. Transactions
        resume at that height itself: a crash may have stored only part of
        its transactions, and already stored keys are filtered on reconcile.
        """
        highest = await self._store.max_persisted_height(self.kind)
        if highest is None:
            self.cursor = self.start_height
        elif self.kind is StreamKind.TRANSACTIONS:
            self.cursor = max(self.start_height, highest)
        else:
            self.cursor = max(self.start_height, highest + 1)
        self.logger.info(
            "%s cursor restored to %d (highest persisted: %s)",
            self.kind.value, self.cursor, highest,
        )
        return self.cursor

    def backoff_delay(self) -> float:
        """Delay for the current failure streak: base, 2*base, 4*base, ..."""
        exponent = max(self.consecutive_failures - 1, 0)
        delay = self._config.backoff_base * (2 ** exponent)
        if self._config.backoff_max is not None:
            delay = min(delay, self._config.backoff_max)
        return delay

    def snapshot(self) -> dict:
        return {
            "stream": self.kind.value,
            "state": self.state.value,
            "cursor": self.cursor,
            "window": self.planner.window,
            "cycles": self.cycles,
            "written": self.written,
            "skipped": self.skipped,
            "failures": self.failures,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
        }

    # States --------------------------------------------------------------

    async def _do_planning(self):
        try:
            if self.cursor is None:
                await self.restore_cursor()
            plan = await self.planner.plan(self.cursor)
        except SyncError as e:
            self._fail(e, LoopState.PLANNING)
            return
        self._plan = plan
        self._records = []
        if plan.wait:
            self.logger.info(
                "Reached tip %d at cursor %d, waiting for new blocks...", plan.tip, self.cursor,
            )
            self.consecutive_failures = 0
            self.state = LoopState.WAITING
        elif plan.fetch:
            self.state = LoopState.FETCHING
        else:
            self.logger.debug("Window [%d, %d] already mirrored", plan.start, plan.end)
            self.state = LoopState.ADVANCING

    async def _do_fetching(self):
        plan = self._plan
        try:
            self._records = await self.fetch(plan.start, plan.end)
        except SyncError as e:
            self._fail(e, LoopState.FETCHING)
            return
        self.state = LoopState.RECONCILING

    async def _do_reconciling(self):
        try:
            await self.reconcile(self._plan, self._records)
        except _Interrupted:
            return
        except SyncError as e:
            # Whole cycle re-runs; upserts already done are idempotent
            self._fail(e, LoopState.PLANNING)
            return
        self.state = LoopState.ADVANCING

    def _do_advancing(self):
        plan = self._plan
        new_cursor = WindowPlanner.next_cursor(plan, [r.height for r in self._records])
        self.logger.debug("%s cursor %d -> %d", self.kind.value, self.cursor, new_cursor)
        self.cursor = new_cursor
        self.consecutive_failures = 0
        self.cycles += 1
        self._plan = None
        self._records = []
        self.state = LoopState.PLANNING

    # Helpers -------------------------------------------------------------

    def _fail(self, exc: Exception, resume: LoopState):
        self.consecutive_failures += 1
        self.failures += 1
        self.last_error = f"{type(exc).__name__}: {exc}"
        if isinstance(exc, DecodeError):
            # Possible schema drift on the remote side
            self.logger.error(
                "%s failed in %s: %s", self.kind.value, self.state.value, self.last_error,
            )
        else:
            self.logger.warning(
                "%s failed in %s: %s", self.kind.value, self.state.value, self.last_error,
            )
        self._resume_state = resume
        self.state = LoopState.BACKOFF

    async def _pause(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True if woken by the stop event."""
        if seconds <= 0:
            await asyncio.sleep(0)
            return self.stopping
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    def _new_records(self, plan: WindowPlan, records: list) -> list:
        """Records inside the window, not yet persisted, deduplicated and ordered."""
        fresh: Dict = {}
        for record in records:
            if not plan.contains(record.height):
                self.logger.warning(
                    "Ignoring %s record at height %d outside window [%d, %d]",
                    self.kind.value, record.height, plan.start, plan.end,
                )
                continue
            if record.key in plan.existing:
                continue
            fresh.setdefault(record.key, record)
        return [fresh[k] for k in sorted(fresh)]


class BlockLoop(ReconciliationLoop):
    kind = StreamKind.BLOCKS

    @staticmethod
    def window_size(config):
        return config.block_window

    @staticmethod
    def start_height_of(config):
        return config.block_start_height

    async def fetch(self, from_height: int, to_height: int) -> List[Block]:
        return await self._client.fetch_blocks(from_height, to_height)

    async def reconcile(self, plan: WindowPlan, records: List[Block]):
        written = 0
        for block in self._new_records(plan, records):
            if await self._store.upsert_block(block):
                written += 1
        self.written += written
        if written:
            self.logger.info(
                "Wrote %d blocks in [%d, %d] (%d returned, %d already stored)",
                written, plan.start, plan.end, len(records), len(plan.existing),
            )


class TransactionLoop(ReconciliationLoop):
    kind = StreamKind.TRANSACTIONS

    @staticmethod
    def window_size(config):
        return config.tx_window

    @staticmethod
    def start_height_of(config):
        return config.tx_start_height

    async def fetch(self, from_height: int, to_height: int) -> List[Transaction]:
        return await self._client.fetch_transactions(from_height, to_height)

    async def reconcile(self, plan: WindowPlan, records: List[Transaction]):
        by_height: Dict[int, List[Transaction]] = defaultdict(list)
        for tx in self._new_records(plan, records):
            by_height[tx.block_height].append(tx)

        written = 0
        for height in sorted(by_height):
            txs = by_height[height]
            block_time = await self._resolve_time(height)
            if block_time is None:
                self.skipped += len(txs)
                self.logger.warning(
                    "Skipping %d transactions at height %d (indexes %s): block never mirrored",
                    len(txs), height, [tx.index for tx in txs],
                )
                continue
            for tx in txs:
                if await self._store.upsert_transaction(tx, block_time):
                    written += 1
        self.written += written
        if written:
            self.logger.info(
                "Wrote %d transactions in [%d, %d]", written, plan.start, plan.end,
            )

    async def _resolve_time(self, height: int) -> Optional[datetime]:
        """Parent block time, retried while the block loop catches up."""
        retries = self._config.time_lookup_retries
        for attempt in range(retries + 1):
            try:
                return await self._store.block_time(height)
            except NotFound:
                if attempt == retries:
                    return None
            delay = self._config.time_lookup_base * (2 ** attempt)
            self.logger.info(
                "Block %d not mirrored yet, retrying time lookup in %.0fs (%d/%d)",
                height, delay, attempt + 1, retries,
            )
            if await self._pause(delay):
                raise _Interrupted()
        return None
