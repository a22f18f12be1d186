"""In-memory fakes and record builders shared by unit and integration tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from aiohttp import test_utils, web

from chainmirror.ledger_simulator import LedgerSimulator
from chainmirror.models import Block, Transaction, Transfer


GENESIS = datetime(2024, 1, 1, tzinfo=timezone.utc)


# ── Helpers ─────────────────────────────────────────────────────────────────

def make_block(height: int, **overrides) -> Block:
    fields = {
        "height": height,
        "time": GENESIS + timedelta(seconds=5 * height),
        "version": "0.38.0",
        "chain_id": "test-1",
        "proposer_address_raw": f"proposer{height % 3}",
    }
    fields.update(overrides)
    return Block(**fields)


def make_tx(height: int, index: int = 0, transfers: Optional[List[tuple]] = None) -> Transaction:
    if transfers is None:
        transfers = [("100ugnot", "g1sender", "g1receiver")]
    return Transaction(
        block_height=height,
        index=index,
        transfers=[Transfer(amount=a, from_address=f, to_address=t) for a, f, t in transfers],
    )


class FakeLedger:
    """In-memory stand-in for LedgerClient with call recording and failure injection."""

    def __init__(self, tip: int = 0):
        self.tip = tip
        self.blocks: Dict[int, Block] = {}
        self.transactions: List[Transaction] = []
        self.calls: List[tuple] = []
        self._failures: Dict[str, List[Exception]] = {}

    def add_blocks(self, *heights: int):
        for h in heights:
            self.blocks[h] = make_block(h)
        if heights:
            self.tip = max(self.tip, max(heights))

    def add_tx(self, height: int, index: int = 0, transfers=None):
        self.transactions.append(make_tx(height, index, transfers))

    def fail(self, method: str, *errors: Exception):
        """Make the next calls to ``method`` raise ``errors`` in order."""
        self._failures.setdefault(method, []).extend(errors)

    def _maybe_fail(self, method: str):
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    async def tip_height(self) -> int:
        self.calls.append(("tip_height",))
        self._maybe_fail("tip_height")
        return self.tip

    async def fetch_blocks(self, from_height: int, to_height: int) -> List[Block]:
        self.calls.append(("fetch_blocks", from_height, to_height))
        self._maybe_fail("fetch_blocks")
        return [self.blocks[h] for h in sorted(self.blocks) if from_height <= h <= to_height]

    async def fetch_transactions(self, from_height: int, to_height: int) -> List[Transaction]:
        self.calls.append(("fetch_transactions", from_height, to_height))
        self._maybe_fail("fetch_transactions")
        return [tx for tx in self.transactions if from_height <= tx.block_height <= to_height]

    def fetch_calls(self, method: str) -> List[tuple]:
        return [c[1:] for c in self.calls if c[0] == method]


async def wait_until(predicate, timeout: float = 10.0, interval: float = 0.02):
    """Await ``predicate()`` (sync or async) becoming truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if loop.time() > deadline:
            raise AssertionError("condition not met within %.1fs" % timeout)
        await asyncio.sleep(interval)


def record_pauses(loop, monkeypatch) -> List[float]:
    """Replace loop._pause with an instant, recording version."""
    pauses: List[float] = []

    async def _pause(seconds):
        pauses.append(seconds)
        return loop.stopping

    monkeypatch.setattr(loop, "_pause", _pause)
    return pauses


class LedgerServer:
    """Real HTTP server answering the GraphQL route from a LedgerSimulator.

    Tests may queue canned (status, body) answers in ``canned`` or slow
    every answer down with ``delay``; every received query is recorded.
    """

    def __init__(self, simulator: LedgerSimulator):
        self.simulator = simulator
        self.queries: List[str] = []
        self.canned: List[tuple] = []
        self.delay = 0.0
        self.url: Optional[str] = None
        app = web.Application()
        app.router.add_post("/graphql/query", self.graphql)
        self._server = test_utils.TestServer(app)

    async def start(self) -> str:
        await self._server.start_server()
        self.url = str(self._server.make_url("/graphql/query"))
        return self.url

    async def close(self):
        await self._server.close()

    async def graphql(self, request):
        payload = await request.json()
        self.queries.append(payload["query"])
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.canned:
            status, body = self.canned.pop(0)
        else:
            status, body = self.simulator.handle_query(payload["query"])
        if isinstance(body, bytes):
            return web.Response(status=status, body=body, content_type="application/json", charset="utf-8")
        if isinstance(body, str):
            return web.Response(status=status, text=body, content_type="text/html")
        return web.json_response(body, status=status)
