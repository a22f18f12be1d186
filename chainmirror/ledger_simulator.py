"""
ledger_simulator.py - In-memory ledger with the remote GraphQL query surface.

Simulates the ledger query service for fully offline runs and tests:
 - POST /graphql/query   {"query": ...} -> {"data": ...}
     latestBlockHeight
     blocks(filter: { from_height, to_height })
     transactions(filter: { ..., from_block_height, to_block_height })
 - GET  /ledger/stats    -> simulator counters

Behaviour knobs mirroring what the real service does:
 - sparse heights: heights marked missing are never returned
 - tip lag: the reported tip trails the real chain by N blocks
 - fault injection: the next N queries fail as HTTP 503, malformed body
   or a GraphQL error

Usage (standalone):
    python -m chainmirror.ledger_simulator --port 8546 --block-interval 5

Usage (embedded):
    from chainmirror.ledger_simulator import LedgerSimulator
    ledger = LedgerSimulator()
    ledger.register_routes(fastapi_app)
"""

import argparse
import asyncio
import logging
import random
import re
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger("simulator")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_CHAIN_ID = "sim-1"
DEFAULT_VERSION = "0.38.0"
BLOCK_SPACING_SEC = 5
GENESIS_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)

FAULT_KINDS = ("network", "decode", "remote")

_BLOCKS_RE = re.compile(r"blocks\s*\(\s*filter:\s*\{\s*from_height:\s*(\d+)\s*,\s*to_height:\s*(\d+)")
_TXS_RE = re.compile(r"transactions\s*\(.*from_block_height:\s*(\d+)\s*,\s*to_block_height:\s*(\d+)", re.S)

# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass
class SimTransfer:
    amount: str
    from_address: str
    to_address: str


@dataclass
class SimTransaction:
    block_height: int
    index: int
    transfers: List[SimTransfer] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "block_height": self.block_height,
            "messages": [
                {"value": {
                    "amount": t.amount,
                    "from_address": t.from_address,
                    "to_address": t.to_address,
                }}
                for t in self.transfers
            ],
        }


@dataclass
class SimBlock:
    height: int
    time: datetime
    proposer_address_raw: str
    version: str = DEFAULT_VERSION
    chain_id: str = DEFAULT_CHAIN_ID
    transactions: List[SimTransaction] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "time": self.time.isoformat().replace("+00:00", "Z"),
            "height": self.height,
            "version": self.version,
            "chain_id": self.chain_id,
            "proposer_address_raw": self.proposer_address_raw,
        }


# ---------------------------------------------------------------------------
# Ledger Simulator
# ---------------------------------------------------------------------------


class LedgerSimulator:
    """Mock append-only ledger answering the remote query protocol."""

    def __init__(self, chain_id: str = DEFAULT_CHAIN_ID, tip_lag: int = 0, seed: Optional[int] = None):
        self.chain_id = chain_id
        self.tip_lag = tip_lag
        self._rng = random.Random(seed)
        self._blocks: Dict[int, SimBlock] = {}
        self._height = 0
        self._missing: set = set()
        self._faults: List[str] = []
        self.queries = 0

        logger.info("Ledger simulator initialized (chain_id=%s, tip_lag=%d)", chain_id, tip_lag)

    # -------------------------------------------------------------------
    # Core chain operations
    # -------------------------------------------------------------------

    @property
    def height(self) -> int:
        return self._height

    @property
    def tip(self) -> int:
        """Height reported to clients; trails the real chain by tip_lag."""
        return max(self._height - self.tip_lag, 0)

    def produce_block(self, transfers: Optional[List[List[Tuple[str, str, str]]]] = None) -> SimBlock:
        """Append a block. ``transfers`` holds one list of (amount, from, to) per transaction."""
        self._height += 1
        height = self._height
        block = SimBlock(
            height=height,
            time=GENESIS_TIME + timedelta(seconds=BLOCK_SPACING_SEC * height),
            proposer_address_raw=f"proposer{height % 4}",
            chain_id=self.chain_id,
        )
        for index, tx_transfers in enumerate(transfers or []):
            block.transactions.append(SimTransaction(
                block_height=height,
                index=index,
                transfers=[SimTransfer(*t) for t in tx_transfers],
            ))
        self._blocks[height] = block
        return block

    def produce_blocks(self, count: int, tx_probability: float = 0.0) -> List[SimBlock]:
        produced = []
        for _ in range(count):
            transfers = []
            if self._rng.random() < tx_probability:
                amount = f"{self._rng.randint(1, 10_000)}ugnot"
                transfers.append([(amount, f"addr{self._rng.randint(0, 9)}", f"addr{self._rng.randint(0, 9)}")])
            produced.append(self.produce_block(transfers))
        return produced

    def mark_missing(self, *heights: int):
        """Heights the service will silently leave out of range answers."""
        self._missing.update(heights)

    def inject_faults(self, kind: str, count: int = 1):
        if kind not in FAULT_KINDS:
            raise ValueError(f"unknown fault kind {kind!r}")
        self._faults.extend([kind] * count)

    def get_blocks(self, from_height: int, to_height: int) -> List[dict]:
        return [
            self._blocks[h].to_dict()
            for h in range(from_height, min(to_height, self._height) + 1)
            if h in self._blocks and h not in self._missing
        ]

    def get_transactions(self, from_height: int, to_height: int) -> List[dict]:
        results = []
        for h in range(from_height, min(to_height, self._height) + 1):
            block = self._blocks.get(h)
            if block is None or h in self._missing:
                continue
            results.extend(tx.to_dict() for tx in block.transactions)
        return results

    def get_stats(self) -> dict:
        return {
            "height": self._height,
            "tip": self.tip,
            "tip_lag": self.tip_lag,
            "transactions": sum(len(b.transactions) for b in self._blocks.values()),
            "missing_heights": sorted(self._missing),
            "pending_faults": len(self._faults),
            "queries": self.queries,
        }

    def handle_query(self, query: str) -> Tuple[int, object]:
        """Answer a GraphQL query string. Returns (http_status, body)."""
        self.queries += 1
        if self._faults:
            fault = self._faults.pop(0)
            logger.info("Injecting %s fault", fault)
            if fault == "network":
                return 503, {"message": "service unavailable"}
            if fault == "decode":
                return 200, "<html>bad gateway</html>"
            return 200, {"data": None, "errors": [{"message": "simulated failure"}]}

        if "latestBlockHeight" in query:
            return 200, {"data": {"latestBlockHeight": self.tip}}
        m = _TXS_RE.search(query)
        if m:
            lo, hi = int(m.group(1)), int(m.group(2))
            return 200, {"data": {"transactions": self.get_transactions(lo, hi)}}
        m = _BLOCKS_RE.search(query)
        if m:
            lo, hi = int(m.group(1)), int(m.group(2))
            return 200, {"data": {"blocks": self.get_blocks(lo, hi)}}
        return 200, {"data": None, "errors": [{"message": "unsupported query"}]}

    async def run_producer(self, interval: float, tx_probability: float = 0.3):
        """Produce one block every ``interval`` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            block = self.produce_blocks(1, tx_probability)[0]
            logger.debug("Produced block %d (%d txs)", block.height, len(block.transactions))

    # -------------------------------------------------------------------
    # FastAPI route registration
    # -------------------------------------------------------------------

    def register_routes(self, app):
        """Register the ledger query endpoint on an existing FastAPI app."""
        from fastapi.responses import JSONResponse, PlainTextResponse

        @app.post("/graphql/query")
        async def graphql_query(payload: dict):
            status, body = self.handle_query(str(payload.get("query", "")))
            if isinstance(body, str):
                return PlainTextResponse(body, status_code=status)
            return JSONResponse(status_code=status, content=body)

        @app.get("/ledger/stats")
        async def ledger_stats():
            return self.get_stats()

        logger.info("Ledger simulator routes registered on FastAPI app")


# ---------------------------------------------------------------------------
# Standalone mode
# ---------------------------------------------------------------------------

def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)-10s] %(levelname)-5s %(message)s",
        datefmt="%H:%M:%S",
    )

    parser = argparse.ArgumentParser(description="Ledger query service simulator (standalone)")
    parser.add_argument("--port", type=int, default=8546, help="HTTP port (default: 8546)")
    parser.add_argument("--initial-blocks", type=int, default=500, help="Blocks produced at startup (default: 500)")
    parser.add_argument("--block-interval", type=float, default=BLOCK_SPACING_SEC, help="Seconds between new blocks")
    parser.add_argument("--tx-probability", type=float, default=0.3, help="Chance a block carries a transfer")
    parser.add_argument("--tip-lag", type=int, default=0, help="Blocks the reported tip trails the chain")
    args = parser.parse_args()

    try:
        from fastapi import FastAPI
        import uvicorn
    except ImportError:
        print("ERROR: FastAPI and uvicorn are required.")
        sys.exit(1)

    ledger = LedgerSimulator(tip_lag=args.tip_lag)
    ledger.produce_blocks(args.initial_blocks, args.tx_probability)

    @asynccontextmanager
    async def lifespan(_app):
        producer = asyncio.create_task(ledger.run_producer(args.block_interval, args.tx_probability))
        yield
        producer.cancel()

    app = FastAPI(title="Ledger Simulator", version="0.1.0", lifespan=lifespan)
    ledger.register_routes(app)

    logger.info("=" * 50)
    logger.info("  Ledger Simulator")
    logger.info("  Endpoint: http://localhost:%d/graphql/query", args.port)
    logger.info("  Initial height: %d", ledger.height)
    logger.info("=" * 50)

    uvicorn.run(app, host="0.0.0.0", port=args.port, log_level="info")


if __name__ == "__main__":
    main()
