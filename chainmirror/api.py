"""
api.py - Read-only REST API over the mirror.

 - GET /api/status                         -> per-stream cursor, state, counters
 - GET /api/blocks?from_height&to_height   -> mirrored blocks
 - GET /api/blocks/{height}                -> one block
 - GET /api/transactions?from_height&to_height -> transactions with transfers
 - GET /api/addresses/{address}/transfers  -> transfers sent or received
"""

import logging
from typing import TYPE_CHECKING, Optional

from fastapi import FastAPI, HTTPException, Query

if TYPE_CHECKING:
    from chainmirror.storage import StorageManager
    from chainmirror.synchronizer import Synchronizer

logger = logging.getLogger("api")

MAX_PAGE = 1000


def register_routes(app: FastAPI, storage: "StorageManager", synchronizer: Optional["Synchronizer"] = None):
    """Register mirror query endpoints on an existing FastAPI app."""

    @app.get("/api/status")
    async def status():
        return {
            "streams": synchronizer.status() if synchronizer else {},
            "running": synchronizer.running if synchronizer else False,
            "stored_blocks": await storage.blocks.count(),
            "stored_transactions": await storage.transactions.count(),
        }

    @app.get("/api/blocks")
    async def list_blocks(
        from_height: Optional[int] = Query(default=None, ge=0),
        to_height: Optional[int] = Query(default=None, ge=0),
        limit: int = Query(default=100, ge=1, le=MAX_PAGE),
    ):
        return await storage.blocks.list_range(from_height, to_height, limit)

    @app.get("/api/blocks/{height}")
    async def get_block(height: int):
        block = await storage.blocks.get(height)
        if block is None:
            raise HTTPException(status_code=404, detail="Block not found")
        return block

    @app.get("/api/transactions")
    async def list_transactions(
        from_height: Optional[int] = Query(default=None, ge=0),
        to_height: Optional[int] = Query(default=None, ge=0),
        limit: int = Query(default=100, ge=1, le=MAX_PAGE),
    ):
        return await storage.transactions.list_range(from_height, to_height, limit)

    @app.get("/api/addresses/{address}/transfers")
    async def address_transfers(address: str, limit: int = Query(default=100, ge=1, le=MAX_PAGE)):
        return await storage.transactions.list_for_address(address, limit)


def create_app(storage: "StorageManager", synchronizer: Optional["Synchronizer"] = None) -> FastAPI:
    app = FastAPI(title="chainmirror", version="0.1.0")
    register_routes(app, storage, synchronizer)
    return app
