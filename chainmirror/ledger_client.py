"""
ledger_client.py - Remote ledger query client.

Talks to the ledger's GraphQL endpoint (single POST route, JSON body
``{"query": ...}``, answers wrapped in a ``data`` envelope). Three queries:
  - latestBlockHeight             -> tip height
  - blocks(from_height, to_height)           -> Block records
  - transactions(from_block_height, to_block_height), filtered to bank
    send messages                 -> Transaction records

Every failure is classified as NetworkError, DecodeError or RemoteError.
The client never retries; retry policy belongs to the reconciliation loops.

Usage:
    async with LedgerClient(config.endpoint) as client:
        tip = await client.tip_height()
        blocks = await client.fetch_blocks(100, 109)
"""

import asyncio
import json
import logging
from typing import Any, List, Optional

import aiohttp
from pydantic import ValidationError

from chainmirror.errors import DecodeError, NetworkError, RemoteError
from chainmirror.models import Block, Transaction, Transfer

logger = logging.getLogger("ledger")

TIP_QUERY = "query { latestBlockHeight }"

BLOCKS_QUERY = (
    "{ blocks(filter: { from_height: %d, to_height: %d }) "
    "{ time height version chain_id proposer_address_raw } }"
)

TRANSACTIONS_QUERY = (
    "query { transactions(filter: { message: { type_url: send, route: bank }, "
    "from_block_height: %d, to_block_height: %d }) "
    "{ index block_height messages { value { ... on BankMsgSend "
    "{ amount from_address to_address } } } } }"
)

# Response bodies longer than this are truncated in log lines
LOG_BODY_LIMIT = 2000


def _check_range(from_height: int, to_height: int):
    if from_height < 0 or to_height < from_height:
        raise ValueError(f"invalid height range [{from_height}, {to_height}]")


class LedgerClient:
    """Async client for the remote ledger query service."""

    def __init__(self, endpoint: str, request_timeout: float = 30.0):
        self.endpoint = endpoint
        self.request_timeout = request_timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        """Open the HTTP session."""
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )

    async def stop(self):
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------

    async def tip_height(self) -> int:
        """Highest height the remote service currently knows about."""
        data = await self._query(TIP_QUERY)
        height = data.get("latestBlockHeight")
        if not isinstance(height, int) or isinstance(height, bool) or height < 0:
            raise DecodeError(f"latestBlockHeight missing or invalid: {height!r}")
        logger.debug("Latest block height: %d", height)
        return height

    async def fetch_blocks(self, from_height: int, to_height: int) -> List[Block]:
        """Blocks in [from_height, to_height]; the range may come back sparse."""
        _check_range(from_height, to_height)
        data = await self._query(BLOCKS_QUERY % (from_height, to_height))
        raw = self._records(data, "blocks")
        try:
            blocks = [Block.model_validate(item) for item in raw]
        except ValidationError as e:
            raise DecodeError(f"malformed block record: {e}") from e
        logger.debug("Fetched %d blocks in [%d, %d]", len(blocks), from_height, to_height)
        return blocks

    async def fetch_transactions(self, from_height: int, to_height: int) -> List[Transaction]:
        """Bank-send transactions in [from_height, to_height]."""
        _check_range(from_height, to_height)
        data = await self._query(TRANSACTIONS_QUERY % (from_height, to_height))
        raw = self._records(data, "transactions")
        txs = [self._decode_transaction(item) for item in raw]
        logger.debug("Fetched %d transactions in [%d, %d]", len(txs), from_height, to_height)
        return txs

    # -------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------

    async def _query(self, query: str) -> dict:
        if self._session is None:
            await self.start()
        body = {"query": query}
        logger.debug("POST %s %s", self.endpoint, query)
        try:
            async with self._session.post(self.endpoint, json=body) as response:
                text = await response.text()
                status = response.status
        except asyncio.TimeoutError as e:
            raise NetworkError(f"timeout after {self.request_timeout}s") from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"request failed: {e}") from e
        except UnicodeDecodeError as e:
            raise DecodeError(f"response is not valid text: {e}") from e

        logger.debug("Response %d: %s", status, text[:LOG_BODY_LIMIT])
        if status < 200 or status >= 300:
            raise NetworkError(f"HTTP {status}: {text[:200]}", status=status)

        try:
            payload = json.loads(text)
        except ValueError as e:
            raise DecodeError(f"response is not JSON: {text[:200]!r}") from e
        if not isinstance(payload, dict):
            raise DecodeError(f"unexpected response type {type(payload).__name__}")

        errors = payload.get("errors")
        if errors:
            messages = [
                err.get("message", str(err)) if isinstance(err, dict) else str(err)
                for err in errors
            ]
            raise RemoteError("; ".join(messages), errors=errors)

        data = payload.get("data")
        if not isinstance(data, dict):
            raise DecodeError("response has no data envelope")
        return data

    @staticmethod
    def _records(data: dict, field: str) -> List[Any]:
        if field not in data:
            raise DecodeError(f"response data has no {field!r} field")
        raw = data[field]
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise DecodeError(f"{field!r} is not a list")
        return raw

    @staticmethod
    def _decode_transaction(item: Any) -> Transaction:
        if not isinstance(item, dict):
            raise DecodeError(f"transaction record is not an object: {item!r}")
        messages = item.get("messages") or []
        if not isinstance(messages, list):
            raise DecodeError("transaction messages is not a list")
        try:
            transfers = []
            for msg in messages:
                value = msg.get("value") if isinstance(msg, dict) else None
                # Non-bank messages come back as an empty fragment
                if not value:
                    continue
                transfers.append(Transfer.model_validate(value))
            return Transaction(
                block_height=item.get("block_height"),
                index=item.get("index"),
                transfers=transfers,
            )
        except ValidationError as e:
            raise DecodeError(f"malformed transaction record: {e}") from e
