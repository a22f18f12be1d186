"""
planner.py - Window planner.

Decides the next height window a stream should process:

  1. candidate window [cursor, cursor + W - 1]
  2. ask the store which identities already exist there; fewer than W
     distinct heights means the window must be fetched (in full)
  3. ask the ledger for its tip; if the window ends past the tip the
     stream is at the frontier and must wait, not fetch a partial window
  4. after processing, advance to one past the highest height the ledger
     actually returned (cursor + W if it returned nothing or if the window
     was already fully covered)
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Set

from chainmirror.models import StreamKind

if TYPE_CHECKING:
    from chainmirror.ledger_client import LedgerClient
    from chainmirror.storage import StorageManager

logger = logging.getLogger("planner")


@dataclass
class WindowPlan:
    kind: StreamKind
    start: int
    end: int
    tip: int
    existing: Set = field(default_factory=set)
    fetch: bool = True
    wait: bool = False

    @property
    def size(self) -> int:
        return self.end - self.start + 1

    def contains(self, height: int) -> bool:
        return self.start <= height <= self.end


class WindowPlanner:
    """Computes fetch windows for one stream."""

    def __init__(
        self,
        kind: StreamKind,
        store: "StorageManager",
        client: "LedgerClient",
        window: int = None,
    ):
        self.kind = kind
        self.window = window or kind.default_window
        if self.window <= 0:
            raise ValueError("window must be positive")
        self._store = store
        self._client = client

    async def plan(self, cursor: int) -> WindowPlan:
        start = cursor
        end = cursor + self.window - 1

        existing = await self._store.existing_keys(self.kind, start, end)
        covered = {StreamKind.height_of(k) for k in existing}
        fetch = len(covered) < self.window

        tip = await self._client.tip_height()
        wait = end > tip
        if wait:
            logger.debug(
                "%s window [%d, %d] beyond tip %d, waiting", self.kind.value, start, end, tip,
            )
        return WindowPlan(
            kind=self.kind,
            start=start,
            end=end,
            tip=tip,
            existing=existing,
            fetch=fetch and not wait,
            wait=wait,
        )

    @staticmethod
    def next_cursor(plan: WindowPlan, observed_heights: Iterable[int]) -> int:
        """Cursor after ``plan`` was processed and ``observed_heights`` returned."""
        in_window = [h for h in observed_heights if plan.contains(h)]
        if not plan.fetch or not in_window:
            return plan.end + 1
        return max(in_window) + 1
