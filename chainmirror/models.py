"""Typed ledger records shared by the client, the store and the loops."""

import enum
from datetime import datetime
from typing import List, Tuple, Union

from pydantic import BaseModel, Field


class StreamKind(str, enum.Enum):
    """The two independently synchronized record streams."""

    BLOCKS = "blocks"
    TRANSACTIONS = "transactions"

    @property
    def default_window(self) -> int:
        return 10 if self is StreamKind.BLOCKS else 100

    @staticmethod
    def height_of(key: Union[int, Tuple[int, int]]) -> int:
        """Height component of an identity key (int or (height, index))."""
        if isinstance(key, tuple):
            return key[0]
        return key


class Block(BaseModel):
    height: int = Field(ge=0)
    time: datetime
    version: str = ""
    chain_id: str = ""
    proposer_address_raw: str = ""

    @property
    def key(self) -> int:
        return self.height


class Transfer(BaseModel):
    amount: str = ""
    from_address: str = ""
    to_address: str = ""


class Transaction(BaseModel):
    block_height: int = Field(ge=0)
    index: int = Field(ge=0)
    transfers: List[Transfer] = Field(default_factory=list)

    @property
    def key(self) -> Tuple[int, int]:
        return (self.block_height, self.index)

    @property
    def height(self) -> int:
        return self.block_height
