from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

# amounts are integer base units (1 coin = 10**8)
COIN_UNITS = 100_000_000


class TxIO(BaseModel):
    model_config = ConfigDict(extra="allow")

    address: Optional[str] = None
    amount: int = 0


class Transaction(BaseModel):
    model_config = ConfigDict(extra="allow")

    txid: str
    vin: List[TxIO] = Field(default_factory=list)
    vout: List[TxIO] = Field(default_factory=list)
    coinbase: bool = False

    @property
    def total(self) -> int:
        return sum(o.amount for o in self.vout)


class Block(BaseModel):
    height: int
    hash: str
    time: int = 0
    txs: List[Transaction] = Field(default_factory=list)


# ── Derived records, as written to the store

class TxRecord(BaseModel):
    txid: str
    blockhash: str
    blockindex: int
    timestamp: int
    total: int
    vin: List[Dict[str, Any]] = Field(default_factory=list)
    vout: List[Dict[str, Any]] = Field(default_factory=list)


class AddressTotals(BaseModel):
    """Absolute totals of one address, recomputed from its links."""
    a_id: str
    received: int = 0
    sent: int = 0

    @property
    def balance(self) -> int:
        return self.received - self.sent


class AddressLink(BaseModel):
    """One (address, tx) pair. The address totals are the sum over all of its links."""
    a_id: str
    txid: str
    blockindex: int
    received: int = 0
    sent: int = 0

    @property
    def amount(self) -> int:
        return self.received - self.sent


class BlockRecords(BaseModel):
    height: int
    txs: List[TxRecord] = Field(default_factory=list)
    links: List[AddressLink] = Field(default_factory=list)
