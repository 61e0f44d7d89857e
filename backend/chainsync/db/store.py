from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Set

from pymongo.errors import PyMongoError

from chainsync.core.errors import StoreUnreachable
from chainsync.core.logging import get_logger
from chainsync.models.ledger import AddressLink, AddressTotals, TxRecord
from chainsync.models.sync import Checkpoint

logger = get_logger("store")

RANKING_KINDS = ("received", "balance")
RECONCILE_BATCH = 500


class MongoStore:
    """
    Persistence for derived chain data.

    Collections:
      - txes          one document per txid
      - addresstxes   one document per (a_id, txid)
      - addresses     totals per address (received / sent / balance), always the sum of its addresstxes
      - richlists     ranking aggregate per coin: {received: [...], balance: [...]}
      - coinstats     checkpoint (`last`), chain tip seen at job start (`count`), run timestamps
    """

    def __init__(self, db: Any, coin: str) -> None:
        self.db = db
        self.coin = coin

    # ── connectivity / schema ───────────────────────────────────────────
    async def ping(self) -> None:
        try:
            await self.db.command("ping")
        except PyMongoError as e:
            raise StoreUnreachable(f"mongo ping failed: {e}") from e

    async def ensure_indexes(self) -> None:
        try:
            await self.db.txes.create_index([("txid", 1)], unique=True, name="uniq_txid")
            await self.db.txes.create_index([("blockindex", 1)], name="ix_tx_blockindex")
            await self.db.addresses.create_index([("a_id", 1)], unique=True, name="uniq_address")
            await self.db.addresses.create_index([("received", -1)], name="ix_address_received")
            await self.db.addresses.create_index([("balance", -1)], name="ix_address_balance")
            await self.db.addresstxes.create_index(
                [("a_id", 1), ("txid", 1)], unique=True, name="uniq_address_tx"
            )
            await self.db.addresstxes.create_index([("a_id", 1), ("blockindex", -1)], name="ix_address_tx_block")
            await self.db.addresstxes.create_index([("blockindex", 1)], name="ix_address_tx_blockindex")
            await self.db.coinstats.create_index([("coin", 1)], unique=True, name="uniq_coinstats")
            await self.db.richlists.create_index([("coin", 1)], unique=True, name="uniq_richlist")
        except PyMongoError as e:
            logger.warning("ensure_indexes failed", extra={"event": "ensure_indexes_failed", "error": str(e)})

    async def ensure_stats(self) -> None:
        await self.db.coinstats.update_one(
            {"coin": self.coin},
            {"$setOnInsert": {"coin": self.coin, "last": 0, "count": 0}},
            upsert=True,
        )

    # ── checkpoint ──────────────────────────────────────────────────────
    async def read_checkpoint(self) -> Checkpoint:
        doc = await self.db.coinstats.find_one({"coin": self.coin})
        if not doc:
            return Checkpoint()
        run = (doc.get("cronjob_run") or {}).get("list_blockchain_update")
        return Checkpoint(last_synced_height=int(doc.get("last") or 0), last_run_ts=run)

    async def write_checkpoint(self, cp: Checkpoint, *, reset: bool = False) -> None:
        # $max keeps the checkpoint monotonic; only reindex may move it back
        op = "$set" if reset else "$max"
        upd: Dict[str, Any] = {op: {"last": int(cp.last_synced_height)}}
        if cp.last_run_ts is not None:
            upd["$set"] = {**upd.get("$set", {}), "cronjob_run.list_blockchain_update": int(cp.last_run_ts)}
        await self.db.coinstats.update_one({"coin": self.coin}, upd, upsert=True)

    async def record_run_timestamp(self, ts: int) -> None:
        await self.db.coinstats.update_one(
            {"coin": self.coin},
            {"$set": {"cronjob_run.list_blockchain_update": int(ts)}},
            upsert=True,
        )

    async def record_chain_height(self, height: int) -> None:
        await self.db.coinstats.update_one({"coin": self.coin}, {"$set": {"count": int(height)}}, upsert=True)

    # ── derived records (worker units) ──────────────────────────────────
    async def upsert_transaction(self, tx: TxRecord) -> None:
        doc = tx.model_dump()
        await self.db.txes.update_one({"txid": tx.txid}, {"$set": doc}, upsert=True)

    async def upsert_address_link(self, link: AddressLink) -> None:
        await self.db.addresstxes.update_one(
            {"a_id": link.a_id, "txid": link.txid},
            {
                "$set": {
                    "blockindex": link.blockindex,
                    "amount": link.amount,
                    "received": link.received,
                    "sent": link.sent,
                },
            },
            upsert=True,
        )

    async def upsert_address(self, totals: AddressTotals) -> None:
        await self.db.addresses.update_one(
            {"a_id": totals.a_id},
            {
                "$setOnInsert": {"a_id": totals.a_id},
                "$set": {"received": totals.received, "sent": totals.sent, "balance": totals.balance},
            },
            upsert=True,
        )

    async def address_totals(self, a_ids: Iterable[str]) -> Dict[str, AddressTotals]:
        """Sums received/sent over every stored link of the given addresses."""
        pipeline = [
            {"$match": {"a_id": {"$in": list(a_ids)}}},
            {"$group": {"_id": "$a_id", "received": {"$sum": "$received"}, "sent": {"$sum": "$sent"}}},
        ]
        out: Dict[str, AddressTotals] = {}
        async for row in self.db.addresstxes.aggregate(pipeline):
            out[row["_id"]] = AddressTotals(
                a_id=row["_id"], received=int(row.get("received") or 0), sent=int(row.get("sent") or 0)
            )
        return out

    async def refresh_addresses(self, a_ids: Iterable[str]) -> int:
        """
        Rewrites the totals of `a_ids` from their links. Links are written before this runs, so
        redoing a height after a crash anywhere in between converges to the same totals.
        """
        totals = await self.address_totals(a_ids)
        for a_id in sorted(totals):
            await self.upsert_address(totals[a_id])
        return len(totals)

    async def reconcile_addresses(self, link_filter: Dict[str, Any], *, batch: int = RECONCILE_BATCH) -> int:
        """Refreshes every address that has a link matching `link_filter`."""
        a_ids = sorted(await self.db.addresstxes.distinct("a_id", link_filter))
        refreshed = 0
        for i in range(0, len(a_ids), batch):
            refreshed += await self.refresh_addresses(a_ids[i:i + batch])
        return refreshed

    async def read_distinct_recorded_heights(self) -> Set[int]:
        heights = await self.db.txes.distinct("blockindex")
        return {int(h) for h in heights if h is not None}

    # ── reindex ─────────────────────────────────────────────────────────
    async def delete_all_derived(self) -> None:
        await self.db.txes.delete_many({})
        await self.db.addresstxes.delete_many({})
        await self.db.addresses.delete_many({})

    async def reset_ranking(self) -> None:
        await self.db.richlists.update_one(
            {"coin": self.coin},
            {"$set": {"received": [], "balance": []}, "$setOnInsert": {"coin": self.coin}},
            upsert=True,
        )

    # ── aggregates (finalizer only) ─────────────────────────────────────
    async def top_addresses(self, kind: str, limit: int, exclude: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        if kind not in RANKING_KINDS:
            raise ValueError(f"unknown ranking kind: {kind}")
        flt: Dict[str, Any] = {}
        excluded = list(exclude or [])
        if excluded:
            flt["a_id"] = {"$nin": excluded}
        cur = self.db.addresses.find(flt, {"_id": 0, "a_id": 1, "received": 1, "sent": 1, "balance": 1})
        cur = cur.sort(kind, -1).limit(int(limit))
        return [
            {
                "a_id": d.get("a_id"),
                "received": int(d.get("received") or 0),
                "sent": int(d.get("sent") or 0),
                "balance": int(d.get("balance") or 0),
            }
            async for d in cur
        ]

    async def update_ranking(self, kind: str, data: List[Dict[str, Any]]) -> None:
        if kind not in RANKING_KINDS:
            raise ValueError(f"unknown ranking kind: {kind}")
        await self.db.richlists.update_one(
            {"coin": self.coin},
            {"$set": {kind: data}, "$setOnInsert": {"coin": self.coin}},
            upsert=True,
        )

    async def count_transactions(self) -> int:
        return int(await self.db.txes.count_documents({}))

    async def count_addresses(self) -> int:
        return int(await self.db.addresses.count_documents({}))
