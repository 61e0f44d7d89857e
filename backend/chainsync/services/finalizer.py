from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from chainsync.core.logging import format_duration, get_logger
from chainsync.models.sync import Checkpoint, SyncJob, SyncMode
from chainsync.services.signals import now_ts

logger = get_logger("finalizer")


@dataclass
class FinalizeSummary:
    checkpoint: Optional[int]
    tx_count: int
    address_count: int
    duration: str


class Finalizer:
    """
    Single-shot end-of-run step. Order matters: rankings and counts first, checkpoint after, so a
    crash in between leaves the old checkpoint and the next `update` redoes the same heights.
    Check mode leaves the checkpoint alone and only stamps the run time.

    A failed attempt leaves `summary` unset and may be retried from the first step; every step
    overwrites rather than accumulates.
    """

    def __init__(self, store: Any, job: SyncJob, *, richlist_size: int = 100, exclude: Iterable[str] = ()) -> None:
        self.store = store
        self.job = job
        self.richlist_size = int(richlist_size)
        self.exclude: List[str] = list(exclude)
        self.summary: Optional[FinalizeSummary] = None

    async def finalize(self) -> FinalizeSummary:
        if self.summary is not None:
            logger.warning("finalize called twice, ignoring", extra={"event": "finalize_repeat"})
            return self.summary

        refreshed = await self.store.reconcile_addresses(self._job_links())
        self._step("addresses", refreshed=refreshed)

        received = await self.store.top_addresses("received", self.richlist_size)
        await self.store.update_ranking("received", received)
        balance = await self.store.top_addresses("balance", self.richlist_size, self.exclude)
        await self.store.update_ranking("balance", balance)
        self._step("rankings", received=len(received), balance=len(balance))

        tx_count = await self.store.count_transactions()
        address_count = await self.store.count_addresses()
        self._step("counts", tx_count=tx_count, address_count=address_count)

        ts = now_ts()
        checkpoint: Optional[int] = None
        if self.job.mode != SyncMode.check:
            checkpoint = self.job.target_height
            await self.store.write_checkpoint(Checkpoint(last_synced_height=checkpoint, last_run_ts=ts))
            self._step("checkpoint", height=checkpoint)
        else:
            await self.store.record_run_timestamp(ts)
            self._step("run_timestamp", ts=ts)

        elapsed = (datetime.now(timezone.utc) - self.job.started_at).total_seconds()
        self.summary = FinalizeSummary(
            checkpoint=checkpoint,
            tx_count=tx_count,
            address_count=address_count,
            duration=format_duration(elapsed),
        )
        logger.info(
            "sync complete",
            extra={"event": "sync_complete", "mode": self.job.mode.value, "checkpoint": checkpoint,
                   "tx_count": tx_count, "address_count": address_count, "duration": self.summary.duration},
        )
        return self.summary

    def _job_links(self) -> Dict[str, Any]:
        if self.job.mode == SyncMode.check:
            return {"blockindex": {"$in": list(self.job.heights or [])}}
        return {"blockindex": {"$gte": self.job.start_height, "$lte": self.job.target_height}}

    def _step(self, name: str, **fields: Any) -> None:
        logger.info("finalize step", extra={"event": "finalize_step", "step": name, **fields})
