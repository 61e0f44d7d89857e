# worker_unit.py
from __future__ import annotations

import asyncio
import os
import sys
import time
from typing import Any, Callable, Dict, Optional

from pymongo.errors import PyMongoError

from chainsync.core.config import Settings, get_settings
from chainsync.core.errors import ChainReaderError, HeightFetchFailed
from chainsync.core.logging import configure_logging, get_logger
from chainsync.db.mongo import close_mongo_client, get_db_handle
from chainsync.db.store import MongoStore
from chainsync.models.ledger import BlockRecords
from chainsync.services.chain_reader import RpcChainReader
from chainsync.services.ledger import derive_records
from chainsync.services.signals import Done, Progress, Starting, WorkerLaunch, encode_signal

logger = get_logger("worker")

Emit = Callable[[Dict[str, Any]], None]


class WorkerUnit:
    """
    Walks one assigned range in ascending order: fetch block, derive records, upsert.
    Emits `starting`, then `progress` every `progress_every` positions or `progress_interval_sec`
    seconds (whichever comes first, and always for the last position), then `done`.
    A height that keeps failing aborts the unit with HeightFetchFailed and no `done`.
    """

    def __init__(
        self,
        launch: WorkerLaunch,
        chain: Any,
        store: Any,
        emit: Emit,
        *,
        pid: Optional[int] = None,
        progress_every: int = 10,
        progress_interval_sec: float = 5.0,
        retry_max: int = 3,
        retry_base_sec: float = 1.0,
        retry_max_sec: float = 30.0,
    ) -> None:
        self.launch = launch
        self.chain = chain
        self.store = store
        self.emit = emit
        self.pid = pid if pid is not None else os.getpid()
        self.progress_every = max(1, int(progress_every))
        self.progress_interval_sec = float(progress_interval_sec)
        self.retry_max = max(1, int(retry_max))
        self.retry_base_sec = float(retry_base_sec)
        self.retry_max_sec = float(retry_max_sec)

    @classmethod
    def configured(cls, launch: WorkerLaunch, chain: Any, store: Any, emit: Emit, settings: Settings,
                   *, pid: Optional[int] = None) -> "WorkerUnit":
        return cls(
            launch, chain, store, emit,
            pid=pid,
            progress_every=settings.progress_every_blocks,
            progress_interval_sec=settings.progress_interval_sec,
            retry_max=settings.height_retry_max,
            retry_base_sec=settings.height_retry_base_sec,
            retry_max_sec=settings.height_retry_max_sec,
        )

    async def run(self) -> int:
        ln = self.launch
        wid = ln.worker_id
        self.emit(encode_signal(Starting(worker_id=wid, pid=self.pid, range_start=ln.range_start, range_end=ln.range_end)))
        logger.info(
            "worker starting",
            extra={"event": "worker_starting", "worker_id": wid, "pid": self.pid,
                   "range_start": ln.range_start, "range_end": ln.range_end, "mode": ln.mode.value},
        )

        processed = 0
        pending = 0
        last_emit = time.monotonic()
        for position in range(ln.range_start, ln.range_end + 1):
            height = ln.height_at(position)
            await self._process_height(height)
            processed += 1
            pending += 1
            now = time.monotonic()
            if pending >= self.progress_every or now - last_emit >= self.progress_interval_sec or position == ln.range_end:
                self.emit(encode_signal(Progress(worker_id=wid, position=position, height=height)))
                pending = 0
                last_emit = now

        self.emit(encode_signal(Done(worker_id=wid)))
        logger.info("worker finished range", extra={"event": "worker_done", "worker_id": wid, "processed": processed})
        return processed

    async def _process_height(self, height: int) -> None:
        attempt = 0
        while True:
            attempt += 1
            try:
                block = await self.chain.fetch_block(height)
                await self._commit(derive_records(block))
                return
            except (ChainReaderError, PyMongoError) as e:
                if attempt >= self.retry_max:
                    raise HeightFetchFailed(height, attempt, e) from e
                delay = min(self.retry_max_sec, self.retry_base_sec * (2 ** (attempt - 1)))
                logger.warning(
                    "height failed, retrying",
                    extra={"event": "height_retry", "worker_id": self.launch.worker_id, "height": height,
                           "attempt": attempt, "next_retry_in_sec": delay, "error": str(e)},
                )
                await asyncio.sleep(delay)

    async def _commit(self, records: BlockRecords) -> None:
        for tx in records.txs:
            await self.store.upsert_transaction(tx)
        for link in records.links:
            await self.store.upsert_address_link(link)
        await self.store.refresh_addresses({link.a_id for link in records.links})


# ─────────────────────────── Process entry ─────────────────────────────────
async def _run_in_process(launch: WorkerLaunch, queue: Any, settings: Settings) -> None:
    store = MongoStore(get_db_handle(), settings.coin)
    try:
        async with RpcChainReader(settings) as chain:
            unit = WorkerUnit.configured(launch, chain, store, queue.put, settings)
            await unit.run()
    finally:
        close_mongo_client()


def worker_process_main(launch_raw: Dict[str, Any], queue: Any) -> None:
    """Target of every worker child process; the coordinator never runs this code path."""
    launch = WorkerLaunch.model_validate(launch_raw)
    settings = get_settings()
    configure_logging(
        service="sync", worker=f"worker-{launch.worker_id}", level=settings.log_level, log_dir=settings.log_dir
    )
    try:
        asyncio.run(_run_in_process(launch, queue, settings))
    except HeightFetchFailed as e:
        logger.error(
            "worker aborted range",
            extra={"event": "worker_aborted", "worker_id": launch.worker_id, "height": e.height, "error": str(e)},
        )
        sys.exit(1)
