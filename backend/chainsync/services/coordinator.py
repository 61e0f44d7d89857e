from __future__ import annotations

from typing import Any, Callable, Optional

from chainsync.core.config import Settings
from chainsync.core.errors import IncompleteSync, SyncError
from chainsync.core.logging import get_logger
from chainsync.db.mongo import get_db_handle
from chainsync.db.store import MongoStore
from chainsync.models.sync import Checkpoint, JobKind, PartitionPlan, SyncJob, SyncMode
from chainsync.services.chain_reader import RpcChainReader
from chainsync.services.finalizer import Finalizer
from chainsync.services.launcher import ProcessLauncher
from chainsync.services.lock import LockManager
from chainsync.services.planner import plan_for_job
from chainsync.services.supervisor import Supervisor, SupervisorOutcome

logger = get_logger("coordinator")


class SyncCoordinator:
    """
    One sync run as a straight sequence of stages:
    lock -> store ping -> checkpoint + tip -> (reindex pre-step) -> plan -> supervise -> finalize -> release.

    `launcher_factory` builds the launcher for this run; the launcher hands out the matching
    signal channel via `.channel()` and is closed once supervision ends.
    """

    def __init__(
        self,
        mode: SyncMode,
        settings: Settings,
        store: Any,
        chain: Any,
        locks: Any,
        launcher_factory: Callable[[], Any],
    ) -> None:
        self.mode = mode
        self.settings = settings
        self.store = store
        self.chain = chain
        self.locks = locks
        self.launcher_factory = launcher_factory

    async def run(self) -> int:
        try:
            with self.locks.hold(JobKind.index.value):
                return await self._run_locked()
        except SyncError as e:
            log = logger.info if e.exit_code == 0 else logger.error
            log(str(e), extra={"event": "sync_aborted", "mode": self.mode.value, "reason": type(e).__name__})
            return e.exit_code

    # ----- stages -----

    async def _run_locked(self) -> int:
        await self.store.ping()
        await self.store.ensure_indexes()
        await self.store.ensure_stats()

        cp = await self.store.read_checkpoint()
        tip = await self.chain.current_height()
        await self.store.record_chain_height(tip)
        logger.info(
            "stats refreshed",
            extra={"event": "stats_refreshed", "mode": self.mode.value, "tip": tip, "checkpoint": cp.last_synced_height},
        )

        job = await self._build_job(cp, tip)
        plan = plan_for_job(job)
        logger.info(
            "plan ready",
            extra={"event": "plan_ready", "mode": self.mode.value, "total": plan.total, "ranges": len(plan.ranges),
                   "initial_workers": plan.initial_workers, "start": job.start_height, "target": job.target_height},
        )
        if plan.empty:
            logger.info("nothing to sync", extra={"event": "nothing_to_do", "mode": self.mode.value})
            return 0

        outcome = await self._supervise(job, plan)
        if not outcome.ok:
            raise IncompleteSync([r.label() for r in outcome.abandoned])

        finalizer = Finalizer(
            self.store,
            job,
            richlist_size=self.settings.richlist_size,
            exclude=self.settings.richlist_excluded,
        )
        await finalizer.finalize()
        return 0

    async def _build_job(self, cp: Checkpoint, tip: int) -> SyncJob:
        common = dict(
            mode=self.mode,
            max_per_worker=self.settings.cluster_max_per_worker,
            pool_size=self.settings.pool_size,
            pooling=self.settings.cluster_enabled,
        )
        if self.mode == SyncMode.reindex:
            await self._reset_derived()
            return SyncJob(start_height=1, target_height=tip, **common)

        if self.mode == SyncMode.check:
            # blocks after the last sync belong to the next update, not to check
            last = cp.last_synced_height
            recorded = await self.store.read_distinct_recorded_heights()
            missing = [h for h in range(1, last + 1) if h not in recorded]
            logger.info("missing blocks found", extra={"event": "check_missing", "missing": len(missing), "scanned": last})
            return SyncJob(start_height=1, target_height=last, heights=missing, **common)

        return SyncJob(start_height=cp.last_synced_height + 1, target_height=tip, **common)

    async def _reset_derived(self) -> None:
        logger.warning("reindex: clearing derived records", extra={"event": "reindex_reset", "mode": self.mode.value})
        await self.store.delete_all_derived()
        await self.store.reset_ranking()
        await self.store.write_checkpoint(Checkpoint(last_synced_height=0), reset=True)

    async def _supervise(self, job: SyncJob, plan: PartitionPlan) -> SupervisorOutcome:
        launcher = self.launcher_factory()
        try:
            supervisor = Supervisor(
                job,
                plan,
                launcher,
                launcher.channel(),
                tick_sec=self.settings.heartbeat_check_interval,
                stall_after_sec=self.settings.stall_threshold_sec,
                max_respawns=self.settings.range_respawn_max,
            )
            return await supervisor.run()
        finally:
            launcher.close()


def build_coordinator(mode: SyncMode, settings: Settings, *, launcher_factory: Optional[Callable[[], Any]] = None) -> SyncCoordinator:
    """Production wiring: Mongo store, RPC chain reader, pid-file locks, process launcher."""
    return SyncCoordinator(
        mode,
        settings,
        MongoStore(get_db_handle(), settings.coin),
        RpcChainReader(settings),
        LockManager(settings.lock_dir),
        launcher_factory or ProcessLauncher,
    )
