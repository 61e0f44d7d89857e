from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from pydantic import ValidationError

from chainsync.core.errors import WorkerStalled
from chainsync.core.logging import get_logger
from chainsync.models.sync import PartitionPlan, Range, SyncJob, WorkerStatus
from chainsync.services.signals import Done, Progress, Starting, WorkerLaunch, decode_signal

logger = get_logger("supervisor")


# ===== state =====

@dataclass
class WorkerRecord:
    worker_id: int
    handle: Any
    assigned: Range
    origin: Range
    last_reported: int
    last_heartbeat: float
    status: WorkerStatus = WorkerStatus.starting
    pid: Optional[int] = None


@dataclass
class SchedulerState:
    # (range to run, original plan range it belongs to)
    pending: Deque[Tuple[Range, Range]] = field(default_factory=deque)
    next_worker_id: int = 1
    respawns: Dict[Range, int] = field(default_factory=dict)
    phase: str = "scheduling"
    completed: List[Range] = field(default_factory=list)
    abandoned: List[Range] = field(default_factory=list)


@dataclass
class SupervisorOutcome:
    completed: List[Range]
    abandoned: List[Range]
    respawns: int

    @property
    def ok(self) -> bool:
        return not self.abandoned


# ===== supervisor =====

class Supervisor:
    """
    Drives worker units through a partition plan.

    A single loop owns the worker registry: it takes signals off the channel and, every
    `tick_sec`, checks heartbeats. Units silent for longer than `stall_after_sec` (starting or
    running) are killed and replaced by a unit covering [last reported position + 1, range end].
    An original range that needed more than `max_respawns` replacements is abandoned.

    The loop ends once nothing is active or pending; that transition happens exactly once.
    """

    def __init__(
        self,
        job: SyncJob,
        plan: PartitionPlan,
        launcher: Any,
        channel: Any,
        *,
        tick_sec: float = 10.0,
        stall_after_sec: float = 60.0,
        max_respawns: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.job = job
        self.plan = plan
        self.launcher = launcher
        self.channel = channel
        self.tick_sec = float(tick_sec)
        self.stall_after_sec = float(stall_after_sec)
        self.max_respawns = int(max_respawns)
        self.clock = clock

        self.state = SchedulerState()
        self.active: Dict[int, WorkerRecord] = {}
        self.target_pool = plan.initial_workers

    # ----- public -----

    async def run(self) -> SupervisorOutcome:
        if self.plan.empty:
            self._enter_final_phase()
            return self._outcome()

        initial = self.plan.ranges[: self.plan.initial_workers]
        for r in self.plan.ranges[self.plan.initial_workers:]:
            self.state.pending.append((r, r))

        logger.info(
            "scheduling",
            extra={"event": "scheduling_started", "mode": self.job.mode.value, "ranges": len(self.plan.ranges),
                   "initial_workers": len(initial), "queued": len(self.state.pending)},
        )

        try:
            for r in initial:
                await self._spawn(r, r)
            await self._loop()
        finally:
            await self._stop_leftovers()
        return self._outcome()

    async def check_stalls(self) -> None:
        now = self.clock()
        for rec in list(self.active.values()):
            if rec.status not in (WorkerStatus.starting, WorkerStatus.running):
                continue
            idle = now - rec.last_heartbeat
            if idle > self.stall_after_sec:
                await self._recover(rec, idle)
        self._maybe_complete()

    @property
    def finished(self) -> bool:
        return self.state.phase != "scheduling"

    # ----- loop -----

    async def _loop(self) -> None:
        next_tick = self.clock() + self.tick_sec
        while not self.finished:
            raw = await self.channel.get(max(0.0, next_tick - self.clock()))
            if raw is not None:
                await self._handle_raw(raw)
            if self.clock() >= next_tick:
                await self.check_stalls()
                next_tick = self.clock() + self.tick_sec

    async def _handle_raw(self, raw: Any) -> None:
        try:
            sig = decode_signal(raw)
        except ValidationError as e:
            logger.warning("invalid worker signal", extra={"event": "signal_invalid", "error": str(e)})
            return

        rec = self.active.get(sig.worker_id)
        if rec is None:
            # replaced or already finished unit
            logger.debug("signal from unknown worker", extra={"event": "signal_ignored", "worker_id": sig.worker_id, "kind": sig.kind})
            return

        if isinstance(sig, Starting):
            rec.pid = sig.pid
            rec.status = WorkerStatus.running
            rec.last_heartbeat = self.clock()
        elif isinstance(sig, Progress):
            rec.last_reported = max(rec.last_reported, sig.position)
            rec.status = WorkerStatus.running
            rec.last_heartbeat = self.clock()
            logger.debug(
                "progress",
                extra={"event": "worker_progress", "worker_id": rec.worker_id, "position": sig.position, "height": sig.height},
            )
        elif isinstance(sig, Done):
            await self._on_done(rec)

    async def _on_done(self, rec: WorkerRecord) -> None:
        rec.status = WorkerStatus.done
        self.active.pop(rec.worker_id, None)
        self.state.completed.append(rec.assigned)
        logger.info(
            "worker done",
            extra={"event": "worker_done", "worker_id": rec.worker_id, "range": rec.assigned.label(),
                   "active": len(self.active), "pending": len(self.state.pending)},
        )
        await rec.handle.terminate()
        await self._refill()
        self._maybe_complete()

    # ----- recovery -----

    async def _recover(self, rec: WorkerRecord, idle: float) -> None:
        rec.status = WorkerStatus.stalled
        self.active.pop(rec.worker_id, None)
        err = WorkerStalled(rec.worker_id, idle)
        logger.warning(
            str(err),
            extra={"event": "worker_stalled", "worker_id": rec.worker_id, "pid": rec.pid,
                   "range": rec.assigned.label(), "last_reported": rec.last_reported, "idle_sec": round(idle, 1)},
        )

        resume = rec.last_reported + 1
        if resume > rec.assigned.end:
            # last position was committed before the unit went quiet
            self.state.completed.append(rec.assigned)
        else:
            used = self.state.respawns.get(rec.origin, 0)
            if used >= self.max_respawns:
                self.state.abandoned.append(rec.origin)
                logger.error(
                    "range abandoned",
                    extra={"event": "range_abandoned", "range": rec.origin.label(), "respawns": used,
                           "resume_from": resume},
                )
            else:
                self.state.respawns[rec.origin] = used + 1
                remainder = Range(start=resume, end=rec.assigned.end)
                # replacement goes ahead of queued ranges and keeps the pool slot
                self.state.pending.appendleft((remainder, rec.origin))
                logger.info(
                    "respawning remainder",
                    extra={"event": "worker_respawned", "stalled_worker_id": rec.worker_id,
                           "range": remainder.label(), "origin": rec.origin.label(), "attempt": used + 1},
                )

        await rec.handle.kill()
        await self._refill()

    # ----- scheduling -----

    async def _refill(self) -> None:
        while self.state.pending and len(self.active) < self.target_pool:
            r, origin = self.state.pending.popleft()
            await self._spawn(r, origin)

    async def _spawn(self, r: Range, origin: Range) -> WorkerRecord:
        wid = self.state.next_worker_id
        self.state.next_worker_id += 1
        heights = None
        if self.job.heights is not None:
            heights = self.job.heights[r.start: r.end + 1]
        launch = WorkerLaunch(worker_id=wid, range_start=r.start, range_end=r.end, mode=self.job.mode, heights=heights)
        handle = await self.launcher.spawn(launch)
        rec = WorkerRecord(
            worker_id=wid,
            handle=handle,
            assigned=r,
            origin=origin,
            last_reported=r.start - 1,
            last_heartbeat=self.clock(),
            pid=getattr(handle, "pid", None),
        )
        self.active[wid] = rec
        logger.info(
            "worker spawned",
            extra={"event": "worker_spawned", "worker_id": wid, "pid": rec.pid, "range": r.label(),
                   "origin": origin.label()},
        )
        return rec

    def _maybe_complete(self) -> None:
        if self.finished or self.active or self.state.pending:
            return
        self._enter_final_phase()

    def _enter_final_phase(self) -> None:
        if self.finished:
            return
        self.state.phase = "incomplete" if self.state.abandoned else "finalizing"
        logger.info(
            "scheduling finished",
            extra={"event": "scheduling_complete", "phase": self.state.phase,
                   "completed": len(self.state.completed), "abandoned": len(self.state.abandoned)},
        )

    async def _stop_leftovers(self) -> None:
        for rec in list(self.active.values()):
            logger.warning("stopping leftover worker", extra={"event": "worker_killed", "worker_id": rec.worker_id, "pid": rec.pid})
            await rec.handle.kill()
        self.active.clear()

    def _outcome(self) -> SupervisorOutcome:
        return SupervisorOutcome(
            completed=list(self.state.completed),
            abandoned=list(self.state.abandoned),
            respawns=sum(self.state.respawns.values()),
        )
