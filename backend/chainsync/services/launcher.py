from __future__ import annotations

import asyncio
import multiprocessing as mp
import queue as queue_mod
from typing import Any, Optional

from chainsync.core.logging import get_logger
from chainsync.services.signals import WorkerLaunch
from chainsync.services.worker_unit import worker_process_main

logger = get_logger("launcher")

JOIN_TIMEOUT_SEC = 5.0
# one blocking queue read never waits longer than this
POLL_SLICE_SEC = 0.5


class ProcessHandle:
    """Coordinator-side handle of one worker child process."""

    def __init__(self, proc: Any) -> None:
        self._proc = proc

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid

    async def terminate(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._terminate_blocking)

    async def kill(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._kill_blocking)

    def _terminate_blocking(self) -> None:
        if self._proc.is_alive():
            self._proc.terminate()
        self._proc.join(JOIN_TIMEOUT_SEC)
        if self._proc.is_alive():
            self._kill_blocking()

    def _kill_blocking(self) -> None:
        if self._proc.is_alive():
            self._proc.kill()
        self._proc.join(JOIN_TIMEOUT_SEC)
        if self._proc.is_alive():
            logger.warning("worker process did not exit", extra={"event": "worker_kill_timeout", "pid": self.pid})


class ProcessSignalChannel:
    """Reads raw worker messages off the multiprocessing queue without blocking the event loop."""

    def __init__(self, q: Any) -> None:
        self._q = q

    def _get_blocking(self, timeout: float) -> Any:
        try:
            return self._q.get(timeout=timeout)
        except queue_mod.Empty:
            return None

    async def get(self, timeout: float) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._get_blocking, min(POLL_SLICE_SEC, max(0.01, timeout)))


class ProcessLauncher:
    """
    Starts worker units as `spawn`-context child processes. Every child gets its own interpreter,
    so no Mongo client or event loop leaks from the coordinator.
    """

    def __init__(self, ctx: Any = None) -> None:
        self._ctx = ctx or mp.get_context("spawn")
        self._queue = self._ctx.Queue()

    def channel(self) -> ProcessSignalChannel:
        return ProcessSignalChannel(self._queue)

    async def spawn(self, launch: WorkerLaunch) -> ProcessHandle:
        proc = self._ctx.Process(
            target=worker_process_main,
            args=(launch.model_dump(mode="json"), self._queue),
            name=f"sync-worker-{launch.worker_id}",
            daemon=True,
        )
        proc.start()
        return ProcessHandle(proc)

    def close(self) -> None:
        self._queue.close()
        self._queue.join_thread()
