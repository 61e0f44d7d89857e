from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Iterator, Set

from chainsync.core.errors import AlreadyRunning
from chainsync.core.logging import get_logger

logger = get_logger("lock")


class LockManager:
    """
    Pid-file locks, one per job kind (`<lock_dir>/<kind>.pid`). The mode is not part of the key,
    so update / check / reindex runs of the same kind exclude each other.
    """

    def __init__(self, lock_dir: str) -> None:
        self.lock_dir = lock_dir
        self._held: Set[str] = set()

    def path_for(self, job_kind: str) -> str:
        return os.path.join(self.lock_dir, f"{job_kind}.pid")

    def is_locked(self, job_kind: str) -> bool:
        return os.path.exists(self.path_for(job_kind))

    def acquire(self, job_kind: str) -> str:
        os.makedirs(self.lock_dir, exist_ok=True)
        path = self.path_for(job_kind)
        try:
            # O_EXCL: exactly one of several racing creators wins
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise AlreadyRunning(job_kind, path) from None
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(str(os.getpid()))
        self._held.add(job_kind)
        logger.info("lock acquired", extra={"event": "lock_acquired", "job_kind": job_kind, "path": path})
        return path

    def release(self, job_kind: str) -> None:
        if job_kind not in self._held:
            return
        self._held.discard(job_kind)
        path = self.path_for(job_kind)
        try:
            os.unlink(path)
        except FileNotFoundError:
            logger.warning("lock already gone", extra={"event": "lock_missing", "job_kind": job_kind, "path": path})
            return
        logger.info("lock released", extra={"event": "lock_released", "job_kind": job_kind, "path": path})

    @contextmanager
    def hold(self, job_kind: str) -> Iterator[str]:
        path = self.acquire(job_kind)
        try:
            yield path
        finally:
            self.release(job_kind)
