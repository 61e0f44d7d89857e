from __future__ import annotations

from typing import List, Optional


class SyncError(RuntimeError):
    """Base for every failure the sync coordinator knows how to classify."""

    exit_code: int = 1


class AlreadyRunning(SyncError):
    # benign: another coordinator holds the lock for this job kind
    exit_code = 0

    def __init__(self, job_kind: str, path: str) -> None:
        super().__init__(f"{job_kind} sync already running (lock {path})")
        self.job_kind = job_kind
        self.path = path


class StoreUnreachable(SyncError):
    pass


class WorkerStalled(SyncError):
    def __init__(self, worker_id: int, idle_sec: float) -> None:
        super().__init__(f"worker {worker_id} silent for {idle_sec:.1f}s")
        self.worker_id = worker_id
        self.idle_sec = idle_sec


class HeightFetchFailed(SyncError):
    def __init__(self, height: int, attempts: int, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"height {height} failed after {attempts} attempts: {cause}")
        self.height = height
        self.attempts = attempts
        self.cause = cause


class IncompleteSync(SyncError):
    def __init__(self, abandoned: List[str]) -> None:
        super().__init__(f"sync incomplete, abandoned ranges: {', '.join(abandoned)}")
        self.abandoned = abandoned


class ChainReaderError(RuntimeError):
    pass


class BlockNotFound(ChainReaderError):
    def __init__(self, height: int) -> None:
        super().__init__(f"block {height} not found")
        self.height = height
