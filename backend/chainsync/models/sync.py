from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ─────────────────────────────────────────────────────────────────────────────
# Enums

class SyncMode(str, Enum):
    update = "update"
    check = "check"
    reindex = "reindex"


class JobKind(str, Enum):
    index = "index"


class WorkerStatus(str, Enum):
    starting = "starting"
    running = "running"
    done = "done"
    stalled = "stalled"


# ─────────────────────────────────────────────────────────────────────────────
# Value objects

class Range(BaseModel):
    """Inclusive interval of work units: block heights, or indexes into the missing list in check mode."""
    model_config = ConfigDict(frozen=True)

    start: int
    end: int

    @model_validator(mode="after")
    def _ordered(self) -> "Range":
        if self.end < self.start:
            raise ValueError(f"range end {self.end} precedes start {self.start}")
        return self

    @property
    def size(self) -> int:
        return self.end - self.start + 1

    def label(self) -> str:
        return f"[{self.start},{self.end}]"


class PartitionPlan(BaseModel):
    ranges: List[Range] = Field(default_factory=list)
    initial_workers: int = 0
    total: int = 0

    @property
    def empty(self) -> bool:
        return not self.ranges


class Checkpoint(BaseModel):
    last_synced_height: int = 0
    last_run_ts: Optional[int] = None


class SyncJob(BaseModel):
    """
    One coordinator run. `target_height` is captured when the job is created and is what the
    checkpoint advances to, so blocks mined during the run are left for the next invocation.
    In check mode `heights` holds the missing heights and ranges index into it.
    """
    mode: SyncMode
    start_height: int
    target_height: int
    max_per_worker: int = Field(ge=1)
    pool_size: int = Field(ge=1)
    pooling: bool = True
    heights: Optional[List[int]] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_units(self) -> int:
        if self.mode == SyncMode.check:
            return len(self.heights or [])
        return max(0, self.target_height - self.start_height + 1)

    @property
    def first_unit(self) -> int:
        return 0 if self.mode == SyncMode.check else self.start_height

    @property
    def last_unit(self) -> int:
        return self.total_units - 1 if self.mode == SyncMode.check else self.target_height
