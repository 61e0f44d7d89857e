from __future__ import annotations

import time
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from chainsync.models.sync import Range, SyncMode


def now_ts() -> int:
    return int(time.time())


# ─────────────────────────── Coordinator -> worker ───────────────────────────
class WorkerLaunch(BaseModel):
    """Launch-time parameters of one worker unit."""
    worker_id: int
    range_start: int
    range_end: int
    mode: SyncMode
    # check mode: heights[i] is the block at position range_start + i
    heights: Optional[List[int]] = None

    @property
    def range(self) -> Range:
        return Range(start=self.range_start, end=self.range_end)

    def height_at(self, position: int) -> int:
        if self.heights is None:
            return position
        return self.heights[position - self.range_start]


# ─────────────────────────── Worker -> coordinator ───────────────────────────
class Starting(BaseModel):
    kind: Literal["starting"] = "starting"
    worker_id: int
    pid: int
    range_start: int
    range_end: int
    ts: int = Field(default_factory=now_ts)


class Progress(BaseModel):
    kind: Literal["progress"] = "progress"
    worker_id: int
    position: int  # last range coordinate fully committed
    height: int
    ts: int = Field(default_factory=now_ts)


class Done(BaseModel):
    kind: Literal["done"] = "done"
    worker_id: int
    ts: int = Field(default_factory=now_ts)


WorkerSignal = Annotated[Union[Starting, Progress, Done], Field(discriminator="kind")]

_signal_adapter: TypeAdapter = TypeAdapter(WorkerSignal)


def encode_signal(signal: Union[Starting, Progress, Done]) -> Dict[str, Any]:
    return signal.model_dump(mode="json")


def decode_signal(raw: Any) -> Union[Starting, Progress, Done]:
    """Validate a raw message once, at the process boundary. Raises pydantic.ValidationError."""
    return _signal_adapter.validate_python(raw)
