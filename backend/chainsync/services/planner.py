from __future__ import annotations

from typing import List, Optional

from chainsync.models.sync import PartitionPlan, Range, SyncJob


def _ceil_div(a: int, b: int) -> int:
    return -(-a // b)


def per_worker_size(total: int, cap: int, pool: int, *, pooling: bool = True) -> int:
    if not pooling:
        return total
    if total < cap:
        if total < pool:
            return 1
        return _ceil_div(total, pool)
    return cap


def plan_partitions(
    total: int,
    cap: int,
    pool: int,
    *,
    first: int = 0,
    last: Optional[int] = None,
    pooling: bool = True,
) -> PartitionPlan:
    """
    Split `total` consecutive work units starting at `first` into disjoint ranges.

    - pooling disabled: one range over everything;
    - total < cap: one unit per worker when total < pool, otherwise `pool` workers of ceil(total / pool);
    - otherwise ceil(total / cap) ranges of `cap`, of which min(pool, W) start right away and the
      rest are spawned as active workers finish.

    No range ends past `last` (defaults to first + total - 1).
    """
    if total <= 0:
        return PartitionPlan(ranges=[], initial_workers=0, total=0)
    if cap < 1 or pool < 1:
        raise ValueError(f"cap and pool must be >= 1 (cap={cap}, pool={pool})")

    bound = first + total - 1
    if last is not None:
        bound = min(bound, last)

    size = per_worker_size(total, cap, pool, pooling=pooling)
    ranges: List[Range] = []
    start = first
    while start <= bound:
        end = min(start + size - 1, bound)
        ranges.append(Range(start=start, end=end))
        start = end + 1

    initial = min(pool, len(ranges)) if pooling else 1
    return PartitionPlan(ranges=ranges, initial_workers=initial, total=bound - first + 1)


def plan_for_job(job: SyncJob) -> PartitionPlan:
    return plan_partitions(
        job.total_units,
        job.max_per_worker,
        job.pool_size,
        first=job.first_unit,
        last=job.last_unit,
        pooling=job.pooling,
    )
