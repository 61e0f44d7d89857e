# tests/test_worker_unit.py
import pytest

from chainsync.core.errors import HeightFetchFailed
from chainsync.db.store import MongoStore
from chainsync.models.ledger import COIN_UNITS
from chainsync.models.sync import SyncMode
from chainsync.services.signals import Done, Progress, Starting, WorkerLaunch, decode_signal
from chainsync.services.worker_unit import WorkerUnit

from tests.helpers.sync_sim import FakeChain, InMemDB, dbg, make_settings


class _Killed(BaseException):
    """Stands in for SIGKILL: nothing after the raise point runs."""


class _KilledBeforeAddressWrite(MongoStore):
    """Dies on the first address write, after the links of that height are stored."""

    armed = True

    async def upsert_address(self, totals):
        if self.armed:
            self.armed = False
            raise _Killed()
        await super().upsert_address(totals)


def _unit(launch, chain, store, sink, **kw):
    settings = make_settings(**kw)
    return WorkerUnit.configured(launch, chain, store, sink.append, settings, pid=123)


@pytest.mark.asyncio
async def test_signals_in_order_and_records_written():
    db = InMemDB()
    store = MongoStore(db, "BTC")
    chain = FakeChain(tip=20)
    sink = []
    launch = WorkerLaunch(worker_id=7, range_start=1, range_end=10, mode=SyncMode.update)

    processed = await _unit(launch, chain, store, sink, progress_every_blocks=4, progress_interval_sec=3600).run()
    sigs = [decode_signal(s) for s in sink]
    dbg("SIGNALS", kinds=[s.kind for s in sigs])

    assert processed == 10
    assert isinstance(sigs[0], Starting) and sigs[0].pid == 123
    assert isinstance(sigs[-1], Done)
    positions = [s.position for s in sigs if isinstance(s, Progress)]
    assert positions == [4, 8, 10]  # every 4 blocks plus the final position
    assert chain.fetched == list(range(1, 11))
    assert await db.txes.count_documents({}) == 10 + 9  # coinbase each + one spend from height 2


@pytest.mark.asyncio
async def test_reprocessing_a_height_does_not_double_count():
    db = InMemDB()
    store = MongoStore(db, "BTC")
    chain = FakeChain(tip=5)
    launch = WorkerLaunch(worker_id=1, range_start=1, range_end=5, mode=SyncMode.update)

    await _unit(launch, chain, store, []).run()
    snapshot = {d["a_id"]: (d["received"], d["sent"], d["balance"]) for d in db.addresses.rows}

    # replacement unit redoing the tail of the range
    redo = WorkerLaunch(worker_id=2, range_start=3, range_end=5, mode=SyncMode.update)
    await _unit(redo, chain, store, []).run()
    again = {d["a_id"]: (d["received"], d["sent"], d["balance"]) for d in db.addresses.rows}

    assert again == snapshot
    assert await db.txes.count_documents({}) == 5 + 4
    assert snapshot["M1"][0] == 50 * COIN_UNITS  # coinbase at height 1 only



@pytest.mark.asyncio
async def test_kill_between_link_and_address_write_is_redone_exactly():
    clean_db = InMemDB()
    chain = FakeChain(tip=5)
    launch = WorkerLaunch(worker_id=1, range_start=1, range_end=5, mode=SyncMode.update)
    await _unit(launch, chain, MongoStore(clean_db, "BTC"), []).run()
    expected = {d["a_id"]: (d["received"], d["sent"], d["balance"]) for d in clean_db.addresses.rows}

    db = InMemDB()
    crashing = _KilledBeforeAddressWrite(db, "BTC")
    first = WorkerLaunch(worker_id=1, range_start=3, range_end=5, mode=SyncMode.update)
    with pytest.raises(_Killed):
        await _unit(first, chain, crashing, []).run()
    assert await db.addresstxes.count_documents({"blockindex": 3}) > 0
    assert await db.addresses.count_documents({}) == 0

    # replacement redoes 3..5 after the prefix 1..2 is synced by another unit
    store = MongoStore(db, "BTC")
    await _unit(WorkerLaunch(worker_id=2, range_start=1, range_end=2, mode=SyncMode.update), chain, store, []).run()
    await _unit(WorkerLaunch(worker_id=3, range_start=3, range_end=5, mode=SyncMode.update), chain, store, []).run()
    got = {d["a_id"]: (d["received"], d["sent"], d["balance"]) for d in db.addresses.rows}

    dbg("TOTALS", expected=expected, got=got)
    assert got == expected
    assert got["M3"] == (50 * COIN_UNITS, 0, 50 * COIN_UNITS)

@pytest.mark.asyncio
async def test_transient_failures_are_retried():
    db = InMemDB()
    chain = FakeChain(tip=5, fail={3: 2})
    sink = []
    launch = WorkerLaunch(worker_id=1, range_start=1, range_end=5, mode=SyncMode.update)

    await _unit(launch, chain, MongoStore(db, "BTC"), sink, height_retry_max=3).run()

    assert chain.fetched.count(3) == 3
    assert decode_signal(sink[-1]).kind == "done"


@pytest.mark.asyncio
async def test_exhausted_retries_abort_without_done():
    db = InMemDB()
    chain = FakeChain(tip=5, fail={4: 10})
    sink = []
    launch = WorkerLaunch(worker_id=1, range_start=1, range_end=5, mode=SyncMode.update)

    with pytest.raises(HeightFetchFailed) as ei:
        await _unit(launch, chain, MongoStore(db, "BTC"), sink, height_retry_max=2).run()

    assert ei.value.height == 4
    assert ei.value.attempts == 2
    kinds = [decode_signal(s).kind for s in sink]
    assert "done" not in kinds
    last_progress = [decode_signal(s) for s in sink if s["kind"] == "progress"][-1]
    assert last_progress.position == 3


@pytest.mark.asyncio
async def test_check_mode_walks_missing_heights():
    db = InMemDB()
    chain = FakeChain(tip=50)
    sink = []
    launch = WorkerLaunch(worker_id=1, range_start=2, range_end=4, mode=SyncMode.check, heights=[17, 30, 44])

    await _unit(launch, chain, MongoStore(db, "BTC"), sink).run()

    assert chain.fetched == [17, 30, 44]
    progress = [decode_signal(s) for s in sink if s["kind"] == "progress"]
    assert [(p.position, p.height) for p in progress] == [(2, 17), (3, 30), (4, 44)]
