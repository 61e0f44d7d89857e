# tests/test_signals.py
import pytest
from pydantic import ValidationError

from chainsync.models.sync import SyncMode
from chainsync.services.signals import Done, Progress, Starting, WorkerLaunch, decode_signal, encode_signal


def test_decode_dispatches_on_kind():
    raw = encode_signal(Progress(worker_id=3, position=120, height=120))
    sig = decode_signal(raw)
    assert isinstance(sig, Progress)
    assert sig.position == 120

    assert isinstance(decode_signal({"kind": "done", "worker_id": 3}), Done)
    s = decode_signal({"kind": "starting", "worker_id": 1, "pid": 99, "range_start": 1, "range_end": 5})
    assert isinstance(s, Starting) and s.pid == 99


@pytest.mark.parametrize("raw", [
    {"kind": "bogus", "worker_id": 1},
    {"kind": "progress", "worker_id": 1},
    "not a dict",
])
def test_malformed_signals_rejected(raw):
    with pytest.raises(ValidationError):
        decode_signal(raw)


def test_launch_maps_positions_to_heights_in_check_mode():
    ln = WorkerLaunch(worker_id=1, range_start=4, range_end=6, mode=SyncMode.check, heights=[40, 41, 99])
    assert [ln.height_at(p) for p in range(4, 7)] == [40, 41, 99]

    upd = WorkerLaunch(worker_id=2, range_start=901, range_end=950, mode=SyncMode.update)
    assert upd.height_at(917) == 917
    assert upd.range.size == 50
