# tests/test_cli.py
import asyncio
import os
import signal

import pytest

from chainsync import cli
from chainsync.models.sync import SyncMode
from chainsync.services.coordinator import SyncCoordinator
from chainsync.services.lock import LockManager

from tests.helpers.sync_sim import CountingStore, FakeChain, InMemDB, ScriptedLauncher, make_settings, seed_checkpoint


@pytest.mark.parametrize("argv,mode", [
    (["index", "update"], SyncMode.update),
    (["index", "check"], SyncMode.check),
    (["index", "reindex"], SyncMode.reindex),
    (["index"], None),
    (["index", "countMissing"], None),
    (["market"], None),
    ([], None),
    (["--help"], None),
])
def test_parse_mode(argv, mode):
    assert cli.parse_mode(argv) == mode


@pytest.mark.parametrize("argv", [["market"], ["index", "bogus"], []])
def test_usage_exits_zero_without_running(argv, capsys, monkeypatch):
    def _never(*a, **k):
        raise AssertionError("coordinator must not be built")

    monkeypatch.setattr(cli, "build_coordinator", _never)
    assert cli.main(argv) == 0
    assert "Usage: chainsync" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_sigterm_releases_lock_and_stops_workers(tmp_path):
    db = InMemDB()
    store = CountingStore(db)
    await seed_checkpoint(db, 0)
    launcher = ScriptedLauncher()
    settings = make_settings(cluster_max_per_worker=10, cluster_pool_size=3, stall_threshold_sec=60.0)
    coord = SyncCoordinator(
        SyncMode.update, settings, store, FakeChain(tip=100), LockManager(str(tmp_path)), lambda: launcher
    )

    async def _terminate_when_running():
        while len(launcher.launches) < 3:
            await asyncio.sleep(0.01)
        assert os.listdir(tmp_path) == ["index.pid"]
        os.kill(os.getpid(), signal.SIGTERM)

    killer = asyncio.create_task(_terminate_when_running())
    code = await asyncio.wait_for(cli.run_until_signalled(coord.run(), mode="update"), timeout=10)
    await killer

    assert code == 1
    assert os.listdir(tmp_path) == []
    assert all(h.killed and h.task.done() for h in launcher.handles.values())
    assert launcher.closed
    assert "write_checkpoint" not in store.calls


@pytest.mark.asyncio
async def test_signal_handlers_are_removed_after_the_run():
    async def _ok():
        return 0

    assert await cli.run_until_signalled(_ok()) == 0
    loop = asyncio.get_running_loop()
    assert loop.remove_signal_handler(signal.SIGTERM) is False
