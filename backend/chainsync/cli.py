from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from typing import Awaitable, List, Optional

from chainsync.core.config import get_settings
from chainsync.core.logging import configure_logging, get_logger
from chainsync.db.mongo import close_mongo_client
from chainsync.models.sync import SyncMode
from chainsync.services.coordinator import build_coordinator

logger = get_logger("cli")

USAGE = """\
Usage: chainsync [database] [mode]

database: (required)
index [mode] Main index: coin info/stats, transactions & addresses
market       Market data (not handled by this tool)

mode: (required for index database only)
update       Updates index from last sync to current block
check        checks index for (and adds) any missing transactions/addresses
reindex      Clears index then resyncs from genesis to current block

notes:
* 'current block' is the latest created block when the command is executed.
* If check mode finds missing data (ignoring new data since last sync),
  the stall threshold is probably set too low.
"""


def usage() -> int:
    sys.stdout.write(USAGE + "\n")
    return 0


def _parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="chainsync", add_help=False)
    p.add_argument("database", nargs="?")
    p.add_argument("mode", nargs="?")
    p.add_argument("-h", "--help", action="store_true")
    return p


def parse_mode(argv: List[str]) -> Optional[SyncMode]:
    args, _ = _parser().parse_known_args(argv)
    if args.help or args.database != "index":
        return None
    try:
        return SyncMode(args.mode)
    except ValueError:
        return None


async def run_until_signalled(coro: Awaitable[int], *, mode: str = "") -> int:
    """
    Runs `coro` as a task that SIGINT/SIGTERM cancel, so lock release and worker teardown
    unwind through their `finally` blocks. Returns 1 when interrupted.
    """
    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(coro)
    installed = []

    def _on_signal(sig: signal.Signals) -> None:
        logger.warning("signal received, stopping", extra={"event": "sync_signal", "signal": sig.name, "mode": mode})
        task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig)
            installed.append(sig)
        except NotImplementedError:
            pass

    try:
        return await task
    except asyncio.CancelledError:
        if not task.cancelled():
            raise
        logger.warning("interrupted", extra={"event": "sync_interrupted", "mode": mode})
        return 1
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


async def _run(mode: SyncMode) -> int:
    settings = get_settings()
    coordinator = build_coordinator(mode, settings)
    try:
        return await run_until_signalled(coordinator.run(), mode=mode.value)
    finally:
        await coordinator.chain.close()
        close_mongo_client()


def main(argv: Optional[List[str]] = None) -> int:
    mode = parse_mode(sys.argv[1:] if argv is None else argv)
    if mode is None:
        return usage()

    settings = get_settings()
    configure_logging(service="sync", worker="coordinator", level=settings.log_level, log_dir=settings.log_dir)
    try:
        return asyncio.run(_run(mode))
    except KeyboardInterrupt:
        logger.warning("interrupted", extra={"event": "sync_interrupted", "mode": mode.value})
        return 1
    except Exception:
        logger.exception("sync failed", extra={"event": "sync_failed", "mode": mode.value})
        return 1


if __name__ == "__main__":
    sys.exit(main())
