from __future__ import annotations

import itertools
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from chainsync.core.config import Settings
from chainsync.core.errors import BlockNotFound, ChainReaderError
from chainsync.core.logging import get_logger
from chainsync.models.ledger import COIN_UNITS, Block, Transaction, TxIO

logger = get_logger("chain_reader")

# bitcoind: RPC_INVALID_PARAMETER ("Block height out of range")
RPC_OUT_OF_RANGE = -8


def to_units(value: Any) -> int:
    return int((Decimal(str(value or 0)) * COIN_UNITS).to_integral_value())


def _vout_address(vout: Dict[str, Any]) -> Optional[str]:
    spk = vout.get("scriptPubKey") or {}
    if spk.get("address"):
        return str(spk["address"])
    addrs = spk.get("addresses") or []
    return str(addrs[0]) if addrs else None


class RpcChainReader:
    """Bitcoind-style JSON-RPC client: block tip and decoded blocks."""

    def __init__(self, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        auth = (settings.rpc_user, settings.rpc_password) if settings.rpc_user else None
        self._client = httpx.AsyncClient(
            base_url=settings.rpc_url,
            auth=auth,
            timeout=settings.rpc_timeout_sec,
            transport=transport,
        )
        self._ids = itertools.count(1)

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "RpcChainReader":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def _call(self, method: str, *params: Any) -> Any:
        body = {"jsonrpc": "1.0", "id": next(self._ids), "method": method, "params": list(params)}
        try:
            resp = await self._client.post("", json=body)
        except httpx.HTTPError as e:
            raise ChainReaderError(f"{method}: {e}") from e
        try:
            data = resp.json()
        except ValueError as e:
            raise ChainReaderError(f"{method}: http {resp.status_code}, invalid body") from e
        err = data.get("error")
        if err:
            if err.get("code") == RPC_OUT_OF_RANGE and method == "getblockhash":
                raise BlockNotFound(int(params[0]))
            raise ChainReaderError(f"{method}: {err.get('message')} (code {err.get('code')})")
        return data.get("result")

    async def current_height(self) -> int:
        return int(await self._call("getblockcount"))

    async def fetch_block(self, height: int) -> Block:
        block_hash = await self._call("getblockhash", height)
        raw = await self._call("getblock", block_hash)
        txs: List[Transaction] = []
        for txid in raw.get("tx") or []:
            txs.append(await self._fetch_tx(str(txid)))
        return Block(height=height, hash=str(block_hash), time=int(raw.get("time") or 0), txs=txs)

    async def _fetch_tx(self, txid: str) -> Transaction:
        raw = await self._call("getrawtransaction", txid, 1)
        vin: List[TxIO] = []
        coinbase = False
        prev_cache: Dict[str, Dict[str, Any]] = {}
        for i in raw.get("vin") or []:
            if "coinbase" in i:
                coinbase = True
                continue
            prev_id = str(i.get("txid"))
            prev = prev_cache.get(prev_id)
            if prev is None:
                prev = await self._call("getrawtransaction", prev_id, 1)
                prev_cache[prev_id] = prev
            n = int(i.get("vout") or 0)
            outs = prev.get("vout") or []
            if n >= len(outs):
                logger.warning("prevout missing", extra={"event": "prevout_missing", "txid": txid, "prev": prev_id, "n": n})
                continue
            vin.append(TxIO(address=_vout_address(outs[n]), amount=to_units(outs[n].get("value"))))
        vout = [
            TxIO(address=_vout_address(o), amount=to_units(o.get("value")))
            for o in (raw.get("vout") or [])
            if to_units(o.get("value")) > 0
        ]
        return Transaction(txid=txid, vin=vin, vout=vout, coinbase=coinbase)
