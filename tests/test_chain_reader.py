# tests/test_chain_reader.py
import json

import httpx
import pytest

from chainsync.core.errors import BlockNotFound, ChainReaderError
from chainsync.services.chain_reader import RpcChainReader, to_units
from chainsync.services.ledger import derive_records

from tests.helpers.sync_sim import make_settings

TXS = {
    "prev": {
        "txid": "prev",
        "vin": [{"coinbase": "04ffff"}],
        "vout": [{"n": 0, "value": 12.5, "scriptPubKey": {"address": "alice"}}],
    },
    "cb": {
        "txid": "cb",
        "vin": [{"coinbase": "03abcd"}],
        "vout": [{"n": 0, "value": 6.25, "scriptPubKey": {"addresses": ["miner"]}}],
    },
    "pay": {
        "txid": "pay",
        "vin": [{"txid": "prev", "vout": 0}],
        "vout": [
            {"n": 0, "value": 2.0, "scriptPubKey": {"address": "bob"}},
            {"n": 1, "value": 10.4999, "scriptPubKey": {"address": "alice"}},
            {"n": 2, "value": 0, "scriptPubKey": {"type": "nulldata"}},
        ],
    },
}


def _handler(calls):
    def handle(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method, params = body["method"], body["params"]
        calls.append(method)
        if method == "getblockcount":
            result = 812
        elif method == "getblockhash":
            if params[0] > 812:
                return httpx.Response(200, json={"result": None, "error": {"code": -8, "message": "Block height out of range"}, "id": body["id"]})
            result = f"hash{params[0]}"
        elif method == "getblock":
            result = {"hash": params[0], "time": 1700000000, "tx": ["cb", "pay"]}
        elif method == "getrawtransaction":
            result = TXS[params[0]]
        else:
            return httpx.Response(200, json={"result": None, "error": {"code": -32601, "message": "Method not found"}, "id": body["id"]})
        return httpx.Response(200, json={"result": result, "error": None, "id": body["id"]})
    return handle


@pytest.mark.asyncio
async def test_tip_and_block_decoding():
    calls = []
    async with RpcChainReader(make_settings(), transport=httpx.MockTransport(_handler(calls))) as chain:
        assert await chain.current_height() == 812
        block = await chain.fetch_block(800)

    assert block.hash == "hash800"
    assert block.time == 1700000000
    cb, pay = block.txs
    assert cb.coinbase and cb.vin == []
    assert pay.vin[0].address == "alice" and pay.vin[0].amount == 1_250_000_000
    assert [(o.address, o.amount) for o in pay.vout] == [("bob", 200_000_000), ("alice", 1_049_990_000)]

    links = {(ln.a_id, ln.txid): ln for ln in derive_records(block).links}
    assert links[("miner", "cb")].received == 625_000_000
    assert links[("alice", "pay")].amount == -200_010_000  # net: spent 12.5, got 10.4999 back
    assert links[("bob", "pay")].amount == 200_000_000


@pytest.mark.asyncio
async def test_out_of_range_height_is_block_not_found():
    chain = RpcChainReader(make_settings(), transport=httpx.MockTransport(_handler([])))
    with pytest.raises(BlockNotFound) as ei:
        await chain.fetch_block(900)
    await chain.close()
    assert ei.value.height == 900


@pytest.mark.asyncio
async def test_transport_failure_is_chain_reader_error():
    def boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    chain = RpcChainReader(make_settings(), transport=httpx.MockTransport(boom))
    with pytest.raises(ChainReaderError):
        await chain.current_height()
    await chain.close()


def test_to_units_is_exact():
    assert to_units(0.1) == 10_000_000
    assert to_units("21000000") == 21_000_000 * 10**8
    assert to_units(None) == 0
