from __future__ import annotations

from typing import Dict, Tuple

from chainsync.models.ledger import AddressLink, Block, BlockRecords, TxRecord


def derive_records(block: Block) -> BlockRecords:
    """Transaction documents and per-(address, tx) links for one decoded block."""
    out = BlockRecords(height=block.height)
    for tx in block.txs:
        out.txs.append(
            TxRecord(
                txid=tx.txid,
                blockhash=block.hash,
                blockindex=block.height,
                timestamp=block.time,
                total=tx.total,
                vin=[{"addresses": i.address, "amount": i.amount} for i in tx.vin if i.address],
                vout=[{"addresses": o.address, "amount": o.amount} for o in tx.vout if o.address],
            )
        )

        per_addr: Dict[str, Tuple[int, int]] = {}
        for i in tx.vin:
            if not i.address:
                continue  # coinbase
            rec, sent = per_addr.get(i.address, (0, 0))
            per_addr[i.address] = (rec, sent + i.amount)
        for o in tx.vout:
            if not o.address:
                continue
            rec, sent = per_addr.get(o.address, (0, 0))
            per_addr[o.address] = (rec + o.amount, sent)

        for a_id in sorted(per_addr):
            received, sent = per_addr[a_id]
            out.links.append(
                AddressLink(a_id=a_id, txid=tx.txid, blockindex=block.height, received=received, sent=sent)
            )
    return out
