from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


def parse_quantity(value: Any) -> int:
    """Decode a JSON-RPC quantity (``"0x1b4"``); plain ints pass through."""
    if isinstance(value, bool):
        raise ValueError(f"invalid quantity: {value!r}")
    if isinstance(value, int):
        return value
    if not isinstance(value, str) or not value.startswith(("0x", "0X")):
        raise ValueError(f"invalid quantity: {value!r}")
    return int(value, 16)


def parse_hash(value: Any) -> str:
    """Validate a 32-byte hash and return it as lower-case ``0x`` hex.

    Accepts the hex string the node sends or the ``HexBytes`` web3 formats it into.
    """
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 32:
            raise ValueError(f"invalid hash length: {bytes(value).hex()!r}")
        return "0x" + bytes(value).hex()
    if not isinstance(value, str) or not value.startswith(("0x", "0X")):
        raise ValueError(f"invalid hash: {value!r}")
    body = value[2:]
    if len(body) != 64:
        raise ValueError(f"invalid hash length: {value!r}")
    bytes.fromhex(body)
    return "0x" + body.lower()


@dataclass(frozen=True)
class BlockHeader:
    number: int
    hash: str
    timestamp: int
    parent_hash: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_rpc(cls, obj: Any) -> "BlockHeader":
        if not isinstance(obj, Mapping):
            raise ValueError(f"header must be an object, got {type(obj).__name__}")
        try:
            number, block_hash, timestamp = obj["number"], obj["hash"], obj["timestamp"]
        except KeyError as e:
            raise ValueError(f"header missing field {e.args[0]!r}") from None
        parent = obj.get("parentHash")
        return cls(
            number=parse_quantity(number),
            hash=parse_hash(block_hash),
            timestamp=parse_quantity(timestamp),
            parent_hash=parse_hash(parent) if parent is not None else None,
            raw=dict(obj),
        )


def pending_tx_from_rpc(obj: Any) -> str:
    # newPendingTransactions with fullTx=false yields bare hashes
    return parse_hash(obj)
