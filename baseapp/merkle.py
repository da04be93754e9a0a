import struct
from typing import List, Sequence

from .types import Write
from .utils import encode_height, sha256, sha256_bytes

APP_HASH_SIZE = 32


def merkle_root(items: List[str]) -> str:
    if not items:
        return sha256(b"")
    level = items[:]
    while len(level) > 1:
        if len(level) % 2 == 1:
            level.append(level[-1])
        next_level = []
        for i in range(0, len(level), 2):
            combined = (level[i] + level[i + 1]).encode()
            next_level.append(sha256(combined))
        level = next_level
    return level[0]


def _length_prefixed(data: bytes) -> bytes:
    return struct.pack(">I", len(data)) + data


def write_leaf(key: bytes, value) -> str:
    if value is None:
        payload = _length_prefixed(key) + b"\x00"
    else:
        payload = _length_prefixed(key) + b"\x01" + _length_prefixed(value)
    return sha256(payload)


def tx_root(txs: Sequence[bytes]) -> str:
    return merkle_root([sha256(tx) for tx in txs])


def writes_root(writes: Sequence[Write]) -> str:
    ordered = sorted(writes, key=lambda kv: kv[0])
    return merkle_root([write_leaf(k, v) for k, v in ordered])


class StateRoot:
    """Default state root: chains the prior AppHash with this height's work.

    ``sha256(prev_hash || height(8, BE) || tx_root || writes_root)``. Writes
    are sorted by key before hashing, so staging order never changes the digest.
    """

    def compute(self, prev_hash: bytes, height: int, txs: Sequence[bytes], writes: Sequence[Write]) -> bytes:
        payload = (
            _length_prefixed(prev_hash)
            + encode_height(height)
            + bytes.fromhex(tx_root(txs))
            + bytes.fromhex(writes_root(writes))
        )
        return sha256_bytes(payload)


def compute_app_hash(prev_hash: bytes, height: int, txs: Sequence[bytes], writes: Sequence[Write]) -> bytes:
    return StateRoot().compute(prev_hash, height, txs, writes)
