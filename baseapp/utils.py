import hashlib
import json
import struct
from typing import Any

HEIGHT_SIZE = 8


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_bytes(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"))


def encode_height(height: int) -> bytes:
    if height < 0 or height >= 1 << 64:
        raise ValueError(f"height out of range: {height}")
    return struct.pack(">Q", height)


def decode_height(raw: bytes) -> int:
    if len(raw) != HEIGHT_SIZE:
        raise ValueError(f"height must be {HEIGHT_SIZE} bytes, got {len(raw)}")
    return struct.unpack(">Q", raw)[0]
