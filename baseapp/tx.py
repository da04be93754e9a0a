import json
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

from . import crypto
from .batch import PendingBatch, StagedView
from .db import KVStore
from .errors import TxError
from .types import (
    CODE_ENCODING,
    CODE_INVALID_VALIDATOR,
    BlockUpdates,
    CheckTxResult,
    ExecResult,
    QueryResult,
    Write,
)
from .utils import json_dumps, sha256

VALIDATOR_PREFIX = b"val="


@dataclass
class KVTx:
    key: bytes
    value: bytes


@dataclass
class ValidatorTx:
    pub_key: bytes
    power: int


@dataclass
class SignedTx:
    tx: str
    nonce: int
    pubkey: Dict[str, str]
    signature: str = ""

    def payload_dict(self) -> Dict[str, object]:
        return {"tx": self.tx, "nonce": self.nonce}

    @property
    def sign_hash(self) -> str:
        return sha256(json_dumps(self.payload_dict()).encode())

    @property
    def signer(self) -> str:
        return crypto.address_from_pubkey(crypto.key_from_hex(self.pubkey))

    def sign(self, priv: Dict[str, int]) -> None:
        self.pubkey = crypto.key_to_hex(crypto.public_key(priv))
        self.signature = crypto.sign(self.sign_hash, priv)

    def verify(self) -> bool:
        if not self.signature:
            return False
        try:
            pub = crypto.key_from_hex(self.pubkey)
        except (KeyError, TypeError, ValueError):
            return False
        return crypto.verify(self.sign_hash, self.signature, pub)

    def to_dict(self) -> Dict[str, object]:
        data = self.payload_dict()
        data["pubkey"] = self.pubkey
        data["signature"] = self.signature
        return data

    def to_bytes(self) -> bytes:
        return json_dumps(self.to_dict()).encode()

    @staticmethod
    def from_dict(data: Dict[str, object]) -> "SignedTx":
        pubkey = data.get("pubkey")
        if not isinstance(pubkey, dict):
            raise ValueError("pubkey must be an object")
        nonce = data.get("nonce")
        if not isinstance(nonce, int) or isinstance(nonce, bool) or nonce <= 0:
            raise ValueError("nonce must be a positive integer")
        inner = data.get("tx")
        if not isinstance(inner, str) or not inner:
            raise ValueError("tx must be a non-empty string")
        return SignedTx(
            tx=inner,
            nonce=nonce,
            pubkey={str(k): str(v) for k, v in pubkey.items()},
            signature=str(data.get("signature", "")),
        )


Decoded = Union[KVTx, ValidatorTx]


def _decode_validator(raw: bytes) -> ValidatorTx:
    body = raw[len(VALIDATOR_PREFIX):]
    pub_hex, sep, power_text = body.partition(b"!")
    if not sep:
        raise TxError(CODE_INVALID_VALIDATOR, "expected val=<pubkey hex>!<power>")
    try:
        pub_key = bytes.fromhex(pub_hex.decode())
        crypto.pubkey_from_bytes(pub_key)
    except ValueError as exc:
        raise TxError(CODE_INVALID_VALIDATOR, f"invalid validator pubkey: {exc}") from exc
    try:
        power = int(power_text.decode())
    except ValueError as exc:
        raise TxError(CODE_INVALID_VALIDATOR, "invalid validator power") from exc
    if power < 0:
        raise TxError(CODE_INVALID_VALIDATOR, "validator power must be >= 0")
    return ValidatorTx(pub_key=pub_key, power=power)


def decode_plain(raw: bytes) -> Decoded:
    if not raw:
        raise TxError(CODE_ENCODING, "empty tx")
    if raw.startswith(VALIDATOR_PREFIX):
        return _decode_validator(raw)
    key, sep, value = raw.partition(b"=")
    if not sep:
        return KVTx(key=raw, value=raw)
    if not key:
        raise TxError(CODE_ENCODING, "empty key")
    return KVTx(key=key, value=value)


def decode_tx(raw: bytes) -> Tuple[Optional[SignedTx], Decoded]:
    """Split a raw tx into its optional signed envelope and its operation."""
    if raw.startswith(b"{"):
        try:
            envelope = SignedTx.from_dict(json.loads(raw.decode()))
        except (UnicodeDecodeError, json.JSONDecodeError, AttributeError, ValueError, RecursionError) as exc:
            raise TxError(CODE_ENCODING, f"invalid signed envelope: {exc}") from exc
        inner = envelope.tx.encode()
        if inner.startswith(b"{"):
            raise TxError(CODE_ENCODING, "nested envelopes are not allowed")
        return envelope, decode_plain(inner)
    return None, decode_plain(raw)


class TxHandler:
    """Pluggable tx interpretation used by the application.

    Implementations must be deterministic: the same tx against the same view
    must always produce the same result and writes.
    """

    def check(self, tx: bytes, store: KVStore) -> CheckTxResult:
        raise NotImplementedError

    def apply(self, tx: bytes, view: StagedView) -> Tuple[ExecResult, List[Write]]:
        raise NotImplementedError

    def end_block(self, height: int, batch: PendingBatch) -> BlockUpdates:
        return BlockUpdates()

    def query(self, path: str, data: bytes, store: KVStore) -> Optional[QueryResult]:
        return None
