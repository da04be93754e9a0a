import logging
from typing import List, Optional, Tuple

from .batch import PendingBatch, StagedView
from .db import KVStore
from .errors import TxError
from .tx import KVTx, SignedTx, TxHandler, ValidatorTx, decode_tx
from .types import (
    CODE_BAD_NONCE,
    CODE_NOT_FOUND,
    CODE_RESERVED_KEY,
    CODE_UNAUTHORIZED,
    CODE_UNSIGNED,
    BlockUpdates,
    CheckTxResult,
    Event,
    EventAttribute,
    ExecResult,
    QueryResult,
    ValidatorUpdate,
    Write,
)

logger = logging.getLogger(__name__)

RESERVED_KEYS = (b"lastHeight", b"lastAppHash")
NONCE_PREFIX = b"nonce/"
VALIDATOR_KEY_PREFIX = b"val/"
PROTECTED_PREFIXES = (NONCE_PREFIX, VALIDATOR_KEY_PREFIX)


def nonce_key(address: str) -> bytes:
    return NONCE_PREFIX + address.encode()


def validator_key(pub_key: bytes) -> bytes:
    return VALIDATOR_KEY_PREFIX + pub_key.hex().encode()


def _text(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


class KVStoreHandler(TxHandler):
    """Key/value transactions with optional signed, nonce-ordered envelopes."""

    def __init__(self, require_signed: bool = False) -> None:
        self.require_signed = require_signed

    def _decode(self, tx: bytes) -> Tuple[Optional[SignedTx], object]:
        envelope, op = decode_tx(tx)
        if envelope is None and self.require_signed:
            raise TxError(CODE_UNSIGNED, "unsigned txs are not accepted")
        if envelope is not None and not envelope.verify():
            raise TxError(CODE_UNAUTHORIZED, "invalid signature")
        if isinstance(op, KVTx):
            if op.key in RESERVED_KEYS or op.key.startswith(PROTECTED_PREFIXES):
                raise TxError(CODE_RESERVED_KEY, f"key {_text(op.key)!r} is reserved")
        return envelope, op

    def _next_nonce(self, envelope: SignedTx, get) -> bytes:
        key = nonce_key(envelope.signer)
        raw = get(key)
        last = int(raw) if raw else 0
        if envelope.nonce <= last:
            raise TxError(CODE_BAD_NONCE, f"nonce {envelope.nonce} already used (last {last})")
        return key

    def check(self, tx: bytes, store: KVStore) -> CheckTxResult:
        try:
            envelope, _op = self._decode(tx)
            if envelope is not None:
                self._next_nonce(envelope, store.get)
        except TxError as exc:
            return CheckTxResult(code=exc.code, log=exc.log)
        return CheckTxResult(gas_wanted=len(tx))

    def apply(self, tx: bytes, view: StagedView) -> Tuple[ExecResult, List[Write]]:
        envelope, op = self._decode(tx)
        writes: List[Write] = []
        creator = "anonymous"
        if envelope is not None:
            key = self._next_nonce(envelope, view.get)
            writes.append((key, str(envelope.nonce).encode()))
            creator = envelope.signer

        if isinstance(op, ValidatorTx):
            writes.append((validator_key(op.pub_key), str(op.power).encode()))
            event = Event(
                "validator",
                [
                    EventAttribute("pub_key", op.pub_key.hex()),
                    EventAttribute("power", str(op.power)),
                    EventAttribute("creator", creator),
                ],
            )
            result = ExecResult(gas_wanted=len(tx), gas_used=len(op.pub_key), events=[event])
            return result, writes

        writes.append((op.key, op.value))
        event = Event(
            "app",
            [
                EventAttribute("key", _text(op.key)),
                EventAttribute("creator", creator),
            ],
        )
        result = ExecResult(
            gas_wanted=len(tx),
            gas_used=len(op.key) + len(op.value),
            events=[event],
        )
        return result, writes

    def end_block(self, height: int, batch: PendingBatch) -> BlockUpdates:
        updates = []
        for key, value in batch.items_with_prefix(VALIDATOR_KEY_PREFIX):
            if value is None:
                continue
            pub_key = bytes.fromhex(key[len(VALIDATOR_KEY_PREFIX):].decode())
            updates.append(ValidatorUpdate(pub_key=pub_key, power=int(value)))
        if updates:
            logger.info("height %d: %d validator updates", height, len(updates))
        return BlockUpdates(validator_updates=updates)

    def query(self, path: str, data: bytes, store: KVStore) -> Optional[QueryResult]:
        if path != "/nonce":
            return None
        address = _text(data)
        raw = store.get(nonce_key(address))
        if raw is None:
            return QueryResult(code=CODE_NOT_FOUND, key=data, log=f"no nonce for {address}")
        return QueryResult(key=data, value=raw, log="exists")
