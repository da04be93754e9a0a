import json
import logging
import os
import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .batch import PendingBatch, StagedView
from .db import KVStore, open_store
from .errors import AppError, DurabilityError, ExecutionError, ProtocolViolation, TxError
from .kvstore import KVStoreHandler
from .merkle import StateRoot
from .tx import TxHandler
from .types import (
    CODE_ENCODING,
    CODE_INVALID_HEIGHT,
    CODE_NOT_FOUND,
    CODE_OK,
    CODE_TX_TOO_LARGE,
    CODE_UNKNOWN_PATH,
    CheckTxResult,
    CommitResult,
    ConsensusParams,
    ExecResult,
    FinalizeBlockResult,
    InfoResult,
    InitChainResult,
    ProposalStatus,
    QueryResult,
    SnapshotResult,
    ValidatorUpdate,
    VerifyStatus,
    Write,
)
from .utils import decode_height, encode_height, json_dumps

logger = logging.getLogger(__name__)

APP_NAME = "baseapp"
APP_VERSION = "v0.1.0"
PROTOCOL_VERSION = int(os.getenv("BASEAPP_APP_VERSION", "1"))
DB_BACKEND = os.getenv("BASEAPP_DB_BACKEND", "sqlite").lower()
MAX_TX_BYTES = int(os.getenv("BASEAPP_MAX_TX_BYTES", "1048576"))
MAX_BLOCK_BYTES = int(os.getenv("BASEAPP_MAX_BLOCK_BYTES", "1000000"))
REQUIRE_SIGNED = os.getenv("BASEAPP_REQUIRE_SIGNED", "0") == "1"
QUERY_MAX_KEYS = int(os.getenv("BASEAPP_QUERY_MAX_KEYS", "100"))

LAST_HEIGHT_KEY = b"lastHeight"
LAST_APP_HASH_KEY = b"lastAppHash"
RESERVED_KEYS = (LAST_HEIGHT_KEY, LAST_APP_HASH_KEY)


@dataclass
class Executed:
    height: int
    batch: PendingBatch
    app_hash: bytes


def _require_bytes(tx: object) -> bytes:
    if not isinstance(tx, bytes):
        raise TypeError(f"txs must be bytes, got {type(tx).__name__}")
    return tx


def _well_formed(tx: bytes) -> bool:
    return 0 < len(tx) <= MAX_TX_BYTES


def load_last_committed(store: KVStore) -> Tuple[int, bytes]:
    try:
        raw_height = store.get(LAST_HEIGHT_KEY)
        app_hash = store.get(LAST_APP_HASH_KEY)
    except Exception as exc:
        raise DurabilityError(f"cannot read committed state: {exc}") from exc
    if raw_height is None:
        if app_hash:
            raise DurabilityError("store has lastAppHash but no lastHeight")
        return 0, b""
    try:
        height = decode_height(raw_height)
    except ValueError as exc:
        raise DurabilityError(f"corrupt lastHeight entry: {exc}") from exc
    return height, app_hash or b""


class Application:
    """Deterministic state machine driven by a consensus engine.

    Per height the engine calls ``prepare_proposal`` (proposer only),
    ``process_proposal``, ``finalize_block`` and ``commit`` from one thread at
    a time; those share the writer lock. ``check_tx`` and ``query`` may run
    concurrently with them and only ever see committed state.
    """

    def __init__(
        self,
        store: KVStore,
        handler: Optional[TxHandler] = None,
        state_root: Optional[StateRoot] = None,
    ) -> None:
        self.store = store
        self.handler = handler or KVStoreHandler(require_signed=REQUIRE_SIGNED)
        self.state_root = state_root or StateRoot()
        self._writer = threading.Lock()
        self._executed: Optional[Executed] = None
        self._halted: Optional[str] = None
        self._chain_id = ""
        self._initial_height = 1
        self._genesis_writes: List[Write] = []
        self._last = load_last_committed(store)
        logger.info(
            "loaded committed state height=%d app_hash=%s",
            self._last[0],
            self._last[1].hex() or "-",
        )

    @classmethod
    def open(cls, data_dir: str, backend: str = DB_BACKEND, **kwargs) -> "Application":
        os.makedirs(data_dir, exist_ok=True)
        store = open_store(backend, data_dir)
        try:
            return cls(store, **kwargs)
        except AppError:
            store.close()
            raise

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> "Application":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def last_height(self) -> int:
        return self._last[0]

    @property
    def last_app_hash(self) -> bytes:
        return self._last[1]

    @property
    def phase(self) -> str:
        if self._halted:
            return "halted"
        if self._executed is not None:
            return "executed"
        return "idle"

    @property
    def chain_id(self) -> str:
        return self._chain_id

    def _halt(self, reason: str) -> None:
        if not self._halted:
            self._halted = reason
        logger.critical("application halted: %s", reason)

    def _guard(self) -> None:
        if self._halted:
            raise ProtocolViolation(f"application halted: {self._halted}")

    def _violation(self, message: str) -> ProtocolViolation:
        self._halt(message)
        return ProtocolViolation(message)

    # ------------------------
    # Handshake
    # ------------------------

    def info(self) -> InfoResult:
        height, app_hash = self._last
        return InfoResult(
            data=APP_NAME,
            version=APP_VERSION,
            app_version=PROTOCOL_VERSION,
            last_block_height=height,
            last_block_app_hash=app_hash,
        )

    def init_chain(
        self,
        chain_id: str,
        initial_height: int = 1,
        validators: Sequence[ValidatorUpdate] = (),
        app_state_bytes: bytes = b"",
        consensus_params: Optional[ConsensusParams] = None,
    ) -> InitChainResult:
        with self._writer:
            self._guard()
            if self.last_height != 0 or self._executed is not None:
                raise self._violation(f"init_chain called at height {self.last_height}")
            if initial_height < 1:
                raise self._violation(f"initial height must be >= 1, got {initial_height}")
            writes: List[Write] = []
            if app_state_bytes:
                try:
                    state = json.loads(app_state_bytes.decode())
                except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as exc:
                    raise self._violation(f"invalid genesis app_state: {exc}") from exc
                if not isinstance(state, dict) or not all(
                    isinstance(k, str) and k and isinstance(v, str) for k, v in state.items()
                ):
                    raise self._violation("genesis app_state must map non-empty strings to strings")
                for key in sorted(state):
                    if key.encode() in RESERVED_KEYS:
                        raise self._violation(f"genesis app_state uses reserved key {key!r}")
                    writes.append((key.encode(), state[key].encode()))
            self._chain_id = chain_id
            self._initial_height = initial_height
            self._genesis_writes = writes
            logger.info(
                "init_chain chain_id=%s initial_height=%d genesis_keys=%d validators=%d",
                chain_id,
                initial_height,
                len(writes),
                len(validators),
            )
            return InitChainResult(validators=list(validators), consensus_params=consensus_params)

    # ------------------------
    # Mempool + Proposal logic
    # ------------------------

    def check_tx(self, tx: bytes, recheck: bool = False) -> CheckTxResult:
        _require_bytes(tx)
        if not tx:
            return CheckTxResult(code=CODE_ENCODING, log="empty tx")
        if len(tx) > MAX_TX_BYTES:
            return CheckTxResult(
                code=CODE_TX_TOO_LARGE,
                log=f"tx is {len(tx)} bytes, limit {MAX_TX_BYTES}",
            )
        result = self.handler.check(tx, self.store)
        if not result.ok:
            logger.debug("check_tx rejected code=%d recheck=%s: %s", result.code, recheck, result.log)
        return result

    def prepare_proposal(self, txs: Sequence[bytes], max_tx_bytes: int) -> List[bytes]:
        if max_tx_bytes < 0:
            raise ValueError(f"max_tx_bytes must be >= 0, got {max_tx_bytes}")
        with self._writer:
            self._guard()
            out: List[bytes] = []
            size = 0
            for tx in txs:
                _require_bytes(tx)
                # keep the proposal acceptable to process_proposal
                if not _well_formed(tx):
                    continue
                if size + len(tx) > max_tx_bytes:
                    break
                out.append(tx)
                size += len(tx)
            logger.debug("prepared proposal with %d/%d txs (%d bytes)", len(out), len(txs), size)
            return out

    def process_proposal(self, txs: Sequence[bytes], max_tx_bytes: Optional[int] = None) -> ProposalStatus:
        budget = MAX_BLOCK_BYTES if max_tx_bytes is None else max_tx_bytes
        if budget < 0:
            raise ValueError(f"max_tx_bytes must be >= 0, got {budget}")
        with self._writer:
            self._guard()
            size = 0
            for tx in txs:
                _require_bytes(tx)
                if not _well_formed(tx):
                    logger.info("rejecting proposal: tx of %d bytes", len(tx))
                    return ProposalStatus.REJECT
                size += len(tx)
            if size > budget:
                logger.info("rejecting proposal: %d bytes exceeds budget %d", size, budget)
                return ProposalStatus.REJECT
            return ProposalStatus.ACCEPT

    # ------------------------
    # Consensus
    # ------------------------

    def _deliver(self, tx: bytes, view: StagedView, batch: PendingBatch) -> ExecResult:
        if not tx:
            return ExecResult(code=CODE_ENCODING, log="empty tx")
        if len(tx) > MAX_TX_BYTES:
            return ExecResult(code=CODE_TX_TOO_LARGE, log=f"tx is {len(tx)} bytes, limit {MAX_TX_BYTES}")
        try:
            result, writes = self.handler.apply(tx, view)
        except TxError as exc:
            return ExecResult(code=exc.code, log=exc.log, gas_wanted=len(tx))
        if result.code != CODE_OK:
            return result
        for key, _value in writes:
            if key in RESERVED_KEYS:
                raise ExecutionError(f"tx handler wrote reserved key {key!r}")
        batch.extend(writes)
        return result

    def finalize_block(self, height: int, txs: Sequence[bytes]) -> FinalizeBlockResult:
        with self._writer:
            self._guard()
            if self._executed is not None:
                raise self._violation(
                    f"finalize_block({height}) while height {self._executed.height} awaits commit"
                )
            expected = self.last_height + 1 if self.last_height > 0 else self._initial_height
            if height != expected:
                raise self._violation(f"finalize_block height {height}, expected {expected}")

            txs = [_require_bytes(tx) for tx in txs]
            batch = PendingBatch(height)
            if self.last_height == 0:
                batch.extend(self._genesis_writes)
            view = StagedView(self.store, batch)
            try:
                results = [self._deliver(tx, view, batch) for tx in txs]
                updates = self.handler.end_block(height, batch)
                app_hash = self.state_root.compute(self.last_app_hash, height, txs, batch.sorted_writes())
            except AppError as exc:
                self._halt(str(exc))
                raise
            except Exception as exc:
                self._halt(f"execution of height {height} failed: {exc}")
                raise ExecutionError(f"execution of height {height} failed: {exc}") from exc

            self._executed = Executed(height=height, batch=batch, app_hash=app_hash)
            logger.debug(
                "finalized height=%d txs=%d writes=%d app_hash=%s",
                height,
                len(txs),
                len(batch),
                app_hash.hex(),
            )
            return FinalizeBlockResult(
                tx_results=results,
                app_hash=app_hash,
                validator_updates=updates.validator_updates,
                consensus_param_updates=updates.consensus_param_updates,
                events=updates.events,
            )

    def commit(self) -> CommitResult:
        with self._writer:
            self._guard()
            executed = self._executed
            if executed is None:
                raise self._violation("commit called without a finalized block")
            try:
                with self.store.new_batch() as b:
                    for key, value in executed.batch.sorted_writes():
                        if value is None:
                            b.delete(key)
                        else:
                            b.set(key, value)
                    b.set(LAST_HEIGHT_KEY, encode_height(executed.height))
                    b.set(LAST_APP_HASH_KEY, executed.app_hash)
                    b.write_sync()
            except Exception as exc:
                self._halt(f"flush of height {executed.height} failed: {exc}")
                raise DurabilityError(f"flush of height {executed.height} failed: {exc}") from exc

            self._last = (executed.height, executed.app_hash)
            self._executed = None
            self._genesis_writes = []
            logger.info("committed height=%d app_hash=%s", executed.height, executed.app_hash.hex())
            return CommitResult()

    def extend_vote(self, height: int, block_hash: bytes = b"") -> bytes:
        return b""

    def verify_vote_extension(self, height: int, validator_address: bytes, vote_extension: bytes) -> VerifyStatus:
        if vote_extension:
            return VerifyStatus.REJECT
        return VerifyStatus.ACCEPT

    # ------------------------
    # Queries
    # ------------------------

    def query(self, path: str, data: bytes = b"", height: int = 0) -> QueryResult:
        with self.store.snapshot():
            # the reported height is read in the same snapshot as the data
            last_height, _app_hash = load_last_committed(self.store)
            result = self._query(path, data, height, last_height)
        result.height = last_height
        return result

    def _query(self, path: str, data: bytes, height: int, last_height: int) -> QueryResult:
        if height not in (0, last_height):
            return QueryResult(
                code=CODE_INVALID_HEIGHT,
                log=f"only the latest height {last_height} can be queried",
                key=data,
            )
        if path in ("", "/store", "/key"):
            value = self.store.get(data)
            if value is None:
                return QueryResult(code=CODE_NOT_FOUND, key=data, log="does not exist")
            return QueryResult(key=data, value=value, log="exists")
        if path == "/keys":
            keys: List[str] = []
            for key, _value in self.store.iterate_prefix(data):
                if key in RESERVED_KEYS:
                    continue
                keys.append(key.decode("utf-8", errors="replace"))
                if len(keys) >= QUERY_MAX_KEYS:
                    break
            return QueryResult(key=data, value=json_dumps(keys).encode())
        result = self.handler.query(path, data, self.store)
        if result is None:
            return QueryResult(code=CODE_UNKNOWN_PATH, key=data, log=f"unknown path {path!r}")
        return result

    # ------------------------
    # State sync (not supported)
    # ------------------------

    def list_snapshots(self) -> List[dict]:
        return []

    def offer_snapshot(self, snapshot: Optional[dict] = None, app_hash: bytes = b"") -> SnapshotResult:
        return SnapshotResult.REJECT

    def load_snapshot_chunk(self, height: int, format: int, chunk: int) -> bytes:
        return b""

    def apply_snapshot_chunk(self, index: int, chunk: bytes, sender: str = "") -> SnapshotResult:
        return SnapshotResult.ABORT
