import json
import threading

import pytest

from baseapp.app import LAST_APP_HASH_KEY, LAST_HEIGHT_KEY, Application
from baseapp.db import MemStore
from baseapp.errors import ExecutionError, ProtocolViolation
from baseapp.kvstore import KVStoreHandler
from baseapp.merkle import compute_app_hash
from baseapp.types import (
    CODE_ENCODING,
    CODE_INVALID_HEIGHT,
    CODE_NOT_FOUND,
    CODE_OK,
    CODE_RESERVED_KEY,
    CODE_UNKNOWN_PATH,
    ProposalStatus,
    SnapshotResult,
    VerifyStatus,
)
from baseapp.utils import encode_height


def test_execute_commit_handshake_query(app):
    res = app.finalize_block(1, [b"a", b"b"])
    assert [r.code for r in res.tx_results] == [CODE_OK, CODE_OK]
    assert res.app_hash == compute_app_hash(b"", 1, [b"a", b"b"], [(b"a", b"a"), (b"b", b"b")])
    assert app.phase == "executed"

    app.commit()
    assert app.phase == "idle"
    info = app.info()
    assert (info.last_block_height, info.last_block_app_hash) == (1, res.app_hash)
    assert app.store.get(LAST_HEIGHT_KEY) == encode_height(1)
    assert app.store.get(LAST_APP_HASH_KEY) == res.app_hash

    q = app.query("/store", b"a")
    assert q.ok
    assert q.value == b"a"
    assert q.height == 1


def test_one_result_per_tx_in_order(mem_app):
    txs = [b"k1=v1", b"", b"lastHeight=9", b"k2=v2"]
    res = mem_app.finalize_block(1, txs)
    assert len(res.tx_results) == len(txs)
    assert [r.code for r in res.tx_results] == [CODE_OK, CODE_ENCODING, CODE_RESERVED_KEY, CODE_OK]
    assert res.tx_results[0].gas_used == 4
    assert res.tx_results[0].events[0].attributes[0].value == "k1"


def test_failed_tx_writes_are_discarded(mem_app):
    mem_app.finalize_block(1, [b"lastHeight=9"])
    mem_app.commit()
    assert mem_app.info().last_block_height == 1
    assert mem_app.store.get(LAST_HEIGHT_KEY) == encode_height(1)


def test_later_txs_see_earlier_writes(mem_app):
    class CounterHandler(KVStoreHandler):
        def apply(self, tx, view):
            current = int(view.get(b"counter") or b"0")
            result, _ = super().apply(tx, view)
            return result, [(b"counter", str(current + 1).encode())]

    mem_app.handler = CounterHandler()
    mem_app.finalize_block(1, [b"x", b"y", b"z"])
    mem_app.commit()
    assert mem_app.query("/store", b"counter").value == b"3"


def test_query_never_sees_pending_writes(app):
    app.finalize_block(1, [b"color=red"])
    assert app.query("/store", b"color").code == CODE_NOT_FOUND
    assert app.check_tx(b"color=blue").ok
    app.commit()
    assert app.query("/store", b"color").value == b"red"


def test_commit_without_execute_is_a_violation(app):
    with pytest.raises(ProtocolViolation):
        app.commit()
    assert list(app.store.iterate()) == []
    assert app.info().last_block_height == 0
    assert app.phase == "halted"


def test_second_execute_before_commit_is_a_violation(mem_app):
    mem_app.finalize_block(1, [b"a"])
    with pytest.raises(ProtocolViolation):
        mem_app.finalize_block(2, [b"b"])
    with pytest.raises(ProtocolViolation):
        mem_app.commit()
    assert mem_app.store.get(b"a") is None


def test_height_must_follow_last_commit(mem_app):
    with pytest.raises(ProtocolViolation):
        mem_app.finalize_block(2, [])


def test_commit_twice_is_a_violation(mem_app):
    mem_app.finalize_block(1, [b"a"])
    mem_app.commit()
    with pytest.raises(ProtocolViolation):
        mem_app.commit()
    assert mem_app.info().last_block_height == 1


def test_handler_crash_is_fatal(mem_app):
    class BrokenHandler(KVStoreHandler):
        def apply(self, tx, view):
            raise KeyError("boom")

    mem_app.handler = BrokenHandler()
    with pytest.raises(ExecutionError):
        mem_app.finalize_block(1, [b"a"])
    assert mem_app.phase == "halted"
    with pytest.raises(ProtocolViolation):
        mem_app.commit()
    assert list(mem_app.store.iterate()) == []


def test_replicas_agree(tmp_path):
    blocks = [[b"a=1", b"b=2"], [], [b"a=3", b"c", b"lastAppHash=x"], [b"d=4"]]
    hashes = []
    for name, backend in (("one", "sqlite"), ("two", "memdb")):
        with Application.open(str(tmp_path / name), backend=backend) as replica:
            out = []
            for height, txs in enumerate(blocks, start=1):
                out.append(replica.finalize_block(height, txs).app_hash)
                replica.commit()
            hashes.append(out)
    assert hashes[0] == hashes[1]
    assert len(set(hashes[0])) == len(blocks)


def test_prepare_proposal_takes_prefix_within_budget(mem_app):
    txs = [b"x" * 300, b"y" * 300, b"z" * 300]
    assert mem_app.prepare_proposal(txs, 500) == [txs[0]]
    assert mem_app.prepare_proposal(txs, 600) == txs[:2]
    assert mem_app.prepare_proposal(txs, 0) == []
    assert mem_app.prepare_proposal([b"a" * 10, b"b" * 1000, b"c"], 100) == [b"a" * 10]


def test_prepare_proposal_size_bound(mem_app):
    txs = [bytes([i]) * (i * 7 % 50 + 1) for i in range(40)]
    for budget in (0, 1, 49, 50, 333, 10_000):
        selected = mem_app.prepare_proposal(txs, budget)
        assert sum(len(t) for t in selected) <= budget
        assert selected == txs[: len(selected)]


def test_prepare_proposal_rejects_malformed_input(mem_app):
    with pytest.raises(ValueError):
        mem_app.prepare_proposal([b"a"], -1)
    with pytest.raises(TypeError):
        mem_app.prepare_proposal(["a"], 10)


def test_process_proposal(mem_app):
    txs = [b"x" * 300, b"y" * 300, b"z" * 300]
    assert mem_app.process_proposal(txs, 500) == ProposalStatus.REJECT
    assert mem_app.process_proposal(txs, 900) == ProposalStatus.ACCEPT
    assert mem_app.process_proposal(txs) == ProposalStatus.ACCEPT
    assert mem_app.process_proposal([b"ok", b""], 100) == ProposalStatus.REJECT
    assert mem_app.phase == "idle"


def test_process_proposal_default_budget(load_app_module):
    mod = load_app_module(BASEAPP_MAX_BLOCK_BYTES="100")
    application = mod.Application(MemStore())
    assert application.process_proposal([b"x" * 60, b"y" * 60]) == ProposalStatus.REJECT
    assert application.process_proposal([b"x" * 60, b"y" * 40]) == ProposalStatus.ACCEPT


def test_check_tx_limits(load_app_module):
    mod = load_app_module(BASEAPP_MAX_TX_BYTES="8")
    application = mod.Application(MemStore())
    assert application.check_tx(b"k=v").ok
    assert application.check_tx(b"").code == CODE_ENCODING
    assert not application.check_tx(b"key=value!").ok
    assert application.process_proposal([b"key=value!"], 100) == ProposalStatus.REJECT


def test_check_tx_reads_committed_state_only(mem_app):
    assert mem_app.check_tx(b"lastHeight=1").code == CODE_RESERVED_KEY
    mem_app.finalize_block(1, [b"a"])
    assert mem_app.check_tx(b"b").ok


def test_init_chain_genesis_state(mem_app):
    state = json.dumps({"greeting": "hello", "answer": "42"}).encode()
    res = mem_app.init_chain("test-chain", initial_height=5, app_state_bytes=state)
    assert res.app_hash == b""
    assert mem_app.chain_id == "test-chain"
    with pytest.raises(ProtocolViolation):
        mem_app.finalize_block(1, [])


def test_init_chain_writes_land_with_first_block(mem_app):
    state = json.dumps({"greeting": "hello"}).encode()
    mem_app.init_chain("test-chain", initial_height=5, app_state_bytes=state)
    assert mem_app.query("/store", b"greeting").code == CODE_NOT_FOUND
    mem_app.finalize_block(5, [b"a"])
    mem_app.commit()
    assert mem_app.query("/store", b"greeting").value == b"hello"
    assert mem_app.info().last_block_height == 5
    mem_app.finalize_block(6, [])
    mem_app.commit()
    assert mem_app.info().last_block_height == 6


def test_init_chain_rejects_bad_genesis(mem_app):
    with pytest.raises(ProtocolViolation):
        mem_app.init_chain("c", app_state_bytes=b'{"lastHeight": "1"}')


def test_init_chain_after_commit_is_a_violation(mem_app):
    mem_app.finalize_block(1, [])
    mem_app.commit()
    with pytest.raises(ProtocolViolation):
        mem_app.init_chain("late")


def test_query_paths(mem_app):
    mem_app.finalize_block(1, [b"p/1=a", b"p/2=b", b"q=c"])
    mem_app.commit()
    keys = mem_app.query("/keys", b"p/")
    assert json.loads(keys.value) == ["p/1", "p/2"]
    all_keys = json.loads(mem_app.query("/keys").value)
    assert "lastHeight" not in all_keys
    assert mem_app.query("/bogus", b"").code == CODE_UNKNOWN_PATH
    assert mem_app.query("/store", b"q", height=1).ok
    assert mem_app.query("/store", b"q", height=7).code == CODE_INVALID_HEIGHT


def test_vote_extension_and_snapshot_stubs(mem_app):
    assert mem_app.extend_vote(1, b"h") == b""
    assert mem_app.verify_vote_extension(1, b"v", b"") == VerifyStatus.ACCEPT
    assert mem_app.verify_vote_extension(1, b"v", b"x") == VerifyStatus.REJECT
    assert mem_app.list_snapshots() == []
    assert mem_app.offer_snapshot({}) == SnapshotResult.REJECT
    assert mem_app.load_snapshot_chunk(1, 0, 0) == b""
    assert mem_app.apply_snapshot_chunk(0, b"") == SnapshotResult.ABORT


def test_reads_run_alongside_block_execution(app):
    errors = []
    stop = threading.Event()

    def reader():
        while not stop.is_set():
            try:
                q = app.query("/store", b"k")
                if q.ok:
                    assert q.value.startswith(b"v")
                app.check_tx(b"k=x")
            except Exception as exc:  # collected for the assertion below
                errors.append(exc)
                return

    threads = [threading.Thread(target=reader) for _ in range(3)]
    for t in threads:
        t.start()
    try:
        for height in range(1, 21):
            app.finalize_block(height, [f"k=v{height}".encode()])
            app.commit()
    finally:
        stop.set()
        for t in threads:
            t.join()
    assert errors == []
    assert app.query("/store", b"k").value == b"v20"


def test_prepared_proposal_passes_process_proposal(load_app_module):
    mod = load_app_module(BASEAPP_MAX_TX_BYTES="8")
    app = mod.Application(MemStore())
    txs = [b"a=1", b"", b"b=2", b"c=" + b"x" * 20, b"d=4"]
    proposal = app.prepare_proposal(txs, 1000)
    assert proposal == [b"a=1", b"b=2", b"d=4"]
    assert app.process_proposal(proposal, 1000) == ProposalStatus.ACCEPT
    assert app.process_proposal(txs, 1000) == ProposalStatus.REJECT


def _run_commits_against_queries(application, heights):
    errors = []
    stop = threading.Event()

    def reader():
        while not stop.is_set():
            q = application.query("/store", b"h")
            if q.ok and int(q.value) != q.height:
                errors.append((q.value, q.height))
                return

    threads = [threading.Thread(target=reader) for _ in range(3)]
    for t in threads:
        t.start()
    try:
        for height in range(1, heights + 1):
            application.finalize_block(height, [f"h={height}".encode()])
            application.commit()
    finally:
        stop.set()
        for t in threads:
            t.join()
    return errors


def test_query_height_matches_returned_data(app, mem_app):
    assert _run_commits_against_queries(app, 30) == []
    assert _run_commits_against_queries(mem_app, 30) == []
    q = app.query("/store", b"h")
    assert (q.value, q.height) == (b"30", 30)
