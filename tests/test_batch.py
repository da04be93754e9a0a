from baseapp.batch import PendingBatch, StagedView
from baseapp.db import MemStore


def _store(**items):
    store = MemStore()
    batch = store.new_batch()
    for key, value in items.items():
        batch.set(key.encode(), value.encode())
    batch.write_sync()
    return store


def test_last_write_wins_and_sorted():
    batch = PendingBatch(3)
    batch.set(b"b", b"1")
    batch.set(b"a", b"1")
    batch.set(b"b", b"2")
    assert batch.sorted_writes() == [(b"a", b"1"), (b"b", b"2")]
    assert len(batch) == 2
    assert batch.height == 3


def test_view_reads_own_writes():
    store = _store(x="committed", y="old")
    batch = PendingBatch(1)
    view = StagedView(store, batch)
    batch.set(b"y", b"new")
    batch.delete(b"x")
    batch.set(b"z", b"fresh")
    assert view.get(b"x") is None
    assert view.get(b"y") == b"new"
    assert view.get(b"z") == b"fresh"
    assert store.get(b"x") == b"committed"
    assert store.get(b"z") is None


def test_view_prefix_merges_batch_over_store():
    store = _store(**{"p/1": "a", "p/2": "b", "q/1": "c"})
    batch = PendingBatch(1)
    batch.delete(b"p/1")
    batch.set(b"p/3", b"d")
    view = StagedView(store, batch)
    assert list(view.iterate_prefix(b"p/")) == [(b"p/2", b"b"), (b"p/3", b"d")]


def test_extend_applies_deletes():
    batch = PendingBatch(1)
    batch.extend([(b"a", b"1"), (b"a", None)])
    assert batch.sorted_writes() == [(b"a", None)]
    assert b"a" in batch
