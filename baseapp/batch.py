from typing import Dict, Iterator, List, Optional, Tuple

from .db import KVStore, prefix_end
from .types import Write

_MISSING = object()


class PendingBatch:
    """Writes staged while executing one height.

    The last write to a key wins; deletions are kept as ``None`` so they can
    shadow committed values and be replayed onto the store at commit time.
    """

    def __init__(self, height: int) -> None:
        self.height = height
        self._writes: Dict[bytes, Optional[bytes]] = {}

    def set(self, key: bytes, value: bytes) -> None:
        if not isinstance(key, bytes) or not isinstance(value, bytes):
            raise TypeError("staged keys and values must be bytes")
        if not key:
            raise ValueError("key must not be empty")
        self._writes[key] = value

    def delete(self, key: bytes) -> None:
        if not isinstance(key, bytes):
            raise TypeError("staged keys must be bytes")
        self._writes[key] = None

    def extend(self, writes: List[Write]) -> None:
        for key, value in writes:
            if value is None:
                self.delete(key)
            else:
                self.set(key, value)

    def lookup(self, key: bytes):
        return self._writes.get(key, _MISSING)

    def sorted_writes(self) -> List[Write]:
        return sorted(self._writes.items(), key=lambda kv: kv[0])

    def items_with_prefix(self, prefix: bytes) -> List[Write]:
        return [(k, v) for k, v in self.sorted_writes() if k.startswith(prefix)]

    def __contains__(self, key: bytes) -> bool:
        return key in self._writes

    def __len__(self) -> int:
        return len(self._writes)


class StagedView:
    """Read-your-own-writes view: the batch overlaid on committed state."""

    def __init__(self, store: KVStore, batch: PendingBatch) -> None:
        self._store = store
        self._batch = batch

    @property
    def height(self) -> int:
        return self._batch.height

    def get(self, key: bytes) -> Optional[bytes]:
        staged = self._batch.lookup(key)
        if staged is not _MISSING:
            return staged
        return self._store.get(key)

    def has(self, key: bytes) -> bool:
        return self.get(key) is not None

    def iterate_prefix(self, prefix: bytes) -> Iterator[Tuple[bytes, bytes]]:
        merged: Dict[bytes, Optional[bytes]] = dict(self._store.iterate(prefix or None, prefix_end(prefix)))
        merged.update(self._batch.items_with_prefix(prefix))
        for key in sorted(merged):
            value = merged[key]
            if value is not None:
                yield (key, value)
