"""Thread-safe, snapshot-backed entity store.

The board is persisted as one snapshot through a :class:`StorageAdapter`.  All
writes go through :meth:`BoardStore.transaction`, which holds a process-local
``RLock`` and a cross-process :class:`FileLock` for the whole
read-modify-write so concurrent mutations never lose updates.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Generic, Iterator, Optional, TypeVar

from ..constants import LOCK_SUFFIX
from ..io_utils import FileLock
from .adapters import StorageAdapter, create_adapter
from .model import BoardSnapshot, Delivery, Epic, Project, Task, Webhook

T = TypeVar("T")


class _Table(Generic[T]):
    """Id-indexed view over one entity list of the snapshot."""

    def __init__(self, items: list[T], owner: "_BoardTx") -> None:
        self._items = items
        self._owner = owner
        self._index: dict[str, int] = {getattr(item, "id"): i for i, item in enumerate(items)}

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items))

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._index

    def get(self, entity_id: Optional[str]) -> Optional[T]:
        if entity_id is None:
            return None
        idx = self._index.get(entity_id)
        return self._items[idx] if idx is not None else None

    def list_all(self) -> list[T]:
        return list(self._items)

    def filter(self, predicate: Callable[[T], bool]) -> list[T]:
        return [item for item in self._items if predicate(item)]

    def add(self, item: T) -> T:
        entity_id = getattr(item, "id")
        if entity_id in self._index:
            raise ValueError(f"{entity_id} already exists")
        self._index[entity_id] = len(self._items)
        self._items.append(item)
        self._owner.dirty = True
        return item

    def remove(self, entity_id: str) -> Optional[T]:
        """Physically remove an entity, returning it (or None if unknown)."""
        idx = self._index.get(entity_id)
        if idx is None:
            return None
        item = self._items.pop(idx)
        self._reindex()
        self._owner.dirty = True
        return item

    def remove_where(self, predicate: Callable[[T], bool]) -> list[T]:
        removed = [item for item in self._items if predicate(item)]
        if removed:
            self._items[:] = [item for item in self._items if not predicate(item)]
            self._reindex()
            self._owner.dirty = True
        return removed

    def _reindex(self) -> None:
        self._index = {getattr(item, "id"): i for i, item in enumerate(self._items)}


class _BoardTx:
    """In-memory transaction over a loaded snapshot.

    Mutations are flushed back through the adapter when the ``transaction``
    context-manager exits without an exception.
    """

    def __init__(self, snapshot: BoardSnapshot) -> None:
        self.snapshot = snapshot
        self.dirty = False
        self.projects: _Table[Project] = _Table(snapshot.projects, self)
        self.epics: _Table[Epic] = _Table(snapshot.epics, self)
        self.tasks: _Table[Task] = _Table(snapshot.tasks, self)
        self.webhooks: _Table[Webhook] = _Table(snapshot.webhooks, self)
        self.deliveries: _Table[Delivery] = _Table(snapshot.deliveries, self)

    def mark_dirty(self) -> None:
        self.dirty = True


class BoardStore:
    """Snapshot store shared by the mutation engine and the delivery worker.

    Parameters
    ----------
    adapter:
        Persistence adapter performing whole-snapshot read/write.
    lock_path:
        Optional path of the cross-process lock file; defaults to the
        adapter path with a ``.lock`` suffix.
    """

    def __init__(self, adapter: StorageAdapter, lock_path: Optional[Path] = None) -> None:
        self.adapter = adapter
        self._thread_lock = threading.RLock()
        self._file_lock = FileLock(lock_path or adapter.path.with_name(adapter.path.name + LOCK_SUFFIX))
        self._lock_depth = 0

    @classmethod
    def open(cls, path: Path) -> "BoardStore":
        return cls(create_adapter(path))

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._thread_lock:
            # The file lock is not re-entrant, only take it on the outermost entry.
            if self._lock_depth == 0:
                with self._file_lock:
                    self._lock_depth += 1
                    try:
                        yield
                    finally:
                        self._lock_depth -= 1
            else:
                self._lock_depth += 1
                try:
                    yield
                finally:
                    self._lock_depth -= 1

    def _load(self) -> BoardSnapshot:
        return BoardSnapshot.from_dict(self.adapter.read())

    @contextmanager
    def transaction(self) -> Iterator[_BoardTx]:
        """Acquire the locks, load the snapshot, yield a transaction, save on exit.

        Usage::

            with store.transaction() as tx:
                task = tx.tasks.get("task-abc123")
                task.title = "Renamed"
                tx.mark_dirty()
        """
        with self._locked():
            tx = _BoardTx(self._load())
            yield tx
            if tx.dirty:
                self.adapter.write(tx.snapshot.to_dict())

    def read_snapshot(self) -> BoardSnapshot:
        """Return a detached snapshot (no lock held after return)."""
        with self._locked():
            return self._load()

    def close(self) -> None:
        self.adapter.close()

