"""
In-memory registries for configurations, runs, artifacts and restore operations.

Entities are pydantic models treated as immutable snapshots: writers replace
the stored snapshot under the registry lock. Single lookups take whatever
snapshot is current without locking; ``list`` copies under the lock, which
is only held for a dict assignment or a mutation of a private copy.
"""
import threading
from typing import Callable, Dict, Generic, Iterable, List, Optional, TypeVar

from pydantic import BaseModel

from .errors import NotFound

T = TypeVar("T", bound=BaseModel)


class Registry(Generic[T]):
    def __init__(self, kind: str):
        self.kind = kind
        self._items: Dict[str, T] = {}
        self._lock = threading.Lock()

    def get(self, item_id: str) -> Optional[T]:
        return self._items.get(item_id)

    def require(self, item_id: str) -> T:
        item = self._items.get(item_id)
        if item is None:
            raise NotFound(f"{self.kind} '{item_id}' not found")
        return item

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    def list(self) -> List[T]:
        with self._lock:
            return list(self._items.values())

    def put(self, item: T) -> T:
        with self._lock:
            self._items[item.id] = item
        return item

    def add_new(self, item: T) -> bool:
        """Stores ``item`` only if its id is free. Returns False on collision."""
        with self._lock:
            if item.id in self._items:
                return False
            self._items[item.id] = item
            return True

    def update(self, item_id: str, mutate: Callable[[T], None]) -> T:
        """
        Applies ``mutate`` to a private copy of the entity and publishes the
        copy as the new snapshot. Updates to the same registry are serialized.
        """
        with self._lock:
            current = self._items.get(item_id)
            if current is None:
                raise NotFound(f"{self.kind} '{item_id}' not found")
            updated = current.model_copy(deep=True)
            mutate(updated)
            self._items[item_id] = updated
            return updated

    def delete(self, item_id: str) -> Optional[T]:
        with self._lock:
            return self._items.pop(item_id, None)

    def delete_many(self, item_ids: Iterable[str]) -> None:
        with self._lock:
            for item_id in item_ids:
                self._items.pop(item_id, None)


class Store:
    """The set of registries shared by the orchestration components."""

    def __init__(self):
        self.configurations = Registry("Backup configuration")
        self.runs = Registry("Backup run")
        self.artifacts = Registry("Backup artifact")
        self.restores = Registry("Restore operation")
