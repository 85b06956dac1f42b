"""In-memory model of known pools, datasets and their export bindings.

The model is the single source of truth the engine diffs against. It never
talks to the backend; creating things on disk is the adapter's job.
"""
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from sharesync.core.errors import StaleEventError, UnresolvedReferenceError
from sharesync.models.pool import (
    Dataset,
    ExportBinding,
    Pool,
    PoolStatus,
    dataset_identity,
)


class PoolGate:
    """Shared/exclusive section for one pool.

    Dataset work holds the gate shared; pool create/destroy holds it
    exclusively so it never interleaves with dataset work in that pool.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._readers = 0
        self._writer = False

    @contextmanager
    def shared(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def exclusive(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class PoolModel:
    """Thread-safe snapshot of pools and datasets.

    Every mutation runs under one re-entrant lock, so a reader never sees a
    half-applied change.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._pools: Dict[str, Pool] = {}
        self._gates: Dict[str, PoolGate] = {}
        self._service_enabled = True
        self._service_sequence = -1

    # ---------------------------- pools ----------------------------

    def get(self, pool_name: str) -> Optional[Pool]:
        """Return the pool, or None when it is not known (never an empty default)."""
        with self._lock:
            return self._pools.get(pool_name)

    def pools(self) -> List[Pool]:
        with self._lock:
            return list(self._pools.values())

    def add_pool(self, pool_name: str, status: PoolStatus = PoolStatus.UNKNOWN) -> Pool:
        """Register a pool; an existing pool only has its status refreshed."""
        with self._lock:
            pool = self._pools.get(pool_name)
            if pool is None:
                pool = Pool(name=pool_name, status=status)
                self._pools[pool_name] = pool
            elif status != PoolStatus.UNKNOWN:
                pool.status = status
            return pool

    def remove_pool(self, pool_name: str) -> bool:
        with self._lock:
            return self._pools.pop(pool_name, None) is not None

    @contextmanager
    def pool_section(self, pool_name: str, exclusive: bool = False) -> Iterator[None]:
        """Enter the pool-scoped section (shared for dataset work)."""
        with self._lock:
            gate = self._gates.setdefault(pool_name, PoolGate())
        section = gate.exclusive() if exclusive else gate.shared()
        with section:
            yield

    # --------------------------- datasets ---------------------------

    def find_dataset(self, pool_name: str, path: str) -> Optional[Dataset]:
        with self._lock:
            pool = self._pools.get(pool_name)
            if pool is None:
                return None
            return pool.datasets.get(path)

    def resolve_dataset(self, pool_name: str, path: str) -> Dataset:
        """Like find_dataset but raises UnresolvedReferenceError when missing."""
        dataset = self.find_dataset(pool_name, path)
        if dataset is None:
            raise UnresolvedReferenceError(dataset_identity(pool_name, path))
        return dataset

    def upsert_dataset(self, pool_name: str, path: str) -> Dataset:
        """Return the dataset, creating the model entry if needed.

        Idempotent: repeated calls return the same object.

        Raises:
            UnresolvedReferenceError: the pool itself is unknown
        """
        with self._lock:
            pool = self._pools.get(pool_name)
            if pool is None:
                raise UnresolvedReferenceError(
                    pool_name, f"pool {pool_name} is not known yet"
                )
            dataset = pool.datasets.get(path)
            if dataset is None:
                dataset = Dataset(pool=pool_name, path=path)
                pool.datasets[path] = dataset
                dataset.touch()
            return dataset

    def remove_dataset(self, pool_name: str, path: str) -> bool:
        with self._lock:
            pool = self._pools.get(pool_name)
            if pool is None:
                return False
            return pool.datasets.pop(path, None) is not None

    def datasets(self) -> List[Dataset]:
        with self._lock:
            return [ds for pool in self._pools.values() for ds in pool.datasets.values()]

    def _attached(self, dataset: Dataset) -> bool:
        pool = self._pools.get(dataset.pool)
        return pool is not None and pool.datasets.get(dataset.path) is dataset

    # --------------------------- bindings ---------------------------

    def apply_binding(self, dataset: Dataset, binding: ExportBinding) -> None:
        """Insert or replace the binding with the same export name."""
        with self._lock:
            if not self._attached(dataset) or binding.dataset != dataset.identity:
                raise UnresolvedReferenceError(binding.dataset)
            dataset.bindings[binding.name] = binding
            dataset.touch()

    def remove_binding(self, dataset: Dataset, export_name: str) -> bool:
        with self._lock:
            removed = dataset.bindings.pop(export_name, None) is not None
            if removed:
                dataset.touch()
            return removed

    def mark_exposed(self, dataset: Dataset, export_name: str, options: Dict[str, Any]) -> None:
        with self._lock:
            dataset.exposed[export_name] = dict(options)
            dataset.touch()

    def clear_exposed(self, dataset: Dataset, export_name: str) -> None:
        with self._lock:
            if dataset.exposed.pop(export_name, None) is not None:
                dataset.touch()

    def mark_present(self, dataset: Dataset, present: bool = True) -> None:
        with self._lock:
            dataset.present = present
            dataset.touch()

    def mark_wanted(self, dataset: Dataset, wanted: bool = True) -> None:
        with self._lock:
            dataset.wanted = wanted
            dataset.touch()

    def accept_sequence(self, dataset: Dataset, export_name: str, sequence: int) -> None:
        """Record ``sequence`` for an export, rejecting anything older.

        Raises:
            StaleEventError: a higher sequence was already applied
        """
        with self._lock:
            last = dataset.sequences.get(export_name, -1)
            if sequence < last:
                raise StaleEventError(
                    f"{dataset.identity}:{export_name} seq {sequence} < applied {last}"
                )
            dataset.sequences[export_name] = sequence

    # ---------------------------- service ----------------------------

    @property
    def service_enabled(self) -> bool:
        with self._lock:
            return self._service_enabled

    def set_service_enabled(self, enabled: bool, sequence: int) -> bool:
        """Record the sharing service state; returns True when it changed.

        Raises:
            StaleEventError: a newer service update was already applied
        """
        with self._lock:
            if sequence < self._service_sequence:
                raise StaleEventError(
                    f"service seq {sequence} < applied {self._service_sequence}"
                )
            self._service_sequence = sequence
            changed = self._service_enabled != enabled
            self._service_enabled = enabled
            return changed
