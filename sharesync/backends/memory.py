"""In-memory backend used as a test double."""
import threading
from collections import defaultdict, deque
from typing import Any, Dict, List, Optional, Tuple

from sharesync.backends.base import (
    ActualState,
    BackendAdapter,
    BackendResult,
    PoolSnapshot,
)
from sharesync.core.errors import PermanentBackendError
from sharesync.models.pool import Dataset, ExportBinding, PoolStatus


class InMemoryBackend(BackendAdapter):
    """Keeps pools, datasets and exports in dicts and records every call.

    Failures can be queued per operation with ``fail_next``; each queued
    exception is raised once, before the operation takes effect.
    """

    name = "memory"

    def __init__(self, pools: Optional[Dict[str, Dict[str, Dict[str, Dict[str, Any]]]]] = None):
        self._lock = threading.RLock()
        self.pools: Dict[str, Dict[str, Dict[str, Dict[str, Any]]]] = {}
        self.statuses: Dict[str, PoolStatus] = {}
        self.calls: List[Tuple[str, str]] = []
        self.bind_options: List[Dict[str, Any]] = []
        self._failures: Dict[str, deque] = defaultdict(deque)
        for pool, datasets in (pools or {}).items():
            self.pools[pool] = {
                path: {name: dict(opts) for name, opts in exports.items()}
                for path, exports in datasets.items()
            }
            self.statuses[pool] = PoolStatus.ONLINE

    def fail_next(self, operation: str, *errors: Exception) -> None:
        with self._lock:
            self._failures[operation].extend(errors)

    def calls_to(self, operation: str) -> List[str]:
        with self._lock:
            return [target for op, target in self.calls if op == operation]

    def exports(self, identity: str) -> Dict[str, Dict[str, Any]]:
        pool, _, path = identity.partition("/")
        with self._lock:
            return dict(self.pools.get(pool, {}).get(path, {}))

    def _enter(self, operation: str, target: str) -> None:
        self.calls.append((operation, target))
        pending = self._failures.get(operation)
        if pending:
            raise pending.popleft()

    # ----------------------------------------------------------------

    def create_pool(self, pool: str, vdevs: Optional[List[str]] = None) -> BackendResult:
        with self._lock:
            self._enter("create_pool", pool)
            if pool in self.pools:
                return BackendResult("create_pool", pool, already=True)
            self.pools[pool] = {}
            self.statuses[pool] = PoolStatus.ONLINE
            return BackendResult("create_pool", pool)

    def destroy_pool(self, pool: str) -> BackendResult:
        with self._lock:
            self._enter("destroy_pool", pool)
            if pool not in self.pools:
                return BackendResult("destroy_pool", pool, already=True)
            del self.pools[pool]
            self.statuses.pop(pool, None)
            return BackendResult("destroy_pool", pool)

    def create_dataset(self, dataset: Dataset) -> BackendResult:
        with self._lock:
            self._enter("create_dataset", dataset.identity)
            datasets = self.pools.get(dataset.pool)
            if datasets is None:
                raise PermanentBackendError(f"pool {dataset.pool} does not exist")
            if dataset.path in datasets:
                return BackendResult("create_dataset", dataset.identity, already=True)
            datasets[dataset.path] = {}
            return BackendResult("create_dataset", dataset.identity)

    def destroy_dataset(self, dataset: Dataset) -> BackendResult:
        with self._lock:
            self._enter("destroy_dataset", dataset.identity)
            datasets = self.pools.get(dataset.pool, {})
            if dataset.path not in datasets:
                return BackendResult("destroy_dataset", dataset.identity, already=True)
            del datasets[dataset.path]
            return BackendResult("destroy_dataset", dataset.identity)

    def bind_export(self, dataset: Dataset, binding: ExportBinding) -> BackendResult:
        target = f"{dataset.identity}:{binding.name}"
        with self._lock:
            self._enter("bind_export", target)
            exports = self.pools.get(dataset.pool, {}).get(dataset.path)
            if exports is None:
                raise PermanentBackendError(f"cannot export missing dataset {dataset.identity}")
            self.bind_options.append(dict(binding.options))
            if exports.get(binding.name) == dict(binding.options):
                return BackendResult("bind_export", target, already=True)
            exports[binding.name] = dict(binding.options)
            return BackendResult("bind_export", target)

    def unbind_export(self, dataset: Dataset, export_name: str) -> BackendResult:
        target = f"{dataset.identity}:{export_name}"
        with self._lock:
            self._enter("unbind_export", target)
            exports = self.pools.get(dataset.pool, {}).get(dataset.path, {})
            if export_name not in exports:
                return BackendResult("unbind_export", target, already=True)
            del exports[export_name]
            return BackendResult("unbind_export", target)

    def list_actual_state(self) -> ActualState:
        with self._lock:
            self._enter("list_actual_state", "*")
            state = ActualState()
            for pool, datasets in self.pools.items():
                state.pools[pool] = PoolSnapshot(
                    name=pool,
                    status=self.statuses.get(pool, PoolStatus.UNKNOWN),
                    datasets={
                        path: {name: dict(opts) for name, opts in exports.items()}
                        for path, exports in datasets.items()
                    },
                )
            return state
