"""Abstract interface for storage backends."""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sharesync.models.pool import Dataset, ExportBinding, PoolStatus


@dataclass(frozen=True)
class BackendResult:
    """Outcome of a mutating backend call.

    ``already`` is True when the backend was already in the requested state
    (dataset exists, export absent, ...). That is still a success.
    """
    operation: str
    target: str
    already: bool = False

    @property
    def changed(self) -> bool:
        return not self.already


@dataclass
class PoolSnapshot:
    """What the backend reports for one pool: dataset path -> export name -> options."""
    name: str
    status: PoolStatus = PoolStatus.UNKNOWN
    datasets: Dict[str, Dict[str, Dict[str, Any]]] = field(default_factory=dict)


@dataclass
class ActualState:
    """Snapshot of pools, datasets and exports currently on disk."""
    pools: Dict[str, PoolSnapshot] = field(default_factory=dict)

    def dataset_identities(self) -> List[str]:
        return sorted(
            f"{pool.name}/{path}" for pool in self.pools.values() for path in pool.datasets
        )

    def exports_for(self, pool: str, path: str) -> Optional[Dict[str, Dict[str, Any]]]:
        snapshot = self.pools.get(pool)
        if snapshot is None:
            return None
        return snapshot.datasets.get(path)

    def to_dict(self) -> Dict[str, Any]:
        return {
            name: {
                "status": pool.status.value,
                "datasets": {path: dict(exports) for path, exports in pool.datasets.items()},
            }
            for name, pool in self.pools.items()
        }


class BackendAdapter(ABC):
    """Pool, dataset and export primitives of a storage backend.

    Every mutating call must be safe to repeat: asking for a state the
    backend is already in returns a result with ``already=True``.
    Failures raise TransientBackendError or PermanentBackendError.
    """

    name = "abstract"

    @abstractmethod
    def create_pool(self, pool: str, vdevs: Optional[List[str]] = None) -> BackendResult:
        """Create a pool from the given vdev specification."""
        pass

    @abstractmethod
    def destroy_pool(self, pool: str) -> BackendResult:
        """Destroy a pool and everything in it."""
        pass

    @abstractmethod
    def create_dataset(self, dataset: Dataset) -> BackendResult:
        """Create a dataset (and missing parents)."""
        pass

    @abstractmethod
    def destroy_dataset(self, dataset: Dataset) -> BackendResult:
        """Destroy a dataset recursively."""
        pass

    @abstractmethod
    def bind_export(self, dataset: Dataset, binding: ExportBinding) -> BackendResult:
        """Expose a dataset with the binding's options, replacing an export of the same name."""
        pass

    @abstractmethod
    def unbind_export(self, dataset: Dataset, export_name: str) -> BackendResult:
        """Withdraw an export. Absent exports are not an error."""
        pass

    @abstractmethod
    def list_actual_state(self) -> ActualState:
        """Scan the backend. Used at startup and for drift checks only."""
        pass
