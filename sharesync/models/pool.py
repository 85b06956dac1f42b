"""Pool, dataset and export binding models."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


class PoolStatus(Enum):
    """Health of a pool as last reported by the backend."""
    ONLINE = "online"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"

    @classmethod
    def from_health(cls, health: str) -> "PoolStatus":
        """Map `zpool list -o health` output onto a status."""
        value = (health or "").strip().upper()
        if value == "ONLINE":
            return cls.ONLINE
        if value == "DEGRADED":
            return cls.DEGRADED
        if value in ("FAULTED", "OFFLINE", "UNAVAIL", "REMOVED", "SUSPENDED"):
            return cls.UNAVAILABLE
        return cls.UNKNOWN


def dataset_identity(pool: str, path: str) -> str:
    """Full dataset name, e.g. ``tank/media``."""
    return f"{pool}/{path}"


@dataclass(frozen=True)
class ExportBinding:
    """An NFS export of a dataset under a given name."""
    dataset: str                  # dataset identity (pool/path)
    name: str
    options: Dict[str, Any] = field(default_factory=dict, hash=False, compare=True)


@dataclass
class Dataset:
    """A dataset inside a pool.

    ``bindings`` is what configuration wants exported, ``exposed`` is what
    the backend last confirmed. ``sequences`` keeps the highest applied
    event sequence per export name, including for removed bindings.
    """
    pool: str
    path: str
    bindings: Dict[str, ExportBinding] = field(default_factory=dict)
    exposed: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    sequences: Dict[str, int] = field(default_factory=dict)
    present: bool = False
    wanted: bool = True
    revision: int = 0

    @property
    def identity(self) -> str:
        return dataset_identity(self.pool, self.path)

    def touch(self) -> int:
        self.revision += 1
        return self.revision


@dataclass
class Pool:
    """A storage pool and the datasets sharesync knows about."""
    name: str
    status: PoolStatus = PoolStatus.UNKNOWN
    datasets: Dict[str, Dataset] = field(default_factory=dict)
