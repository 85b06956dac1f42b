"""Typed configuration-change events."""
import copy
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

SERVICE_KEY = "@service"


class EventKind(Enum):
    """What changed in the configuration."""
    SERVICE_UPDATED = "service.updated"
    SHARE_CREATED = "share.created"
    SHARE_DELETED = "share.deleted"
    SHARE_UPDATED = "share.updated"
    POOL_CREATED = "pool.created"
    POOL_DESTROYED = "pool.destroyed"
    DATASET_CREATED = "dataset.created"
    DATASET_DESTROYED = "dataset.destroyed"


SHARE_KINDS = frozenset({
    EventKind.SHARE_CREATED,
    EventKind.SHARE_DELETED,
    EventKind.SHARE_UPDATED,
})
POOL_KINDS = frozenset({EventKind.POOL_CREATED, EventKind.POOL_DESTROYED})
DATASET_KINDS = frozenset({EventKind.DATASET_CREATED, EventKind.DATASET_DESTROYED})
ALL_KINDS = frozenset(EventKind)


@dataclass(frozen=True)
class ConfigEvent:
    """A configuration change with the producer's sequence number.

    The payload is deep-copied and wrapped read-only on construction.
    Dataset-scoped payloads carry ``pool`` and ``dataset``; share payloads
    add ``name`` and the export spec fields; service payloads carry
    ``enabled``.
    """
    kind: EventKind
    sequence: int
    payload: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(
            self, "payload", MappingProxyType(copy.deepcopy(dict(self.payload)))
        )

    @property
    def pool(self) -> Optional[str]:
        return self.payload.get("pool")

    @property
    def dataset(self) -> Optional[str]:
        return self.payload.get("dataset")

    @property
    def export_name(self) -> Optional[str]:
        return self.payload.get("name")

    @property
    def key(self) -> str:
        """Ordering key: one serial lane per dataset (or pool, or the service)."""
        if self.kind == EventKind.SERVICE_UPDATED:
            return SERVICE_KEY
        if self.kind in POOL_KINDS:
            return f"{self.payload['pool']}"
        return f"{self.payload['pool']}/{self.payload['dataset']}"

    def describe(self) -> str:
        name = f":{self.export_name}" if self.kind in SHARE_KINDS else ""
        return f"{self.kind.value} {self.key}{name} seq={self.sequence}"
