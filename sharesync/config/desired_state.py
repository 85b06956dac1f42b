"""Normalized declared state built from a processed config."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from sharesync.models.share import ExportSpec


@dataclass
class DeclaredState:
    """What configuration says should exist.

    ``pools`` maps pool -> dataset path -> export name -> ExportSpec.
    """
    service_enabled: bool = True
    pools: Dict[str, Dict[str, Dict[str, ExportSpec]]] = field(default_factory=dict)
    source: str = ""

    def dataset_identities(self) -> List[str]:
        return sorted(
            f"{pool}/{path}" for pool, datasets in self.pools.items() for path in datasets
        )

    def exports_for(self, pool: str, path: str) -> Dict[str, ExportSpec]:
        return self.pools.get(pool, {}).get(path, {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": {"nfs": {"enabled": self.service_enabled}},
            "pools": {
                pool: {
                    path: {name: spec.to_options() for name, spec in exports.items()}
                    for path, exports in datasets.items()
                }
                for pool, datasets in self.pools.items()
            },
        }
