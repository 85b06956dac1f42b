"""Declared vs. actual drift detection."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sharesync.backends.base import ActualState
from sharesync.config.desired_state import DeclaredState


class DriftSeverity:
    """Severity levels used for drift classification."""

    INFO = "info"
    AUTO_MERGE = "auto-merge"
    DANGEROUS = "dangerous"


@dataclass
class DriftItem:
    """A single drift finding."""

    resource_type: str
    identifier: str
    field: str
    desired: Any
    reality: Any
    severity: str
    message: str
    context: Optional[Dict[str, Any]] = None


@dataclass
class DriftReport:
    """Aggregated drift report."""

    items: List[DriftItem] = field(default_factory=list)

    def add(self, item: DriftItem) -> None:
        self.items.append(item)

    def is_clean(self) -> bool:
        return not self.items

    def summary(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for item in self.items:
            counts[item.severity] = counts.get(item.severity, 0) + 1
        return counts


class DriftEngine:
    """Compares declared configuration with what the backend reports."""

    def __init__(self, declared: DeclaredState, actual: ActualState):
        self.declared = declared
        self.actual = actual
        self.report = DriftReport()

    def run(self) -> DriftReport:
        self.report = DriftReport()
        self._compare_service()
        for pool_name in sorted(self.declared.pools):
            if pool_name not in self.actual.pools:
                self.report.add(DriftItem(
                    resource_type="pool",
                    identifier=pool_name,
                    field="exists",
                    desired=True,
                    reality=False,
                    severity=DriftSeverity.DANGEROUS,
                    message=f"Pool {pool_name} is not imported on this host",
                    context={"pool": pool_name},
                ))
                continue
            self._compare_pool(pool_name)
        return self.report

    def _compare_service(self) -> None:
        if self.declared.service_enabled:
            return
        exposed = [
            f"{pool}/{path}:{name}"
            for pool, snapshot in self.actual.pools.items()
            for path, exports in snapshot.datasets.items()
            for name in exports
        ]
        if exposed:
            self.report.add(DriftItem(
                resource_type="service",
                identifier="nfs",
                field="enabled",
                desired=False,
                reality=True,
                severity=DriftSeverity.AUTO_MERGE,
                message=f"NFS disabled but {len(exposed)} export(s) are active",
                context={"exports": exposed},
            ))

    def _compare_pool(self, pool_name: str) -> None:
        declared = self.declared.pools[pool_name]
        actual = self.actual.pools[pool_name].datasets

        for path in sorted(declared):
            identity = f"{pool_name}/{path}"
            context = {"pool": pool_name, "dataset": path}
            if path not in actual:
                self.report.add(DriftItem(
                    resource_type="dataset",
                    identifier=identity,
                    field="exists",
                    desired=True,
                    reality=False,
                    severity=DriftSeverity.AUTO_MERGE,
                    message=f"Dataset {identity} missing on backend",
                    context=context,
                ))
                actual_exports = {}
            else:
                actual_exports = actual[path]
            self._compare_exports(identity, context, declared[path], actual_exports)

        for path in sorted(set(actual) - set(declared)):
            identity = f"{pool_name}/{path}"
            self.report.add(DriftItem(
                resource_type="dataset",
                identifier=identity,
                field="exists",
                desired=False,
                reality=True,
                severity=DriftSeverity.DANGEROUS,
                message=f"Dataset {identity} is not in configuration",
                context={"pool": pool_name, "dataset": path, "exports": sorted(actual[path])},
            ))

    def _compare_exports(self, identity, context, declared, actual) -> None:
        for name in sorted(declared):
            desired = declared[name].to_options()
            reality = actual.get(name)
            if reality is None:
                self.report.add(DriftItem(
                    resource_type="export",
                    identifier=f"{identity}:{name}",
                    field="exists",
                    desired=True,
                    reality=False,
                    severity=DriftSeverity.AUTO_MERGE,
                    message=f"Export {identity}:{name} missing",
                    context={**context, "name": name, "options": desired},
                ))
                continue
            differing = {
                key: value for key, value in desired.items()
                if reality.get(key) != value
            }
            if differing:
                self.report.add(DriftItem(
                    resource_type="export",
                    identifier=f"{identity}:{name}",
                    field="options",
                    desired=desired,
                    reality=reality,
                    severity=DriftSeverity.AUTO_MERGE,
                    message=f"Export {identity}:{name} options differ: {sorted(differing)}",
                    context={**context, "name": name, "options": desired},
                ))

        for name in sorted(set(actual) - set(declared)):
            self.report.add(DriftItem(
                resource_type="export",
                identifier=f"{identity}:{name}",
                field="exists",
                desired=False,
                reality=True,
                severity=DriftSeverity.AUTO_MERGE,
                message=f"Export {identity}:{name} is not in configuration",
                context={**context, "name": name},
            ))


def summarize_drift_report(report: DriftReport, limit: int = 5) -> Dict[str, Any]:
    """Return summary counts and sample drift entries."""
    samples: List[Dict[str, str]] = []
    for item in report.items[:limit]:
        samples.append({
            "severity": item.severity,
            "resource": f"{item.resource_type}:{item.identifier}",
            "field": item.field,
            "message": item.message,
        })
    return {"counts": report.summary(), "samples": samples}
