"""Turn a drift report into the config events that correct it."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from sharesync.core.drift_engine import DriftItem, DriftReport, DriftSeverity
from sharesync.core.events import ConfigEvent, EventKind


@dataclass
class ReconciliationPolicy:
    """How startup reconciliation treats drift."""

    prune_orphans: bool = True  # Destroy managed datasets that are not in configuration


@dataclass
class ReconciliationPlan:
    """Drift sorted by the kind of corrective action."""

    service: List[DriftItem] = field(default_factory=list)
    removals: List[DriftItem] = field(default_factory=list)
    additions: List[DriftItem] = field(default_factory=list)
    updates: List[DriftItem] = field(default_factory=list)
    informational: List[DriftItem] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.service or self.removals or self.additions or self.updates)

    def events(self, sequence: int = 0) -> List[ConfigEvent]:
        """Events in application order: service, removals, additions, updates."""
        events: List[ConfigEvent] = []
        for item in self.service:
            events.append(ConfigEvent(EventKind.SERVICE_UPDATED, sequence, {"enabled": item.desired}))
        for item in self.removals:
            events.extend(_removal_events(item, sequence))
        # Datasets before the exports that live on them.
        for item in sorted(self.additions, key=lambda i: i.resource_type != "dataset"):
            events.append(_addition_event(item, sequence))
        for item in self.updates:
            ctx = item.context
            events.append(ConfigEvent(
                EventKind.SHARE_UPDATED,
                sequence,
                {"pool": ctx["pool"], "dataset": ctx["dataset"], "name": ctx["name"], **ctx["options"]},
            ))
        return events


def _removal_events(item: DriftItem, sequence: int) -> List[ConfigEvent]:
    ctx = item.context
    target = {"pool": ctx["pool"], "dataset": ctx["dataset"]}
    if item.resource_type == "dataset":
        return [ConfigEvent(EventKind.DATASET_DESTROYED, sequence, target)]
    return [ConfigEvent(EventKind.SHARE_DELETED, sequence, {**target, "name": ctx["name"]})]


def _addition_event(item: DriftItem, sequence: int) -> ConfigEvent:
    ctx = item.context
    target = {"pool": ctx["pool"], "dataset": ctx["dataset"]}
    if item.resource_type == "dataset":
        return ConfigEvent(EventKind.DATASET_CREATED, sequence, target)
    return ConfigEvent(
        EventKind.SHARE_CREATED, sequence, {**target, "name": ctx["name"], **ctx["options"]}
    )


class ReconciliationPlanner:
    """Convert a drift report into a reconciliation plan."""

    def __init__(self, drift_report: DriftReport, policy: ReconciliationPolicy | None = None):
        self.report = drift_report
        self.policy = policy or ReconciliationPolicy()

    def build_plan(self) -> ReconciliationPlan:
        plan = ReconciliationPlan()

        for item in self.report.items:
            if item.resource_type == "service":
                plan.service.append(item)
                continue

            if item.resource_type == "pool":
                # Pools are never created from drift; they need vdevs.
                plan.informational.append(item)
                continue

            if item.resource_type == "dataset" and item.desired is False:
                if self.policy.prune_orphans:
                    plan.removals.append(item)
                else:
                    plan.informational.append(item)
                    for name in item.context.get("exports", []):
                        plan.removals.append(DriftItem(
                            resource_type="export",
                            identifier=f"{item.identifier}:{name}",
                            field="exists",
                            desired=False,
                            reality=True,
                            severity=DriftSeverity.AUTO_MERGE,
                            message=f"Export {item.identifier}:{name} is not in configuration",
                            context={**item.context, "name": name},
                        ))
                continue

            if item.field == "options":
                plan.updates.append(item)
            elif item.desired is True:
                plan.additions.append(item)
            elif item.desired is False:
                plan.removals.append(item)
            else:
                plan.informational.append(item)

        return plan
