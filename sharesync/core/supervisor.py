"""Process lifecycle: startup reconciliation, live events, graceful shutdown."""
from typing import Callable, List, Optional

from sharesync.backends.base import ActualState, BackendAdapter
from sharesync.config.desired_state import DeclaredState
from sharesync.core.config import SyncSettings, get_settings
from sharesync.core.drift_engine import (
    DriftEngine,
    DriftReport,
    DriftSeverity,
    summarize_drift_report,
)
from sharesync.core.engine import ReconciliationEngine
from sharesync.core.errors import BusClosedError
from sharesync.core.event_bus import EventBus
from sharesync.core.events import ConfigEvent
from sharesync.core.logger import get_logger
from sharesync.core.notify import NotifyTranslator
from sharesync.core.pool_model import PoolModel
from sharesync.core.reconciler import (
    ReconciliationPlan,
    ReconciliationPlanner,
    ReconciliationPolicy,
)
from sharesync.core.retry import BackoffPolicy
from sharesync.core.status_store import StatusStore
from sharesync.models.pool import ExportBinding

logger = get_logger(__name__)

STARTUP_SEQUENCE = 0


class Supervisor:
    """Owns the model, bus and engine for one process.

    Usage:
        with Supervisor(ZfsBackend(), loader=ConfigLoader(path)) as supervisor:
            notify = supervisor.notifier()
            notify("create", NFS_SHARE, {...})
    """

    def __init__(
        self,
        backend: BackendAdapter,
        loader=None,
        settings: Optional[SyncSettings] = None,
        policy: Optional[ReconciliationPolicy] = None,
        status_store: Optional[StatusStore] = None,
        sleep: Optional[Callable[[float], object]] = None,
    ):
        self.settings = settings or get_settings()
        self.backend = backend
        self.loader = loader
        self.policy = policy or ReconciliationPolicy()
        self.status_store = status_store
        self.model = PoolModel()
        self.engine = ReconciliationEngine(
            self.model, backend, BackoffPolicy.from_settings(self.settings), sleep=sleep
        )
        self.bus: Optional[EventBus] = None
        self.translator = NotifyTranslator(start=STARTUP_SEQUENCE + 1)
        self.report: Optional[DriftReport] = None
        self.plan: Optional[ReconciliationPlan] = None
        self.dropped: List[ConfigEvent] = []

    # ------------------------------ startup ------------------------------

    def _declared(self, declared: Optional[DeclaredState]) -> DeclaredState:
        if declared is not None:
            return declared
        if self.loader is None:
            raise ValueError("Supervisor needs a config loader or a declared state")
        return self.loader.load()

    def check_drift(self, declared: Optional[DeclaredState] = None) -> DriftReport:
        """Compare configuration with the backend without changing anything."""
        return DriftEngine(self._declared(declared), self.backend.list_actual_state()).run()

    def reconcile(self, declared: Optional[DeclaredState] = None) -> ReconciliationPlan:
        """Startup pass: scan, diff against configuration, apply corrections."""
        declared = self._declared(declared)
        actual = self.backend.list_actual_state()
        logger.info(
            f"Startup scan: {len(actual.pools)} pool(s), "
            f"{len(actual.dataset_identities())} managed dataset(s)"
        )

        self._seed(declared, actual)
        self.report = DriftEngine(declared, actual).run()
        self.plan = ReconciliationPlanner(self.report, self.policy).build_plan()

        if self.report.is_clean():
            logger.info("No drift detected - backend matches configuration")
        else:
            logger.info(f"Drift detected: {self.report.summary()}")
        for item in self.plan.informational:
            if item.severity == DriftSeverity.DANGEROUS:
                logger.warning(f"Not corrected: {item.message}")

        for event in self.plan.events(sequence=STARTUP_SEQUENCE):
            self.engine.handle(event)

        failed = self.engine.failed_keys()
        if failed:
            logger.error(f"Startup reconciliation left {len(failed)} key(s) failed: {failed}")
        self.persist_status()
        return self.plan

    def _seed(self, declared: DeclaredState, actual: ActualState) -> None:
        """Load actual state as exposed and configuration as desired."""
        self.model.set_service_enabled(declared.service_enabled, STARTUP_SEQUENCE)

        for pool_name, snapshot in actual.pools.items():
            self.model.add_pool(pool_name, snapshot.status)
            for path, exports in snapshot.datasets.items():
                dataset = self.model.upsert_dataset(pool_name, path)
                self.model.mark_present(dataset)
                for name, options in exports.items():
                    self.model.mark_exposed(dataset, name, options)

        for pool_name, datasets in declared.pools.items():
            if self.model.get(pool_name) is None:
                continue
            for path, exports in datasets.items():
                dataset = self.model.upsert_dataset(pool_name, path)
                for name, spec in exports.items():
                    self.model.apply_binding(
                        dataset, ExportBinding(dataset.identity, name, spec.to_options())
                    )
                    self.model.accept_sequence(dataset, name, STARTUP_SEQUENCE)

    def start(self, declared: Optional[DeclaredState] = None) -> ReconciliationPlan:
        """Reconcile, then open the bus for live events."""
        plan = self.reconcile(declared)
        self.bus = EventBus(
            max_workers=self.settings.workers,
            queue_size=self.settings.queue_size,
            on_error=self._on_handler_error,
        )
        self.engine.attach(self.bus)
        logger.info("Accepting configuration events")
        return plan

    # ------------------------------ live ------------------------------

    def publish(self, event: ConfigEvent) -> None:
        if self.bus is None:
            raise BusClosedError("supervisor has not been started")
        self.bus.publish(event)

    def notifier(self):
        """Notify callback for the host dispatcher (type, datapath, payload)."""
        if self.bus is None:
            raise BusClosedError("supervisor has not been started")
        return self.translator.bind_listeners(self.bus)

    def resync(self, key: str) -> bool:
        ok = self.engine.resync(key)
        self.persist_status()
        return ok

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        if self.bus is None:
            return True
        return self.bus.join(timeout)

    def _on_handler_error(self, event: ConfigEvent, error: Exception) -> None:
        logger.error(f"Subscriber error on {event.describe()}: {error}")

    # ------------------------------ shutdown ------------------------------

    def shutdown(self) -> List[ConfigEvent]:
        """Stop intake, let in-flight backend calls finish, drop what is left.

        Returns the events that were still queued; each is logged and
        recorded in the status file.
        """
        self.engine.stop()
        if self.bus is not None:
            self.dropped = self.bus.shutdown(wait=True)
            for event in self.dropped:
                logger.warning(f"Dropping undelivered event at shutdown: {event.describe()}")
            if self.status_store is not None and self.dropped:
                self.status_store.record_dropped(self.dropped)
        self.persist_status()
        logger.info("Supervisor stopped")
        return self.dropped

    def persist_status(self) -> None:
        if self.status_store is None:
            return
        self.status_store.record(
            self.engine.status(),
            backend=self.backend.name,
            service_enabled=self.model.service_enabled,
            pending=self.engine.pending_events(),
            drift=summarize_drift_report(self.report) if self.report is not None else None,
        )
        self.status_store.save()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()
        return False
