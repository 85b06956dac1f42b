"""Event-driven reconciliation of datasets and NFS exports.

Each event first updates the desired state held in the PoolModel, then the
key it belongs to is converged: the engine diffs desired against exposed
state and issues only the backend calls needed to close the gap. Retries
recompute that diff, so events folded in during backoff are never lost.
"""
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from sharesync.backends.base import BackendAdapter
from sharesync.core.errors import (
    PermanentBackendError,
    StaleEventError,
    TransientBackendError,
    UnresolvedReferenceError,
    classify_error,
)
from sharesync.core.events import (
    ALL_KINDS,
    SERVICE_KEY,
    ConfigEvent,
    EventKind,
)
from sharesync.core.logger import get_logger
from sharesync.core.pool_model import PoolModel
from sharesync.core.retry import BackoffPolicy
from sharesync.models.pool import Dataset, ExportBinding, PoolStatus, dataset_identity
from sharesync.models.share import ExportSpec

logger = get_logger(__name__)

DATASET_SEQUENCE = "@dataset"


class KeyState(Enum):
    IDLE = "idle"
    APPLYING = "applying"
    RETRYING = "retrying"
    FAILED = "failed"


@dataclass
class KeyStatus:
    """Operator-facing state of one event key."""
    key: str
    state: KeyState = KeyState.IDLE
    attempts: int = 0
    last_error_class: Optional[str] = None
    last_error: Optional[str] = None
    updated_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, object]:
        return {
            "key": self.key,
            "state": self.state.value,
            "attempts": self.attempts,
            "last_error_class": self.last_error_class,
            "last_error": self.last_error,
            "updated_at": self.updated_at,
        }


def option_changes(current: Dict, desired: Dict) -> Dict[str, tuple]:
    """Field-level diff: field -> (current, desired) for every differing field."""
    changes = {}
    for name in sorted(set(current) | set(desired)):
        if current.get(name) != desired.get(name):
            changes[name] = (current.get(name), desired.get(name))
    return changes


def spec_from_payload(payload, base: Optional[Dict] = None) -> ExportSpec:
    """Build an ExportSpec from an event payload, overlaying ``base``.

    Raises:
        PermanentBackendError: the payload does not describe a valid export
    """
    fields = dict(base or {})
    fields.update({k: payload[k] for k in ExportSpec.model_fields if k in payload})
    try:
        return ExportSpec(**fields)
    except ValidationError as e:
        raise PermanentBackendError(f"invalid export options: {e}") from e


class ReconciliationEngine:
    """Applies config events to the model and converges the backend.

    Per key state machine: Idle -> Applying -> (Idle | Retrying | Failed),
    Retrying -> Applying after backoff, Failed -> Applying on the next event
    or an operator resync.
    """

    def __init__(
        self,
        model: PoolModel,
        backend: BackendAdapter,
        backoff: Optional[BackoffPolicy] = None,
        sleep: Optional[Callable[[float], object]] = None,
    ):
        self.model = model
        self.backend = backend
        self.backoff = backoff or BackoffPolicy()
        self.bus = None
        self._stop = threading.Event()
        self._sleep = sleep or self._stop.wait
        self._lock = threading.Lock()
        self._key_locks: Dict[str, threading.RLock] = defaultdict(threading.RLock)
        self._statuses: Dict[str, KeyStatus] = {}
        self._pending: Dict[str, List[ConfigEvent]] = defaultdict(list)
        self._rejected: Dict[str, Exception] = {}

    # ------------------------------ wiring ------------------------------

    def attach(self, bus) -> None:
        """Subscribe to every event kind on ``bus``."""
        self.bus = bus
        bus.subscribe(ALL_KINDS, self.handle)

    def stop(self) -> None:
        """Interrupt backoff waits; in-flight backend calls still finish."""
        self._stop.set()

    # ------------------------------ status ------------------------------

    def status(self) -> Dict[str, KeyStatus]:
        with self._lock:
            return {
                key: KeyStatus(**vars(status)) for key, status in sorted(self._statuses.items())
            }

    def failed_keys(self) -> List[str]:
        return [key for key, s in self.status().items() if s.state == KeyState.FAILED]

    def pending_events(self) -> Dict[str, int]:
        """Deferred events per dataset identity, waiting for their target to appear."""
        with self._lock:
            return {key: len(events) for key, events in self._pending.items() if events}

    def _set_state(
        self,
        key: str,
        state: KeyState,
        attempts: Optional[int] = None,
        error: Optional[Exception] = None,
        clear_error: bool = False,
    ) -> None:
        with self._lock:
            status = self._statuses.setdefault(key, KeyStatus(key=key))
            status.state = state
            if attempts is not None:
                status.attempts = attempts
            if error is not None:
                status.last_error_class = classify_error(error).__name__
                status.last_error = str(error)
            elif clear_error:
                status.last_error_class = None
                status.last_error = None
            status.updated_at = datetime.now(timezone.utc).isoformat()

    def _reject(self, event: ConfigEvent, error: Exception) -> None:
        """Skip one unusable event without losing the ones recorded around it.

        The key is marked Failed with this error once its current run ends.
        """
        if isinstance(error, StaleEventError):
            logger.debug(f"Discarding stale event {event.describe()}: {error}")
            return
        logger.error(f"Rejected {event.describe()}: {classify_error(error).__name__}: {error}")
        with self._lock:
            self._rejected[event.key] = error

    def _fail(self, key: str, error: Exception, attempts: int) -> None:
        self._set_state(key, KeyState.FAILED, attempts=attempts, error=error)
        logger.error(
            f"{key} failed after {attempts} attempt(s): "
            f"{classify_error(error).__name__}: {error}"
        )

    # ------------------------------ entry ------------------------------

    def handle(self, event: ConfigEvent) -> None:
        """Bus handler. Never raises; failures end up in the key's status."""
        try:
            self._dispatch(event)
        except StaleEventError as e:
            logger.debug(f"Discarding stale event {event.describe()}: {e}")
        except Exception as e:
            self._fail(event.key, e, attempts=self._attempts(event.key))

    def _attempts(self, key: str) -> int:
        with self._lock:
            status = self._statuses.get(key)
            return status.attempts if status else 0

    def _dispatch(self, event: ConfigEvent) -> None:
        logger.debug(f"Handling {event.describe()}")
        if event.kind == EventKind.SERVICE_UPDATED:
            self._on_service_updated(event)
        elif event.kind == EventKind.POOL_CREATED:
            self._on_pool_created(event)
        elif event.kind == EventKind.POOL_DESTROYED:
            self._on_pool_destroyed(event)
        else:
            self._on_dataset_event(event)

    def resync(self, key: str) -> bool:
        """Operator re-sync: clears Failed and converges ``key`` again.

        ``key`` may be a dataset identity, a pool name or the service key.
        Returns True when every affected key converged.
        """
        logger.info(f"Operator resync requested for {key}")
        if key == SERVICE_KEY:
            return self._converge_all()
        if '/' not in key:
            pool = self.model.get(key)
            if pool is None:
                raise UnresolvedReferenceError(key, f"pool {key} is not known")
            return all([
                self._converge_key(pool.name, path) for path in list(pool.datasets)
            ])
        pool_name, _, path = key.partition('/')
        self.model.resolve_dataset(pool_name, path)
        return self._converge_key(pool_name, path)

    def converge_all(self) -> bool:
        return self._converge_all()

    # --------------------------- service ---------------------------

    def _on_service_updated(self, event: ConfigEvent) -> None:
        enabled = bool(event.payload.get("enabled", True))
        changed = self.model.set_service_enabled(enabled, event.sequence)
        self._set_state(SERVICE_KEY, KeyState.APPLYING)
        if changed:
            logger.info(
                "NFS service enabled, re-applying remembered exports" if enabled
                else "NFS service disabled, suspending all exports"
            )
        self._converge_all()
        self._set_state(SERVICE_KEY, KeyState.IDLE, attempts=0, clear_error=True)

    def _converge_all(self) -> bool:
        results = [self._converge_key(ds.pool, ds.path) for ds in self.model.datasets()]
        return all(results)

    # ---------------------------- pools ----------------------------

    def _on_pool_created(self, event: ConfigEvent) -> None:
        pool_name = event.pool
        vdevs = list(event.payload.get("vdevs") or [])
        with self.model.pool_section(pool_name, exclusive=True):
            def create():
                self.backend.create_pool(pool_name, vdevs)
                self.model.add_pool(pool_name, PoolStatus.ONLINE)

            if not self._run(pool_name, create, absorb=False):
                return
        logger.info(f"Pool {pool_name} available")

        with self._lock:
            waiting = [
                identity for identity in self._pending if identity.startswith(f"{pool_name}/")
            ]
        for identity in waiting:
            with self._lock:
                events = sorted(self._pending.pop(identity, []), key=lambda e: e.sequence)
            for deferred in events:
                self.handle(deferred)

    def _on_pool_destroyed(self, event: ConfigEvent) -> None:
        pool_name = event.pool
        with self.model.pool_section(pool_name, exclusive=True):
            pool = self.model.get(pool_name)
            if pool is None:
                logger.debug(f"Pool {pool_name} already gone")
                return

            def destroy():
                for dataset in list(pool.datasets.values()):
                    for name in list(dataset.exposed):
                        self.backend.unbind_export(dataset, name)
                        self.model.clear_exposed(dataset, name)
                self.backend.destroy_pool(pool_name)
                self.model.remove_pool(pool_name)

            if self._run(pool_name, destroy, absorb=False):
                with self._lock:
                    for identity in [i for i in self._statuses if i.startswith(f"{pool_name}/")]:
                        del self._statuses[identity]
                logger.info(f"Pool {pool_name} destroyed")

    # --------------------------- datasets ---------------------------

    def _on_dataset_event(self, event: ConfigEvent) -> None:
        pool_name, path = event.pool, event.dataset
        with self.model.pool_section(pool_name):
            with self._key_locks[event.key]:
                if not self._record(event):
                    return
                self._converge_locked(pool_name, path)

    def _defer(self, event: ConfigEvent, reason: UnresolvedReferenceError) -> None:
        identity = dataset_identity(event.pool, event.dataset)
        with self._lock:
            self._pending[identity].append(event)
        logger.info(f"Deferring {event.describe()}: {reason}")

    def _record(self, event: ConfigEvent) -> bool:
        """Apply an event's effect to desired state without touching the backend.

        Returns False when the event was parked waiting for its dataset or pool.
        """
        try:
            if event.kind == EventKind.DATASET_CREATED:
                self._record_dataset_created(event)
            elif event.kind == EventKind.DATASET_DESTROYED:
                self._record_dataset_destroyed(event)
            elif event.kind == EventKind.SHARE_DELETED:
                self._record_share_deleted(event)
            else:
                self._record_share_upsert(event)
        except UnresolvedReferenceError as e:
            self._defer(event, e)
            return False
        return True

    def _record_dataset_created(self, event: ConfigEvent) -> None:
        dataset = self.model.upsert_dataset(event.pool, event.dataset)
        self.model.accept_sequence(dataset, DATASET_SEQUENCE, event.sequence)
        self.model.mark_wanted(dataset, True)

        with self._lock:
            waiting = sorted(self._pending.pop(dataset.identity, []), key=lambda e: e.sequence)
        for deferred in waiting:
            if deferred.kind == EventKind.DATASET_CREATED:
                continue
            logger.info(f"Replaying deferred {deferred.describe()}")
            try:
                self._record(deferred)
            except Exception as e:
                self._reject(deferred, e)

    def _record_dataset_destroyed(self, event: ConfigEvent) -> None:
        dataset = self.model.find_dataset(event.pool, event.dataset)
        if dataset is None:
            with self._lock:
                dropped = self._pending.pop(dataset_identity(event.pool, event.dataset), [])
            if dropped:
                logger.warning(
                    f"Dropping {len(dropped)} deferred event(s) for destroyed dataset {event.key}"
                )
            return
        self.model.accept_sequence(dataset, DATASET_SEQUENCE, event.sequence)
        self.model.mark_wanted(dataset, False)

    def _record_share_upsert(self, event: ConfigEvent) -> None:
        dataset = self.model.resolve_dataset(event.pool, event.dataset)
        name = event.export_name
        if not name:
            raise PermanentBackendError(f"{event.describe()} has no export name")

        current = dataset.bindings.get(name)
        if event.kind == EventKind.SHARE_UPDATED and current is not None:
            spec = spec_from_payload(event.payload, base={"name": name, **current.options})
        else:
            spec = spec_from_payload(event.payload)
        options = spec.to_options()

        self.model.accept_sequence(dataset, name, event.sequence)
        if current is not None:
            changes = option_changes(current.options, options)
            if not changes:
                logger.debug(f"{dataset.identity}:{name} unchanged")
                return
            logger.info(f"{dataset.identity}:{name} options changed: {changes}")
        self.model.apply_binding(dataset, ExportBinding(dataset.identity, name, options))

    def _record_share_deleted(self, event: ConfigEvent) -> None:
        dataset = self.model.resolve_dataset(event.pool, event.dataset)
        name = event.export_name
        self.model.accept_sequence(dataset, name, event.sequence)
        if not self.model.remove_binding(dataset, name):
            logger.debug(f"{dataset.identity}:{name} already absent")

    # --------------------------- convergence ---------------------------

    def _converge_key(self, pool_name: str, path: str) -> bool:
        with self.model.pool_section(pool_name):
            with self._key_locks[dataset_identity(pool_name, path)]:
                return self._converge_locked(pool_name, path)

    def _converge_locked(self, pool_name: str, path: str) -> bool:
        key = dataset_identity(pool_name, path)

        def attempt():
            dataset = self.model.find_dataset(pool_name, path)
            if dataset is not None:
                self._apply_diff(dataset)

        ok = self._run(key, attempt)
        if ok and self.model.find_dataset(pool_name, path) is None:
            with self._lock:
                self._statuses.pop(key, None)
        return ok

    def _apply_diff(self, dataset: Dataset) -> None:
        """Issue the backend calls that take ``dataset`` from exposed to desired."""
        if not dataset.wanted:
            for name in list(dataset.exposed):
                self.backend.unbind_export(dataset, name)
                self.model.clear_exposed(dataset, name)
            if dataset.present:
                self.backend.destroy_dataset(dataset)
                self.model.mark_present(dataset, False)
            self.model.remove_dataset(dataset.pool, dataset.path)
            logger.info(f"Dataset {dataset.identity} removed")
            return

        if not dataset.present:
            result = self.backend.create_dataset(dataset)
            self.model.mark_present(dataset)
            if result.changed:
                logger.info(f"Dataset {dataset.identity} created")

        enabled = self.model.service_enabled
        for name in list(dataset.exposed):
            if not enabled or name not in dataset.bindings:
                self.backend.unbind_export(dataset, name)
                self.model.clear_exposed(dataset, name)

        if not enabled:
            return
        for name, binding in list(dataset.bindings.items()):
            if dataset.exposed.get(name) != binding.options:
                self.backend.bind_export(dataset, binding)
                self.model.mark_exposed(dataset, name, binding.options)

    def _absorb(self, key: str) -> None:
        """Fold events queued for ``key`` into desired state before the next attempt."""
        if self.bus is None:
            return
        for event in self.bus.claim_pending(key, self.handle):
            logger.info(f"Absorbing {event.describe()} into retry of {key}")
            try:
                self._record(event)
            except Exception as e:
                self._reject(event, e)

    def _run(self, key: str, operation: Callable[[], None], absorb: bool = True) -> bool:
        """Run ``operation`` with the retry policy, tracking the key's state."""
        attempt = 0
        self._set_state(key, KeyState.APPLYING, attempts=0)
        while True:
            try:
                if absorb:
                    self._absorb(key)
                operation()
            except Exception as e:
                error_type = classify_error(e)
                if error_type is not TransientBackendError:
                    self._take_rejected(key)
                    self._fail(key, e, attempts=attempt + 1)
                    return False

                attempt += 1
                if self.backoff.exhausted(attempt):
                    self._take_rejected(key)
                    self._fail(key, e, attempts=attempt)
                    return False

                delay = self.backoff.delay(attempt)
                self._set_state(key, KeyState.RETRYING, attempts=attempt, error=e)
                logger.warning(
                    f"{key}: transient failure (attempt {attempt}/{self.backoff.max_attempts}): "
                    f"{e}; retrying in {delay:.1f}s"
                )
                self._sleep(delay)
                if self._stop.is_set():
                    logger.warning(f"{key}: shutdown during backoff, left in retrying state")
                    return False
                self._set_state(key, KeyState.APPLYING)
                continue

            rejected = self._take_rejected(key)
            if rejected is not None:
                self._fail(key, rejected, attempts=attempt + 1)
                return False
            self._set_state(key, KeyState.IDLE, attempts=attempt, clear_error=True)
            return True

    def _take_rejected(self, key: str) -> Optional[Exception]:
        with self._lock:
            return self._rejected.pop(key, None)
