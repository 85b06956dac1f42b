"""Keyed, ordered delivery of config events to subscribers.

Events sharing a key are delivered one at a time in sequence order; keys
are drained independently on a shared thread pool.
"""
import heapq
import itertools
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from sharesync.core.errors import BackpressureError, BusClosedError
from sharesync.core.events import ConfigEvent, EventKind
from sharesync.core.logger import get_logger

logger = get_logger(__name__)

Handler = Callable[[ConfigEvent], None]


@dataclass(frozen=True)
class Subscription:
    kinds: FrozenSet[EventKind]
    handler: Handler
    token: int


class EventBus:
    """Bounded per-key queues drained by a shared worker pool."""

    def __init__(
        self,
        max_workers: int = 4,
        queue_size: int = 256,
        batch_size: int = 32,
        on_error: Optional[Callable[[ConfigEvent, Exception], None]] = None,
    ):
        self.queue_size = queue_size
        self.batch_size = batch_size
        self.on_error = on_error
        self.handler_errors = 0
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="sharesync-worker"
        )
        self._cond = threading.Condition()
        self._queues: Dict[str, List[Tuple[int, int, ConfigEvent]]] = {}
        self._scheduled: Set[str] = set()
        self._subscribers: List[Subscription] = []
        self._counter = itertools.count()
        self._tokens = itertools.count(1)
        self._closed = False

    # ------------------------- subscription -------------------------

    def subscribe(self, kinds: Iterable[EventKind], handler: Handler) -> Subscription:
        """Register ``handler`` for the given event kinds."""
        subscription = Subscription(frozenset(kinds), handler, next(self._tokens))
        with self._cond:
            self._subscribers.append(subscription)
        logger.debug(
            f"Subscribed {getattr(handler, '__qualname__', handler)} to "
            f"{sorted(k.value for k in subscription.kinds)}"
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._cond:
            self._subscribers = [s for s in self._subscribers if s.token != subscription.token]

    # --------------------------- publishing ---------------------------

    def publish(self, event: ConfigEvent) -> None:
        """Queue ``event`` for delivery.

        Raises:
            BusClosedError: the bus no longer accepts events
            BackpressureError: the queue for the event's key is full
        """
        key = event.key
        with self._cond:
            if self._closed:
                raise BusClosedError(f"bus closed, cannot publish {event.describe()}")
            queue = self._queues.setdefault(key, [])
            if len(queue) >= self.queue_size:
                raise BackpressureError(
                    f"queue for {key} is full ({self.queue_size} events)"
                )
            heapq.heappush(queue, (event.sequence, next(self._counter), event))
            if key not in self._scheduled:
                self._scheduled.add(key)
                self._executor.submit(self._drain, key)

    def pending(self, key: Optional[str] = None) -> int:
        with self._cond:
            if key is not None:
                return len(self._queues.get(key, ()))
            return sum(len(q) for q in self._queues.values())

    def claim_pending(self, key: str, claimant: Handler) -> List[ConfigEvent]:
        """Take every queued event for ``key`` out of the queue, in order.

        Used by a handler that is already working on ``key`` to fold newer
        events into its current attempt. Other subscribers still receive
        each claimed event; the claimant gets them as the return value.
        """
        with self._cond:
            queue = self._queues.get(key)
            if not queue:
                return []
            claimed = [heapq.heappop(queue)[2] for _ in range(len(queue))]
            self._cond.notify_all()
        for event in claimed:
            self._deliver(event, skip=claimant)
        return claimed

    # ---------------------------- draining ----------------------------

    def _drain(self, key: str) -> None:
        for _ in range(self.batch_size):
            with self._cond:
                queue = self._queues.get(key)
                if self._closed or not queue:
                    self._scheduled.discard(key)
                    if queue is not None and not queue:
                        del self._queues[key]
                    self._cond.notify_all()
                    return
                event = heapq.heappop(queue)[2]
            self._deliver(event)

        # Yield the worker so one busy key cannot starve the others.
        with self._cond:
            if self._closed:
                self._scheduled.discard(key)
                self._cond.notify_all()
                return
            self._executor.submit(self._drain, key)

    def _deliver(self, event: ConfigEvent, skip: Optional[Handler] = None) -> None:
        with self._cond:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            if event.kind not in subscription.kinds or subscription.handler == skip:
                continue
            try:
                subscription.handler(event)
            except Exception as e:
                self.handler_errors += 1
                logger.exception(f"Handler failed for {event.describe()}: {e}")
                if self.on_error is not None:
                    try:
                        self.on_error(event, e)
                    except Exception as report_error:
                        logger.error(f"Error reporter failed: {report_error}")

    # ---------------------------- lifecycle ----------------------------

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queue is empty and no key is being drained."""
        with self._cond:
            return self._cond.wait_for(
                lambda: not self._scheduled and (self._closed or not any(self._queues.values())),
                timeout=timeout,
            )

    def close(self) -> None:
        """Stop accepting events; workers stop after their current event."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def drain_remaining(self) -> List[ConfigEvent]:
        """Remove and return events still queued, ordered per key."""
        with self._cond:
            remaining = []
            for key in sorted(self._queues):
                queue = self._queues[key]
                remaining.extend(heapq.heappop(queue)[2] for _ in range(len(queue)))
            self._queues.clear()
            return remaining

    def shutdown(self, wait: bool = True) -> List[ConfigEvent]:
        """Close the bus, let in-flight handlers finish, return undelivered events."""
        self.close()
        self._executor.shutdown(wait=wait)
        return self.drain_remaining()
