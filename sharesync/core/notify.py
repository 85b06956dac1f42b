"""Bridge from host configuration notifications to config events.

The host announces changes as (notify type, datapath, payload) triples.
Share-service datapaths follow the openmediavault naming.
"""
import itertools
import threading
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from sharesync.core.errors import UnknownNotificationError
from sharesync.core.events import ConfigEvent, EventKind
from sharesync.core.logger import get_logger

logger = get_logger(__name__)

NOTIFY_CREATE = "create"
NOTIFY_MODIFY = "modify"
NOTIFY_DELETE = "delete"

NFS_SERVICE = "org.openmediavault.services.nfs"
NFS_SHARE = "org.openmediavault.services.nfs.shares.share"
ZFS_POOL = "org.openmediavault.storage.zfs.pool"
ZFS_DATASET = "org.openmediavault.storage.zfs.dataset"

LISTENERS: Dict[Tuple[str, str], EventKind] = {
    (NOTIFY_MODIFY, NFS_SERVICE): EventKind.SERVICE_UPDATED,
    (NOTIFY_CREATE, NFS_SHARE): EventKind.SHARE_CREATED,
    (NOTIFY_DELETE, NFS_SHARE): EventKind.SHARE_DELETED,
    (NOTIFY_MODIFY, NFS_SHARE): EventKind.SHARE_UPDATED,
    (NOTIFY_CREATE, ZFS_POOL): EventKind.POOL_CREATED,
    (NOTIFY_DELETE, ZFS_POOL): EventKind.POOL_DESTROYED,
    (NOTIFY_CREATE, ZFS_DATASET): EventKind.DATASET_CREATED,
    (NOTIFY_DELETE, ZFS_DATASET): EventKind.DATASET_DESTROYED,
}


class NotifyTranslator:
    """Maps host notifications to ConfigEvents with increasing sequence numbers."""

    def __init__(self, start: int = 1):
        self._sequence = itertools.count(start)
        self._lock = threading.Lock()

    def next_sequence(self) -> int:
        with self._lock:
            return next(self._sequence)

    def translate(
        self,
        notify_type: str,
        datapath: str,
        payload: Optional[Mapping[str, Any]] = None,
        sequence: Optional[int] = None,
    ) -> ConfigEvent:
        """Build the event for one notification.

        Raises:
            UnknownNotificationError: no listener is registered for the pair
        """
        kind = LISTENERS.get((notify_type.lower(), datapath))
        if kind is None:
            raise UnknownNotificationError(f"no listener for {notify_type} {datapath}")
        if sequence is None:
            sequence = self.next_sequence()
        event = ConfigEvent(kind, sequence, dict(payload or {}))
        logger.debug(f"{notify_type} {datapath} -> {event.describe()}")
        return event

    def bind_listeners(self, bus) -> Callable[..., ConfigEvent]:
        """Return a notify callback that translates and publishes to ``bus``."""

        def notify(notify_type: str, datapath: str, payload=None, sequence=None) -> ConfigEvent:
            event = self.translate(notify_type, datapath, payload, sequence)
            bus.publish(event)
            return event

        logger.debug(f"Bound {len(LISTENERS)} notification listeners")
        return notify
