"""Error taxonomy for reconciliation.

Every failure seen by the engine is classified into one of these types
before it decides between retrying and marking a key Failed.
"""
from typing import Type


class SharesyncError(Exception):
    """Base class for sharesync errors."""
    pass


class TransientBackendError(SharesyncError):
    """Backend call failed for a reason that may clear up (timeout, busy)."""
    pass


class PermanentBackendError(SharesyncError):
    """Backend rejected the operation; retrying will not help."""
    pass


class UnresolvedReferenceError(SharesyncError):
    """Event targets a pool or dataset the model does not know yet.

    Not a failure: the event is parked until the target appears.
    """

    def __init__(self, identity: str, message: str = None):
        self.identity = identity
        super().__init__(message or f"{identity} is not known yet")


class StaleEventError(SharesyncError):
    """Event sequence is lower than one already applied for the same export."""
    pass


class BackpressureError(SharesyncError):
    """Bounded queue for an event key is full; producer should back off."""
    pass


class BusClosedError(SharesyncError):
    """Event was published after the bus stopped accepting work."""
    pass


class UnknownNotificationError(SharesyncError):
    """Host notification has no mapping to a config event."""
    pass


def classify_error(exc: Exception) -> Type[SharesyncError]:
    """Map an arbitrary exception onto the reconciliation taxonomy.

    Anything not already classified is treated as permanent so it surfaces
    to the operator instead of being retried forever.
    """
    for error_type in (
        TransientBackendError,
        PermanentBackendError,
        UnresolvedReferenceError,
        StaleEventError,
        BackpressureError,
    ):
        if isinstance(exc, error_type):
            return error_type
    if isinstance(exc, TimeoutError):
        return TransientBackendError
    return PermanentBackendError
