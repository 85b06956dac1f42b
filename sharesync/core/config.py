"""Runtime settings for the reconciliation daemon."""
import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class SyncSettings:
    """Runtime settings for sharesync.

    Attributes:
        retry_base: First backoff delay in seconds (default: 0.5)
        retry_cap: Upper bound for a single backoff delay (default: 30)
        retry_jitter: Fractional jitter applied to each delay (default: 0.2)
        max_attempts: Backend attempts per key before it is marked Failed (default: 5)
        workers: Size of the shared worker pool (default: 4)
        queue_size: Bounded buffer per event key (default: 256)
        command_timeout: Timeout in seconds for zfs/zpool/exportfs calls (default: 60)
        status_file: Where the status snapshot is persisted
    """

    retry_base: float = 0.5
    retry_cap: float = 30.0
    retry_jitter: float = 0.2
    max_attempts: int = 5

    workers: int = 4
    queue_size: int = 256

    command_timeout: int = 60

    status_file: str = "/var/lib/sharesync/status.json"

    @classmethod
    def from_env(cls) -> "SyncSettings":
        """Create settings from environment variables.

        Environment variables:
            SHARESYNC_RETRY_BASE, SHARESYNC_RETRY_CAP, SHARESYNC_RETRY_JITTER
            SHARESYNC_MAX_ATTEMPTS
            SHARESYNC_WORKERS, SHARESYNC_QUEUE_SIZE
            SHARESYNC_COMMAND_TIMEOUT
            SHARESYNC_STATUS_FILE
        """
        return cls(
            retry_base=float(os.getenv("SHARESYNC_RETRY_BASE", cls.retry_base)),
            retry_cap=float(os.getenv("SHARESYNC_RETRY_CAP", cls.retry_cap)),
            retry_jitter=float(os.getenv("SHARESYNC_RETRY_JITTER", cls.retry_jitter)),
            max_attempts=int(os.getenv("SHARESYNC_MAX_ATTEMPTS", cls.max_attempts)),
            workers=int(os.getenv("SHARESYNC_WORKERS", cls.workers)),
            queue_size=int(os.getenv("SHARESYNC_QUEUE_SIZE", cls.queue_size)),
            command_timeout=int(os.getenv("SHARESYNC_COMMAND_TIMEOUT", cls.command_timeout)),
            status_file=os.getenv("SHARESYNC_STATUS_FILE", cls.status_file),
        )


_settings: Optional[SyncSettings] = None


def get_settings() -> SyncSettings:
    """Get the process-wide settings (created from the environment on first use)."""
    global _settings
    if _settings is None:
        _settings = SyncSettings.from_env()
    return _settings


def set_settings(settings: Optional[SyncSettings]):
    """Override the process-wide settings. Pass None to reset."""
    global _settings
    _settings = settings
