"""Storage backends.

- zfs: real ZFS datasets and NFS exports on the local host
- dry-run: logs intended changes only
- memory: in-process double for tests
"""
from .base import ActualState, BackendAdapter, BackendResult, PoolSnapshot
from .dry_run import DryRunBackend
from .memory import InMemoryBackend
from .zfs import ZfsBackend

__all__ = [
    'ActualState',
    'BackendAdapter',
    'BackendResult',
    'DryRunBackend',
    'InMemoryBackend',
    'PoolSnapshot',
    'ZfsBackend',
]
