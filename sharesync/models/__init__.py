"""Data models for sharesync."""
from sharesync.models.config import ConfigValidationError
from sharesync.models.pool import (
    Dataset,
    ExportBinding,
    Pool,
    PoolStatus,
    dataset_identity,
)
from sharesync.models.share import ExportSpec

__all__ = [
    'ConfigValidationError',
    'Dataset',
    'ExportBinding',
    'ExportSpec',
    'Pool',
    'PoolStatus',
    'dataset_identity',
]
