"""Backend that only logs what it would change."""
from typing import List, Optional

from sharesync.backends.base import ActualState, BackendAdapter, BackendResult
from sharesync.core.logger import get_logger
from sharesync.models.pool import Dataset, ExportBinding

logger = get_logger(__name__)


class DryRunBackend(BackendAdapter):
    """No-op backend.

    Reads actual state from ``source`` when one is given so drift can still
    be computed against the real host; every mutation is only logged.
    """

    name = "dry-run"

    def __init__(self, source: Optional[BackendAdapter] = None):
        self.source = source
        self.planned: List[BackendResult] = []

    def _plan(self, operation: str, target: str, detail: str = "") -> BackendResult:
        logger.info(f"DRY RUN: Would {operation} {target}{detail}")
        result = BackendResult(operation, target)
        self.planned.append(result)
        return result

    def create_pool(self, pool: str, vdevs: Optional[List[str]] = None) -> BackendResult:
        return self._plan("create_pool", pool, f" from {' '.join(vdevs or [])}")

    def destroy_pool(self, pool: str) -> BackendResult:
        return self._plan("destroy_pool", pool)

    def create_dataset(self, dataset: Dataset) -> BackendResult:
        return self._plan("create_dataset", dataset.identity)

    def destroy_dataset(self, dataset: Dataset) -> BackendResult:
        return self._plan("destroy_dataset", dataset.identity)

    def bind_export(self, dataset: Dataset, binding: ExportBinding) -> BackendResult:
        return self._plan(
            "bind_export", f"{dataset.identity}:{binding.name}", f" with {dict(binding.options)}"
        )

    def unbind_export(self, dataset: Dataset, export_name: str) -> BackendResult:
        return self._plan("unbind_export", f"{dataset.identity}:{export_name}")

    def list_actual_state(self) -> ActualState:
        if self.source is None:
            logger.info("DRY RUN: No source backend, assuming empty host")
            return ActualState()
        return self.source.list_actual_state()
