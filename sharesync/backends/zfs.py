"""ZFS datasets plus NFS exports managed through /etc/exports.d."""
import os
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from sharesync.backends.base import (
    ActualState,
    BackendAdapter,
    BackendResult,
    PoolSnapshot,
)
from sharesync.core.errors import PermanentBackendError, TransientBackendError
from sharesync.core.logger import get_logger
from sharesync.core.retry import retry
from sharesync.models.pool import Dataset, ExportBinding, PoolStatus

logger = get_logger(__name__)

MANAGED_PROPERTY = "sharesync:managed"
EXPORT_TAG = "# sharesync"
TRANSIENT_MARKERS = ("busy", "timed out", "try again", "temporarily unavailable")


def format_export_line(mountpoint: str, dataset: str, name: str, options: Dict) -> str:
    clients = options.get("clients", "*")
    opts = options.get("options", "rw,sync,no_subtree_check")
    return f"{mountpoint} {clients}({opts}) {EXPORT_TAG} {dataset} {name}\n"


def parse_export_line(line: str) -> Optional[Tuple[str, str, Dict[str, str]]]:
    """Parse a tagged exports line into (dataset, name, options).

    Untagged lines, comments and blank lines return None.
    """
    line = line.strip()
    if not line or line.startswith('#') or EXPORT_TAG not in line:
        return None
    export_part, _, tag = line.partition(EXPORT_TAG)
    tag_parts = tag.split()
    parts = export_part.split()
    if len(tag_parts) != 2 or len(parts) < 2 or '(' not in parts[1]:
        return None
    client, opts = parts[1].split('(', 1)
    return tag_parts[0], tag_parts[1], {'clients': client, 'options': opts.rstrip(')')}


class ZfsBackend(BackendAdapter):
    """Drives `zpool`, `zfs` and `exportfs` on the local host."""

    name = "zfs"

    def __init__(self, exports_file: Optional[Path] = None, command_timeout: int = 60):
        self.exports_file = Path(exports_file or "/etc/exports.d/sharesync.exports")
        self.command_timeout = command_timeout
        # Held across read, rewrite and reload of the shared exports file.
        self._exports_lock = threading.Lock()

    # ---------------------------- commands ----------------------------

    def _run(self, cmd: List[str]) -> str:
        """Run a command, mapping failures onto the error taxonomy."""
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, check=True, timeout=self.command_timeout
            )
        except subprocess.TimeoutExpired as e:
            raise TransientBackendError(f"{' '.join(cmd)} timed out after {e.timeout}s") from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            message = f"{' '.join(cmd)} failed: {stderr or e}"
            if any(marker in stderr.lower() for marker in TRANSIENT_MARKERS):
                raise TransientBackendError(message) from e
            raise PermanentBackendError(message) from e
        except FileNotFoundError as e:
            raise PermanentBackendError(f"{cmd[0]} is not installed") from e
        return result.stdout

    def _exists(self, cmd: List[str]) -> bool:
        try:
            self._run(cmd)
            return True
        except PermanentBackendError:
            return False

    def _pool_exists(self, pool: str) -> bool:
        return self._exists(["zpool", "list", "-H", "-o", "name", pool])

    def _dataset_exists(self, name: str) -> bool:
        return self._exists(["zfs", "list", "-H", "-o", "name", name])

    def _mountpoint(self, name: str) -> str:
        value = self._run(["zfs", "get", "-H", "-o", "value", "mountpoint", name]).strip()
        if not value.startswith('/'):
            raise PermanentBackendError(f"{name} has no usable mountpoint ({value or 'none'})")
        return value

    def _reload_exports(self) -> None:
        self._run(["exportfs", "-ra"])
        logger.info("Reloaded NFS exports")

    # ----------------------------- exports file -----------------------------

    def _read_lines(self) -> List[str]:
        if not self.exports_file.exists():
            return []
        with open(self.exports_file) as f:
            return [line for line in f if not line.startswith("# sharesync-managed")]

    def _write_lines(self, lines: List[str]) -> None:
        self.exports_file.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w", dir=self.exports_file.parent, prefix=".sharesync-", delete=False
        ) as f:
            f.write("# sharesync-managed NFS exports, do not edit\n")
            f.writelines(lines)
        os.replace(f.name, self.exports_file)

    # ------------------------------- pools -------------------------------

    def create_pool(self, pool: str, vdevs: Optional[List[str]] = None) -> BackendResult:
        if self._pool_exists(pool):
            return BackendResult("create_pool", pool, already=True)
        if not vdevs:
            raise PermanentBackendError(f"cannot create pool {pool} without vdevs")
        logger.info(f"Creating pool {pool} on {' '.join(vdevs)}")
        self._run(["zpool", "create", pool, *vdevs])
        return BackendResult("create_pool", pool)

    def destroy_pool(self, pool: str) -> BackendResult:
        if not self._pool_exists(pool):
            return BackendResult("destroy_pool", pool, already=True)
        logger.info(f"Destroying pool {pool}")
        self._run(["zpool", "destroy", pool])
        return BackendResult("destroy_pool", pool)

    # ------------------------------ datasets ------------------------------

    def create_dataset(self, dataset: Dataset) -> BackendResult:
        name = dataset.identity
        if self._dataset_exists(name):
            self._run(["zfs", "set", f"{MANAGED_PROPERTY}=yes", name])
            return BackendResult("create_dataset", name, already=True)
        logger.info(f"Creating dataset: {name}")
        self._run(["zfs", "create", "-p", "-o", f"{MANAGED_PROPERTY}=yes", name])
        return BackendResult("create_dataset", name)

    def destroy_dataset(self, dataset: Dataset) -> BackendResult:
        name = dataset.identity
        if not self._dataset_exists(name):
            return BackendResult("destroy_dataset", name, already=True)
        logger.info(f"Destroying dataset: {name}")
        self._run(["zfs", "destroy", "-r", name])
        return BackendResult("destroy_dataset", name)

    # ------------------------------ exports ------------------------------

    def bind_export(self, dataset: Dataset, binding: ExportBinding) -> BackendResult:
        target = f"{dataset.identity}:{binding.name}"
        new_line = format_export_line(
            self._mountpoint(dataset.identity), dataset.identity, binding.name, binding.options
        )

        with self._exports_lock:
            lines = []
            already = False
            for line in self._read_lines():
                parsed = parse_export_line(line)
                if parsed and parsed[0] == dataset.identity and parsed[1] == binding.name:
                    already = line == new_line
                    continue
                lines.append(line)
            if already:
                return BackendResult("bind_export", target, already=True)

            lines.append(new_line)
            self._write_lines(lines)
            self._reload_exports()
        logger.info(f"Exported {target} to {binding.options.get('clients', '*')}")
        return BackendResult("bind_export", target)

    def unbind_export(self, dataset: Dataset, export_name: str) -> BackendResult:
        target = f"{dataset.identity}:{export_name}"
        with self._exports_lock:
            lines = []
            removed = False
            for line in self._read_lines():
                parsed = parse_export_line(line)
                if parsed and parsed[0] == dataset.identity and parsed[1] == export_name:
                    removed = True
                    continue
                lines.append(line)
            if not removed:
                return BackendResult("unbind_export", target, already=True)

            self._write_lines(lines)
            self._reload_exports()
        logger.info(f"Removed NFS export {target}")
        return BackendResult("unbind_export", target)

    # ------------------------------- scan -------------------------------

    @retry(max_attempts=3, delay=1.0, exceptions=(TransientBackendError,))
    def list_actual_state(self) -> ActualState:
        state = ActualState()

        output = self._run(["zpool", "list", "-H", "-o", "name,health"])
        for line in output.strip().split('\n'):
            parts = line.split('\t')
            if len(parts) < 2:
                continue
            state.pools[parts[0]] = PoolSnapshot(
                name=parts[0], status=PoolStatus.from_health(parts[1])
            )

        for pool_name, snapshot in state.pools.items():
            # Only datasets tagged directly; children inherit user properties.
            output = self._run([
                "zfs", "get", "-H", "-r", "-t", "filesystem", "-s", "local",
                "-o", "name,value,source", MANAGED_PROPERTY, pool_name,
            ])
            for line in output.strip().split('\n'):
                parts = line.split('\t')
                if len(parts) < 3 or parts[1] != "yes" or parts[2] != "local":
                    continue
                if '/' not in parts[0]:
                    continue
                snapshot.datasets[parts[0].split('/', 1)[1]] = {}

        with self._exports_lock:
            export_lines = self._read_lines()
        for line in export_lines:
            parsed = parse_export_line(line)
            if parsed is None:
                continue
            identity, name, options = parsed
            pool_name, _, path = identity.partition('/')
            exports = state.exports_for(pool_name, path)
            if exports is None:
                logger.warning(f"Export {identity}:{name} points at an unmanaged dataset, ignoring")
                continue
            exports[name] = options

        return state
