"""Persistence of per-key reconciliation status for operators."""
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from sharesync.core.logger import get_logger

logger = get_logger(__name__)


class StatusStore:
    """JSON snapshot of engine status plus events dropped at shutdown.

    Written atomically (temp file, then rename) so readers such as the
    ``status`` command never see a partial file.
    """

    def __init__(self, status_file: Optional[Path] = None):
        if status_file is None:
            status_file = Path("/var/lib/sharesync/status.json")
        self.status_file = Path(status_file)
        self.state = self.load()

    def load(self) -> Dict[str, Any]:
        if not self.status_file.exists():
            return self._empty_state()
        try:
            with open(self.status_file) as f:
                state = json.load(f)
                logger.debug(f"Loaded status from {self.status_file}")
                return state
        except (json.JSONDecodeError, IOError) as e:
            logger.warning(f"Failed to load status file: {e}, using empty status")
            return self._empty_state()

    def _empty_state(self) -> Dict[str, Any]:
        return {
            "version": "1.0",
            "updated_at": None,
            "backend": None,
            "service_enabled": None,
            "keys": {},
            "pending": {},
            "drift": None,
            "dropped_events": [],
        }

    def record(
        self,
        statuses: Dict[str, Any],
        backend: str,
        service_enabled: bool,
        pending: Optional[Dict[str, int]] = None,
        drift: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.state["backend"] = backend
        self.state["service_enabled"] = service_enabled
        self.state["keys"] = {key: status.to_dict() for key, status in statuses.items()}
        self.state["pending"] = dict(pending or {})
        if drift is not None:
            self.state["drift"] = drift

    def record_dropped(self, events: Iterable) -> None:
        dropped: List[Dict[str, Any]] = self.state.setdefault("dropped_events", [])
        for event in events:
            dropped.append({
                "kind": event.kind.value,
                "key": event.key,
                "sequence": event.sequence,
                "payload": dict(event.payload),
                "dropped_at": datetime.now().isoformat(),
            })

    def save(self) -> bool:
        try:
            self.status_file.parent.mkdir(parents=True, exist_ok=True)
            self.state["updated_at"] = datetime.now().isoformat()
            temp_file = self.status_file.with_suffix('.tmp')
            with open(temp_file, 'w') as f:
                json.dump(self.state, f, indent=2)
            temp_file.rename(self.status_file)
            logger.debug(f"Saved status to {self.status_file}")
            return True
        except (IOError, OSError) as e:
            logger.error(f"Failed to save status: {e}")
            return False
