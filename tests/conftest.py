"""Shared test fixtures for sharesync tests."""
import pytest

from sharesync.backends import InMemoryBackend
from sharesync.core.config import SyncSettings
from sharesync.core.engine import ReconciliationEngine
from sharesync.core.events import ConfigEvent, EventKind
from sharesync.core.pool_model import PoolModel
from sharesync.core.retry import BackoffPolicy


def share_event(kind, sequence, pool="tank", dataset="media", name="lan", **fields):
    """Build a share event payload the way the host notifier does."""
    return ConfigEvent(kind, sequence, {"pool": pool, "dataset": dataset, "name": name, **fields})


def dataset_event(kind, sequence, pool="tank", dataset="media"):
    return ConfigEvent(kind, sequence, {"pool": pool, "dataset": dataset})


def service_event(sequence, enabled):
    return ConfigEvent(EventKind.SERVICE_UPDATED, sequence, {"enabled": enabled})


@pytest.fixture
def settings():
    """Fast retry settings; no real waiting in tests."""
    return SyncSettings(
        retry_base=0.01,
        retry_cap=0.05,
        retry_jitter=0.0,
        max_attempts=3,
        workers=2,
        queue_size=8,
    )


@pytest.fixture
def backend():
    """In-memory backend with an empty pool 'tank' holding dataset 'media'."""
    return InMemoryBackend(pools={"tank": {"media": {}}})


@pytest.fixture
def model():
    model = PoolModel()
    model.add_pool("tank")
    return model


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def engine(model, backend, settings, sleeps):
    """Engine whose backoff sleeps are recorded instead of waited."""
    return ReconciliationEngine(
        model, backend, BackoffPolicy.from_settings(settings), sleep=sleeps.append
    )
