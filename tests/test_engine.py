"""Tests for the ReconciliationEngine."""
import pytest

from conftest import dataset_event, service_event, share_event
from sharesync.core.engine import KeyState, ReconciliationEngine, option_changes
from sharesync.core.errors import PermanentBackendError, TransientBackendError
from sharesync.core.event_bus import EventBus
from sharesync.core.events import ConfigEvent, EventKind
from sharesync.core.retry import BackoffPolicy


@pytest.fixture
def ready(engine):
    """Engine with tank/media known and present."""
    engine.handle(dataset_event(EventKind.DATASET_CREATED, 1))
    return engine


class TestShareEvents:
    """Share create, update and delete handling."""

    def test_create_binds_export(self, ready, backend, model):
        ready.handle(share_event(EventKind.SHARE_CREATED, 1, clients="10.0.0.0/24"))

        assert backend.exports("tank/media") == {
            "lan": {"clients": "10.0.0.0/24", "options": "rw,sync,no_subtree_check"}
        }
        dataset = model.find_dataset("tank", "media")
        assert list(dataset.bindings) == ["lan"]
        assert ready.status()["tank/media"].state == KeyState.IDLE

    def test_duplicate_create_is_idempotent(self, ready, backend, model):
        event = share_event(EventKind.SHARE_CREATED, 1)
        ready.handle(event)
        ready.handle(event)

        assert backend.calls_to("bind_export") == ["tank/media:lan"]
        assert len(model.find_dataset("tank", "media").bindings) == 1

    def test_out_of_order_event_is_discarded(self, ready, backend, model):
        ready.handle(share_event(EventKind.SHARE_CREATED, 5, options="ro"))
        ready.handle(share_event(EventKind.SHARE_UPDATED, 3, options="rw"))

        assert backend.exports("tank/media")["lan"]["options"] == "ro"
        assert model.find_dataset("tank", "media").bindings["lan"].options["options"] == "ro"
        assert ready.status()["tank/media"].state == KeyState.IDLE

    def test_stale_create_after_delete_is_discarded(self, ready, backend):
        ready.handle(share_event(EventKind.SHARE_CREATED, 1))
        ready.handle(share_event(EventKind.SHARE_DELETED, 4))
        ready.handle(share_event(EventKind.SHARE_CREATED, 2))

        assert backend.exports("tank/media") == {}

    def test_update_merges_fields_and_rebinds(self, ready, backend, model):
        ready.handle(share_event(EventKind.SHARE_CREATED, 1, clients="10.0.0.0/24"))
        ready.handle(share_event(EventKind.SHARE_UPDATED, 2, options="ro,sync"))

        binding = model.find_dataset("tank", "media").bindings["lan"]
        assert binding.options == {"clients": "10.0.0.0/24", "options": "ro,sync"}
        assert backend.calls_to("bind_export") == ["tank/media:lan", "tank/media:lan"]

    def test_update_without_changes_skips_backend(self, ready, backend):
        ready.handle(share_event(EventKind.SHARE_CREATED, 1, clients="10.0.0.0/24"))
        ready.handle(share_event(EventKind.SHARE_UPDATED, 2, clients="10.0.0.0/24"))

        assert backend.calls_to("bind_export") == ["tank/media:lan"]

    def test_delete_unbinds(self, ready, backend, model):
        ready.handle(share_event(EventKind.SHARE_CREATED, 1))
        ready.handle(share_event(EventKind.SHARE_DELETED, 2))

        assert backend.exports("tank/media") == {}
        assert model.find_dataset("tank", "media").bindings == {}

    def test_delete_of_absent_binding_succeeds(self, ready, backend):
        ready.handle(share_event(EventKind.SHARE_DELETED, 1, name="ghost"))

        assert backend.calls_to("unbind_export") == []
        assert ready.status()["tank/media"].state == KeyState.IDLE

    def test_invalid_options_fail_without_retry(self, ready, backend, sleeps):
        ready.handle(share_event(EventKind.SHARE_CREATED, 1, options="rw;reboot"))

        status = ready.status()["tank/media"]
        assert status.state == KeyState.FAILED
        assert status.last_error_class == "PermanentBackendError"
        assert backend.calls_to("bind_export") == []
        assert sleeps == []


class TestPendingBindings:
    """Events for datasets that do not exist yet."""

    def test_share_waits_for_dataset(self, engine, backend, model):
        engine.handle(share_event(EventKind.SHARE_CREATED, 1, dataset="x"))

        assert model.find_dataset("tank", "x") is None
        assert engine.pending_events() == {"tank/x": 1}
        assert backend.calls_to("bind_export") == []

        engine.handle(dataset_event(EventKind.DATASET_CREATED, 2, dataset="x"))

        assert backend.calls_to("create_dataset") == ["tank/x"]
        assert backend.exports("tank/x") == {
            "lan": {"clients": "*", "options": "rw,sync,no_subtree_check"}
        }
        assert engine.pending_events() == {}

    def test_create_then_delete_before_dataset_nets_out(self, engine, backend):
        engine.handle(share_event(EventKind.SHARE_CREATED, 1, dataset="x"))
        engine.handle(share_event(EventKind.SHARE_DELETED, 2, dataset="x"))
        engine.handle(dataset_event(EventKind.DATASET_CREATED, 3, dataset="x"))

        assert backend.exports("tank/x") == {}
        assert backend.calls_to("bind_export") == []

    def test_dataset_waits_for_pool(self, engine, backend):
        engine.handle(dataset_event(EventKind.DATASET_CREATED, 1, pool="fast", dataset="vm"))
        assert engine.pending_events() == {"fast/vm": 1}

        engine.handle(ConfigEvent(EventKind.POOL_CREATED, 2, {"pool": "fast", "vdevs": ["sdb"]}))

        assert backend.calls_to("create_pool") == ["fast"]
        assert "vm" in backend.pools["fast"]
        assert engine.pending_events() == {}


class TestRetries:
    """Transient failures, backoff and the Failed state."""

    def test_transient_failure_is_retried(self, ready, backend, sleeps):
        backend.fail_next("bind_export", TransientBackendError("resource busy"))

        ready.handle(share_event(EventKind.SHARE_CREATED, 1))

        assert "lan" in backend.exports("tank/media")
        assert sleeps == [0.01]
        status = ready.status()["tank/media"]
        assert status.state == KeyState.IDLE
        assert status.last_error is None

    def test_retry_budget_exhausted_marks_failed(self, ready, backend, sleeps):
        backend.fail_next("bind_export", *[TransientBackendError("timeout")] * 3)

        ready.handle(share_event(EventKind.SHARE_CREATED, 1))

        status = ready.status()["tank/media"]
        assert status.state == KeyState.FAILED
        assert status.attempts == 3
        assert status.last_error_class == "TransientBackendError"
        assert ready.failed_keys() == ["tank/media"]
        assert sleeps == [0.01, 0.02]

    def test_next_event_clears_failed(self, ready, backend):
        backend.fail_next("bind_export", *[TransientBackendError("timeout")] * 3)
        ready.handle(share_event(EventKind.SHARE_CREATED, 1))
        assert ready.status()["tank/media"].state == KeyState.FAILED

        ready.handle(share_event(EventKind.SHARE_UPDATED, 2, options="ro"))

        assert ready.status()["tank/media"].state == KeyState.IDLE
        assert backend.exports("tank/media")["lan"]["options"] == "ro"

    def test_operator_resync_clears_failed(self, ready, backend):
        backend.fail_next("bind_export", PermanentBackendError("export table locked"))
        ready.handle(share_event(EventKind.SHARE_CREATED, 1))
        assert ready.status()["tank/media"].state == KeyState.FAILED

        assert ready.resync("tank/media") is True

        assert ready.status()["tank/media"].state == KeyState.IDLE
        assert "lan" in backend.exports("tank/media")

    def test_other_keys_unaffected_by_failure(self, ready, backend):
        backend.pools["tank"]["docs"] = {}
        ready.handle(dataset_event(EventKind.DATASET_CREATED, 1, dataset="docs"))
        backend.fail_next("bind_export", PermanentBackendError("bad"))

        ready.handle(share_event(EventKind.SHARE_CREATED, 1))
        ready.handle(share_event(EventKind.SHARE_CREATED, 1, dataset="docs"))

        assert ready.status()["tank/media"].state == KeyState.FAILED
        assert ready.status()["tank/docs"].state == KeyState.IDLE


class TestServiceUpdates:
    """Enabling and disabling the sharing service."""

    def test_disable_suspends_and_enable_restores(self, ready, backend, model):
        ready.handle(share_event(EventKind.SHARE_CREATED, 1))
        ready.handle(share_event(EventKind.SHARE_CREATED, 1, name="wan", clients="203.0.113.5"))

        ready.handle(service_event(1, enabled=False))

        assert backend.exports("tank/media") == {}
        assert sorted(backend.calls_to("unbind_export")) == ["tank/media:lan", "tank/media:wan"]
        assert sorted(model.find_dataset("tank", "media").bindings) == ["lan", "wan"]

        ready.handle(service_event(2, enabled=True))

        assert sorted(backend.exports("tank/media")) == ["lan", "wan"]
        assert len(backend.calls_to("bind_export")) == 4

    def test_share_created_while_disabled_is_remembered(self, ready, backend):
        ready.handle(service_event(1, enabled=False))
        ready.handle(share_event(EventKind.SHARE_CREATED, 1))

        assert backend.calls_to("bind_export") == []

        ready.handle(service_event(2, enabled=True))
        assert "lan" in backend.exports("tank/media")


class TestDatasetLifecycle:
    def test_destroy_unbinds_then_destroys(self, ready, backend, model):
        ready.handle(share_event(EventKind.SHARE_CREATED, 1))

        ready.handle(dataset_event(EventKind.DATASET_DESTROYED, 2))

        assert backend.calls_to("unbind_export") == ["tank/media:lan"]
        assert backend.calls_to("destroy_dataset") == ["tank/media"]
        assert "media" not in backend.pools["tank"]
        assert model.find_dataset("tank", "media") is None
        assert "tank/media" not in ready.status()

    def test_pool_destroyed_removes_everything(self, ready, backend, model):
        ready.handle(share_event(EventKind.SHARE_CREATED, 1))

        ready.handle(ConfigEvent(EventKind.POOL_DESTROYED, 2, {"pool": "tank"}))

        assert backend.calls_to("unbind_export") == ["tank/media:lan"]
        assert "tank" not in backend.pools
        assert model.get("tank") is None


def test_option_changes_reports_each_field():
    changes = option_changes(
        {"clients": "*", "options": "rw"},
        {"clients": "10.0.0.0/8", "options": "rw"},
    )
    assert changes == {"clients": ("*", "10.0.0.0/8")}


def test_update_during_backoff_is_absorbed(model, backend, settings):
    """An update queued while a create is backing off is folded into the retry."""
    bus = EventBus(max_workers=2, queue_size=8)

    def sleep(delay):
        bus.publish(share_event(EventKind.SHARE_UPDATED, 2, options="ro,sync"))

    engine = ReconciliationEngine(
        model, backend, BackoffPolicy.from_settings(settings), sleep=sleep
    )
    engine.handle(dataset_event(EventKind.DATASET_CREATED, 1))
    engine.attach(bus)
    backend.fail_next("bind_export", TransientBackendError("resource busy"))

    bus.publish(share_event(EventKind.SHARE_CREATED, 1))
    assert bus.join(timeout=5)
    bus.shutdown()

    assert backend.bind_options == [{"clients": "*", "options": "ro,sync"}]
    assert backend.exports("tank/media")["lan"]["options"] == "ro,sync"
    assert engine.status()["tank/media"].state == KeyState.IDLE


def test_invalid_event_during_backoff_does_not_drop_later_ones(model, backend, settings):
    bus = EventBus(max_workers=2, queue_size=8)

    def sleep(delay):
        bus.publish(share_event(EventKind.SHARE_UPDATED, 2, options="rw;reboot"))
        bus.publish(share_event(EventKind.SHARE_CREATED, 3, name="wan"))

    engine = ReconciliationEngine(
        model, backend, BackoffPolicy.from_settings(settings), sleep=sleep
    )
    engine.handle(dataset_event(EventKind.DATASET_CREATED, 1))
    engine.attach(bus)
    backend.fail_next("bind_export", TransientBackendError("resource busy"))

    bus.publish(share_event(EventKind.SHARE_CREATED, 1))
    assert bus.join(timeout=5)
    bus.shutdown()

    assert sorted(model.find_dataset("tank", "media").bindings) == ["lan", "wan"]
    assert sorted(backend.exports("tank/media")) == ["lan", "wan"]
    assert bus.pending("tank/media") == 0
    status = engine.status()["tank/media"]
    assert status.state == KeyState.FAILED
    assert status.last_error_class == "PermanentBackendError"


class TestRejectedDeferredEvents:
    def test_invalid_deferred_share_does_not_block_dataset(self, engine, backend, model):
        engine.handle(share_event(EventKind.SHARE_CREATED, 1, dataset="x", options="rw;reboot"))
        engine.handle(share_event(EventKind.SHARE_CREATED, 2, dataset="x", name="wan"))

        engine.handle(dataset_event(EventKind.DATASET_CREATED, 3, dataset="x"))

        dataset = model.find_dataset("tank", "x")
        assert dataset.present
        assert list(dataset.bindings) == ["wan"]
        assert list(backend.exports("tank/x")) == ["wan"]
        assert engine.pending_events() == {}
        status = engine.status()["tank/x"]
        assert status.state == KeyState.FAILED
        assert status.last_error_class == "PermanentBackendError"

    def test_next_valid_event_recovers(self, engine, backend):
        engine.handle(share_event(EventKind.SHARE_CREATED, 1, dataset="x", options="rw;reboot"))
        engine.handle(dataset_event(EventKind.DATASET_CREATED, 2, dataset="x"))

        engine.handle(share_event(EventKind.SHARE_CREATED, 3, dataset="x", options="ro"))

        assert engine.status()["tank/x"].state == KeyState.IDLE
        assert backend.exports("tank/x") == {"lan": {"clients": "*", "options": "ro"}}


def test_stale_service_update_leaves_service_idle(engine, model):
    engine.handle(service_event(5, enabled=False))
    engine.handle(service_event(3, enabled=True))

    assert model.service_enabled is False
    assert engine.status()["@service"].state == KeyState.IDLE
