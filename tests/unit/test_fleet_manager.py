"""Unit tests for the fleet manager.

Tests cover:
- Registry and read-through ownership lookups
- No partial commit when a rebuild fails
- At most one rebuild for concurrent cold-cache lookups
- Size get/set
- Same-scale-set guard on bulk deletes
- Scheduled rebuild lifecycle
"""

import threading
from unittest.mock import patch

import pytest

from azfleet.config_manager import FleetConfig
from azfleet.fleet_client import FleetClientError
from azfleet.fleet_manager import (
    CrossFleetDeletionError,
    FleetManager,
    FleetManagerError,
    UnmanagedInstanceError,
)
from azfleet.models import FleetDescriptor, InstanceRef
from tests.conftest import FakeFleetClient, vm_resource_id


def ref(scale_set: str, instance_id: str) -> InstanceRef:
    return InstanceRef.from_resource_id(vm_resource_id(scale_set, instance_id))


@pytest.fixture
def pool_a():
    return FleetDescriptor("pool-a", min_size=1, max_size=10)


@pytest.fixture
def pool_b():
    return FleetDescriptor("pool-b", min_size=0, max_size=5)


@pytest.fixture
def manager(fake_client, pool_a, pool_b):
    manager = FleetManager(fake_client, refresh_interval=3600)
    manager.register_fleet(pool_a)
    manager.register_fleet(pool_b)
    yield manager
    manager.shutdown()


class TestRegistry:
    def test_registration_order(self, manager, pool_a, pool_b):
        assert manager.registered_fleets() == [pool_a, pool_b]

    def test_duplicates_kept(self, fake_client, pool_a):
        manager = FleetManager(fake_client)
        manager.register_fleet(pool_a)
        manager.register_fleet(pool_a)
        assert manager.registered_fleets() == [pool_a, pool_a]

    def test_registration_does_not_call_azure(self, manager, fake_client):
        assert fake_client.calls == []

    def test_observed_basename_updated_by_rebuild(self, manager, fake_client, pool_a):
        fake_client.canonical_names["pool-a"] = "POOL-A"
        assert manager.observed_basename(pool_a) == "pool-a"

        manager.refresh()

        assert manager.observed_basename(pool_a) == "POOL-A"


class TestFindOwner:
    """Test read-through lookups."""

    def test_cold_miss_rebuilds(self, manager, fake_client, pool_a):
        assert manager.find_owner(ref("pool-a", "2")) is pool_a
        assert fake_client.count("list_fleet_members") == 2

    def test_hit_does_not_rebuild(self, manager, fake_client, pool_b):
        manager.refresh()
        calls_before = len(fake_client.calls)

        assert manager.find_owner(ref("pool-b", "8")) is pool_b
        assert len(fake_client.calls) == calls_before

    def test_case_insensitive_lookup(self, manager, pool_a):
        raw = vm_resource_id("pool-a", "1").upper()
        assert manager.find_owner(InstanceRef(raw)) is pool_a

    def test_unmanaged_returns_none(self, manager, fake_client):
        """An unknown VM is not an error; each miss rebuilds once."""
        assert manager.find_owner(ref("other-pool", "1")) is None
        assert fake_client.count("describe_fleet") == 2

    def test_rebuild_failure_propagates(self, manager, fake_client):
        fake_client.fail_on["describe_fleet"] = FleetClientError("throttled")

        with pytest.raises(FleetClientError, match="throttled"):
            manager.find_owner(ref("pool-a", "1"))

    def test_new_vm_found_after_upstream_change(self, manager, fake_client, pool_a):
        manager.refresh()
        fake_client.fleets["pool-a"].append("4")

        assert manager.find_owner(ref("pool-a", "4")) is pool_a


class TestNoPartialCommit:
    """A failed rebuild leaves the previous cache exactly as it was."""

    def test_list_failure_on_second_fleet(self, manager, fake_client, pool_a):
        fake_client.canonical_names["pool-a"] = "Pool-A"
        before = manager.refresh()
        owners_before = dict(before.owners)
        ids_before = dict(before.instance_ids)

        fake_client.canonical_names["pool-a"] = "POOL-A"
        fake_client.fleets["pool-a"].append("4")
        fake_client.fail_on["list_fleet_members"] = {"pool-b": RuntimeError("list failed")}

        with pytest.raises(RuntimeError, match="list failed"):
            manager.refresh()

        after = manager.snapshot()
        assert after is before
        assert dict(after.owners) == owners_before
        assert dict(after.instance_ids) == ids_before
        assert manager.observed_basename(pool_a) == "Pool-A"

    def test_domain_invariant_after_rebuild(self, manager):
        snapshot = manager.refresh()
        assert set(snapshot.owners) == set(snapshot.instance_ids)
        assert len(snapshot) == 5


class TestConcurrentLookups:
    def test_cold_cache_rebuilds_once(self, pool_a):
        """Concurrent misses serialize on the lock instead of rebuilding in parallel."""
        client = FakeFleetClient({"pool-a": ["1", "2", "3"]}, delay=0.05)
        manager = FleetManager(client)
        manager.register_fleet(pool_a)

        thread_count = 8
        barrier = threading.Barrier(thread_count)
        results = []
        errors = []

        def lookup(instance_id):
            barrier.wait()
            try:
                results.append(manager.find_owner(ref("pool-a", instance_id)))
            except Exception as e:  # noqa: BLE001 - collected for assertion
                errors.append(e)

        threads = [
            threading.Thread(target=lookup, args=(str(i % 3 + 1),)) for i in range(thread_count)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert errors == []
        assert results == [pool_a] * thread_count
        assert client.count("list_fleet_members") == 1
        assert client.count("describe_fleet") == 1


class TestSizeOperations:
    def test_get_size(self, manager, fake_client, pool_a):
        fake_client.capacities["pool-a"] = 7
        assert manager.get_size(pool_a) == 7

    def test_get_size_does_not_touch_cache(self, manager, fake_client, pool_a):
        manager.get_size(pool_a)
        assert len(manager.snapshot()) == 0
        assert fake_client.count("list_fleet_members") == 0

    def test_get_size_error(self, manager, fake_client):
        with pytest.raises(FleetClientError, match="not found"):
            manager.get_size(FleetDescriptor("missing"))

    def test_scenario_register_lookup_resize(self):
        """pool-a with capacity 3: lookup, then resize to 5."""
        client = FakeFleetClient({"pool-a": ["i-1", "i-2", "i-3"]})
        client.capacities["pool-a"] = 3
        pool = FleetDescriptor("pool-a", min_size=1, max_size=10)
        manager = FleetManager(client)
        manager.register_fleet(pool)

        manager.refresh()
        assert manager.find_owner(ref("pool-a", "i-2")) is pool

        manager.set_size(pool, 5)

        update_calls = [args for name, args in client.calls if name == "update_fleet_capacity"]
        assert update_calls == [("pool-a", 5)]
        assert manager.get_size(pool) == 5

    def test_set_size_error_propagates(self, manager, fake_client, pool_a):
        fake_client.fail_on["update_fleet_capacity"] = RuntimeError("conflict")

        with pytest.raises(RuntimeError, match="conflict"):
            manager.set_size(pool_a, 4)
        assert fake_client.count("update_fleet_capacity") == 1


class TestDeleteInstances:
    """Test the same-scale-set guard on deletes."""

    def test_empty_is_noop(self, manager, fake_client):
        manager.delete_instances([])
        assert fake_client.calls == []

    def test_single_batched_call(self, manager, fake_client):
        manager.delete_instances([ref("pool-a", "3"), ref("pool-a", "1")])

        delete_calls = [args for name, args in fake_client.calls if name == "delete_members"]
        assert delete_calls == [("pool-a", ["3", "1"])]

    def test_duplicate_refs_deleted_once(self, manager, fake_client):
        manager.delete_instances(
            [ref("pool-a", "2"), ref("pool-a", "1"), InstanceRef(vm_resource_id("POOL-A", "2"))]
        )

        delete_calls = [args for name, args in fake_client.calls if name == "delete_members"]
        assert delete_calls == [("pool-a", ["2", "1"])]

    def test_cross_fleet_rejected(self, manager, fake_client):
        target = ref("pool-b", "7")

        with pytest.raises(CrossFleetDeletionError) as exc_info:
            manager.delete_instances([ref("pool-a", "1"), target])

        assert exc_info.value.instance == target
        assert exc_info.value.expected == "pool-a"
        assert exc_info.value.actual == "pool-b"
        assert target.key in str(exc_info.value)
        assert fake_client.count("delete_members") == 0

    def test_first_unmanaged_rejected(self, manager, fake_client):
        with pytest.raises(UnmanagedInstanceError):
            manager.delete_instances([ref("other", "1"), ref("pool-a", "1")])
        assert fake_client.count("delete_members") == 0

    def test_later_unmanaged_rejected(self, manager, fake_client):
        with pytest.raises(CrossFleetDeletionError) as exc_info:
            manager.delete_instances([ref("pool-a", "1"), ref("other", "1")])

        assert exc_info.value.actual is None
        assert fake_client.count("delete_members") == 0

    def test_cold_cache_rebuilds_once(self, manager, fake_client):
        manager.delete_instances([ref("pool-a", "1"), ref("pool-a", "2"), ref("pool-a", "3")])
        assert fake_client.count("describe_fleet") == 2

    def test_warm_cache_does_not_rebuild(self, manager, fake_client):
        manager.refresh()
        describe_before = fake_client.count("describe_fleet")

        manager.delete_instances([ref("pool-b", "7")])

        assert fake_client.count("describe_fleet") == describe_before

    def test_ids_come_from_rebuilt_snapshot(self, manager, fake_client):
        """A miss rebuilds first, so every id comes from the same fresh snapshot."""
        manager.refresh()
        fake_client.fleets["pool-a"] = ["1", "4"]

        manager.delete_instances([ref("pool-a", "1"), ref("pool-a", "4")])

        delete_calls = [args for name, args in fake_client.calls if name == "delete_members"]
        assert delete_calls == [("pool-a", ["1", "4"])]

    def test_cache_not_invalidated(self, manager):
        before = manager.refresh()
        manager.delete_instances([ref("pool-a", "1")])
        assert manager.snapshot() is before
        assert ref("pool-a", "1") in manager.snapshot()

    def test_delete_error_propagates(self, manager, fake_client):
        fake_client.fail_on["delete_members"] = RuntimeError("delete failed")
        with pytest.raises(RuntimeError, match="delete failed"):
            manager.delete_instances([ref("pool-a", "1")])


class TestFleetInstances:
    def test_lists_from_azure(self, manager, fake_client, pool_b):
        refs = manager.fleet_instances(pool_b)

        assert refs == [ref("pool-b", "7"), ref("pool-b", "8")]
        assert len(manager.snapshot()) == 0


class TestLifecycle:
    """Test scheduled rebuild start/stop."""

    def test_start_rebuilds_immediately(self, manager, pool_a):
        manager.start()
        assert manager.refresher.wait_for_tick()
        assert manager.snapshot().owner_of(ref("pool-a", "1")) is pool_a

    def test_shutdown_is_idempotent(self, manager):
        manager.start()
        manager.shutdown()
        manager.shutdown()
        assert not manager.refresher.is_running

    def test_shutdown_without_start(self, manager):
        manager.shutdown()
        manager.shutdown()

    def test_not_restartable(self, manager):
        manager.start()
        manager.shutdown()
        with pytest.raises(FleetManagerError, match="restarted"):
            manager.start()

    def test_double_start(self, manager):
        manager.start()
        with pytest.raises(FleetManagerError, match="already started"):
            manager.start()

    def test_scheduled_failure_is_logged_not_raised(self, manager, fake_client, caplog):
        fake_client.fail_on["describe_fleet"] = FleetClientError("unavailable")

        manager.start()
        assert manager.refresher.wait_for_tick()
        manager.shutdown()

        assert isinstance(manager.refresher.last_error, FleetClientError)
        assert "unavailable" in caplog.text
        assert len(manager.snapshot()) == 0

    def test_context_manager(self, fake_client, pool_a):
        with FleetManager(fake_client) as manager:
            manager.register_fleet(pool_a)
            assert manager.refresher.is_running
        assert not manager.refresher.is_running


class TestFromConfig:
    def test_builds_client_and_registers_fleets(self, fake_client):
        config = FleetConfig(
            subscription_id="sub",
            resource_group="fleet-rg",
            refresh_interval=120,
            fleets=["1:10:pool-a", "0:5:pool-b"],
        )

        with (
            patch(
                "azfleet.fleet_manager.CredentialFactory.create_credential",
                return_value="credential",
            ) as create_credential,
            patch(
                "azfleet.fleet_manager.AzureScaleSetClient.create", return_value=fake_client
            ) as create_client,
        ):
            manager = FleetManager.from_config(config)

        create_credential.assert_called_once_with(config)
        create_client.assert_called_once_with(
            "credential", "sub", "fleet-rg", base_url="https://management.azure.com"
        )
        assert manager.client is fake_client
        assert manager.refresh_interval == 120
        assert [d.name for d in manager.registered_fleets()] == ["pool-a", "pool-b"]
