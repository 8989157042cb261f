"""
Shared test fixtures and configuration for azfleet tests.

This module provides common fixtures used across all test types:
- A fake scale set client with call recording and failure injection
- Sample scale set VM resource ids
- Mock Azure compute clients
"""

import threading
from unittest.mock import Mock

import pytest

from azfleet.fleet_client import FleetClientError
from azfleet.models import FleetDescription, FleetMember


def vm_resource_id(scale_set: str, instance_id: str) -> str:
    """ARM resource id of a scale set VM, in the casing Azure's LIST call uses."""
    return (
        "/subscriptions/00000000-0000-0000-0000-000000000000/resourceGroups/Fleet-RG"
        f"/providers/Microsoft.Compute/virtualMachineScaleSets/{scale_set}"
        f"/virtualMachines/{instance_id}"
    )


class FakeFleetClient:
    """In-memory FleetClient.

    ``fleets`` maps scale set name -> list of instance ids. Calls are recorded
    in ``calls`` as (method, args) tuples. ``fail_on`` maps a method name to an
    exception (or a dict of scale set name -> exception) to raise.
    """

    def __init__(self, fleets: dict[str, list[str]] | None = None, delay: float = 0.0):
        self.fleets = fleets if fleets is not None else {}
        self.capacities: dict[str, int] = {}
        self.canonical_names: dict[str, str] = {}
        self.fail_on: dict[str, object] = {}
        self.delay = delay
        self.calls: list[tuple[str, tuple]] = []
        self._lock = threading.Lock()

    def _record(self, method: str, *args) -> None:
        with self._lock:
            self.calls.append((method, args))

        failure = self.fail_on.get(method)
        if isinstance(failure, dict):
            failure = failure.get(args[0])
        if failure is not None:
            raise failure

        if self.delay:
            threading.Event().wait(self.delay)

    def count(self, method: str) -> int:
        with self._lock:
            return sum(1 for name, _ in self.calls if name == method)

    def describe_fleet(self, name: str) -> FleetDescription:
        self._record("describe_fleet", name)
        if name not in self.fleets:
            raise FleetClientError(f"Scale set {name} not found")
        capacity = self.capacities.get(name, len(self.fleets[name]))
        return FleetDescription(
            name=self.canonical_names.get(name, name), capacity=capacity, raw=Mock()
        )

    def list_fleet_members(self, name: str) -> list[FleetMember]:
        self._record("list_fleet_members", name)
        registered = next(n for n in self.fleets if n.lower() == name.lower())
        return [
            FleetMember(instance_id=instance_id, resource_id=vm_resource_id(registered, instance_id))
            for instance_id in self.fleets[registered]
        ]

    def update_fleet_capacity(self, name, capacity, current=None) -> None:
        self._record("update_fleet_capacity", name, capacity)
        self.capacities[name] = capacity

    def delete_members(self, name, instance_ids) -> None:
        self._record("delete_members", name, list(instance_ids))


@pytest.fixture
def fake_client():
    """Fake client with pool-a (VMs 1-3) and pool-b (VMs 7-8)."""
    return FakeFleetClient({"pool-a": ["1", "2", "3"], "pool-b": ["7", "8"]})


@pytest.fixture
def mock_compute_client():
    """Mock ComputeManagementClient for a scale set with capacity 3."""
    client = Mock()

    scale_set = Mock()
    scale_set.name = "Pool-A"
    scale_set.sku = Mock(capacity=3)
    scale_set.provisioning_state = "Succeeded"
    client.virtual_machine_scale_sets.get.return_value = scale_set

    vms = []
    for instance_id in ("0", "1"):
        vm = Mock()
        vm.instance_id = instance_id
        vm.id = vm_resource_id("Pool-A", instance_id)
        vms.append(vm)
    client.virtual_machine_scale_set_vms.list.return_value = iter(vms)

    client.virtual_machine_scale_sets.begin_create_or_update.return_value = Mock()
    client.virtual_machine_scale_sets.begin_delete_instances.return_value = Mock()
    return client


@pytest.fixture(autouse=True)
def isolate_azure_environment(monkeypatch):
    """Keep real ARM_* credentials out of tests."""
    for name in (
        "ARM_SUBSCRIPTION_ID",
        "ARM_RESOURCE_GROUP",
        "ARM_TENANT_ID",
        "ARM_CLIENT_ID",
        "ARM_CLIENT_SECRET",
        "ARM_CLOUD",
        "AZFLEET_FLEETS",
        "AZFLEET_REFRESH_INTERVAL",
        "AZFLEET_CONFIG",
    ):
        monkeypatch.delenv(name, raising=False)
