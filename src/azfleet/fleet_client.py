"""Remote scale set API used by the fleet manager.

This module defines the four calls the manager depends on and their Azure
implementation on top of the Azure Management SDK (azure-mgmt-compute).

Philosophy:
- Thin adapter: translate SDK models into azfleet models, nothing else
- Errors from Azure propagate unchanged (no wrapping, no retries)
- Long-running operations block until Azure acknowledges them

Public API (the "studs"):
    FleetClient: Protocol the manager talks to
    AzureScaleSetClient: FleetClient backed by ComputeManagementClient
    FleetClientError: Malformed response from Azure
"""

import logging
from typing import Any, Protocol

from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.compute.models import VirtualMachineScaleSetVMInstanceRequiredIDs

from azfleet.models import FleetDescription, FleetMember

logger = logging.getLogger(__name__)


class FleetClientError(Exception):
    """Raised when Azure returns a scale set response azfleet cannot use."""

    pass


class FleetClient(Protocol):
    """Blocking scale set operations.

    Implementations must be safe to call from several threads.
    """

    def describe_fleet(self, name: str) -> FleetDescription: ...

    def list_fleet_members(self, name: str) -> list[FleetMember]: ...

    def update_fleet_capacity(
        self, name: str, capacity: int, current: FleetDescription | None = None
    ) -> None: ...

    def delete_members(self, name: str, instance_ids: list[str]) -> None: ...


def _log_request(request: Any) -> None:
    http_request = request.http_request
    logger.debug(f"Inspecting request: {http_request.method} {http_request.url}")


def _log_response(response: Any) -> None:
    http_request = response.http_request
    logger.debug(
        f"Inspecting response: {response.http_response.status_code} for "
        f"{http_request.method} {http_request.url}"
    )


class AzureScaleSetClient:
    """FleetClient for scale sets in a single resource group.

    Example:
        >>> client = AzureScaleSetClient.create(credential, "sub-id", "my-rg")
        >>> client.describe_fleet("pool-a").capacity
        3
    """

    def __init__(self, compute_client: Any, resource_group: str):
        """Initialize the client.

        Args:
            compute_client: ComputeManagementClient (or a test double)
            resource_group: Resource group holding the scale sets
        """
        self.compute_client = compute_client
        self.resource_group = resource_group

    @classmethod
    def create(
        cls,
        credential: Any,
        subscription_id: str,
        resource_group: str,
        base_url: str | None = None,
    ) -> "AzureScaleSetClient":
        """Build a client with request/response inspection logging enabled.

        Args:
            credential: Azure Identity credential
            subscription_id: Subscription holding the resource group
            resource_group: Resource group holding the scale sets
            base_url: Resource manager endpoint (defaults to public cloud)
        """
        kwargs: dict[str, Any] = {
            "raw_request_hook": _log_request,
            "raw_response_hook": _log_response,
        }
        if base_url:
            kwargs["base_url"] = base_url
            kwargs["credential_scopes"] = [base_url.rstrip("/") + "/.default"]

        compute_client = ComputeManagementClient(credential, subscription_id, **kwargs)
        logger.info(
            f"Created scale set client for subscription {subscription_id}, "
            f"resource group {resource_group}"
        )
        return cls(compute_client, resource_group)

    def describe_fleet(self, name: str) -> FleetDescription:
        """Get a scale set and its current capacity.

        Raises:
            FleetClientError: If the scale set has no SKU capacity
            azure.core.exceptions.HttpResponseError: If the call fails
        """
        scale_set = self.compute_client.virtual_machine_scale_sets.get(self.resource_group, name)

        sku = getattr(scale_set, "sku", None)
        if sku is None or sku.capacity is None:
            raise FleetClientError(f"Scale set {name} has no SKU capacity")

        return FleetDescription(
            name=scale_set.name or name,
            capacity=int(sku.capacity),
            raw=scale_set,
        )

    def list_fleet_members(self, name: str) -> list[FleetMember]:
        """List the VMs of a scale set.

        Raises:
            FleetClientError: If a VM is missing its instance id or resource id
            azure.core.exceptions.HttpResponseError: If the call fails
        """
        members = []
        for vm in self.compute_client.virtual_machine_scale_set_vms.list(
            self.resource_group, name
        ):
            if not vm.instance_id or not vm.id:
                raise FleetClientError(f"Scale set {name} returned a VM without an id")
            members.append(FleetMember(instance_id=vm.instance_id, resource_id=vm.id))

        logger.debug(f"Scale set {name} has {len(members)} VMs")
        return members

    def update_fleet_capacity(
        self, name: str, capacity: int, current: FleetDescription | None = None
    ) -> None:
        """Write a new capacity and wait for Azure to finish the update.

        Args:
            name: Scale set name
            capacity: New VM count
            current: Description from a previous describe call, reused as the
                update body. Fetched when omitted.
        """
        if current is None or current.raw is None:
            current = self.describe_fleet(name)

        scale_set = current.raw
        scale_set.sku.capacity = capacity
        # Azure rejects writes that carry the provisioning state
        scale_set.provisioning_state = None

        poller = self.compute_client.virtual_machine_scale_sets.begin_create_or_update(
            self.resource_group, name, scale_set
        )
        poller.result()

    def delete_members(self, name: str, instance_ids: list[str]) -> None:
        """Delete VMs from a scale set and wait for completion."""
        required_ids = VirtualMachineScaleSetVMInstanceRequiredIDs(instance_ids=list(instance_ids))
        poller = self.compute_client.virtual_machine_scale_sets.begin_delete_instances(
            self.resource_group, name, required_ids
        )
        poller.result()
