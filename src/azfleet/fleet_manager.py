"""Fleet manager - scale set ownership cache and size/delete operations.

This module maps scale set VMs to the registered scale set that owns them
and guards bulk deletes with a same-scale-set check.

Philosophy:
- One lock guards the registry and the current snapshot together
- Lookups read through the cache; a miss triggers a rebuild under the lock
- Size operations talk to Azure directly and never take the lock
- Deletes resolve ownership and instance ids from one snapshot
- Nothing here retries; callers own retry and backoff

Public API (the "studs"):
    FleetManager: Cache coordinator and fleet operations
    FleetManagerError: Base error
    CrossFleetDeletionError: Delete batch spans more than one scale set
    UnmanagedInstanceError: Delete target belongs to no registered scale set
    StaleInstanceIdError: Snapshot has an owner but no instance id
"""

import logging
import threading
import time
from collections.abc import Sequence

from azfleet.cache.background_refresh import (
    DEFAULT_REFRESH_INTERVAL,
    BackgroundRefreshError,
    PeriodicRefresh,
)
from azfleet.cache.membership_cache import MembershipSnapshot, build_snapshot
from azfleet.config_manager import FleetConfig
from azfleet.credential_factory import CredentialFactory
from azfleet.fleet_client import AzureScaleSetClient, FleetClient
from azfleet.models import FleetDescriptor, FleetEntry, InstanceRef

logger = logging.getLogger(__name__)


class FleetManagerError(Exception):
    """Raised when fleet manager operations fail."""

    pass


class FleetConsistencyError(FleetManagerError):
    """Local ownership view forbids the requested operation."""

    pass


class CrossFleetDeletionError(FleetConsistencyError):
    """Raised when a delete batch contains VMs of different scale sets."""

    def __init__(self, instance: InstanceRef, expected: str, actual: str | None):
        self.instance = instance
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Cannot delete instance ({instance.key}) which doesn't belong to the same "
            f"scale set (expected {expected}, found {actual or 'none'})"
        )


class UnmanagedInstanceError(FleetConsistencyError):
    """Raised when a delete target belongs to no registered scale set."""

    def __init__(self, instance: InstanceRef):
        self.instance = instance
        super().__init__(f"Instance {instance.key} does not belong to any registered scale set")


class StaleInstanceIdError(FleetConsistencyError):
    """Raised when the snapshot knows an owner but not the instance id."""

    def __init__(self, instance: InstanceRef):
        self.instance = instance
        super().__init__(f"No scale set instance id cached for {instance.key}")


class FleetManager:
    """Coordinates the membership cache and scale set operations.

    Example:
        >>> manager = FleetManager(client)
        >>> pool = FleetDescriptor("pool-a", 1, 10)
        >>> manager.register_fleet(pool)
        >>> manager.find_owner(InstanceRef(vm_resource_id)) is pool
        True
    """

    def __init__(self, client: FleetClient, refresh_interval: float = DEFAULT_REFRESH_INTERVAL):
        """Initialize the manager with an empty cache.

        Args:
            client: Remote scale set API
            refresh_interval: Seconds between scheduled rebuilds
        """
        self.client = client
        self.refresh_interval = refresh_interval

        self._lock = threading.Lock()
        self._entries: list[FleetEntry] = []
        self._snapshot = MembershipSnapshot.empty()
        self._refresher = PeriodicRefresh(self.refresh, interval=refresh_interval)

    @classmethod
    def from_config(cls, config: FleetConfig) -> "FleetManager":
        """Build a manager for a FleetConfig and register its fleets.

        The scheduled refresh is not started; call start() or use the manager
        as a context manager.
        """
        config.validate()
        credential = CredentialFactory.create_credential(config)
        client = AzureScaleSetClient.create(
            credential,
            config.subscription_id,
            config.resource_group,
            base_url=config.resource_manager_url,
        )

        manager = cls(client, refresh_interval=config.refresh_interval)
        for descriptor in config.fleet_descriptors():
            manager.register_fleet(descriptor)
        return manager

    # Registry

    def register_fleet(self, descriptor: FleetDescriptor) -> None:
        """Start tracking a scale set. Duplicates are not detected."""
        with self._lock:
            self._entries.append(FleetEntry(descriptor=descriptor))
        logger.debug(f"Registered scale set {descriptor.name}")

    def registered_fleets(self) -> list[FleetDescriptor]:
        with self._lock:
            return [entry.descriptor for entry in self._entries]

    def observed_basename(self, descriptor: FleetDescriptor) -> str:
        """Canonical scale set name seen by the last rebuild."""
        with self._lock:
            return self._basename_locked(descriptor)

    def snapshot(self) -> MembershipSnapshot:
        """Current cache contents. The snapshot is immutable."""
        with self._lock:
            return self._snapshot

    # Cache

    def _basename_locked(self, descriptor: FleetDescriptor) -> str:
        for entry in self._entries:
            if entry.descriptor is descriptor:
                return entry.observed_basename
        return descriptor.name

    def _rebuild_locked(self) -> None:
        """Replace the cache from Azure. Caller must hold the lock.

        On failure the previous snapshot and basenames stay in place.
        """
        start_time = time.time()
        snapshot, basenames = build_snapshot(self._entries, self.client)

        for entry, basename in zip(self._entries, basenames, strict=True):
            entry.observed_basename = basename
        self._snapshot = snapshot

        duration = time.time() - start_time
        logger.info(
            f"Scale set cache rebuilt: {len(snapshot)} instances across "
            f"{len(self._entries)} scale sets in {duration:.2f}s"
        )

    def refresh(self) -> MembershipSnapshot:
        """Rebuild the cache now and return the new snapshot."""
        with self._lock:
            self._rebuild_locked()
            return self._snapshot

    def find_owner(self, ref: InstanceRef) -> FleetDescriptor | None:
        """Return the registered scale set owning ``ref``.

        A cache miss triggers one rebuild while holding the lock, so
        concurrent misses wait for that rebuild instead of starting their own.

        Returns:
            The registered FleetDescriptor, or None if the VM is unmanaged

        Raises:
            Any remote error from the rebuild, unchanged
        """
        logger.debug(f"Looking for scale set for instance: {ref}")

        with self._lock:
            owner = self._snapshot.owner_of(ref)
            if owner is not None:
                return owner

            try:
                self._rebuild_locked()
            except Exception as e:
                logger.warning(f"Error while looking for scale set for instance {ref}: {e}")
                raise

            return self._snapshot.owner_of(ref)

    # Size operations

    def get_size(self, descriptor: FleetDescriptor) -> int:
        """Current capacity of a scale set, read from Azure."""
        logger.debug(f"Get scale set size: {descriptor.name}")
        capacity = self.client.describe_fleet(descriptor.name).capacity
        logger.debug(f"Returning scale set capacity: {capacity}")
        return capacity

    def set_size(self, descriptor: FleetDescriptor, target: int) -> None:
        """Set scale set capacity and block until Azure acknowledges."""
        current = self.client.describe_fleet(descriptor.name)
        logger.info(f"Setting scale set {descriptor.name} size: {current.capacity} -> {target}")
        self.client.update_fleet_capacity(descriptor.name, target, current)

    def fleet_instances(self, descriptor: FleetDescriptor) -> list[InstanceRef]:
        """List a scale set's VMs straight from Azure, bypassing the cache."""
        try:
            members = self.client.list_fleet_members(descriptor.name)
        except Exception as e:
            logger.debug(f"Failed VM list request for {descriptor.name}: {e}")
            raise
        return [member.ref for member in members]

    # Deletion

    def delete_instances(self, refs: Sequence[InstanceRef]) -> None:
        """Delete VMs that all belong to one registered scale set.

        Ownership and instance ids come from the same snapshot. When any
        target is missing from the current snapshot, one rebuild is done
        first. A VM listed more than once is deleted once. The cache is not
        invalidated after the delete; the next rebuild drops the deleted VMs.

        Raises:
            UnmanagedInstanceError: If the first VM has no registered owner
            CrossFleetDeletionError: If any VM's owner differs from the first's
            StaleInstanceIdError: If an instance id is missing from the snapshot
            Any remote error, unchanged
        """
        refs = list(dict.fromkeys(refs))
        if not refs:
            return

        with self._lock:
            snapshot = self._snapshot
            if any(ref not in snapshot for ref in refs):
                self._rebuild_locked()
                snapshot = self._snapshot

            common = snapshot.owner_of(refs[0])
            if common is None:
                raise UnmanagedInstanceError(refs[0])

            for ref in refs[1:]:
                owner = snapshot.owner_of(ref)
                if owner is not common:
                    raise CrossFleetDeletionError(
                        ref, common.name, owner.name if owner is not None else None
                    )

            instance_ids = []
            for ref in refs:
                instance_id = snapshot.instance_id_of(ref)
                if instance_id is None:
                    raise StaleInstanceIdError(ref)
                instance_ids.append(instance_id)

        logger.info(f"Deleting {len(instance_ids)} instances from scale set {common.name}")
        self.client.delete_members(common.name, instance_ids)

    # Lifecycle

    def start(self) -> None:
        """Start the scheduled rebuild loop (first rebuild runs immediately).

        Raises:
            FleetManagerError: If already started or shut down
        """
        try:
            self._refresher.start()
        except BackgroundRefreshError as e:
            raise FleetManagerError(str(e)) from e

    def shutdown(self) -> None:
        """Stop the scheduled rebuild loop. Safe to call more than once."""
        self._refresher.stop()

    @property
    def refresher(self) -> PeriodicRefresh:
        return self._refresher

    def __enter__(self) -> "FleetManager":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()
