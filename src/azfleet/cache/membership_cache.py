"""Membership Cache Module - VM to scale set ownership snapshots.

Philosophy:
- Snapshots are immutable: a rebuild produces a new one, never edits the old
- Owners and instance ids always travel together as one snapshot
- All-or-nothing rebuild: any Azure failure aborts with nothing committed
- No locking here; the fleet manager serializes rebuilds

Public API (the "studs"):
    MembershipSnapshot: Immutable owner/instance-id mapping pair
    build_snapshot: Enumerate all registered scale sets into a new snapshot
"""

import logging
import time
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType

from azfleet.fleet_client import FleetClient
from azfleet.models import FleetDescriptor, FleetEntry, InstanceRef

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MembershipSnapshot:
    """Ownership view produced by one successful rebuild.

    Attributes:
        owners: InstanceRef -> registered FleetDescriptor (shared, not copied)
        instance_ids: InstanceRef -> scale-set-local instance id for deletes
        built_at: Timestamp of the rebuild (0.0 for the startup snapshot)
    """

    owners: Mapping[InstanceRef, FleetDescriptor] = field(
        default_factory=lambda: MappingProxyType({})
    )
    instance_ids: Mapping[InstanceRef, str] = field(default_factory=lambda: MappingProxyType({}))
    built_at: float = 0.0

    def __post_init__(self):
        if self.owners.keys() != self.instance_ids.keys():
            raise ValueError("owners and instance_ids must cover the same instances")
        object.__setattr__(self, "owners", MappingProxyType(dict(self.owners)))
        object.__setattr__(self, "instance_ids", MappingProxyType(dict(self.instance_ids)))

    @classmethod
    def empty(cls) -> "MembershipSnapshot":
        return cls()

    def owner_of(self, ref: InstanceRef) -> FleetDescriptor | None:
        return self.owners.get(ref)

    def instance_id_of(self, ref: InstanceRef) -> str | None:
        return self.instance_ids.get(ref)

    def members_of(self, descriptor: FleetDescriptor) -> list[InstanceRef]:
        """Instances owned by descriptor, in insertion order."""
        return [ref for ref, owner in self.owners.items() if owner is descriptor]

    def __contains__(self, ref: object) -> bool:
        return ref in self.owners

    def __len__(self) -> int:
        return len(self.owners)

    def __iter__(self) -> Iterator[InstanceRef]:
        return iter(self.owners)


def build_snapshot(
    entries: Sequence[FleetEntry], client: FleetClient
) -> tuple[MembershipSnapshot, list[str]]:
    """Enumerate every registered scale set into a new snapshot.

    Scale sets are visited in registration order. For each one the scale set
    is fetched first to learn its canonical name, then its VMs are listed
    under that name. When one VM shows up under two entries, the later entry
    wins.

    Neither ``entries`` nor their observed basenames are modified; the caller
    commits the returned basenames together with the snapshot.

    Args:
        entries: Registry entries in registration order
        client: Remote scale set API

    Returns:
        Tuple of (new snapshot, observed basename per entry)

    Raises:
        Any exception raised by the client, unchanged
    """
    owners: dict[InstanceRef, FleetDescriptor] = {}
    instance_ids: dict[InstanceRef, str] = {}
    basenames: list[str] = []

    for entry in entries:
        name = entry.descriptor.name
        logger.debug(f"Regenerating scale set information for {name}")

        try:
            description = client.describe_fleet(name)
        except Exception as e:
            logger.error(f"Failed to get scale set {name}: {e}")
            raise
        basename = description.name

        try:
            members = client.list_fleet_members(basename)
        except Exception as e:
            logger.error(f"Failed to list VMs for scale set {name}: {e}")
            raise

        for member in members:
            ref = member.ref
            previous = owners.get(ref)
            if previous is not None and previous is not entry.descriptor:
                logger.warning(
                    f"Instance {ref} reported by scale sets {previous.name} and {name}, "
                    f"keeping {name}"
                )
            owners[ref] = entry.descriptor
            instance_ids[ref] = member.instance_id

        basenames.append(basename)

    snapshot = MembershipSnapshot(owners=owners, instance_ids=instance_ids, built_at=time.time())
    return snapshot, basenames
