"""Data models for scale set fleet tracking.

Public API (the "studs"):
    InstanceRef: Normalized identity of one scale set VM
    FleetDescriptor: A registered scale set and its size bounds
    FleetEntry: Registry entry pairing a descriptor with its observed name
    FleetMember: One VM as reported by the scale set VM list call
    FleetDescription: Scale set state as reported by the get call
"""

from dataclasses import dataclass, field
from typing import Any

PROVIDER_PREFIX = "azure://"


def normalize_instance_key(raw: str) -> str:
    """Normalize a provider id or ARM resource id into a cache key.

    Resource ids come back with different casing from the GET and LIST
    calls, so keys are always lower-cased.

    Args:
        raw: ARM resource id, with or without the azure:// prefix

    Returns:
        Lower-cased key carrying exactly one azure:// prefix

    Raises:
        ValueError: If raw is empty

    Example:
        >>> normalize_instance_key("/subscriptions/ABC/virtualMachines/0")
        'azure:///subscriptions/abc/virtualmachines/0'
    """
    if not raw or not raw.strip():
        raise ValueError("Instance id must not be empty")

    key = raw.strip().lower()
    if key.startswith(PROVIDER_PREFIX):
        return key
    return PROVIDER_PREFIX + key


@dataclass(frozen=True)
class InstanceRef:
    """Normalized reference to a single scale set VM.

    Two references are equal iff their normalized keys are equal.
    """

    key: str

    def __post_init__(self):
        object.__setattr__(self, "key", normalize_instance_key(self.key))

    @classmethod
    def from_resource_id(cls, resource_id: str) -> "InstanceRef":
        """Create a reference from a raw ARM resource id."""
        return cls(key=resource_id)

    @property
    def resource_id(self) -> str:
        """Key without the provider prefix."""
        return self.key[len(PROVIDER_PREFIX) :]

    def __str__(self) -> str:
        return self.key


@dataclass(eq=False)
class FleetDescriptor:
    """A scale set registered for tracking.

    Descriptors compare by identity. The membership cache stores the
    registered object itself, so ``owner is descriptor`` is the same-fleet
    check used before deletes.

    Attributes:
        name: Scale set name as registered
        min_size: Lower size bound
        max_size: Upper size bound
        metadata: Caller-supplied data, never read by this package
    """

    name: str
    min_size: int = 0
    max_size: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("Fleet name must not be empty")
        if self.min_size < 0:
            raise ValueError(f"min_size must be >= 0, got {self.min_size}")
        if self.max_size < self.min_size:
            raise ValueError(
                f"max_size ({self.max_size}) must be >= min_size ({self.min_size})"
            )

    @property
    def size_bounds(self) -> tuple[int, int]:
        return (self.min_size, self.max_size)

    @classmethod
    def parse(cls, spec: str) -> "FleetDescriptor":
        """Parse a fleet from MIN:MAX:NAME form.

        Args:
            spec: String such as "1:10:pool-a"

        Returns:
            FleetDescriptor

        Raises:
            ValueError: If the string is malformed
        """
        parts = spec.split(":", 2)
        if len(parts) != 3:
            raise ValueError(f"Fleet spec must be MIN:MAX:NAME, got: {spec!r}")

        min_raw, max_raw, name = parts
        try:
            min_size = int(min_raw)
            max_size = int(max_raw)
        except ValueError as e:
            raise ValueError(f"Fleet size bounds must be integers: {spec!r}") from e

        return cls(name=name.strip(), min_size=min_size, max_size=max_size)

    def __repr__(self) -> str:
        return f"FleetDescriptor(name={self.name!r}, bounds={self.size_bounds})"


@dataclass
class FleetEntry:
    """Registry entry. ``observed_basename`` is refreshed on every rebuild."""

    descriptor: FleetDescriptor
    observed_basename: str = ""

    def __post_init__(self):
        if not self.observed_basename:
            self.observed_basename = self.descriptor.name


@dataclass(frozen=True)
class FleetMember:
    """A VM in a scale set.

    Attributes:
        instance_id: Scale-set-local instance id ("0", "1", ...) used by delete
        resource_id: Full ARM resource id of the VM
    """

    instance_id: str
    resource_id: str

    @property
    def ref(self) -> InstanceRef:
        return InstanceRef.from_resource_id(self.resource_id)


@dataclass(frozen=True)
class FleetDescription:
    """Scale set state returned by a describe call."""

    name: str
    capacity: int
    raw: Any = field(default=None, compare=False, repr=False)
