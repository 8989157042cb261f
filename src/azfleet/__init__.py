"""azfleet - Azure scale set membership cache and fleet operations."""

__version__ = "0.1.0"

from azfleet.fleet_manager import (
    CrossFleetDeletionError,
    FleetConsistencyError,
    FleetManager,
    FleetManagerError,
    StaleInstanceIdError,
    UnmanagedInstanceError,
)
from azfleet.models import FleetDescriptor, InstanceRef

__all__ = [
    "CrossFleetDeletionError",
    "FleetConsistencyError",
    "FleetDescriptor",
    "FleetManager",
    "FleetManagerError",
    "InstanceRef",
    "StaleInstanceIdError",
    "UnmanagedInstanceError",
    "__version__",
]
