"""Cache Module - Scale set membership caching for azfleet.

Philosophy:
- Immutable snapshots swapped wholesale, never edited in place
- Lazy rebuild on lookup miss plus a periodic background rebuild
- Thread-safe through the fleet manager's single lock

Public API (the "studs"):
    From membership_cache:
        MembershipSnapshot: Immutable owner/instance-id mapping pair
        build_snapshot: Rebuild algorithm over all registered scale sets

    From background_refresh:
        PeriodicRefresh: Background thread for scheduled rebuilds
        BackgroundRefreshError: Refresh lifecycle errors
"""

from azfleet.cache.background_refresh import (
    DEFAULT_REFRESH_INTERVAL,
    BackgroundRefreshError,
    PeriodicRefresh,
)
from azfleet.cache.membership_cache import MembershipSnapshot, build_snapshot

__all__ = [
    "DEFAULT_REFRESH_INTERVAL",
    "BackgroundRefreshError",
    "MembershipSnapshot",
    "PeriodicRefresh",
    "build_snapshot",
]
