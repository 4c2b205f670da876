"""Services package: expose all concrete services from one import."""
from .eligibility_service import badge_progress, can_rate
from .identity_service import (
    IdentityResolver, PlayStationIdentityResolver, RiotIdentityResolver, SteamIdentityResolver,
)
from .library_service import LibraryService
from .reconciliation_service import combine_entries, merge_record, reconcile
from .sync_service import SyncOrchestrator
from .validation_service import (
    DebouncedValidator, UsernameAvailabilityService, UsernameCheck, UsernameStatus,
    ValidationRetrier,
)

__all__ = [
    'badge_progress',
    'can_rate',
    'combine_entries',
    'merge_record',
    'reconcile',
    'IdentityResolver',
    'SteamIdentityResolver',
    'PlayStationIdentityResolver',
    'RiotIdentityResolver',
    'LibraryService',
    'SyncOrchestrator',
    'DebouncedValidator',
    'UsernameAvailabilityService',
    'UsernameCheck',
    'UsernameStatus',
    'ValidationRetrier',
]
