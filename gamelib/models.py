"""Domain records shared by adapters, the reconciliation engine and storage.

All records that flow through a sync are frozen dataclasses: the
reconciliation engine never mutates an entry in place, it builds a new one
with :func:`dataclasses.replace` so the previous state stays available for
change classification.
"""
from __future__ import annotations

import datetime
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from .errors import ValidationFailed


def utcnow() -> datetime.datetime:
    """Timezone-aware current UTC time."""
    return datetime.datetime.now(datetime.timezone.utc)


def _iso(value: Optional[datetime.datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Platform(str, Enum):
    """Every source that can contribute to a library entry."""

    MANUAL = 'manual'
    STEAM = 'steam'
    PLAYSTATION = 'playstation'
    RIOT = 'riot'

    @classmethod
    def parse(cls, value) -> 'Platform':
        """Return the platform for *value*, accepting the common aliases.

        Raises:
            ValidationFailed: *value* names no known platform.
        """
        if isinstance(value, cls):
            return value
        key = str(value or '').strip().lower()
        key = _PLATFORM_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValidationFailed(f"Unknown platform: {value!r}") from None

    @property
    def is_syncable(self) -> bool:
        return self is not Platform.MANUAL


_PLATFORM_ALIASES = {
    'psn': 'playstation',
    'ps': 'playstation',
    'valorant': 'riot',
    'lol': 'riot',
    'tft': 'riot',
}

SYNCABLE_PLATFORMS = tuple(p for p in Platform if p.is_syncable)


class PlayStatus(str, Enum):
    WISHLIST = 'wishlist'
    PLAYING = 'playing'
    COMPLETED = 'completed'
    DROPPED = 'dropped'

    @classmethod
    def parse(cls, value) -> 'PlayStatus':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or '').strip().lower())
        except ValueError:
            raise ValidationFailed(f"Unknown status: {value!r}") from None


class SyncClassification(str, Enum):
    IMPORTED = 'imported'
    UPDATED = 'updated'
    UNCHANGED = 'unchanged'
    FAILED = 'failed'


# ---------------------------------------------------------------------------
# Catalog identity
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CanonicalGame:
    """A catalog game; ``catalog_id`` is the dedup key for the whole library."""

    catalog_id: int
    name: str
    cover_url: Optional[str] = None
    genres: FrozenSet[str] = frozenset()
    platforms_tagged: FrozenSet[str] = frozenset()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'catalog_id': self.catalog_id,
            'name': self.name,
            'cover_url': self.cover_url,
            'genres': sorted(self.genres),
            'platforms_tagged': sorted(self.platforms_tagged),
        }


# ---------------------------------------------------------------------------
# Linked platform account
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PlatformCredential:
    """Reference to an already-linked platform account.

    ``account_id`` is the Steam 64-bit id or the Riot PUUID; PlayStation is
    identified by its token pair alone.
    """

    platform: Platform
    account_id: str = ''
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    region: Optional[str] = None


# ---------------------------------------------------------------------------
# Fetch results and persisted entries
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PlatformRecord:
    """One owned title as returned by a platform adapter.

    ``playtime_minutes`` is always minutes; ``catalog_id`` stays ``None``
    until the identity resolver fills it in.
    """

    platform: Platform
    platform_title_id: str
    playtime_minutes: int = 0
    catalog_id: Optional[int] = None
    ranked_metadata: Optional[Dict[str, Any]] = None
    last_observed_at: datetime.datetime = field(default_factory=utcnow)
    title_name: str = ''

    def with_catalog_id(self, catalog_id: Optional[int]) -> 'PlatformRecord':
        return replace(self, catalog_id=catalog_id)


@dataclass(frozen=True)
class LibraryEntry:
    """One row per (user_id, catalog_id)."""

    user_id: str
    catalog_id: int
    id: Optional[str] = None
    status: Optional[PlayStatus] = None
    rating: Optional[int] = None
    notes: Optional[str] = None
    source_platforms: FrozenSet[Platform] = frozenset()
    steam_app_id: Optional[int] = None
    psn_title_id: Optional[str] = None
    riot_game_id: Optional[str] = None
    playtime_minutes: int = 0
    ranked_data: Optional[Dict[str, Any]] = None
    last_synced_at: Optional[datetime.datetime] = None
    created_at: datetime.datetime = field(default_factory=utcnow)
    version: int = 0

    @property
    def playtime_hours(self) -> float:
        return self.playtime_minutes / 60.0

    def platform_title_id(self, platform: Platform) -> Optional[str]:
        """Return the platform-native id stored for *platform*, as a string."""
        if platform is Platform.STEAM:
            return str(self.steam_app_id) if self.steam_app_id is not None else None
        if platform is Platform.PLAYSTATION:
            return self.psn_title_id
        if platform is Platform.RIOT:
            return self.riot_game_id
        if platform is Platform.MANUAL:
            return None
        raise ValueError(f"Unhandled platform {platform!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'catalog_id': self.catalog_id,
            'status': self.status.value if self.status else None,
            'rating': self.rating,
            'notes': self.notes,
            'source_platforms': sorted(p.value for p in self.source_platforms),
            'steam_app_id': self.steam_app_id,
            'psn_title_id': self.psn_title_id,
            'riot_game_id': self.riot_game_id,
            'playtime_minutes': self.playtime_minutes,
            'playtime_hours': round(self.playtime_hours, 1),
            'ranked_data': self.ranked_data,
            'last_synced_at': _iso(self.last_synced_at),
            'created_at': _iso(self.created_at),
        }


@dataclass(frozen=True)
class CombinedLibraryEntry:
    """Read-side view: an entry plus every platform it is known on."""

    entry: LibraryEntry
    platforms: FrozenSet[Platform]
    game: Optional[CanonicalGame] = None

    def to_dict(self) -> Dict[str, Any]:
        data = self.entry.to_dict()
        data['platforms'] = sorted(p.value for p in self.platforms)
        data['game'] = self.game.to_dict() if self.game else None
        return data


@dataclass
class SyncResult:
    """Exact per-run accounting returned to the caller."""

    imported: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.imported + self.updated + self.unchanged + self.failed

    def record(self, classification: SyncClassification) -> None:
        if classification is SyncClassification.IMPORTED:
            self.imported += 1
        elif classification is SyncClassification.UPDATED:
            self.updated += 1
        elif classification is SyncClassification.UNCHANGED:
            self.unchanged += 1
        elif classification is SyncClassification.FAILED:
            self.failed += 1
        else:
            raise ValueError(f"Unhandled classification {classification!r}")

    def record_failure(self, message: str) -> None:
        self.failed += 1
        self.errors.append(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'imported': self.imported,
            'updated': self.updated,
            'unchanged': self.unchanged,
            'failed': self.failed,
            'errors': list(self.errors),
        }


# ---------------------------------------------------------------------------
# Eligibility results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RatingEligibility:
    can_rate: bool
    playtime_hours: float
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'can_rate': self.can_rate,
            'playtime_hours': self.playtime_hours,
            'reason': self.reason,
        }


@dataclass(frozen=True)
class BadgeTier:
    tier: int
    required_games: int
    name: str = ''
    description: str = ''
    icon_name: str = ''


@dataclass(frozen=True)
class BadgeProgress:
    completed_games: int
    current_tier: Optional[BadgeTier]
    next_tier: Optional[BadgeTier]
    progress: float
    remaining_games: int

    @property
    def at_max_tier(self) -> bool:
        return self.next_tier is None

    def to_dict(self) -> Dict[str, Any]:
        def _tier(t: Optional[BadgeTier]):
            if t is None:
                return None
            return {'tier': t.tier, 'name': t.name, 'required_games': t.required_games}

        return {
            'completed_games': self.completed_games,
            'current_tier': _tier(self.current_tier),
            'next_tier': _tier(self.next_tier),
            'progress': self.progress,
            'remaining_games': self.remaining_games,
        }
