"""Read side of the library plus user curation (manual entries, ratings, unlinking)."""
import logging
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from gamelib.errors import (
    ConcurrentModification, EntryNotFound, RatingNotAllowed, ValidationFailed,
)
from gamelib.models import (
    CombinedLibraryEntry, LibraryEntry, Platform, PlayStatus, RatingEligibility,
    BadgeProgress, utcnow,
)
from gamelib.services.eligibility_service import MIN_RATING_HOURS, badge_progress, can_rate
from gamelib.services.reconciliation_service import combine_entries

logger = logging.getLogger('gamelib.library')

_UNSET = object()

RATING_MIN = 1
RATING_MAX = 10


class LibraryService:
    """Builds the combined library view and applies user edits.

    The combined view is recomputed from storage on every call; there is no
    cached copy to invalidate.  Edits go through the same optimistic-lock
    upsert as syncs, so a concurrent sync never overwrites a rating and a
    rating never rolls back synced playtime.

    All methods accept a *db* SQLAlchemy session as the first argument so
    that callers (Flask route handlers) control the session lifecycle.
    """

    def __init__(self, db_module, repository, min_rating_hours: float = MIN_RATING_HOURS,
                 conflict_retries: int = 3) -> None:
        """
        Args:
            db_module:        The imported ``database`` module (or any object
                that exposes ``get_games``, ``ensure_game``, ``get_badges``
                and ``clear_platform_link``).
            repository:       :class:`~gamelib.repositories.LibraryRepository`.
            min_rating_hours: Playtime needed before a game can be rated.
            conflict_retries: Re-read attempts after a lost optimistic-lock race.
        """
        self._db = db_module
        self._repo = repository
        self.min_rating_hours = min_rating_hours
        self._conflict_retries = max(0, int(conflict_retries))

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    def get_combined_library(self, db, user_id: str) -> List[CombinedLibraryEntry]:
        """Return one combined item per catalog game, most played first."""
        entries = self._repo.get_entries(db, user_id)
        games = self._db.get_games(db, [e.catalog_id for e in entries])
        return combine_entries(entries, games)

    def refresh(self, db, user_id: str) -> List[CombinedLibraryEntry]:
        """Explicitly rebuild the combined view after an out-of-band change."""
        combined = self.get_combined_library(db, user_id)
        logger.debug(f"Refreshed library for {user_id}: {len(combined)} games")
        return combined

    def can_rate(self, db, user_id: str, catalog_id: int) -> RatingEligibility:
        """Whether *user_id* may rate *catalog_id*, with hours and reason."""
        entries = self._repo.get_entries(db, user_id)
        return can_rate(combine_entries(entries), catalog_id, self.min_rating_hours)

    def library_stats(self, db, user_id: str) -> Dict:
        """Counts and totals over the combined library.

        Returns:
            Dict with ``total_games``, ``total_hours``, ``completed_games``,
            ``by_status`` and ``by_platform``.
        """
        combined = self.get_combined_library(db, user_id)
        by_status = {status.value: 0 for status in PlayStatus}
        by_status['unset'] = 0
        by_platform = {platform.value: 0 for platform in Platform}
        total_minutes = 0
        for item in combined:
            total_minutes += item.entry.playtime_minutes
            key = item.entry.status.value if item.entry.status else 'unset'
            by_status[key] += 1
            for platform in item.platforms:
                by_platform[platform.value] += 1
        return {
            'total_games': len(combined),
            'total_hours': round(total_minutes / 60.0, 1),
            'completed_games': by_status[PlayStatus.COMPLETED.value],
            'by_status': by_status,
            'by_platform': by_platform,
        }

    def badge_progress_for_user(self, db, user_id: str) -> BadgeProgress:
        """Badge tier progress from the user's completed game count."""
        completed = self.library_stats(db, user_id)['completed_games']
        return badge_progress(self._db.get_badges(db), completed)

    # ------------------------------------------------------------------
    # Curation API
    # ------------------------------------------------------------------

    def add_manual_entry(self, db, user_id: str, catalog_id: int,
                         status=PlayStatus.WISHLIST, name: str = None) -> LibraryEntry:
        """Add a game the user tracks by hand (wishlist, console without sync…).

        Raises:
            ValidationFailed: the game is already in the library.
        """
        status = PlayStatus.parse(status) if status is not None else None
        if self._repo.get_entry(db, user_id, catalog_id) is not None:
            raise ValidationFailed(f"Game {catalog_id} is already in your library")
        entry = LibraryEntry(user_id=user_id, catalog_id=int(catalog_id), status=status,
                             source_platforms=frozenset({Platform.MANUAL}),
                             created_at=utcnow())
        try:
            stored = self._repo.upsert(db, entry)
        except ConcurrentModification:
            raise ValidationFailed(f"Game {catalog_id} is already in your library") from None
        if name:
            self._db.ensure_game(db, int(catalog_id), name, platform=Platform.MANUAL.value)
        logger.info(f"User {user_id} added game {catalog_id} manually")
        return stored

    def update_entry(self, db, user_id: str, catalog_id: int, status=_UNSET,
                     rating=_UNSET, notes=_UNSET) -> LibraryEntry:
        """Change the user-owned fields of one entry.

        Only the arguments actually passed are changed; pass ``None`` to
        clear a field.

        Raises:
            EntryNotFound:    no entry for *catalog_id*.
            ValidationFailed: bad status or a rating outside 1..10.
            RatingNotAllowed: not enough playtime to rate yet.
        """
        changes = {}
        if status is not _UNSET:
            changes['status'] = PlayStatus.parse(status) if status is not None else None
        if notes is not _UNSET:
            changes['notes'] = notes
        if rating is not _UNSET and rating is not None:
            if isinstance(rating, bool) or not isinstance(rating, int):
                raise ValidationFailed("Rating must be a whole number")
            if not RATING_MIN <= rating <= RATING_MAX:
                raise ValidationFailed(f"Rating must be between {RATING_MIN} and {RATING_MAX}")
        if rating is not _UNSET:
            changes['rating'] = rating

        def mutate(entry: LibraryEntry) -> LibraryEntry:
            if changes.get('rating') is not None:
                eligibility = can_rate([CombinedLibraryEntry(entry, entry.source_platforms)],
                                       entry.catalog_id, self.min_rating_hours)
                if not eligibility.can_rate:
                    raise RatingNotAllowed(eligibility.reason)
            return replace(entry, **changes)

        return self._apply(db, user_id, catalog_id, mutate)

    def remove_entry(self, db, user_id: str, catalog_id: int) -> bool:
        """Delete one entry at the user's request.

        Raises:
            EntryNotFound: no entry for *catalog_id*.
        """
        entry = self._repo.get_entry(db, user_id, catalog_id)
        if entry is None:
            raise EntryNotFound(f"Game {catalog_id} is not in your library")
        removed = self._repo.delete(db, entry.id)
        logger.info(f"User {user_id} removed game {catalog_id}")
        return removed

    def unlink_platform(self, db, user_id: str, platform) -> int:
        """Drop *platform* from every entry and forget the linked account.

        Entries are kept; one left with no platform becomes a manual entry.

        Returns:
            Number of entries changed.
        """
        platform = Platform.parse(platform)
        if not platform.is_syncable:
            raise ValidationFailed("Manual entries cannot be unlinked")

        def strip(entry: LibraryEntry) -> LibraryEntry:
            remaining = entry.source_platforms - {platform}
            entry = replace(entry, source_platforms=remaining or frozenset({Platform.MANUAL}))
            if platform is Platform.STEAM:
                return replace(entry, steam_app_id=None)
            if platform is Platform.PLAYSTATION:
                return replace(entry, psn_title_id=None)
            if platform is Platform.RIOT:
                return replace(entry, riot_game_id=None, ranked_data=None)
            raise ValueError(f"Unhandled platform {platform!r}")

        changed = 0
        for entry in self._repo.get_entries(db, user_id):
            if platform in entry.source_platforms or entry.platform_title_id(platform):
                self._apply(db, user_id, entry.catalog_id, strip)
                changed += 1
        self._db.clear_platform_link(db, user_id, platform)
        logger.info(f"Unlinked {platform.value} for {user_id}: {changed} entries updated")
        return changed

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _apply(self, db, user_id: str, catalog_id: int,
               mutate: Callable[[LibraryEntry], LibraryEntry]) -> LibraryEntry:
        """Read, mutate and write one entry, re-reading after a lost race."""
        attempt = 0
        while True:
            entry: Optional[LibraryEntry] = self._repo.get_entry(db, user_id, catalog_id)
            if entry is None:
                raise EntryNotFound(f"Game {catalog_id} is not in your library")
            updated = mutate(entry)
            if updated == entry:
                return entry
            try:
                return self._repo.upsert(db, updated)
            except ConcurrentModification:
                if attempt >= self._conflict_retries:
                    raise
                attempt += 1
