"""Merge platform records into library entries.

Everything in this module is pure: it takes the current entries plus a batch
of resolved records and returns the entries that should be written, each
classified as imported, updated or unchanged.  Nothing here talks to storage
or the network, so one batch always produces the same result regardless of
record order.
"""
import datetime
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Tuple

from gamelib.models import (
    CanonicalGame, CombinedLibraryEntry, LibraryEntry, Platform, PlatformRecord,
    PlayStatus, SyncClassification, utcnow,
)


@dataclass(frozen=True)
class EntryChange:
    """One reconciled entry; ``previous`` is ``None`` for a new import."""

    entry: LibraryEntry
    previous: Optional[LibraryEntry]
    classification: SyncClassification

    @property
    def needs_write(self) -> bool:
        return self.classification in (SyncClassification.IMPORTED,
                                       SyncClassification.UPDATED)


@dataclass
class ReconciliationResult:
    changes: List[EntryChange] = field(default_factory=list)

    def count(self, classification: SyncClassification) -> int:
        return sum(1 for c in self.changes if c.classification is classification)

    @property
    def writes(self) -> List[EntryChange]:
        return [c for c in self.changes if c.needs_write]


def _record_sort_key(record: PlatformRecord):
    return (record.platform.value, record.platform_title_id)


def dedupe_batch(records: Iterable[PlatformRecord]) -> List[PlatformRecord]:
    """Collapse records sharing a catalog id into one per platform.

    Several platform titles can map to the same catalog game (a PS4 and a PS5
    edition, say).  The copy with the most playtime wins; ties go to the
    lowest platform title id so the outcome does not depend on input order.
    Records without a catalog id are dropped.
    """
    best: Dict[Tuple[int, Platform], PlatformRecord] = {}
    for record in sorted((r for r in records if r.catalog_id is not None),
                         key=_record_sort_key):
        key = (record.catalog_id, record.platform)
        current = best.get(key)
        if current is None or record.playtime_minutes > current.playtime_minutes:
            best[key] = record
        elif (record.playtime_minutes == current.playtime_minutes
              and record.ranked_metadata is not None and current.ranked_metadata is None):
            best[key] = record
    return [best[key] for key in sorted(best, key=lambda k: (k[0], k[1].value))]


def _with_platform_id(entry: LibraryEntry, record: PlatformRecord) -> LibraryEntry:
    platform = record.platform
    if platform is Platform.STEAM:
        if entry.steam_app_id is None:
            try:
                return replace(entry, steam_app_id=int(record.platform_title_id))
            except (TypeError, ValueError):
                return entry
        return entry
    if platform is Platform.PLAYSTATION:
        if entry.psn_title_id is None:
            return replace(entry, psn_title_id=record.platform_title_id)
        return entry
    if platform is Platform.RIOT:
        if entry.riot_game_id is None:
            return replace(entry, riot_game_id=record.platform_title_id)
        return entry
    if platform is Platform.MANUAL:
        return entry
    raise ValueError(f"Unhandled platform {platform!r}")


def merge_record(existing: Optional[LibraryEntry], record: PlatformRecord, user_id: str,
                 now: Optional[datetime.datetime] = None
                 ) -> Tuple[LibraryEntry, SyncClassification]:
    """Fold one resolved record into the entry for its catalog game.

    * Playtime only grows: the stored value becomes the max of both.
    * ``source_platforms`` gains the record's platform and never loses one.
    * Ranked data is replaced by the incoming snapshot when it has one.
    * User-owned fields (rating, notes, a status already set) are never
      touched; an unset status becomes ``playing`` once there is playtime.

    Returns:
        ``(entry, classification)``; for ``UNCHANGED`` the entry is
        *existing* itself.
    """
    if record.catalog_id is None:
        raise ValueError(f"Record {record.platform_title_id} has no catalog id")
    now = now or utcnow()

    if existing is None:
        entry = LibraryEntry(
            user_id=user_id,
            catalog_id=record.catalog_id,
            status=PlayStatus.PLAYING if record.playtime_minutes > 0 else None,
            source_platforms=frozenset({record.platform}),
            playtime_minutes=max(record.playtime_minutes, 0),
            ranked_data=record.ranked_metadata,
            last_synced_at=now,
            created_at=now,
        )
        return _with_platform_id(entry, record), SyncClassification.IMPORTED

    merged = replace(
        existing,
        playtime_minutes=max(existing.playtime_minutes, record.playtime_minutes),
        source_platforms=existing.source_platforms | {record.platform},
    )
    if record.ranked_metadata is not None:
        merged = replace(merged, ranked_data=record.ranked_metadata)
    if merged.status is None and merged.playtime_minutes > 0:
        # Same default as a fresh import, whichever platform arrived first.
        merged = replace(merged, status=PlayStatus.PLAYING)
    merged = _with_platform_id(merged, record)

    if merged == existing:
        return existing, SyncClassification.UNCHANGED
    return replace(merged, last_synced_at=now), SyncClassification.UPDATED


def reconcile(existing_entries: Iterable[LibraryEntry], records: Iterable[PlatformRecord],
              user_id: str, now: Optional[datetime.datetime] = None) -> ReconciliationResult:
    """Merge a batch of resolved records against the user's current entries.

    Each catalog game is classified exactly once per batch, even when several
    records (one per platform) land on it.
    """
    now = now or utcnow()
    current: Dict[int, LibraryEntry] = {e.catalog_id: e for e in existing_entries}
    original: Dict[int, Optional[LibraryEntry]] = {}

    for record in dedupe_batch(records):
        cid = record.catalog_id
        if cid not in original:
            original[cid] = current.get(cid)
        merged, _ = merge_record(current.get(cid), record, user_id, now)
        current[cid] = merged

    result = ReconciliationResult()
    for cid in sorted(original):
        before = original[cid]
        after = current[cid]
        if before is None:
            classification = SyncClassification.IMPORTED
        elif after == before:
            classification = SyncClassification.UNCHANGED
        else:
            classification = SyncClassification.UPDATED
        result.changes.append(EntryChange(after, before, classification))
    return result


def rebase(change: EntryChange, latest: Optional[LibraryEntry],
           records: Iterable[PlatformRecord],
           now: Optional[datetime.datetime] = None) -> EntryChange:
    """Re-apply the records for one game on top of a freshly read entry.

    Used after a lost optimistic-lock race: the other writer's changes are
    kept and this batch's records are merged over them again.
    """
    now = now or utcnow()
    entry = latest
    for record in records:
        entry, _ = merge_record(entry, record, change.entry.user_id, now)
    if latest is None:
        return EntryChange(entry, None, SyncClassification.IMPORTED)
    if entry == latest:
        return EntryChange(latest, latest, SyncClassification.UNCHANGED)
    return EntryChange(entry, latest, SyncClassification.UPDATED)


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------

def platforms_of(entry: LibraryEntry) -> frozenset:
    """Platforms recorded on *entry* plus those implied by its platform ids."""
    platforms = set(entry.source_platforms)
    if entry.steam_app_id is not None:
        platforms.add(Platform.STEAM)
    if entry.psn_title_id:
        platforms.add(Platform.PLAYSTATION)
    if entry.riot_game_id:
        platforms.add(Platform.RIOT)
    if not platforms:
        platforms.add(Platform.MANUAL)
    return frozenset(platforms)


def combine_entries(entries: Iterable[LibraryEntry],
                    games: Optional[Dict[int, CanonicalGame]] = None
                    ) -> List[CombinedLibraryEntry]:
    """Build the combined library view, one item per catalog game.

    Sorted by playtime (descending), then catalog id.
    """
    games = games or {}
    grouped: Dict[int, CombinedLibraryEntry] = {}
    for entry in entries:
        combined = grouped.get(entry.catalog_id)
        platforms = platforms_of(entry)
        if combined is None:
            grouped[entry.catalog_id] = CombinedLibraryEntry(
                entry, platforms, games.get(entry.catalog_id))
            continue
        keep = entry if entry.playtime_minutes > combined.entry.playtime_minutes else combined.entry
        grouped[entry.catalog_id] = CombinedLibraryEntry(
            keep, combined.platforms | platforms, combined.game)
    return sorted(grouped.values(),
                  key=lambda c: (-c.entry.playtime_minutes, c.entry.catalog_id))
