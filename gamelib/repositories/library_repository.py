"""Repository for per-user library entries stored in SQL."""
import datetime
import json
import logging
import uuid
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from gamelib.errors import ConcurrentModification, PersistenceError
from gamelib.models import LibraryEntry, Platform, PlayStatus

logger = logging.getLogger('gamelib.repository.LibraryRepository')


def _aware(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    # SQLite hands back naive datetimes even for timezone=True columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value


class LibraryRepository:
    """Reads and writes :class:`~gamelib.models.LibraryEntry` rows.

    Writes use optimistic locking: every row carries a ``version`` that is
    bumped on each update, and an update only applies when the stored
    version still equals the one the caller read.  A lost race surfaces as
    :class:`~gamelib.errors.ConcurrentModification` so the caller can re-read
    and re-merge.

    All methods accept a *db* SQLAlchemy session as the first argument so
    that callers control the session lifecycle.
    """

    def __init__(self, db_module) -> None:
        """
        Args:
            db_module: The imported ``database`` module (or any object that
                exposes ``LibraryEntryRecord``).
        """
        self._db = db_module

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _to_entry(row) -> LibraryEntry:
        try:
            platforms = json.loads(row.source_platforms or '[]')
        except (TypeError, ValueError):
            platforms = []
        source_platforms = set()
        for name in platforms:
            try:
                source_platforms.add(Platform(name))
            except ValueError:
                logger.warning(f"Ignoring unknown platform tag {name!r} on entry {row.id}")
        ranked = None
        if row.ranked_data:
            try:
                ranked = json.loads(row.ranked_data)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring unreadable ranked data on entry {row.id}")
        return LibraryEntry(
            id=row.id,
            user_id=row.user_id,
            catalog_id=row.catalog_id,
            status=PlayStatus(row.status) if row.status else None,
            rating=row.rating,
            notes=row.notes,
            source_platforms=frozenset(source_platforms),
            steam_app_id=row.steam_app_id,
            psn_title_id=row.psn_title_id,
            riot_game_id=row.riot_game_id,
            playtime_minutes=row.playtime_minutes or 0,
            ranked_data=ranked,
            last_synced_at=_aware(row.last_synced_at),
            created_at=_aware(row.created_at),
            version=row.version or 0,
        )

    @staticmethod
    def _columns(entry: LibraryEntry) -> dict:
        return {
            'status': entry.status.value if entry.status else None,
            'rating': entry.rating,
            'notes': entry.notes,
            'source_platforms': json.dumps(sorted(p.value for p in entry.source_platforms)),
            'steam_app_id': entry.steam_app_id,
            'psn_title_id': entry.psn_title_id,
            'riot_game_id': entry.riot_game_id,
            'playtime_minutes': entry.playtime_minutes,
            'ranked_data': json.dumps(entry.ranked_data, sort_keys=True)
            if entry.ranked_data is not None else None,
            'last_synced_at': entry.last_synced_at,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_entries(self, db, user_id: str) -> List[LibraryEntry]:
        """Return every library entry for *user_id*.

        Raises:
            PersistenceError: the query failed.
        """
        Record = self._db.LibraryEntryRecord
        try:
            rows = (db.query(Record)
                    .filter(Record.user_id == user_id)
                    .order_by(Record.catalog_id)
                    .all())
        except SQLAlchemyError as e:
            logger.error(f"Error loading library for {user_id}: {e}")
            raise PersistenceError(f"Could not load library: {e}") from e
        return [self._to_entry(row) for row in rows]

    def get_entry(self, db, user_id: str, catalog_id: int) -> Optional[LibraryEntry]:
        """Return the entry for (*user_id*, *catalog_id*), or ``None``."""
        Record = self._db.LibraryEntryRecord
        try:
            row = (db.query(Record)
                   .filter(Record.user_id == user_id, Record.catalog_id == catalog_id)
                   .first())
        except SQLAlchemyError as e:
            logger.error(f"Error loading entry {user_id}/{catalog_id}: {e}")
            raise PersistenceError(f"Could not load entry: {e}") from e
        return self._to_entry(row) if row else None

    def upsert(self, db, entry: LibraryEntry) -> LibraryEntry:
        """Insert *entry* (``id is None``) or update it if its version is current.

        Returns:
            The stored entry with its id and new version.

        Raises:
            ConcurrentModification: another writer inserted or updated the
                same row since *entry* was read.
            PersistenceError: any other storage failure.
        """
        Record = self._db.LibraryEntryRecord
        values = self._columns(entry)
        try:
            if entry.id is None:
                row = Record(id=str(uuid.uuid4()), user_id=entry.user_id,
                             catalog_id=entry.catalog_id, created_at=entry.created_at,
                             version=1, **values)
                db.add(row)
                db.commit()
                return self._to_entry(row)

            values['version'] = entry.version + 1
            updated = (db.query(Record)
                       .filter(Record.id == entry.id, Record.version == entry.version)
                       .update(values, synchronize_session=False))
            if updated == 0:
                db.rollback()
                raise ConcurrentModification(
                    f"Entry {entry.catalog_id} changed since it was read (version {entry.version})")
            db.commit()
        except IntegrityError as e:
            db.rollback()
            # Only a row for the same (user, game) means another writer got there first.
            if entry.id is None and self.get_entry(db, entry.user_id, entry.catalog_id):
                raise ConcurrentModification(
                    f"Entry {entry.catalog_id} was created by another writer") from e
            logger.error(f"Integrity error saving entry {entry.user_id}/{entry.catalog_id}: {e}")
            raise PersistenceError(f"Could not save entry {entry.catalog_id}: {e.orig}") from e
        except SQLAlchemyError as e:
            logger.error(f"Error saving entry {entry.user_id}/{entry.catalog_id}: {e}")
            db.rollback()
            raise PersistenceError(f"Could not save entry {entry.catalog_id}: {e}") from e
        db.expire_all()
        return self.get_entry(db, entry.user_id, entry.catalog_id)

    def delete(self, db, entry_id: str) -> bool:
        """Delete one entry by id. Returns ``True`` if a row was removed."""
        Record = self._db.LibraryEntryRecord
        try:
            removed = db.query(Record).filter(Record.id == entry_id).delete(
                synchronize_session=False)
            db.commit()
            return removed > 0
        except SQLAlchemyError as e:
            logger.error(f"Error deleting entry {entry_id}: {e}")
            db.rollback()
            raise PersistenceError(f"Could not delete entry: {e}") from e
