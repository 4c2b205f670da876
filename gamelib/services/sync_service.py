"""Drive one platform's full library sync."""
import logging
from typing import Dict, List, Optional

from gamelib.errors import (
    AdapterError, AuthExpired, ConcurrentModification, GameLibError, IdentityUnresolved,
    PersistenceError, ValidationFailed,
)
from gamelib.models import (
    Platform, PlatformCredential, PlatformRecord, SyncClassification, SyncResult, utcnow,
)
from gamelib.services.reconciliation_service import (
    EntryChange, dedupe_batch, rebase, reconcile,
)

logger = logging.getLogger('gamelib.sync')


class SyncOrchestrator:
    """Fetch, resolve, merge and persist one platform's library for a user.

    Adapter-level failures (``AuthExpired``, ``NetworkError``,
    ``RateLimited``) abort the run before anything is written and are
    raised to the caller unchanged; nothing is retried here.  Every other
    failure is per record or per entry and ends up in
    ``SyncResult.failed`` with its message in ``SyncResult.errors``.
    """

    def __init__(self, adapters: Dict[Platform, object], resolver, repository,
                 session_factory, db_module=None, catalog=None,
                 conflict_retries: int = 3) -> None:
        """
        Args:
            adapters:         ``{Platform: adapter}``; each adapter exposes
                ``fetch_library(credential, timeout)``.
            resolver:         :class:`~gamelib.services.identity_service.IdentityResolver`.
            repository:       :class:`~gamelib.repositories.LibraryRepository`.
            session_factory:  Callable returning a new SQLAlchemy session.
            db_module:        The ``database`` module, used to record catalog
                games for display.  Optional.
            catalog:          Catalog client used for display metadata.  Optional.
            conflict_retries: How many times a lost optimistic-lock race is
                re-read and re-merged before the entry is counted as failed.
        """
        self._adapters = dict(adapters)
        self._resolver = resolver
        self._repo = repository
        self._session_factory = session_factory
        self._db = db_module
        self._catalog = catalog
        self._conflict_retries = max(0, int(conflict_retries))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def sync_full_library(self, user_id: str, credential: PlatformCredential,
                          timeout: Optional[float] = None) -> SyncResult:
        """Run one full sync and return exact per-entry counts.

        Args:
            user_id:    Owner of the library.
            credential: Linked account reference for the platform to sync.
            timeout:    Overall deadline in seconds for the remote fetch.

        Returns:
            :class:`~gamelib.models.SyncResult` whose counts reflect what was
            actually written.

        Raises:
            AuthExpired:     The platform rejected the credential.
            NetworkError:    The fetch failed or timed out.
            RateLimited:     The platform throttled the fetch.
            PersistenceError: The user's current entries could not be read.
        """
        platform = credential.platform
        adapter = self._adapters.get(platform)
        if adapter is None:
            raise ValidationFailed(f"No adapter configured for {platform.value}")

        try:
            records = adapter.fetch_library(credential, timeout=timeout)
        except AuthExpired as e:
            logger.warning(f"{platform.value} credential rejected for user {user_id}: {e.message}")
            raise
        except AdapterError as e:
            logger.warning(f"{platform.value} fetch failed for user {user_id}: {e.message}")
            raise
        logger.info(f"Fetched {len(records)} {platform.value} titles for user {user_id}")

        result = SyncResult()
        resolved, unresolved = self._resolver.resolve_records(records)
        for record in unresolved:
            result.record_failure(IdentityUnresolved(
                platform.value, record.platform_title_id, record.title_name).message)

        now = utcnow()
        by_catalog: Dict[int, List[PlatformRecord]] = {}
        for record in dedupe_batch(resolved):
            by_catalog.setdefault(record.catalog_id, []).append(record)

        db = self._session_factory()
        try:
            existing = self._repo.get_entries(db, user_id)
            reconciliation = reconcile(existing, resolved, user_id, now)
            written: List[int] = []
            for change in reconciliation.changes:
                if not change.needs_write:
                    result.record(change.classification)
                    continue
                classification = self._persist(db, change, by_catalog[change.entry.catalog_id],
                                               now, result)
                if classification is not SyncClassification.FAILED:
                    result.record(classification)
                    written.append(change.entry.catalog_id)
            try:
                self._record_games(db, platform, written, by_catalog)
            except Exception as e:
                logger.warning(f"Could not record display rows for {len(written)} games: {e}")
        finally:
            db.close()

        logger.info(f"{platform.value} sync for {user_id}: {result.imported} imported, "
                    f"{result.updated} updated, {result.unchanged} unchanged, "
                    f"{result.failed} failed")
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _persist(self, db, change: EntryChange, records: List[PlatformRecord], now,
                 result: SyncResult) -> SyncClassification:
        """Write one change, re-merging on the freshest row after a lost race."""
        catalog_id = change.entry.catalog_id
        attempt = 0
        while True:
            try:
                self._repo.upsert(db, change.entry)
                return change.classification
            except ConcurrentModification as e:
                if attempt >= self._conflict_retries:
                    logger.warning(f"Giving up on entry {catalog_id} after {attempt + 1} conflicts")
                    result.record_failure(f"Game {catalog_id}: {e.message}")
                    return SyncClassification.FAILED
                attempt += 1
                logger.debug(f"Entry {catalog_id} changed concurrently, re-merging ({attempt})")
                try:
                    latest = self._repo.get_entry(db, change.entry.user_id, catalog_id)
                except PersistenceError as read_error:
                    result.record_failure(f"Game {catalog_id}: {read_error.message}")
                    return SyncClassification.FAILED
                change = rebase(change, latest, records, now)
                if not change.needs_write:
                    return SyncClassification.UNCHANGED
            except PersistenceError as e:
                logger.warning(f"Could not save entry {catalog_id}: {e.message}")
                result.record_failure(f"Game {catalog_id}: {e.message}")
                return SyncClassification.FAILED

    def _record_games(self, db, platform: Platform, catalog_ids: List[int],
                      by_catalog: Dict[int, List[PlatformRecord]]) -> None:
        """Add display rows for written games; failures here never affect the result."""
        if self._db is None or not catalog_ids:
            return
        known = self._db.get_known_catalog_ids(db)
        metadata: Dict[int, dict] = {}
        missing = [cid for cid in catalog_ids if cid not in known]
        if self._catalog is not None and missing:
            try:
                metadata = self._catalog.fetch_many(missing)
            except GameLibError as e:
                logger.warning(f"Could not fetch metadata for {len(missing)} games: {e}")
        for cid in catalog_ids:
            info = metadata.get(cid, {})
            fallback = by_catalog[cid][0].title_name
            self._db.ensure_game(db, cid, info.get('name') or fallback,
                                 cover_url=info.get('cover_url'),
                                 genres=info.get('genres'),
                                 platform=platform.value)
