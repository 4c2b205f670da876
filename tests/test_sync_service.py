#!/usr/bin/env python3
"""
Tests for gamelib/services/sync_service.py (SyncOrchestrator):
  - exact SyncResult counts for first sync, cross-platform merge, re-sync
  - unresolved titles and persistence failures counted as failed
  - adapter-level errors abort the run and are not retried
  - lost optimistic-lock races are re-merged against the freshest row
  - catalog games recorded for display

Run with:
    python -m pytest tests/test_sync_service.py
"""
import os
import shutil
import sys
import tempfile
import unittest
from dataclasses import replace
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import database
import requests

from catalog_client import CatalogAPIError, IGDBClient
from gamelib.errors import (
    AuthExpired, ConcurrentModification, FetchTimeout, PersistenceError, RateLimited,
    ValidationFailed,
)
from gamelib.models import Platform, PlatformCredential, PlatformRecord
from gamelib.repositories import LibraryRepository
from gamelib.services import IdentityResolver, SteamIdentityResolver, SyncOrchestrator
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

STEAM = PlatformCredential(Platform.STEAM, account_id='76561198000000001')
PSN = PlatformCredential(Platform.PLAYSTATION, access_token='a', refresh_token='r')


class _TableStrategy:
    """Identity strategy backed by a plain dict."""

    def __init__(self, table):
        self.table = table
        self.calls = 0

    def resolve_batch(self, records):
        self.calls += 1
        return {r.platform_title_id: self.table[r.platform_title_id]
                for r in records if r.platform_title_id in self.table}


def _adapter(*records):
    adapter = MagicMock()
    adapter.fetch_library.return_value = list(records)
    return adapter


def _steam(app_id, minutes, name=''):
    return PlatformRecord(Platform.STEAM, str(app_id), playtime_minutes=minutes,
                          title_name=name)


def _psn(title_id, minutes, name=''):
    return PlatformRecord(Platform.PLAYSTATION, title_id, playtime_minutes=minutes,
                          title_name=name)


class _SyncTestCase(unittest.TestCase):
    """Shared file-backed SQLite database and wiring."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.engine = create_engine(f"sqlite:///{os.path.join(self.tmpdir, 'sync.db')}",
                                    connect_args={"check_same_thread": False})
        database.Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(autoflush=False, bind=self.engine)
        db = self.Session()
        db.add(database.User(id='u1', username='alice'))
        db.commit()
        db.close()

        self.steam_table = _TableStrategy({'620': 100, '730': 200, '440': 300})
        self.psn_table = _TableStrategy({'CUSA1': 100, 'PPSA2': 400})
        self.resolver = IdentityResolver({Platform.STEAM: self.steam_table,
                                          Platform.PLAYSTATION: self.psn_table})
        self.repo = LibraryRepository(database)

    def tearDown(self):
        self.engine.dispose()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _orchestrator(self, adapters, repo=None, **kwargs):
        return SyncOrchestrator(adapters, self.resolver, repo or self.repo, self.Session,
                                **kwargs)

    def _entries(self):
        db = self.Session()
        try:
            return {e.catalog_id: e for e in self.repo.get_entries(db, 'u1')}
        finally:
            db.close()


# ===========================================================================
# Counting and merge scenarios
# ===========================================================================

class TestSyncCounts(_SyncTestCase):

    def test_first_sync_imports(self):
        orch = self._orchestrator({Platform.STEAM: _adapter(_steam(620, 120))})
        result = orch.sync_full_library('u1', STEAM)
        self.assertEqual(result.to_dict(), {'imported': 1, 'updated': 0, 'unchanged': 0,
                                            'failed': 0, 'errors': []})
        entry = self._entries()[100]
        self.assertEqual(entry.playtime_minutes, 120)
        self.assertEqual(entry.source_platforms, frozenset({Platform.STEAM}))
        self.assertEqual(entry.steam_app_id, 620)

    def test_second_platform_updates_same_entry(self):
        self._orchestrator({Platform.STEAM: _adapter(_steam(620, 120))}).sync_full_library(
            'u1', STEAM)
        result = self._orchestrator(
            {Platform.PLAYSTATION: _adapter(_psn('CUSA1', 80))}).sync_full_library('u1', PSN)
        self.assertEqual((result.imported, result.updated, result.unchanged), (0, 1, 0))
        entries = self._entries()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[100].playtime_minutes, 120)
        self.assertEqual(entries[100].source_platforms,
                         frozenset({Platform.STEAM, Platform.PLAYSTATION}))
        self.assertEqual(entries[100].psn_title_id, 'CUSA1')

    def test_resync_without_changes_is_unchanged(self):
        records = [_steam(620, 120), _steam(730, 0), _steam(440, 5)]
        orch = self._orchestrator({Platform.STEAM: _adapter(*records)})
        orch.sync_full_library('u1', STEAM)
        versions = {cid: e.version for cid, e in self._entries().items()}
        result = orch.sync_full_library('u1', STEAM)
        self.assertEqual((result.imported, result.updated, result.unchanged), (0, 0, 3))
        self.assertEqual({cid: e.version for cid, e in self._entries().items()}, versions)

    def test_playtime_increase_is_update(self):
        self._orchestrator({Platform.STEAM: _adapter(_steam(620, 120))}).sync_full_library(
            'u1', STEAM)
        result = self._orchestrator(
            {Platform.STEAM: _adapter(_steam(620, 200))}).sync_full_library('u1', STEAM)
        self.assertEqual(result.updated, 1)
        self.assertEqual(self._entries()[100].playtime_minutes, 200)

    def test_delisted_title_is_kept(self):
        self._orchestrator({Platform.STEAM: _adapter(_steam(620, 1), _steam(730, 2))}
                           ).sync_full_library('u1', STEAM)
        result = self._orchestrator({Platform.STEAM: _adapter(_steam(620, 1))}
                                    ).sync_full_library('u1', STEAM)
        self.assertEqual(result.total, 1)
        self.assertEqual(sorted(self._entries()), [100, 200])

    def test_empty_fetch(self):
        result = self._orchestrator({Platform.STEAM: _adapter()}).sync_full_library('u1', STEAM)
        self.assertEqual(result.total, 0)


# ===========================================================================
# Per-record failures
# ===========================================================================

class TestSyncFailures(_SyncTestCase):

    def test_unresolved_titles_counted_as_failed(self):
        orch = self._orchestrator({Platform.STEAM: _adapter(
            _steam(620, 10), _steam(999, 10, 'Mystery Game'))})
        result = orch.sync_full_library('u1', STEAM)
        self.assertEqual((result.imported, result.failed), (1, 1))
        self.assertEqual(len(result.errors), 1)
        self.assertIn('Mystery Game', result.errors[0])
        self.assertEqual(list(self._entries()), [100])

    def test_persistence_failure_counted_and_others_commit(self):
        class FlakyRepository(LibraryRepository):
            def upsert(self, db, entry):
                if entry.catalog_id == 200:
                    raise PersistenceError('disk full')
                return super().upsert(db, entry)

        orch = self._orchestrator({Platform.STEAM: _adapter(_steam(620, 1), _steam(730, 2))},
                                  repo=FlakyRepository(database))
        result = orch.sync_full_library('u1', STEAM)
        self.assertEqual((result.imported, result.failed), (1, 1))
        self.assertIn('disk full', result.errors[0])
        self.assertEqual(list(self._entries()), [100])

    def test_auth_expired_propagates_without_retry(self):
        adapter = MagicMock()
        adapter.fetch_library.side_effect = AuthExpired('token revoked', 'steam')
        orch = self._orchestrator({Platform.STEAM: adapter})
        with self.assertLogs('gamelib.sync', level='WARNING') as logs:
            with self.assertRaises(AuthExpired):
                orch.sync_full_library('u1', STEAM)
        self.assertIn('credential rejected for user u1', logs.output[0])
        self.assertEqual(adapter.fetch_library.call_count, 1)
        self.assertEqual(self.steam_table.calls, 0)
        self.assertEqual(self._entries(), {})

    def test_timeout_passed_to_adapter_and_not_retried(self):
        adapter = MagicMock()
        adapter.fetch_library.side_effect = FetchTimeout('deadline', 'steam')
        orch = self._orchestrator({Platform.STEAM: adapter})
        with self.assertRaises(FetchTimeout):
            orch.sync_full_library('u1', STEAM, timeout=5)
        adapter.fetch_library.assert_called_once_with(STEAM, timeout=5)

    def test_rate_limit_propagates(self):
        adapter = MagicMock()
        adapter.fetch_library.side_effect = RateLimited('slow down', 'steam', 30)
        with self.assertRaises(RateLimited):
            self._orchestrator({Platform.STEAM: adapter}).sync_full_library('u1', STEAM)

    def test_platform_without_adapter(self):
        with self.assertRaises(ValidationFailed):
            self._orchestrator({Platform.STEAM: _adapter()}).sync_full_library('u1', PSN)


# ===========================================================================
# Optimistic locking
# ===========================================================================

class TestConcurrentSyncs(_SyncTestCase):

    def _seed(self, minutes):
        self._orchestrator({Platform.STEAM: _adapter(_steam(620, minutes))}).sync_full_library(
            'u1', STEAM)

    def test_lost_race_is_remerged_with_fresh_playtime(self):
        self._seed(120)
        session_factory = self.Session
        base_repo = self.repo

        class RacingRepository(LibraryRepository):
            raced = False

            def upsert(self, db, entry):
                if not RacingRepository.raced and entry.id is not None:
                    RacingRepository.raced = True
                    other = session_factory()
                    try:
                        theirs = base_repo.get_entry(other, 'u1', entry.catalog_id)
                        base_repo.upsert(other, replace(theirs, playtime_minutes=500))
                    finally:
                        other.close()
                return super().upsert(db, entry)

        orch = self._orchestrator({Platform.PLAYSTATION: _adapter(_psn('CUSA1', 300))},
                                  repo=RacingRepository(database))
        result = orch.sync_full_library('u1', PSN)
        self.assertEqual((result.updated, result.failed), (1, 0))
        entry = self._entries()[100]
        self.assertEqual(entry.playtime_minutes, 500)
        self.assertEqual(entry.source_platforms,
                         frozenset({Platform.STEAM, Platform.PLAYSTATION}))

    def test_lost_race_that_makes_change_redundant_is_unchanged(self):
        self._seed(120)
        session_factory = self.Session
        base_repo = self.repo

        class RacingRepository(LibraryRepository):
            raced = False

            def upsert(self, db, entry):
                if not RacingRepository.raced:
                    RacingRepository.raced = True
                    other = session_factory()
                    try:
                        theirs = base_repo.get_entry(other, 'u1', entry.catalog_id)
                        base_repo.upsert(other, replace(theirs, playtime_minutes=400))
                    finally:
                        other.close()
                return super().upsert(db, entry)

        orch = self._orchestrator({Platform.STEAM: _adapter(_steam(620, 400))},
                                  repo=RacingRepository(database))
        result = orch.sync_full_library('u1', STEAM)
        self.assertEqual((result.updated, result.unchanged), (0, 1))
        self.assertEqual(self._entries()[100].playtime_minutes, 400)

    def test_endless_conflicts_end_as_failed(self):
        self._seed(120)

        class AlwaysConflicting(LibraryRepository):
            def upsert(self, db, entry):
                raise ConcurrentModification('busy')

        orch = self._orchestrator({Platform.STEAM: _adapter(_steam(620, 999))},
                                  repo=AlwaysConflicting(database), conflict_retries=2)
        result = orch.sync_full_library('u1', STEAM)
        self.assertEqual(result.failed, 1)
        self.assertEqual(self._entries()[100].playtime_minutes, 120)


# ===========================================================================
# Catalog games for display
# ===========================================================================

class TestCatalogRecording(_SyncTestCase):

    def test_metadata_fetched_for_new_games(self):
        catalog = MagicMock()
        catalog.fetch_many.return_value = {100: {'catalog_id': 100, 'name': 'Portal 2',
                                                 'cover_url': 'https://img/p2.jpg',
                                                 'genres': ['Puzzle']}}
        orch = self._orchestrator({Platform.STEAM: _adapter(_steam(620, 1, 'Portal 2'))},
                                  db_module=database, catalog=catalog)
        orch.sync_full_library('u1', STEAM)
        db = self.Session()
        try:
            game = database.get_games(db, [100])[100]
        finally:
            db.close()
        self.assertEqual(game.name, 'Portal 2')
        self.assertEqual(game.genres, frozenset({'Puzzle'}))
        self.assertEqual(game.platforms_tagged, frozenset({'steam'}))

    def test_metadata_failure_does_not_fail_sync(self):
        catalog = MagicMock()
        catalog.fetch_many.side_effect = CatalogAPIError('IGDB down')
        orch = self._orchestrator({Platform.STEAM: _adapter(_steam(620, 1, 'Portal 2'))},
                                  db_module=database, catalog=catalog)
        result = orch.sync_full_library('u1', STEAM)
        self.assertEqual((result.imported, result.failed), (1, 0))
        db = self.Session()
        try:
            self.assertEqual(database.get_games(db, [100])[100].name, 'Portal 2')
        finally:
            db.close()

    def test_unexpected_metadata_error_does_not_fail_sync(self):
        catalog = MagicMock()
        catalog.fetch_many.side_effect = KeyError('id')
        orch = self._orchestrator({Platform.STEAM: _adapter(_steam(620, 1, 'Portal 2'))},
                                  db_module=database, catalog=catalog)
        result = orch.sync_full_library('u1', STEAM)
        self.assertEqual(result.to_dict(), {'imported': 1, 'updated': 0, 'unchanged': 0,
                                            'failed': 0, 'errors': []})
        self.assertEqual(self._entries()[100].playtime_minutes, 1)


# ===========================================================================
# Catalog answering 200 with a non-JSON body
# ===========================================================================

def _token_response():
    resp = MagicMock()
    resp.status_code = 200
    resp.raise_for_status.return_value = None
    resp.json.return_value = {'access_token': 'tok', 'expires_in': 3600}
    return resp


def _html_response():
    resp = MagicMock()
    resp.status_code = 200
    resp.text = '<html>Service Unavailable</html>'
    resp.raise_for_status.return_value = None
    resp.json.side_effect = requests.exceptions.JSONDecodeError(
        'Expecting value', resp.text, 0)
    return resp


def _html_catalog():
    session = MagicMock()
    session.post.side_effect = lambda url, **kwargs: (
        _token_response() if url.startswith('https://id.twitch.tv') else _html_response())
    return IGDBClient(client_id='cid', client_secret='secret', session=session)


class TestHtmlCatalogResponses(_SyncTestCase):

    def test_identity_lookup_counts_title_as_failed(self):
        self.resolver = IdentityResolver(
            {Platform.STEAM: SteamIdentityResolver(_html_catalog())})
        orch = self._orchestrator({Platform.STEAM: _adapter(_steam(620, 60, 'Portal 2'))})
        result = orch.sync_full_library('u1', STEAM)
        self.assertEqual((result.imported, result.failed), (0, 1))
        self.assertIn('Portal 2', result.errors[0])
        self.assertEqual(self._entries(), {})

    def test_metadata_lookup_keeps_committed_entries(self):
        orch = self._orchestrator({Platform.STEAM: _adapter(_steam(620, 60, 'Portal 2'))},
                                  db_module=database, catalog=_html_catalog())
        result = orch.sync_full_library('u1', STEAM)
        self.assertEqual((result.imported, result.failed), (1, 0))
        self.assertEqual(self._entries()[100].playtime_minutes, 60)
        db = self.Session()
        try:
            self.assertEqual(database.get_games(db, [100])[100].name, 'Portal 2')
        finally:
            db.close()


class TestForeignKeyViolation(_SyncTestCase):

    def setUp(self):
        super().setUp()

        @event.listens_for(self.engine, 'connect')
        def _on_connect(dbapi_connection, _record):
            dbapi_connection.execute('PRAGMA foreign_keys=ON')

        self.engine.dispose()

    def test_unknown_user_fails_once_without_conflict_retries(self):
        repo = MagicMock(wraps=LibraryRepository(database))
        orch = self._orchestrator({Platform.STEAM: _adapter(_steam(620, 60))},
                                  repo=repo, conflict_retries=3)
        result = orch.sync_full_library('ghost', STEAM)
        self.assertEqual((result.imported, result.failed), (0, 1))
        self.assertIn('FOREIGN KEY', result.errors[0])
        self.assertNotIn('another writer', result.errors[0])
        self.assertEqual(repo.upsert.call_count, 1)


if __name__ == '__main__':
    unittest.main()
