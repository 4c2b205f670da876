#!/usr/bin/env python3
"""
Tests for platform_clients.py:
  - SteamLibraryAdapter: owned games, private profiles, malformed rows
  - PlayStationLibraryAdapter: token refresh, pagination, playDuration parsing
  - RiotLibraryAdapter: per-title snapshots and skipped titles
  - HTTP error mapping and the overall fetch deadline
  - build_adapters factory

Run with:
    python -m pytest tests/test_platform_clients.py
"""
import logging
import os
import sys
import unittest
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import requests

from gamelib.errors import AuthExpired, FetchTimeout, NetworkError, RateLimited
from gamelib.models import Platform, PlatformCredential
from platform_clients import (
    PlayStationLibraryAdapter, RiotLibraryAdapter, SteamLibraryAdapter, build_adapters,
    parse_play_duration,
)

STEAM = PlatformCredential(Platform.STEAM, account_id='76561198000000001')
PSN = PlatformCredential(Platform.PLAYSTATION, access_token='old-access',
                         refresh_token='old-refresh')
RIOT = PlatformCredential(Platform.RIOT, account_id='puuid-1', region='EUW1')


def _response(status=200, payload=None, headers=None, text=''):
    resp = MagicMock()
    resp.status_code = status
    resp.headers = headers or {}
    resp.text = text
    if isinstance(payload, Exception):
        resp.json.side_effect = payload
    else:
        resp.json.return_value = payload
    return resp


def _session(*responses):
    session = MagicMock()
    session.headers = {}
    session.request.side_effect = list(responses)
    return session


# ===========================================================================
# Steam
# ===========================================================================

class TestSteamLibraryAdapter(unittest.TestCase):

    def test_owned_games(self):
        session = _session(_response(payload={'response': {'game_count': 2, 'games': [
            {'appid': 620, 'name': 'Portal 2', 'playtime_forever': 754},
            {'appid': 730, 'name': 'Counter-Strike 2'},
        ]}}))
        records = SteamLibraryAdapter('KEY', session=session).fetch_library(STEAM)
        self.assertEqual([(r.platform_title_id, r.playtime_minutes, r.title_name)
                          for r in records],
                         [('620', 754, 'Portal 2'), ('730', 0, 'Counter-Strike 2')])
        self.assertTrue(all(r.platform is Platform.STEAM for r in records))
        self.assertTrue(all(r.catalog_id is None for r in records))

        method, url = session.request.call_args[0]
        params = session.request.call_args[1]['params']
        self.assertEqual(method, 'GET')
        self.assertIn('IPlayerService/GetOwnedGames', url)
        self.assertEqual(params['steamid'], STEAM.account_id)
        self.assertEqual(params['include_played_free_games'], 1)

    def test_private_profile_is_empty_library(self):
        session = _session(_response(payload={'response': {}}))
        self.assertEqual(SteamLibraryAdapter('KEY', session=session).fetch_library(STEAM), [])

    def test_malformed_rows_skipped(self):
        session = _session(_response(payload={'response': {'games': [
            {'name': 'no appid'}, {'appid': 'x'}, {'appid': 10, 'playtime_forever': 3},
        ]}}))
        records = SteamLibraryAdapter('KEY', session=session).fetch_library(STEAM)
        self.assertEqual([r.platform_title_id for r in records], ['10'])

    def test_duplicates_are_kept(self):
        session = _session(_response(payload={'response': {'games': [
            {'appid': 10, 'playtime_forever': 3}, {'appid': 10, 'playtime_forever': 5},
        ]}}))
        records = SteamLibraryAdapter('KEY', session=session).fetch_library(STEAM)
        self.assertEqual(len(records), 2)

    def test_unlinked_account(self):
        adapter = SteamLibraryAdapter('KEY', session=_session())
        with self.assertRaises(AuthExpired):
            adapter.fetch_library(PlatformCredential(Platform.STEAM))

    def test_empty_key_rejected(self):
        with self.assertRaises(ValueError):
            SteamLibraryAdapter('')


# ===========================================================================
# Error mapping and deadline
# ===========================================================================

class TestErrorMapping(unittest.TestCase):

    def _fetch(self, *responses):
        return SteamLibraryAdapter('KEY', session=_session(*responses)).fetch_library(STEAM)

    def test_unauthorized(self):
        with self.assertRaises(AuthExpired) as ctx:
            self._fetch(_response(401))
        self.assertEqual(ctx.exception.platform, 'steam')

    def test_forbidden(self):
        with self.assertRaises(AuthExpired):
            self._fetch(_response(403))

    def test_rate_limited_with_retry_after(self):
        with self.assertRaises(RateLimited) as ctx:
            self._fetch(_response(429, headers={'Retry-After': '30'}))
        self.assertEqual(ctx.exception.retry_after, 30.0)

    def test_rate_limited_with_unparseable_retry_after(self):
        with self.assertRaises(RateLimited) as ctx:
            self._fetch(_response(429, headers={'Retry-After': 'soon'}))
        self.assertIsNone(ctx.exception.retry_after)

    def test_server_error(self):
        with self.assertRaises(NetworkError) as ctx:
            self._fetch(_response(502, text='Bad Gateway'))
        self.assertIn('502', ctx.exception.message)

    def test_connection_error(self):
        with self.assertRaises(NetworkError):
            self._fetch(requests.ConnectionError('refused'))

    def test_request_timeout(self):
        with self.assertRaises(FetchTimeout):
            self._fetch(requests.Timeout('read timed out'))

    def test_invalid_json(self):
        with self.assertRaises(NetworkError):
            self._fetch(_response(payload=ValueError('not json')))

    def test_per_request_timeout_capped_by_deadline(self):
        session = _session(_response(payload={'response': {}}))
        with patch('platform_clients.time') as clock:
            clock.monotonic.side_effect = [100.0, 102.0]
            SteamLibraryAdapter('KEY', timeout=10, session=session).fetch_library(
                STEAM, timeout=5)
        self.assertEqual(session.request.call_args[1]['timeout'], 3.0)

    def test_expired_deadline_raises_before_request(self):
        session = _session(_response(payload={'response': {}}))
        with patch('platform_clients.time') as clock:
            clock.monotonic.side_effect = [100.0, 106.0]
            with self.assertRaises(FetchTimeout):
                SteamLibraryAdapter('KEY', session=session).fetch_library(STEAM, timeout=5)
        session.request.assert_not_called()


# ===========================================================================
# PlayStation
# ===========================================================================

class TestParsePlayDuration(unittest.TestCase):

    def test_iso_durations(self):
        self.assertEqual(parse_play_duration('PT45H30M'), 45 * 60 + 30)
        self.assertEqual(parse_play_duration('PT2H'), 120)
        self.assertEqual(parse_play_duration('P1DT2H'), 26 * 60)
        self.assertEqual(parse_play_duration('PT0S'), 0)
        self.assertEqual(parse_play_duration('PT1M59S'), 1)

    def test_numbers_are_minutes(self):
        self.assertEqual(parse_play_duration(90), 90)
        self.assertEqual(parse_play_duration(-4), 0)

    def test_garbage(self):
        self.assertEqual(parse_play_duration(None), 0)
        self.assertEqual(parse_play_duration('forty hours'), 0)
        self.assertEqual(parse_play_duration(True), 0)


def _token_response():
    return _response(payload={'access_token': 'new-access', 'refresh_token': 'new-refresh'})


def _titles(count, start=0, total=None):
    body = {'titles': [{'titleId': f'PPSA{start + i:05d}_00', 'name': f'Game {start + i}',
                        'playDuration': 'PT1H30M', 'category': 'ps5_native_game'}
                       for i in range(count)]}
    if total is not None:
        body['totalItemCount'] = total
    return _response(payload=body)


class TestPlayStationLibraryAdapter(unittest.TestCase):

    def test_refreshes_tokens_then_fetches(self):
        saved = []
        session = _session(_token_response(), _titles(2))
        adapter = PlayStationLibraryAdapter(session=session,
                                            on_tokens_refreshed=lambda a, r: saved.append((a, r)))
        records = adapter.fetch_library(PSN)

        self.assertEqual(saved, [('new-access', 'new-refresh')])
        self.assertEqual([(r.platform_title_id, r.playtime_minutes) for r in records],
                         [('PPSA00000_00', 90), ('PPSA00001_00', 90)])
        token_call, titles_call = session.request.call_args_list
        self.assertEqual(token_call[0][0], 'POST')
        self.assertEqual(token_call[1]['data']['refresh_token'], 'old-refresh')
        self.assertEqual(titles_call[1]['headers']['Authorization'], 'Bearer new-access')
        self.assertEqual(titles_call[1]['params']['categories'], 'ps4_game,ps5_native_game')

    def test_paginates_until_total(self):
        session = _session(_token_response(), _titles(100, 0, total=230),
                           _titles(100, 100, total=230), _titles(30, 200, total=230))
        records = PlayStationLibraryAdapter(session=session).fetch_library(PSN)
        self.assertEqual(len(records), 230)
        offsets = [c[1]['params']['offset'] for c in session.request.call_args_list[1:]]
        self.assertEqual(offsets, [0, 100, 200])

    def test_stops_on_empty_page(self):
        session = _session(_token_response(), _titles(100, 0, total=500),
                           _titles(0, total=500))
        records = PlayStationLibraryAdapter(session=session).fetch_library(PSN)
        self.assertEqual(len(records), 100)
        self.assertEqual(session.request.call_count, 3)

    def test_rejected_refresh_falls_back_to_access_token(self):
        saved = []
        session = _session(_response(400), _titles(1))
        adapter = PlayStationLibraryAdapter(session=session,
                                            on_tokens_refreshed=lambda a, r: saved.append(a))
        with self.assertLogs('gamelib', level='WARNING') as logs:
            records = adapter.fetch_library(PSN)
            logging.getLogger('gamelib.test').warning('done')
        # The recovered refresh failure leaves no warning behind
        self.assertEqual(logs.output, ['WARNING:gamelib.test:done'])
        self.assertEqual(len(records), 1)
        self.assertEqual(saved, [])
        self.assertEqual(session.request.call_args[1]['headers']['Authorization'],
                         'Bearer old-access')

    def test_rejected_refresh_without_access_token(self):
        session = _session(_response(400))
        credential = PlatformCredential(Platform.PLAYSTATION, refresh_token='old-refresh')
        with self.assertRaises(AuthExpired):
            PlayStationLibraryAdapter(session=session).fetch_library(credential)

    def test_expired_access_token(self):
        session = _session(_response(400), _response(401))
        with self.assertRaises(AuthExpired):
            PlayStationLibraryAdapter(session=session).fetch_library(PSN)

    def test_unlinked_account(self):
        with self.assertRaises(AuthExpired):
            PlayStationLibraryAdapter(session=_session()).fetch_library(
                PlatformCredential(Platform.PLAYSTATION))


# ===========================================================================
# Riot
# ===========================================================================

class TestRiotLibraryAdapter(unittest.TestCase):

    def test_lol_with_ranked_data_other_titles_skipped(self):
        session = _session(
            _response(payload={'puuid': 'puuid-1', 'summonerLevel': 312}),
            _response(payload=[{'queueType': 'RANKED_SOLO_5x5', 'tier': 'GOLD', 'rank': 'II',
                                'leaguePoints': 40, 'wins': 20, 'losses': 18}]),
            _response(404),
            _response(403),
        )
        adapter = RiotLibraryAdapter('RGAPI-key', session=session)
        records = adapter.fetch_library(RIOT)

        self.assertEqual(len(records), 1)
        lol = records[0]
        self.assertEqual((lol.platform, lol.platform_title_id, lol.playtime_minutes),
                         (Platform.RIOT, 'lol', 0))
        self.assertEqual(lol.ranked_metadata['summoner_level'], 312)
        self.assertEqual(lol.ranked_metadata['ranked'][0]['tier'], 'GOLD')
        self.assertEqual(lol.ranked_metadata['ranked'][0]['league_points'], 40)
        self.assertEqual(session.headers['X-Riot-Token'], 'RGAPI-key')

        urls = [c[0][1] for c in session.request.call_args_list]
        self.assertTrue(urls[0].startswith('https://euw1.api.riotgames.com/lol/summoner/v4/'))
        self.assertIn('/lol/league/v4/entries/by-puuid/puuid-1', urls[1])
        self.assertIn('/tft/summoner/v1/', urls[2])
        self.assertTrue(urls[3].startswith('https://eu.api.riotgames.com/val/match/v1/'))

    def test_all_titles(self):
        session = _session(
            _response(payload={'summonerLevel': 30}), _response(payload=[]),
            _response(payload={'summonerLevel': 30}), _response(404),
            _response(payload={'history': [{'matchId': 'a'}, {'matchId': 'b'}]}),
        )
        records = RiotLibraryAdapter('k', session=session).fetch_library(
            PlatformCredential(Platform.RIOT, account_id='p', region='na1'))
        self.assertEqual([r.platform_title_id for r in records], ['lol', 'tft', 'valorant'])
        self.assertEqual(records[1].ranked_metadata['ranked'], [])
        self.assertEqual(records[2].ranked_metadata, {'match_count': 2})
        self.assertIn('https://na.api.riotgames.com/', session.request.call_args[0][1])

    def test_invalid_key(self):
        session = _session(_response(401))
        with self.assertRaises(AuthExpired):
            RiotLibraryAdapter('k', session=session).fetch_library(RIOT)

    def test_unlinked_account(self):
        with self.assertRaises(AuthExpired):
            RiotLibraryAdapter('k', session=_session()).fetch_library(
                PlatformCredential(Platform.RIOT))


# ===========================================================================
# Factory
# ===========================================================================

class TestBuildAdapters(unittest.TestCase):

    def test_only_configured_platforms(self):
        adapters = build_adapters({'steam_api_key': 'KEY', 'riot_api_key': ''})
        self.assertEqual(set(adapters), {Platform.STEAM, Platform.PLAYSTATION})
        self.assertIsInstance(adapters[Platform.STEAM], SteamLibraryAdapter)

    def test_all_platforms(self):
        callback = MagicMock()
        adapters = build_adapters({'steam_api_key': 'a', 'riot_api_key': 'b',
                                   'http_timeout': 3}, on_psn_tokens_refreshed=callback)
        self.assertEqual(set(adapters), {Platform.STEAM, Platform.PLAYSTATION, Platform.RIOT})
        self.assertIs(adapters[Platform.PLAYSTATION]._on_tokens_refreshed, callback)
        self.assertEqual(adapters[Platform.RIOT]._timeout, 3)

    def test_close_releases_session(self):
        session = _session()
        adapter = SteamLibraryAdapter('KEY', session=session)
        adapter.close()
        session.close.assert_called_once_with()


if __name__ == '__main__':
    unittest.main()
