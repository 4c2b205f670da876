"""
platform_clients.py
===================
Library adapters for every platform GameLib can sync:

* **Steam**: ``IPlayerService/GetOwnedGames`` (Web API key + SteamID64)
* **PlayStation**: mobile gamelist API, authenticated with the account's
  stored access/refresh token pair
* **Riot Games**: League of Legends, Teamfight Tactics and Valorant, each
  tracked as a single always-owned title carrying ranked data

All adapters expose the same method::

    fetch_library(credential, timeout=None) -> List[PlatformRecord]

and differ only in how they talk to their platform.  The raw JSON of each
platform is parsed into a small typed payload (``SteamOwnedGame``,
``PsnTitle``, ``RiotTitleSnapshot``) and converted to
:class:`gamelib.models.PlatformRecord` before it leaves this module.
Playtime is always returned in minutes.  Adapters never resolve catalog ids
and never drop duplicates; that happens downstream.

Error mapping
-------------
=====================  =========================================
HTTP 401 / 403         :class:`gamelib.errors.AuthExpired`
HTTP 429               :class:`gamelib.errors.RateLimited`
timeout / deadline     :class:`gamelib.errors.FetchTimeout`
other failures         :class:`gamelib.errors.NetworkError`
=====================  =========================================

``timeout`` is an overall deadline for the whole fetch, including every page
of a paginated listing.

Configuration keys (``config.json``)
-------------------------------------
::

    "steam_api_key": "YOUR_STEAM_API_KEY_HERE",
    "riot_api_key":  "YOUR_RIOT_API_KEY_HERE",
    "http_timeout":  10
"""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests

from gamelib.errors import AuthExpired, FetchTimeout, NetworkError, RateLimited
from gamelib.models import Platform, PlatformCredential, PlatformRecord, utcnow

logger = logging.getLogger('gamelib.platforms')

_DEFAULT_TIMEOUT = 10  # seconds, per HTTP request


# ---------------------------------------------------------------------------
# Shared request plumbing
# ---------------------------------------------------------------------------

class _Deadline:
    """Tracks the caller-supplied overall timeout across several requests."""

    def __init__(self, timeout: Optional[float], platform: Platform) -> None:
        self._expires = time.monotonic() + timeout if timeout else None
        self._platform = platform

    def request_timeout(self, per_request: float) -> float:
        if self._expires is None:
            return per_request
        remaining = self._expires - time.monotonic()
        if remaining <= 0:
            raise FetchTimeout(f"{self._platform.value} fetch exceeded its deadline",
                               self._platform.value)
        return min(per_request, remaining)


class _HTTPAdapter:
    """Base class: one ``requests.Session`` and the HTTP → error mapping."""

    platform: Platform

    def __init__(self, timeout: int = _DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None) -> None:
        self._timeout = timeout
        self._session = session or requests.Session()

    def close(self) -> None:
        """Release the session's pooled connections."""
        self._session.close()

    def _request(self, method: str, url: str, deadline: _Deadline,
                 allow_status: tuple = (), **kwargs) -> requests.Response:
        """Perform one request, raising the adapter error for any failure.

        Statuses listed in *allow_status* are returned instead of raised.
        """
        name = self.platform.value
        try:
            resp = self._session.request(method, url,
                                         timeout=deadline.request_timeout(self._timeout),
                                         **kwargs)
        except requests.Timeout as exc:
            raise FetchTimeout(f"{name} request timed out: {exc}", name) from exc
        except requests.RequestException as exc:
            raise NetworkError(f"{name} request failed: {exc}", name) from exc

        status = resp.status_code
        if status in allow_status:
            return resp
        if status in (401, 403):
            raise AuthExpired(f"{name} rejected the credential (HTTP {status})", name)
        if status == 429:
            retry_after = resp.headers.get('Retry-After')
            try:
                retry_after = float(retry_after) if retry_after is not None else None
            except ValueError:
                retry_after = None
            raise RateLimited(f"{name} rate limit reached", name, retry_after)
        if status >= 400:
            raise NetworkError(f"{name} API error {status}: {resp.text[:200]}", name)
        return resp

    def _json(self, resp: requests.Response) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            raise NetworkError(f"{self.platform.value} returned invalid JSON",
                               self.platform.value) from exc


# ---------------------------------------------------------------------------
# Steam
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SteamOwnedGame:
    appid: int
    name: str = ''
    playtime_forever: int = 0  # minutes

    @classmethod
    def from_json(cls, raw: Dict[str, Any]) -> 'SteamOwnedGame':
        return cls(appid=int(raw['appid']), name=raw.get('name', ''),
                   playtime_forever=int(raw.get('playtime_forever') or 0))

    def to_record(self, observed_at) -> PlatformRecord:
        return PlatformRecord(Platform.STEAM, str(self.appid),
                              playtime_minutes=max(self.playtime_forever, 0),
                              last_observed_at=observed_at, title_name=self.name)


class SteamLibraryAdapter(_HTTPAdapter):
    """Owned games of a public Steam profile.

    A private profile answers with an empty ``response`` object; that is
    returned as an empty library, not an error.
    """

    platform = Platform.STEAM
    _OWNED_GAMES_URL = "https://api.steampowered.com/IPlayerService/GetOwnedGames/v1/"

    def __init__(self, api_key: str, timeout: int = _DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None) -> None:
        if not api_key:
            raise ValueError("api_key must not be empty")
        super().__init__(timeout, session)
        self._api_key = api_key

    def fetch_library(self, credential: PlatformCredential,
                      timeout: Optional[float] = None) -> List[PlatformRecord]:
        if not credential.account_id:
            raise AuthExpired("No Steam account linked", self.platform.value)
        deadline = _Deadline(timeout, self.platform)
        resp = self._request('GET', self._OWNED_GAMES_URL, deadline, params={
            'key': self._api_key,
            'steamid': credential.account_id,
            'include_appinfo': 1,
            'include_played_free_games': 1,
            'format': 'json',
        })
        payload = self._json(resp).get('response') or {}
        observed = utcnow()
        records = []
        for raw in payload.get('games', []):
            try:
                records.append(SteamOwnedGame.from_json(raw).to_record(observed))
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Skipping malformed Steam game row: {raw!r}")
        logger.info(f"Steam: {len(records)} owned games for {credential.account_id}")
        return records


# ---------------------------------------------------------------------------
# PlayStation
# ---------------------------------------------------------------------------

_DURATION_RE = re.compile(r'^P(?:(\d+)D)?T?(?:(\d+)H)?(?:(\d+)M)?(?:(\d+(?:\.\d+)?)S)?$')


def parse_play_duration(value) -> int:
    """Convert a PSN ``playDuration`` to whole minutes.

    Accepts ISO-8601 durations (``"PT45H30M"``, ``"P1DT2H"``) or an integer
    already in minutes; anything else is 0.
    """
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return max(int(value), 0)
    match = _DURATION_RE.match(str(value).strip().upper())
    if not match:
        return 0
    days, hours, minutes, seconds = match.groups()
    total = int(days or 0) * 1440 + int(hours or 0) * 60 + int(minutes or 0)
    return total + int(float(seconds or 0) // 60)


@dataclass(frozen=True)
class PsnTitle:
    title_id: str
    name: str = ''
    play_minutes: int = 0
    category: str = ''

    @classmethod
    def from_json(cls, raw: Dict[str, Any]) -> 'PsnTitle':
        return cls(title_id=str(raw['titleId']), name=raw.get('name', ''),
                   play_minutes=parse_play_duration(raw.get('playDuration')),
                   category=raw.get('category', ''))

    def to_record(self, observed_at) -> PlatformRecord:
        return PlatformRecord(Platform.PLAYSTATION, self.title_id,
                              playtime_minutes=self.play_minutes,
                              last_observed_at=observed_at, title_name=self.name)


class PlayStationLibraryAdapter(_HTTPAdapter):
    """Played titles of a linked PlayStation account.

    Sony access tokens last about an hour, so every fetch first exchanges
    the stored refresh token for a fresh pair.  The rotated pair is handed
    to *on_tokens_refreshed* so the caller can persist it.
    """

    platform = Platform.PLAYSTATION
    _TOKEN_URL = "https://ca.account.sony.com/api/authz/v3/oauth/token"
    _TITLES_URL = "https://m.np.playstation.com/api/gamelist/v2/users/me/titles"
    # Public client credentials of the PlayStation mobile app; required to
    # complete Sony's refresh-token grant.
    _CLIENT_ID = "09515159-7237-4370-9b40-3806e67c0891"
    _CLIENT_SECRET = "ucIBBpU6QUVYETxW"
    _SCOPE = "psn:mobile.v2.core psn:clientapp"
    _PAGE_SIZE = 100

    def __init__(self, timeout: int = _DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None,
                 on_tokens_refreshed: Optional[Callable[[str, str], None]] = None) -> None:
        super().__init__(timeout, session)
        self._on_tokens_refreshed = on_tokens_refreshed
        self._session.headers.update({
            'User-Agent': 'PlayStation/21090100 CFNetwork/1126 Darwin/19.5.0'
        })

    def refresh_access_token(self, refresh_token: str, deadline: _Deadline) -> Dict[str, str]:
        """Exchange *refresh_token* for a new token pair.

        Raises:
            AuthExpired: Sony rejected the refresh token.
        """
        resp = self._request('POST', self._TOKEN_URL, deadline, allow_status=(400,), data={
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
            'token_format': 'jwt',
            'scope': self._SCOPE,
        }, auth=(self._CLIENT_ID, self._CLIENT_SECRET))
        if resp.status_code == 400:
            raise AuthExpired("PlayStation refresh token was rejected", self.platform.value)
        body = self._json(resp)
        access = body.get('access_token')
        if not access:
            raise AuthExpired("PlayStation token response had no access token",
                              self.platform.value)
        return {'access_token': access,
                'refresh_token': body.get('refresh_token', refresh_token)}

    def fetch_library(self, credential: PlatformCredential,
                      timeout: Optional[float] = None) -> List[PlatformRecord]:
        deadline = _Deadline(timeout, self.platform)
        access_token = credential.access_token
        if credential.refresh_token:
            try:
                tokens = self.refresh_access_token(credential.refresh_token, deadline)
            except AuthExpired:
                if not access_token:
                    raise
                logger.info("PSN: refresh failed, trying the stored access token")
            else:
                access_token = tokens['access_token']
                if self._on_tokens_refreshed is not None:
                    self._on_tokens_refreshed(tokens['access_token'], tokens['refresh_token'])
        if not access_token:
            raise AuthExpired("No PlayStation account linked", self.platform.value)

        observed = utcnow()
        records: List[PlatformRecord] = []
        offset = 0
        while True:
            resp = self._request('GET', self._TITLES_URL, deadline, params={
                'categories': 'ps4_game,ps5_native_game',
                'limit': self._PAGE_SIZE,
                'offset': offset,
            }, headers={'Authorization': f'Bearer {access_token}'})
            body = self._json(resp)
            titles = body.get('titles', [])
            for raw in titles:
                try:
                    records.append(PsnTitle.from_json(raw).to_record(observed))
                except (KeyError, TypeError, ValueError):
                    logger.warning(f"Skipping malformed PSN title row: {raw!r}")

            # Paginate
            total = body.get('totalItemCount', offset + len(titles))
            offset += len(titles)
            if not titles or len(titles) < self._PAGE_SIZE or offset >= total:
                break

        logger.info(f"PSN: {len(records)} titles fetched")
        return records


# ---------------------------------------------------------------------------
# Riot Games
# ---------------------------------------------------------------------------

# Platform routing value → regional cluster for match APIs.
_RIOT_CLUSTERS = {
    'br1': 'americas', 'la1': 'americas', 'la2': 'americas', 'na1': 'americas',
    'eun1': 'europe', 'euw1': 'europe', 'ru': 'europe', 'tr1': 'europe', 'me1': 'europe',
    'jp1': 'asia', 'kr': 'asia',
    'oc1': 'sea', 'ph2': 'sea', 'sg2': 'sea', 'th2': 'sea', 'tw2': 'sea', 'vn2': 'sea',
}
# Valorant uses its own shards.
_VALORANT_SHARDS = {'americas': 'na', 'europe': 'eu', 'asia': 'ap', 'sea': 'ap'}

RIOT_TITLES = ('lol', 'tft', 'valorant')


@dataclass(frozen=True)
class RiotTitleSnapshot:
    """Live stats for one Riot title; Riot exposes no playtime."""

    game: str
    ranked: Dict[str, Any] = field(default_factory=dict)

    def to_record(self, observed_at) -> PlatformRecord:
        return PlatformRecord(Platform.RIOT, self.game, playtime_minutes=0,
                              ranked_metadata=dict(self.ranked),
                              last_observed_at=observed_at, title_name=self.game)


def _league_entry(raw: Dict[str, Any]) -> Dict[str, Any]:
    wins, losses = int(raw.get('wins', 0)), int(raw.get('losses', 0))
    return {
        'queue_type': raw.get('queueType', ''),
        'tier': raw.get('tier', ''),
        'rank': raw.get('rank', ''),
        'league_points': int(raw.get('leaguePoints', 0)),
        'wins': wins,
        'losses': losses,
    }


class RiotLibraryAdapter(_HTTPAdapter):
    """League of Legends, TFT and Valorant for a Riot account (PUUID).

    A title the player has never played (summoner 404) is left out.
    Valorant match history needs a production key; a 403/404 there skips
    the title instead of failing the sync.
    """

    platform = Platform.RIOT

    def __init__(self, api_key: str, timeout: int = _DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None) -> None:
        if not api_key:
            raise ValueError("api_key must not be empty")
        super().__init__(timeout, session)
        self._session.headers.update({'X-Riot-Token': api_key})

    @staticmethod
    def _host(routing: str) -> str:
        return f"https://{routing}.api.riotgames.com"

    def _summoner_snapshot(self, game: str, puuid: str, region: str,
                           deadline: _Deadline) -> Optional[RiotTitleSnapshot]:
        version = 'v4' if game == 'lol' else 'v1'
        summoner_resp = self._request(
            'GET', f"{self._host(region)}/{game}/summoner/{version}/summoners/by-puuid/{puuid}",
            deadline, allow_status=(404,))
        if summoner_resp.status_code == 404:
            logger.info(f"Riot: no {game} summoner for this account")
            return None
        summoner = self._json(summoner_resp)

        league_path = ('lol/league/v4/entries/by-puuid' if game == 'lol'
                       else 'tft/league/v1/by-puuid')
        league_resp = self._request('GET', f"{self._host(region)}/{league_path}/{puuid}",
                                    deadline, allow_status=(404,))
        entries = [] if league_resp.status_code == 404 else self._json(league_resp)
        return RiotTitleSnapshot(game, {
            'summoner_level': summoner.get('summonerLevel'),
            'ranked': [_league_entry(e) for e in entries or []],
        })

    def _valorant_snapshot(self, puuid: str, cluster: str,
                           deadline: _Deadline) -> Optional[RiotTitleSnapshot]:
        shard = _VALORANT_SHARDS.get(cluster, 'eu')
        resp = self._request(
            'GET', f"{self._host(shard)}/val/match/v1/matchlists/by-puuid/{puuid}",
            deadline, allow_status=(403, 404))
        if resp.status_code in (403, 404):
            logger.info(f"Riot: Valorant match history unavailable (HTTP {resp.status_code})")
            return None
        history = self._json(resp).get('history', [])
        return RiotTitleSnapshot('valorant', {'match_count': len(history)})

    def fetch_library(self, credential: PlatformCredential,
                      timeout: Optional[float] = None) -> List[PlatformRecord]:
        puuid = credential.account_id
        if not puuid:
            raise AuthExpired("No Riot account linked", self.platform.value)
        region = (credential.region or 'euw1').lower()
        cluster = _RIOT_CLUSTERS.get(region, 'europe')
        deadline = _Deadline(timeout, self.platform)

        snapshots = [
            self._summoner_snapshot('lol', puuid, region, deadline),
            self._summoner_snapshot('tft', puuid, region, deadline),
            self._valorant_snapshot(puuid, cluster, deadline),
        ]
        observed = utcnow()
        records = [s.to_record(observed) for s in snapshots if s is not None]
        logger.info(f"Riot: {len(records)} titles with live data")
        return records


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def build_adapters(config: Dict[str, Any],
                   on_psn_tokens_refreshed: Optional[Callable[[str, str], None]] = None
                   ) -> Dict[Platform, _HTTPAdapter]:
    """Create the adapters *config* has credentials for.

    PlayStation needs no app-level key and is always available.
    """
    timeout = int(config.get('http_timeout') or _DEFAULT_TIMEOUT)
    adapters: Dict[Platform, _HTTPAdapter] = {
        Platform.PLAYSTATION: PlayStationLibraryAdapter(
            timeout=timeout, on_tokens_refreshed=on_psn_tokens_refreshed),
    }
    if config.get('steam_api_key'):
        adapters[Platform.STEAM] = SteamLibraryAdapter(config['steam_api_key'], timeout)
    if config.get('riot_api_key'):
        adapters[Platform.RIOT] = RiotLibraryAdapter(config['riot_api_key'], timeout)
    return adapters
