"""
catalog_client.py
=================
Thin wrapper around the IGDB v4 API, the canonical game catalog for GameLib.
IGDB ids are the ``catalog_id`` every library entry is keyed on.

Authentication
--------------
IGDB accepts Twitch *client credentials* (app-access) tokens:

    POST https://id.twitch.tv/oauth2/token
        ?client_id=<YOUR_CLIENT_ID>
        &client_secret=<YOUR_CLIENT_SECRET>
        &grant_type=client_credentials

Requests are ``POST``\\ ed to ``https://api.igdb.com/v4/<endpoint>`` with an
Apicalypse query as the body.

Usage
-----
::

    from catalog_client import IGDBClient

    client = IGDBClient(client_id="abc", client_secret="xyz")
    client.find_by_external_ids(["620", "730"])
    # {"620": 72, "730": 242408}

    client.fetch_game_metadata(72)
    # {"catalog_id": 72, "name": "Portal 2", "cover_url": "https://...", "genres": [...]}
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Iterable, List, Optional

import requests

from gamelib.errors import GameLibError

logger = logging.getLogger('gamelib.catalog')

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
_TOKEN_URL = "https://id.twitch.tv/oauth2/token"
_IGDB_BASE = "https://api.igdb.com/v4"
_DEFAULT_TIMEOUT = 10  # seconds
# Minimum seconds to keep a cached token before re-fetching
_TOKEN_MIN_TTL = 60
# external_games.category for Steam
EXTERNAL_CATEGORY_STEAM = 1
# IGDB caps a single query at 500 rows
_MAX_LIMIT = 500
_GAME_FIELDS = "id,name,cover.url,genres.name,platforms.name,first_release_date"


class CatalogAuthError(GameLibError):
    """Raised when the IGDB access token cannot be obtained."""

    code = 'CATALOG_AUTH_ERROR'


class CatalogAPIError(GameLibError):
    """Raised when IGDB returns an unexpected error or is unreachable."""

    code = 'CATALOG_API_ERROR'


def _quote(value: str) -> str:
    return '"' + str(value).replace('\\', '\\\\').replace('"', '\\"') + '"'


def cover_url(raw_url: Optional[str], size: str = "t_cover_big") -> Optional[str]:
    """Turn IGDB's protocol-relative thumbnail URL into a full-size https URL."""
    if not raw_url:
        return None
    url = raw_url.replace("t_thumb", size)
    if url.startswith("//"):
        url = "https:" + url
    return url


class IGDBClient:
    """Minimal IGDB client with automatic token refresh."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        timeout: int = _DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        """
        Args:
            client_id:     Twitch application client ID.
            client_secret: Twitch application client secret.
            timeout:       HTTP request timeout in seconds.
            session:       Optional pre-configured ``requests.Session``.
        """
        if not client_id or not client_secret:
            raise ValueError("client_id and client_secret must not be empty")
        self._client_id = client_id
        self._client_secret = client_secret
        self._timeout = timeout
        self._session = session or requests.Session()
        self._access_token: Optional[str] = None
        self._token_expiry: float = 0.0  # Unix timestamp when token expires

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------

    def find_by_external_ids(
        self,
        uids: Iterable[str],
        category: int = EXTERNAL_CATEGORY_STEAM,
    ) -> Dict[str, int]:
        """Batch-map platform ids (e.g. Steam app ids) to IGDB game ids.

        Args:
            uids:     Platform-native ids as strings.
            category: IGDB ``external_games.category`` (1 = Steam).

        Returns:
            ``{uid: catalog_id}`` for the ids IGDB knows.  Unknown ids are
            simply absent.

        Raises:
            CatalogAuthError: Token could not be obtained.
            CatalogAPIError:  IGDB returned an error status.
        """
        pending = sorted({str(u) for u in uids if str(u).strip()})
        found: Dict[str, int] = {}
        for start in range(0, len(pending), _MAX_LIMIT):
            chunk = pending[start:start + _MAX_LIMIT]
            query = (
                "fields game,uid; "
                f"where category = {int(category)} & uid = ({','.join(_quote(u) for u in chunk)}); "
                f"limit {_MAX_LIMIT};"
            )
            for row in self._post("external_games", query):
                uid, game = row.get("uid"), row.get("game")
                if uid is None or game is None:
                    continue
                # The same uid can appear more than once; first (lowest id) wins.
                try:
                    found.setdefault(str(uid), int(game))
                except (TypeError, ValueError):
                    logger.warning("Ignoring IGDB external_games row with game=%r", game)
        logger.debug("IGDB matched %d of %d external ids", len(found), len(pending))
        return found

    def search_games(self, name: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Full-text search by title.

        Returns:
            List of ``{"catalog_id", "name", "cover_url", "genres"}`` dicts in
            IGDB relevance order.
        """
        cleaned = (name or "").strip()
        if not cleaned:
            return []
        query = (
            f"search {_quote(cleaned)}; "
            f"fields {_GAME_FIELDS}; "
            f"limit {max(1, min(limit, 50))};"
        )
        return [self._game_dict(row) for row in self._post("games", query)]

    def fetch_game_metadata(self, catalog_id: int) -> Optional[Dict[str, Any]]:
        """Return display metadata for one catalog id, or ``None`` if unknown."""
        rows = self._post("games", f"where id = {int(catalog_id)}; fields {_GAME_FIELDS}; limit 1;")
        return self._game_dict(rows[0]) if rows else None

    def fetch_many(self, catalog_ids: Iterable[int]) -> Dict[int, Dict[str, Any]]:
        """Batch version of :meth:`fetch_game_metadata`."""
        ids = sorted({int(c) for c in catalog_ids})
        results: Dict[int, Dict[str, Any]] = {}
        for start in range(0, len(ids), _MAX_LIMIT):
            chunk = ids[start:start + _MAX_LIMIT]
            query = (
                f"where id = ({','.join(str(i) for i in chunk)}); "
                f"fields {_GAME_FIELDS}; limit {_MAX_LIMIT};"
            )
            for row in self._post("games", query):
                game = self._game_dict(row)
                results[game["catalog_id"]] = game
        return results

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _game_dict(raw: Dict[str, Any]) -> Dict[str, Any]:
        try:
            catalog_id = int(raw["id"])
        except (KeyError, TypeError, ValueError) as exc:
            raise CatalogAPIError(f"IGDB game row without a usable id: {raw!r}") from exc
        return {
            "catalog_id": catalog_id,
            "name": raw.get("name", ""),
            "cover_url": cover_url((raw.get("cover") or {}).get("url")),
            "genres": [g.get("name") for g in raw.get("genres") or [] if g.get("name")],
            "platforms": [p.get("name") for p in raw.get("platforms") or [] if p.get("name")],
        }

    def _get_token(self) -> str:
        """Return a valid Bearer token, fetching a new one if needed."""
        now = time.time()
        if self._access_token and now < self._token_expiry - _TOKEN_MIN_TTL:
            return self._access_token

        try:
            resp = self._session.post(
                _TOKEN_URL,
                params={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "grant_type": "client_credentials",
                },
                timeout=self._timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise CatalogAuthError(f"Failed to obtain IGDB token: {exc}") from exc

        try:
            body = resp.json()
        except ValueError as exc:
            raise CatalogAuthError(f"Token response is not JSON: {resp.text[:200]}") from exc
        if not isinstance(body, dict):
            raise CatalogAuthError(f"Unexpected token response: {body!r}")
        token = body.get("access_token")
        expires_in = body.get("expires_in", 3600)
        if not token:
            raise CatalogAuthError(f"Token response missing 'access_token': {body}")

        self._access_token = token
        self._token_expiry = now + expires_in
        logger.debug("Obtained new IGDB access token (expires in %ds)", expires_in)
        return token

    def _post(self, endpoint: str, query: str) -> List[Dict[str, Any]]:
        """POST an Apicalypse *query* to *endpoint* and return the parsed rows."""
        headers = {
            "Client-ID": self._client_id,
            "Authorization": f"Bearer {self._get_token()}",
            "Accept": "application/json",
        }
        try:
            resp = self._session.post(
                f"{_IGDB_BASE}/{endpoint}",
                data=query.encode("utf-8"),
                headers=headers,
                timeout=self._timeout,
            )
            if resp.status_code == 401:
                # Token revoked early; drop it so the next call re-authenticates.
                self._access_token = None
            resp.raise_for_status()
        except requests.HTTPError as exc:
            raise CatalogAPIError(
                f"IGDB error {resp.status_code} for /{endpoint}: {resp.text[:200]}"
            ) from exc
        except requests.RequestException as exc:
            raise CatalogAPIError(f"Network error calling IGDB: {exc}") from exc

        try:
            data = resp.json()
        except ValueError as exc:
            raise CatalogAPIError(
                f"IGDB returned invalid JSON for /{endpoint}: {resp.text[:200]}"
            ) from exc
        if not isinstance(data, list):
            return []
        return [row for row in data if isinstance(row, dict)]
