"""Map platform-native title references to catalog ids."""
import logging
import re
from typing import Dict, Iterable, List, Optional, Tuple

from rapidfuzz import fuzz, process

from gamelib.errors import GameLibError
from gamelib.models import Platform, PlatformRecord

logger = logging.getLogger('gamelib.identity')

# Minimum rapidfuzz token-set score for a name match to count.
DEFAULT_SCORE_CUTOFF = 60

# Single-title platforms: each Riot game is tracked as one always-owned title.
RIOT_CATALOG_IDS = {
    'lol': 115,
    'valorant': 126459,
    'tft': 119255,
}

_EDITION_RE = re.compile(
    r'\s*[-:]?\s*(definitive|complete|enhanced|remastered|goty|game of the year|gold|'
    r'special|deluxe|ultimate|anniversary)\s+edition\s*',
    re.IGNORECASE,
)
_TROPHY_SUFFIX_RE = re.compile(r'\s+troph(y|ies)$', re.IGNORECASE)
_PS_PLATFORM_RE = re.compile(r'\s+ps4\W*\s*(&|and|ve)\s*ps5\W*', re.IGNORECASE)


def normalize_title(name: str) -> str:
    """Lower-case *name* and strip trademark marks, edition suffixes and punctuation."""
    name = re.sub(r'[™®©]', '', name or '')
    name = _EDITION_RE.sub(' ', name)
    name = re.sub(r'[^\w\s]', ' ', name.lower())
    return re.sub(r'\s+', ' ', name).strip()


def clean_psn_title(name: str) -> str:
    """Drop the "Trophies" suffix and PS4/PS5 markers PSN appends to titles."""
    cleaned = re.sub(r'[™®©]', '', name or '').strip()
    cleaned = _TROPHY_SUFFIX_RE.sub('', cleaned)
    cleaned = _PS_PLATFORM_RE.sub('', cleaned)
    return re.sub(r'\s+', ' ', cleaned).strip()


def best_name_match(name: str, candidates: List[Dict], score_cutoff: int = DEFAULT_SCORE_CUTOFF
                    ) -> Optional[int]:
    """Return the catalog id of the candidate whose name best matches *name*.

    An exact match after normalisation always wins; otherwise the highest
    token-set score at or above *score_cutoff* is taken.
    """
    key = normalize_title(name)
    if not key:
        return None
    by_name: Dict[str, int] = {}
    for candidate in candidates:
        cand_key = normalize_title(candidate.get('name', ''))
        if cand_key and cand_key not in by_name:
            by_name[cand_key] = candidate['catalog_id']
    if key in by_name:
        return by_name[key]
    best = process.extractOne(key, list(by_name), scorer=fuzz.token_set_ratio,
                              score_cutoff=score_cutoff)
    if best:
        matched_key, score, _ = best
        logger.debug("Fuzzy matched %r to %r (%.0f)", name, matched_key, score)
        return by_name[matched_key]
    return None


# ---------------------------------------------------------------------------
# Platform-specific strategies
# ---------------------------------------------------------------------------

class SteamIdentityResolver:
    """App-id batch lookup through the catalog, then name search fallback."""

    platform = Platform.STEAM

    def __init__(self, catalog, score_cutoff: int = DEFAULT_SCORE_CUTOFF,
                 fuzzy_fallback: bool = True) -> None:
        self._catalog = catalog
        self._cutoff = score_cutoff
        self._fuzzy = fuzzy_fallback

    def resolve_batch(self, records: List[PlatformRecord]) -> Dict[str, int]:
        resolved: Dict[str, int] = {}
        try:
            resolved.update(self._catalog.find_by_external_ids(
                [r.platform_title_id for r in records]))
        except GameLibError as e:
            logger.warning(f"Steam app-id lookup failed, falling back to name search: {e}")
        if not self._fuzzy:
            return resolved
        for record in records:
            if record.platform_title_id in resolved or not record.title_name:
                continue
            try:
                candidates = self._catalog.search_games(normalize_title(record.title_name))
            except GameLibError as e:
                logger.warning(f"Name search failed for {record.title_name!r}: {e}")
                continue
            match = best_name_match(record.title_name, candidates, self._cutoff)
            if match is not None:
                resolved[record.platform_title_id] = match
        return resolved


class PlayStationIdentityResolver:
    """Catalog name search on the cleaned PSN title."""

    platform = Platform.PLAYSTATION

    def __init__(self, catalog, score_cutoff: int = DEFAULT_SCORE_CUTOFF) -> None:
        self._catalog = catalog
        self._cutoff = score_cutoff

    def resolve_batch(self, records: List[PlatformRecord]) -> Dict[str, int]:
        resolved: Dict[str, int] = {}
        for record in records:
            name = clean_psn_title(record.title_name)
            if not name:
                continue
            try:
                candidates = self._catalog.search_games(name)
            except GameLibError as e:
                logger.warning(f"Name search failed for {name!r}: {e}")
                continue
            match = best_name_match(name, candidates, self._cutoff)
            if match is not None:
                resolved[record.platform_title_id] = match
        return resolved


class RiotIdentityResolver:
    """Fixed table: every Riot title maps to one catalog game."""

    platform = Platform.RIOT

    def __init__(self, table: Optional[Dict[str, int]] = None) -> None:
        self._table = dict(table or RIOT_CATALOG_IDS)

    def resolve_batch(self, records: List[PlatformRecord]) -> Dict[str, int]:
        return {r.platform_title_id: self._table[r.platform_title_id.lower()]
                for r in records if r.platform_title_id.lower() in self._table}


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------

class IdentityResolver:
    """Dispatches to the per-platform strategy and remembers positive hits.

    Misses are never cached: the catalog may learn the title later.
    """

    def __init__(self, resolvers: Dict[Platform, object], cache=None) -> None:
        """
        Args:
            resolvers: ``{Platform: strategy}``; each strategy exposes
                ``resolve_batch(records) -> {platform_title_id: catalog_id}``.
            cache:     Optional :class:`~gamelib.repositories.IdentityCacheRepository`.
        """
        self._resolvers = dict(resolvers)
        self._cache = cache

    def resolve(self, platform_title_id: str, platform, title_name: str = '') -> Optional[int]:
        """Return the catalog id for one title, or ``None``."""
        platform = Platform.parse(platform)
        record = PlatformRecord(platform, str(platform_title_id), title_name=title_name)
        resolved, _ = self.resolve_records([record])
        return resolved[0].catalog_id if resolved else None

    def resolve_records(self, records: Iterable[PlatformRecord]
                        ) -> Tuple[List[PlatformRecord], List[PlatformRecord]]:
        """Fill in ``catalog_id`` on each record.

        Returns:
            ``(resolved, unresolved)``; input order is kept within each list.
        """
        records = list(records)
        by_platform: Dict[Platform, List[PlatformRecord]] = {}
        for record in records:
            if record.catalog_id is None:
                by_platform.setdefault(record.platform, []).append(record)

        found: Dict[Tuple[Platform, str], int] = {}
        for platform, pending in by_platform.items():
            found.update(self._resolve_platform(platform, pending))

        resolved, unresolved = [], []
        for record in records:
            if record.catalog_id is not None:
                resolved.append(record)
                continue
            catalog_id = found.get((record.platform, record.platform_title_id))
            if catalog_id is None:
                logger.warning(f"Unresolved {record.platform.value} title "
                               f"{record.title_name or record.platform_title_id}")
                unresolved.append(record)
            else:
                resolved.append(record.with_catalog_id(catalog_id))
        return resolved, unresolved

    def _resolve_platform(self, platform: Platform, records: List[PlatformRecord]
                          ) -> Dict[Tuple[Platform, str], int]:
        title_ids = [r.platform_title_id for r in records]
        hits: Dict[str, int] = {}
        if self._cache is not None:
            hits.update(self._cache.find_many(platform.value, title_ids))

        misses = [r for r in records if r.platform_title_id not in hits]
        strategy = self._resolvers.get(platform)
        if misses and strategy is not None:
            try:
                fresh = strategy.resolve_batch(misses)
            except GameLibError as e:
                logger.warning(f"{platform.value} identity lookup failed: {e}")
                fresh = {}
            hits.update(fresh)
            if self._cache is not None and fresh:
                try:
                    self._cache.store_many(platform.value, fresh)
                except OSError as e:
                    logger.warning(f"Could not write identity cache: {e}")
        elif misses:
            logger.warning(f"No identity strategy for {platform.value}")

        logger.info(f"Resolved {len(hits)}/{len(records)} {platform.value} titles "
                    f"({len(records) - len(misses)} cached)")
        return {(platform, tid): cid for tid, cid in hits.items()}
