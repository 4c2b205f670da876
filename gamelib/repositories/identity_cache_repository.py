"""Repository for resolved platform identities ({"<platform>:<title_id>": catalog_id})."""
import threading
from typing import Dict, Iterable, Optional

from .base import JsonFileRepository


class IdentityCacheRepository(JsonFileRepository):
    """Persists the platform-title → catalog-id lookup table to a JSON file.

    Schema::

        {
            "steam:620":               72,
            "playstation:PPSA01284_00": 119388
        }

    Only successful resolutions are stored; a miss is retried on the next
    sync because the catalog may have gained the title since.
    """

    def __init__(self, file_path: str = '.gamelib_identity_cache.json') -> None:
        super().__init__(file_path)
        raw = self._load({})
        self.data: Dict[str, int] = {}
        for key, value in (raw.items() if isinstance(raw, dict) else []):
            try:
                self.data[str(key)] = int(value)
            except (TypeError, ValueError):
                self._log.warning("Dropping malformed cache row %r=%r", key, value)
        self._lock = threading.Lock()

    @staticmethod
    def _key(platform: str, platform_title_id: str) -> str:
        return f"{platform}:{platform_title_id}"

    def find(self, platform: str, platform_title_id: str) -> Optional[int]:
        """Return the cached catalog id, or ``None``."""
        return self.data.get(self._key(platform, platform_title_id))

    def find_many(self, platform: str, title_ids: Iterable[str]) -> Dict[str, int]:
        """Return ``{title_id: catalog_id}`` for the cached subset of *title_ids*."""
        found = {}
        for title_id in title_ids:
            catalog_id = self.find(platform, title_id)
            if catalog_id is not None:
                found[title_id] = catalog_id
        return found

    def store_many(self, platform: str, resolved: Dict[str, int]) -> None:
        """Add *resolved* pairs and persist once."""
        if not resolved:
            return
        with self._lock:
            for title_id, catalog_id in resolved.items():
                self.data[self._key(platform, title_id)] = int(catalog_id)
            self.save()

    def forget(self, platform: str, platform_title_id: str) -> bool:
        """Drop one mapping. Returns ``True`` if it existed."""
        key = self._key(platform, platform_title_id)
        with self._lock:
            if key not in self.data:
                return False
            del self.data[key]
            self.save()
            return True

    def save(self) -> None:
        """Persist the current in-memory data to disk."""
        self._save(self.data)
