"""Repository package: expose all concrete repositories from one import."""
from .identity_cache_repository import IdentityCacheRepository
from .library_repository import LibraryRepository

__all__ = [
    'IdentityCacheRepository',
    'LibraryRepository',
]
