"""Error taxonomy for platform fetches, identity resolution, persistence and
interactive validation.

Every error carries a stable ``code`` so the HTTP layer and the CLI can map it
without string matching.
"""


class GameLibError(Exception):
    """Base exception for GameLib."""

    code = 'GAMELIB_ERROR'

    def __init__(self, message: str, code: str = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)

    def to_dict(self):
        return {
            'error': True,
            'code': self.code,
            'message': self.message,
        }


class ConfigurationError(GameLibError):
    """Config file unreadable or a required key is missing."""

    code = 'CONFIG_ERROR'


# ---------------------------------------------------------------------------
# Adapter-level errors: abort a whole sync
# ---------------------------------------------------------------------------

class AdapterError(GameLibError):
    """A platform fetch failed before any record was produced."""

    code = 'ADAPTER_ERROR'

    def __init__(self, message: str, platform: str = ''):
        self.platform = platform
        super().__init__(message)


class AuthExpired(AdapterError):
    """The linked platform credential was rejected; the user must re-link."""

    code = 'AUTH_EXPIRED'


class NetworkError(AdapterError):
    """Transport failure or unexpected server error."""

    code = 'NETWORK_ERROR'


class FetchTimeout(NetworkError):
    """The caller-supplied deadline elapsed before the fetch completed."""

    code = 'TIMEOUT'


class RateLimited(AdapterError):
    """The platform API answered 429."""

    code = 'RATE_LIMITED'

    def __init__(self, message: str, platform: str = '', retry_after: float = None):
        super().__init__(message, platform)
        self.retry_after = retry_after


# ---------------------------------------------------------------------------
# Per-record / per-entry errors: counted, never fatal
# ---------------------------------------------------------------------------

class IdentityUnresolved(GameLibError):
    """No catalog id could be found for a platform title."""

    code = 'IDENTITY_UNRESOLVED'

    def __init__(self, platform: str, platform_title_id: str, title_name: str = ''):
        self.platform = platform
        self.platform_title_id = platform_title_id
        label = f"{title_name} ({platform_title_id})" if title_name else platform_title_id
        super().__init__(f"Could not resolve {platform} title {label}")


class PersistenceError(GameLibError):
    """A single entry could not be written."""

    code = 'PERSISTENCE_ERROR'


class ConcurrentModification(PersistenceError):
    """The stored row changed between read and write."""

    code = 'CONCURRENT_MODIFICATION'


# ---------------------------------------------------------------------------
# Library curation errors
# ---------------------------------------------------------------------------

class EntryNotFound(GameLibError):
    """No library entry exists for the requested game."""

    code = 'ENTRY_NOT_FOUND'


class ValidationFailed(GameLibError):
    """User-supplied input was rejected."""

    code = 'VALIDATION_ERROR'


class RatingNotAllowed(ValidationFailed):
    """The game does not meet the rating eligibility rule yet."""

    code = 'RATING_NOT_ALLOWED'


# ---------------------------------------------------------------------------
# Interactive validation errors
# ---------------------------------------------------------------------------

class TransientProbeError(GameLibError):
    """A remote check could not be completed this time; try again."""

    code = 'TRANSIENT_PROBE_ERROR'


class VerificationUnavailable(TransientProbeError):
    """All retry attempts ended in :class:`TransientProbeError`."""

    code = 'VERIFICATION_UNAVAILABLE'

    def __init__(self, message: str, attempts: int):
        self.attempts = attempts
        super().__init__(message)
