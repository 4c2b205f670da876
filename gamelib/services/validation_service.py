"""Bounded retry and debounce for flaky interactive checks (username availability)."""
import logging
import re
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from gamelib.errors import TransientProbeError, VerificationUnavailable

logger = logging.getLogger('gamelib.validation')

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 20
USERNAME_RE = re.compile(r'^[a-zA-Z0-9_]+$')


class ProbeSuperseded(Exception):
    """The value being checked changed while a retry was pending."""


class ValidationRetrier:
    """Retry a probe only while it fails with :class:`TransientProbeError`.

    Attempt *i* that fails transiently is followed by a wait of
    ``base_delay * i`` seconds; there is no wait after the last attempt.
    Any other exception, and any returned value, ends the loop at once.
    """

    def __init__(self, max_attempts: int = 3, base_delay: float = 0.5,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep

    def check_with_retry(self, probe: Callable[[], object],
                         is_current: Optional[Callable[[], bool]] = None):
        """Call *probe* until it returns or the attempts are used up.

        Args:
            probe:      Zero-argument callable.
            is_current: Optional callable checked after every backoff wait;
                when it returns ``False`` the loop stops with
                :class:`ProbeSuperseded`.

        Raises:
            VerificationUnavailable: every attempt failed transiently.
            ProbeSuperseded:         *is_current* reported a newer value.
        """
        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return probe()
            except TransientProbeError as e:
                last_error = e
                logger.debug(f"Probe attempt {attempt}/{self.max_attempts} failed: {e}")
            if attempt == self.max_attempts:
                break
            self._sleep(self.base_delay * attempt)
            if is_current is not None and not is_current():
                raise ProbeSuperseded()
        logger.warning(f"Probe still failing after {self.max_attempts} attempts: {last_error}")
        raise VerificationUnavailable(
            "Could not verify right now, please try again later", self.max_attempts)


# ---------------------------------------------------------------------------
# Username availability
# ---------------------------------------------------------------------------

class UsernameStatus(str, Enum):
    AVAILABLE = 'available'
    TAKEN = 'taken'
    INVALID = 'invalid'
    UNVERIFIED = 'unverified'


@dataclass(frozen=True)
class UsernameCheck:
    username: str
    status: UsernameStatus
    message: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.status is UsernameStatus.AVAILABLE

    def to_dict(self):
        return {
            'username': self.username,
            'status': self.status.value,
            'available': self.available,
            'message': self.message,
        }


def username_format_error(candidate: str) -> Optional[str]:
    """Return why *candidate* is not a well-formed username, or ``None``."""
    if len(candidate) < USERNAME_MIN_LENGTH:
        return f"Username must be at least {USERNAME_MIN_LENGTH} characters"
    if len(candidate) > USERNAME_MAX_LENGTH:
        return f"Username must be at most {USERNAME_MAX_LENGTH} characters"
    if not USERNAME_RE.match(candidate):
        return "Username may only contain letters, numbers and underscores"
    return None


class UsernameAvailabilityService:
    """Checks a candidate username: format first, then a retried lookup."""

    def __init__(self, db_module, session_factory, retrier: ValidationRetrier = None) -> None:
        """
        Args:
            db_module:       The imported ``database`` module (or any object
                that exposes ``is_username_available``).
            session_factory: Callable returning a new SQLAlchemy session, or
                ``None`` when no database is configured.
            retrier:         Retry policy; defaults to 3 attempts, 0.5 s base.
        """
        self._db = db_module
        self._session_factory = session_factory
        self._retrier = retrier or ValidationRetrier()

    def check(self, candidate: str, exclude_user_id: str = None,
              is_current: Optional[Callable[[], bool]] = None) -> UsernameCheck:
        """Classify *candidate* as available, taken, invalid or unverified.

        Raises:
            ProbeSuperseded: only when *is_current* reports a newer value.
        """
        name = (candidate or '').strip()
        problem = username_format_error(name)
        if problem:
            return UsernameCheck(name, UsernameStatus.INVALID, problem)

        def probe():
            db = self._session_factory() if self._session_factory else None
            try:
                return self._db.is_username_available(db, name, exclude_user_id)
            finally:
                if db is not None:
                    db.close()

        try:
            available = self._retrier.check_with_retry(probe, is_current=is_current)
        except VerificationUnavailable as e:
            return UsernameCheck(name, UsernameStatus.UNVERIFIED, e.message)
        if available:
            return UsernameCheck(name, UsernameStatus.AVAILABLE)
        return UsernameCheck(name, UsernameStatus.TAKEN, "This username is already taken")


class DebouncedValidator:
    """Runs a check for live input, keeping only the newest value's result.

    Each :meth:`submit` waits *quiet_period* before probing.  If another
    :meth:`submit` arrived meanwhile, or arrives while the probe is in
    flight, the older call returns ``None`` and never touches
    :attr:`latest`.
    """

    def __init__(self, check: Callable, quiet_period: float = 0.5,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        """
        Args:
            check:        ``check(value, is_current=...) -> result``.
            quiet_period: Seconds of no new input before the first probe.
            sleep:        Injected for tests.
        """
        self._check = check
        self._quiet_period = quiet_period
        self._sleep = sleep
        self._lock = threading.Lock()
        self._generation = 0
        self.latest = None
        self.latest_value = None

    def _is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation

    def submit(self, value, **kwargs):
        """Check *value* unless it is superseded first; returns the result or ``None``.

        Extra keyword arguments are passed through to the check.
        """
        with self._lock:
            self._generation += 1
            generation = self._generation
        self._sleep(self._quiet_period)
        if not self._is_current(generation):
            return None

        try:
            result = self._check(value, is_current=lambda: self._is_current(generation),
                                 **kwargs)
        except ProbeSuperseded:
            return None

        with self._lock:
            if generation != self._generation:
                logger.debug(f"Discarding stale result for {value!r}")
                return None
            self.latest = result
            self.latest_value = value
        return result
