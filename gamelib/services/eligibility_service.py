"""Pure rules derived from the combined library: rating gate and badge progress."""
from typing import Iterable, Optional, Sequence

from gamelib.models import BadgeProgress, BadgeTier, CombinedLibraryEntry, RatingEligibility

MIN_RATING_HOURS = 2.0


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def can_rate(combined: Iterable[CombinedLibraryEntry], catalog_id: int,
             min_hours: float = MIN_RATING_HOURS) -> RatingEligibility:
    """Whether the user may rate *catalog_id*.

    Rating needs a library entry with at least *min_hours* of playtime.  The
    hours are returned unrounded so callers never recompute them.
    """
    match: Optional[CombinedLibraryEntry] = None
    for item in combined:
        if item.entry.catalog_id == catalog_id:
            match = item
            break
    if match is None:
        return RatingEligibility(False, 0.0, "Add this game to your library before rating it")

    hours = match.entry.playtime_minutes / 60.0
    if hours >= min_hours:
        return RatingEligibility(True, hours, None)
    return RatingEligibility(
        False, hours,
        f"You need at least {min_hours:g} hours of playtime to rate this game "
        f"({hours:.1f} h so far)")


def badge_progress(tiers: Sequence[BadgeTier], completed_games: int) -> BadgeProgress:
    """Current tier, next tier and fractional progress towards it.

    *tiers* may arrive in any order.  At the top tier progress is ``1.0`` and
    no games remain.
    """
    completed = max(0, int(completed_games))
    ordered = sorted(tiers, key=lambda t: (t.required_games, t.tier))
    current = None
    upcoming = None
    for tier in ordered:
        if tier.required_games <= completed:
            current = tier
        else:
            upcoming = tier
            break

    if upcoming is None:
        return BadgeProgress(completed, current, None, 1.0, 0)

    floor = current.required_games if current else 0
    span = upcoming.required_games - floor
    progress = _clamp((completed - floor) / span, 0.0, 1.0) if span > 0 else 1.0
    return BadgeProgress(completed, current, upcoming, progress,
                         upcoming.required_games - completed)
