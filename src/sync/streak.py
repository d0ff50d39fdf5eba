from __future__ import annotations

from datetime import datetime

from state.models import Streak


def _parse_iso(s: str) -> datetime | None:
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return None


def streak_after_check_in(prev: Streak, at: datetime) -> Streak:
    """Return the streak after a meeting check-in at `at`.

    - Check-in on the calendar day after the last one: current + 1.
    - Another check-in on the same day: current unchanged.
    - Any other gap (or no previous check-in): current restarts at 1.
    `longest` never decreases.
    """
    last = _parse_iso(prev.last_check_in_date) if prev.last_check_in_date else None
    if last is not None and at.tzinfo is not None and last.tzinfo is not None:
        last = last.astimezone(at.tzinfo)

    gap = (at.date() - last.date()).days if last is not None else None
    if gap == 0 and prev.current > 0:
        current = prev.current
    elif gap == 1:
        current = prev.current + 1
    else:
        current = 1

    return Streak(
        current=current,
        longest=max(prev.longest, current),
        last_check_in_date=at.isoformat(),
    )
