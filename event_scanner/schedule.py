"""
Session schedule lookups

Finds the session that is running at a given moment, optionally widened
by a grace period so that early arrivals and late scans still land in
the right session.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from .models import Session

GRACE_PERIOD_MINUTES = 5


@dataclass
class SessionWindowStatus:
    """Which session is operational at a moment, and how"""
    session: Optional[Session]
    status: str
    message: str

    def to_dict(self) -> dict:
        return {
            "session": self.session.to_dict() if self.session else None,
            "status": self.status,
            "message": self.message,
        }


def _plural(count: int) -> str:
    return "" if count == 1 else "s"


def session_window_status(
    sessions: Iterable[Session],
    now: datetime,
    grace_minutes: int = GRACE_PERIOD_MINUTES,
) -> SessionWindowStatus:
    """
    Report the session that is active, starting soon or ending soon

    A running session always wins. Otherwise the soonest session starting
    within the grace period is preferred over one that ended within it.
    """
    ordered = sorted(sessions, key=lambda s: (s.start_time, s.id))
    if not ordered:
        return SessionWindowStatus(None, "none", "No sessions configured for the current event.")

    grace = timedelta(minutes=grace_minutes)
    starting_soon = None
    ending_soon = None

    for session in ordered:
        if session.start_time <= now <= session.end_time:
            return SessionWindowStatus(session, "active", f"Session '{session.name}' is currently active.")
        if session.start_time - grace <= now < session.start_time and starting_soon is None:
            starting_soon = session
        if session.end_time < now <= session.end_time + grace:
            if ending_soon is None or session.end_time > ending_soon.end_time:
                ending_soon = session

    if starting_soon is not None:
        minutes = round((starting_soon.start_time - now).total_seconds() / 60)
        return SessionWindowStatus(
            starting_soon,
            "starting_soon",
            f"Session '{starting_soon.name}' starts in {minutes} minute{_plural(minutes)}.",
        )
    if ending_soon is not None:
        minutes = round((now - ending_soon.end_time).total_seconds() / 60)
        return SessionWindowStatus(
            ending_soon,
            "ending_soon",
            f"Session '{ending_soon.name}' ended {minutes} minute{_plural(minutes)} ago.",
        )
    return SessionWindowStatus(
        None,
        "none",
        "No operational session for this event. Scans will be marked as 'Out of Schedule'.",
    )


def operational_sessions(
    sessions: Iterable[Session],
    booth_id: Optional[str],
    now: datetime,
    grace_minutes: int = 0,
) -> List[Session]:
    """
    Sessions that a scan at ``booth_id`` and ``now`` could belong to

    Ordered for tie-breaking: sessions strictly inside their window come
    first, then grace-period matches; within each group the earliest
    start time wins, then the lowest session id.
    """
    grace = timedelta(minutes=grace_minutes)
    candidates = []
    for session in sessions:
        if booth_id is not None and not session.applies_to_booth(booth_id):
            continue
        if not (session.start_time - grace <= now <= session.end_time + grace):
            continue
        in_window = session.start_time <= now <= session.end_time
        candidates.append((0 if in_window else 1, session.start_time, session.id, session))
    candidates.sort(key=lambda c: c[:3])
    return [c[3] for c in candidates]
