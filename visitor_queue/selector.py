"""
Next-to-serve selection over a ticket snapshot.

Pure functions: every call takes the full ticket list (fetched fresh by the caller) and
`now`, and recomputes the ranking from scratch. Walk-ins are served by position in line;
a visitor whose appointment is near (within the grace window either side of now) is
called ahead of the line, closest appointment first.
"""

from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from visitor_queue.config import APPOINTMENT_GRACE_MINUTES, SELECTION_WINDOW_HOURS
from visitor_queue.models import Ticket

WINDOW = timedelta(hours=SELECTION_WINDOW_HOURS)
APPOINTMENT_GRACE = timedelta(minutes=APPOINTMENT_GRACE_MINUTES)

# Rank for everything that is not a near appointment; sorts behind any closeness value.
NOT_NEAR_RANK = timedelta.max


def _recent(tickets: Iterable[Ticket], now: datetime, window: timedelta) -> List[Ticket]:
    """Tickets created inside the trailing recency window (done or not)."""
    horizon = now - window
    return [t for t in tickets if t.created_at >= horizon]


def _active_recent(tickets: Iterable[Ticket], now: datetime, window: timedelta) -> List[Ticket]:
    return [t for t in _recent(tickets, now, window) if t.active]


def is_near_appointment(ticket: Ticket, now: datetime, grace: timedelta = APPOINTMENT_GRACE) -> bool:
    """True if the appointment is at most `grace` overdue and at most `grace` ahead."""
    appt = ticket.scheduled_appointment_time
    if appt is None:
        return False
    return now - grace <= appt <= now + grace


def serving_rank(ticket: Ticket, now: datetime, grace: timedelta = APPOINTMENT_GRACE) -> tuple:
    """Sort key for serving order: (closeness or sentinel, position, id)."""
    if is_near_appointment(ticket, now, grace):
        closeness = abs(ticket.scheduled_appointment_time - now)
    else:
        closeness = NOT_NEAR_RANK
    return (closeness, ticket.position_in_line, ticket.id)


def waiting_line(
    tickets: Iterable[Ticket],
    now: datetime,
    window: timedelta = WINDOW,
    grace: timedelta = APPOINTMENT_GRACE,
) -> List[Ticket]:
    """Active, recent tickets in the order they will be called."""
    candidates = _active_recent(tickets, now, window)
    return sorted(candidates, key=lambda t: serving_rank(t, now, grace))


def next_to_serve(
    tickets: Iterable[Ticket],
    now: datetime,
    window: timedelta = WINDOW,
    grace: timedelta = APPOINTMENT_GRACE,
) -> Optional[Ticket]:
    """
    The single ticket to call next, or None if no active ticket is inside the window.

    Near appointments win by closeness |appointment - now|; everything else ranks behind
    them. Equal ranks (e.g. two walk-ins) fall through to ascending position in line.
    """
    candidates = _active_recent(tickets, now, window)
    if not candidates:
        return None
    return min(candidates, key=lambda t: serving_rank(t, now, grace))


def _slot_opened(ticket: Ticket, now: datetime, grace: timedelta) -> bool:
    appt = ticket.scheduled_appointment_time
    return appt is None or appt - grace <= now


def schedule_candidate(
    tickets: Iterable[Ticket],
    now: datetime,
    window: timedelta = WINDOW,
    grace: timedelta = APPOINTMENT_GRACE,
) -> Optional[Ticket]:
    """
    Who should currently be seated in a scheduling-aware view.

    Candidates are active, recent tickets that are walk-ins or whose appointment slot has
    opened. Ordered by appointment-or-creation time, most recent first, then position.
    """
    candidates = [t for t in _active_recent(tickets, now, window) if _slot_opened(t, now, grace)]
    if not candidates:
        return None
    # Two stable sorts: secondary key first.
    candidates.sort(key=lambda t: (t.position_in_line, t.id))
    candidates.sort(key=lambda t: t.scheduled_appointment_time or t.created_at, reverse=True)
    return candidates[0]


def latest_arrival(tickets: Iterable[Ticket], now: datetime, window: timedelta = WINDOW) -> Optional[Ticket]:
    """Most recently joined ticket inside the window. `done` is not filtered here."""
    recent = _recent(tickets, now, window)
    if not recent:
        return None
    return max(recent, key=lambda t: (t.position_in_line, t.id))


def next_position_in_line(tickets: Iterable[Ticket]) -> int:
    """1 + max position over the whole history (not windowed, not filtered); 1 when empty."""
    return 1 + max((t.position_in_line for t in tickets), default=0)
