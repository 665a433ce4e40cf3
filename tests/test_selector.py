"""
Unit tests for next-to-serve selection (no server required).
Run: pytest tests/test_selector.py -v
"""

from datetime import datetime, timedelta, timezone

from visitor_queue.models import Ticket
from visitor_queue.selector import (
    latest_arrival,
    next_position_in_line,
    next_to_serve,
    schedule_candidate,
    waiting_line,
)

NOW = datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc)


def _ticket(ticket_id, position, created_ago=timedelta(hours=1), appointment_in=None, done=False):
    appt = NOW + appointment_in if appointment_in is not None else None
    return Ticket(
        id=ticket_id,
        first_name=f"First{ticket_id}",
        last_name=f"Last{ticket_id}",
        schedule_appointment=appt is not None,
        scheduled_appointment_time=appt,
        created_at=NOW - created_ago,
        position_in_line=position,
        done=done,
    )


class TestNextPositionInLine:
    def test_empty_set_starts_at_one(self):
        assert next_position_in_line([]) == 1

    def test_counts_done_and_old_tickets(self):
        tickets = [
            _ticket(1, 3, done=True),
            _ticket(2, 7, created_ago=timedelta(hours=30)),
            _ticket(3, 5),
        ]
        assert next_position_in_line(tickets) == 8


class TestNextToServe:
    def test_empty_returns_none(self):
        assert next_to_serve([], NOW) is None

    def test_walk_ins_by_position(self):
        tickets = [_ticket(1, 4), _ticket(2, 2), _ticket(3, 9)]
        assert next_to_serve(tickets, NOW).id == 2

    def test_done_tickets_skipped(self):
        tickets = [_ticket(1, 1, done=True), _ticket(2, 2)]
        assert next_to_serve(tickets, NOW).id == 2

    def test_appointment_five_minutes_away_jumps_line(self):
        a = _ticket(1, 1)
        b = _ticket(2, 2, appointment_in=timedelta(minutes=5))
        assert next_to_serve([a, b], NOW).id == 2

    def test_appointment_two_hours_away_waits(self):
        a = _ticket(1, 1)
        b = _ticket(2, 2, appointment_in=timedelta(hours=2))
        assert next_to_serve([a, b], NOW).id == 1

    def test_overdue_appointment_within_grace_wins_regardless_of_position(self):
        tickets = [_ticket(1, 1), _ticket(2, 2), _ticket(3, 50, appointment_in=timedelta(minutes=-10))]
        assert next_to_serve(tickets, NOW).id == 3

    def test_grace_boundary_is_inclusive(self):
        tickets = [_ticket(1, 1), _ticket(2, 2, appointment_in=timedelta(minutes=-30))]
        assert next_to_serve(tickets, NOW).id == 2

    def test_appointment_overdue_beyond_grace_falls_back_to_position(self):
        tickets = [_ticket(1, 1), _ticket(2, 2, appointment_in=timedelta(minutes=-45))]
        assert next_to_serve(tickets, NOW).id == 1

    def test_closest_appointment_wins(self):
        tickets = [
            _ticket(1, 1, appointment_in=timedelta(minutes=20)),
            _ticket(2, 2, appointment_in=timedelta(minutes=-5)),
        ]
        assert next_to_serve(tickets, NOW).id == 2

    def test_equal_closeness_breaks_by_position(self):
        tickets = [
            _ticket(1, 6, appointment_in=timedelta(minutes=10)),
            _ticket(2, 3, appointment_in=timedelta(minutes=-10)),
        ]
        assert next_to_serve(tickets, NOW).id == 2

    def test_tickets_older_than_window_excluded_even_if_active(self):
        old = _ticket(1, 1, created_ago=timedelta(hours=13))
        fresh = _ticket(2, 2)
        assert next_to_serve([old, fresh], NOW).id == 2
        assert next_to_serve([old], NOW) is None

    def test_old_near_appointment_excluded(self):
        old = _ticket(1, 1, created_ago=timedelta(hours=12, minutes=1), appointment_in=timedelta(minutes=1))
        fresh = _ticket(2, 2)
        assert next_to_serve([old, fresh], NOW).id == 2


class TestWaitingLine:
    def test_orders_like_next_to_serve(self):
        tickets = [
            _ticket(1, 1),
            _ticket(2, 2, appointment_in=timedelta(minutes=15)),
            _ticket(3, 3, done=True),
            _ticket(4, 4, appointment_in=timedelta(minutes=2)),
            _ticket(5, 5),
        ]
        assert [t.id for t in waiting_line(tickets, NOW)] == [4, 2, 1, 5]


class TestScheduleCandidate:
    def test_empty_returns_none(self):
        assert schedule_candidate([], NOW) is None

    def test_most_recent_walk_in_first(self):
        tickets = [
            _ticket(1, 1, created_ago=timedelta(hours=2)),
            _ticket(2, 2, created_ago=timedelta(hours=1)),
        ]
        assert schedule_candidate(tickets, NOW).id == 2

    def test_unopened_appointment_excluded(self):
        tickets = [
            _ticket(1, 1, created_ago=timedelta(hours=2)),
            _ticket(2, 2, created_ago=timedelta(minutes=5), appointment_in=timedelta(hours=2)),
        ]
        assert schedule_candidate(tickets, NOW).id == 1

    def test_opened_appointment_ordered_by_appointment_time(self):
        tickets = [
            _ticket(1, 1, created_ago=timedelta(minutes=30)),
            _ticket(2, 2, created_ago=timedelta(hours=3), appointment_in=timedelta(minutes=10)),
        ]
        assert schedule_candidate(tickets, NOW).id == 2

    def test_same_timestamp_breaks_by_position(self):
        tickets = [_ticket(1, 8), _ticket(2, 3)]
        assert schedule_candidate(tickets, NOW).id == 2

    def test_excludes_done_and_old(self):
        tickets = [
            _ticket(1, 1, done=True),
            _ticket(2, 2, created_ago=timedelta(hours=13)),
        ]
        assert schedule_candidate(tickets, NOW) is None


class TestLatestArrival:
    def test_highest_position_ignoring_done(self):
        tickets = [_ticket(1, 1), _ticket(2, 2, done=True)]
        assert latest_arrival(tickets, NOW).id == 2

    def test_after_deleting_first_ticket(self):
        remaining = [_ticket(2, 2), _ticket(3, 3, done=True)]
        assert latest_arrival(remaining, NOW).id == 3

    def test_window_applies(self):
        tickets = [_ticket(1, 1), _ticket(2, 9, created_ago=timedelta(hours=20))]
        assert latest_arrival(tickets, NOW).id == 1
        assert latest_arrival(tickets[1:], NOW) is None
