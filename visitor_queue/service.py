"""
Ticket service: composes the record store, the queue selector and the broadcaster.

Mutations go store write -> publish; selections go store read -> selector. Position
assignment plus insert on create is a single atomic store call (insert_next).
"""

import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple, Union

from anyio import to_thread
from pydantic import ValidationError

from visitor_queue import selector
from visitor_queue.broadcaster import Broadcaster, Subscription
from visitor_queue.errors import InvalidTicket, NoEligibleTicket, TicketNotFound
from visitor_queue.models import (
    EventKind,
    QueueEvent,
    Ticket,
    TicketAction,
    TicketCreate,
    TicketUpdate,
    utcnow,
)
from visitor_queue.store import TicketStore

logger = logging.getLogger(__name__)


def _validation_message(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts) or "Invalid ticket"


class TicketService:
    def __init__(
        self,
        store: TicketStore,
        broadcaster: Broadcaster,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self._clock = clock

    # -------------------- mutations --------------------

    def create(self, payload: Union[TicketCreate, dict], session_id: Optional[str] = None) -> Ticket:
        """Insert a walk-in/appointment ticket at the back of the line and announce it."""
        if not isinstance(payload, TicketCreate):
            try:
                payload = TicketCreate.model_validate(payload)
            except ValidationError as e:
                raise InvalidTicket(_validation_message(e)) from e
        created_at = self._clock().replace(second=0, microsecond=0)
        ticket = self.store.insert_next(payload, created_at=created_at)
        logger.info("Ticket %d created at position %d", ticket.id, ticket.position_in_line)
        self.broadcaster.publish(QueueEvent.for_ticket(TicketAction.CREATED, ticket, session_id))
        return ticket

    def update(self, ticket_id: int, changes: TicketUpdate, session_id: Optional[str] = None) -> Ticket:
        """Apply a partial update, re-validate the merged ticket, write, announce."""
        current = self.get(ticket_id)
        fields = changes.changes()
        merged = current.model_dump()
        merged.update(fields)
        try:
            updated = Ticket.model_validate(merged)
        except ValidationError as e:
            raise InvalidTicket(_validation_message(e)) from e
        write = {name: getattr(updated, name) for name in fields}
        if self.store.update(ticket_id, write) == 0:
            raise TicketNotFound()
        logger.info("Ticket %d updated (%s)", ticket_id, ", ".join(sorted(fields)) or "no fields")
        self.broadcaster.publish(QueueEvent.for_ticket(TicketAction.UPDATED, updated, session_id))
        return updated

    def delete(self, ticket_id: int, session_id: Optional[str] = None) -> Ticket:
        """Remove a ticket; subscribers receive its last known field set."""
        current = self.get(ticket_id)
        if self.store.delete(ticket_id) == 0:
            raise TicketNotFound()
        logger.info("Ticket %d deleted", ticket_id)
        self.broadcaster.publish(QueueEvent.for_ticket(TicketAction.DELETED, current, session_id))
        return current

    def ping(self, session_id: Optional[str] = None) -> int:
        """Send a refresh ping to refresh-kind subscribers."""
        return self.broadcaster.publish(QueueEvent.refresh(session_id))

    # -------------------- reads --------------------

    def get(self, ticket_id: int) -> Ticket:
        ticket = self.store.get(ticket_id)
        if ticket is None:
            raise TicketNotFound()
        return ticket

    def list_all(self) -> List[Ticket]:
        return sorted(self.store.list_all(), key=lambda t: t.id)

    def next_to_serve(self) -> Ticket:
        return self._select(selector.next_to_serve)

    def schedule_candidate(self) -> Ticket:
        return self._select(selector.schedule_candidate)

    def latest_arrival(self) -> Ticket:
        return self._select(selector.latest_arrival)

    def waiting_line(self) -> List[Ticket]:
        return selector.waiting_line(self.store.list_all(), self._clock())

    def next_position_in_line(self) -> int:
        return selector.next_position_in_line(self.store.list_all())

    def _select(self, pick: Callable[[List[Ticket], datetime], Optional[Ticket]]) -> Ticket:
        # A store failure propagates; never rank a stale or partial list.
        ticket = pick(self.store.list_all(), self._clock())
        if ticket is None:
            raise NoEligibleTicket()
        return ticket

    # -------------------- live updates --------------------

    async def subscribe(
        self, kinds: Iterable[EventKind] = (EventKind.TICKET,)
    ) -> Tuple[Subscription, List[Ticket]]:
        """Register for live events and return (channel, full ticket snapshot)."""

        async def snapshot() -> List[Ticket]:
            return await to_thread.run_sync(self.list_all)

        return await self.broadcaster.subscribe(snapshot, kinds)

    def unsubscribe(self, subscription: Subscription) -> None:
        self.broadcaster.unsubscribe(subscription.id)
