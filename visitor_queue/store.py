"""
Ticket record store: keyed CRUD over ticket rows plus the max-position aggregate.

No queue logic lives here. Two backends:
- InMemoryTicketStore: dict guarded by a lock (default; used by tests).
- RedisTicketStore: ticket JSON under {prefix}ticket:{id}, ids and positions in sorted sets.

Both provide insert_next(), which assigns the next walk-in position and inserts in one
atomic step, so several processes sharing a Redis store never hand out the same position.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from visitor_queue.config import REDIS_KEY_PREFIX, REDIS_URL, STORE_BACKEND
from visitor_queue.errors import StoreUnavailable
from visitor_queue.models import Ticket, TicketFields

logger = logging.getLogger(__name__)


class TicketStore(Protocol):
    """The narrow interface the queue core needs from a record store."""

    name: str

    def insert(self, fields: TicketFields, *, created_at: datetime, position_in_line: int) -> int: ...

    def insert_next(self, fields: TicketFields, *, created_at: datetime) -> Ticket: ...

    def get(self, ticket_id: int) -> Optional[Ticket]: ...

    def list_all(self) -> List[Ticket]: ...

    def update(self, ticket_id: int, fields: Dict[str, Any]) -> int: ...

    def delete(self, ticket_id: int) -> int: ...

    def max_position_in_line(self) -> int: ...


class InMemoryTicketStore:
    """Process-local store. Rows are copied in and out so callers never share state."""

    name = "memory"

    def __init__(self) -> None:
        self._rows: Dict[int, Ticket] = {}
        self._last_id = 0
        self._lock = threading.Lock()

    def _add(self, fields: TicketFields, created_at: datetime, position_in_line: int) -> Ticket:
        # Caller holds self._lock.
        self._last_id += 1
        ticket = Ticket(
            **fields.model_dump(),
            id=self._last_id,
            created_at=created_at,
            position_in_line=position_in_line,
        )
        self._rows[ticket.id] = ticket
        return ticket.model_copy()

    def _top_position(self) -> int:
        # Caller holds self._lock.
        return max((row.position_in_line for row in self._rows.values()), default=0)

    def insert(self, fields: TicketFields, *, created_at: datetime, position_in_line: int) -> int:
        with self._lock:
            return self._add(fields, created_at, position_in_line).id

    def insert_next(self, fields: TicketFields, *, created_at: datetime) -> Ticket:
        with self._lock:
            return self._add(fields, created_at, self._top_position() + 1)

    def get(self, ticket_id: int) -> Optional[Ticket]:
        with self._lock:
            row = self._rows.get(ticket_id)
            return row.model_copy() if row is not None else None

    def list_all(self) -> List[Ticket]:
        with self._lock:
            return [row.model_copy() for row in self._rows.values()]

    def update(self, ticket_id: int, fields: Dict[str, Any]) -> int:
        with self._lock:
            row = self._rows.get(ticket_id)
            if row is None:
                return 0
            self._rows[ticket_id] = row.model_copy(update=fields)
            return 1

    def delete(self, ticket_id: int) -> int:
        with self._lock:
            return 1 if self._rows.pop(ticket_id, None) is not None else 0

    def max_position_in_line(self) -> int:
        with self._lock:
            return self._top_position()

    def clear(self) -> None:
        """Drop every row and reset ids (e.g. for tests)."""
        with self._lock:
            self._rows.clear()
            self._last_id = 0


class RedisTicketStore:
    """
    Redis-backed store. Every redis error surfaces as StoreUnavailable.

    Read-modify-write operations run as optimistic transactions (WATCH/MULTI/EXEC via
    redis-py's transaction helper, retried on WatchError):
    - insert_next watches the positions set, so a concurrent insert forces a re-read
      of the top position;
    - update watches the ticket key, so a concurrent delete is never undone.
    """

    name = "redis"

    def __init__(self, url: str = REDIS_URL, prefix: str = REDIS_KEY_PREFIX, client=None) -> None:
        import redis

        self._errors = (redis.RedisError,)
        self._r = client if client is not None else redis.from_url(url, decode_responses=True)
        self._prefix = prefix
        self._next_id_key = f"{prefix}ticket:next_id"
        self._ids_key = f"{prefix}tickets:ids"
        self._positions_key = f"{prefix}tickets:positions"

    def _ticket_key(self, ticket_id: int) -> str:
        return f"{self._prefix}ticket:{ticket_id}"

    def _call(self, what: str, fn, *args):
        try:
            return fn(*args)
        except self._errors as e:
            logger.warning("Redis %s failed: %s", what, e)
            raise StoreUnavailable(f"Ticket store unavailable ({what})") from e

    def _queue_write(self, pipe, ticket: Ticket) -> None:
        pipe.set(self._ticket_key(ticket.id), ticket.model_dump_json())
        pipe.zadd(self._ids_key, {str(ticket.id): ticket.id})
        pipe.zadd(self._positions_key, {str(ticket.id): ticket.position_in_line})

    def _top_position(self, client) -> int:
        top = client.zrange(self._positions_key, -1, -1, withscores=True)
        if not top:
            return 0
        _member, score = top[0]
        return int(score)

    def _load(self, client, ticket_id: int) -> Optional[Ticket]:
        raw = client.get(self._ticket_key(ticket_id))
        if raw is None:
            return None
        return Ticket.model_validate_json(raw)

    def insert(self, fields: TicketFields, *, created_at: datetime, position_in_line: int) -> int:
        def _insert() -> int:
            ticket_id = int(self._r.incr(self._next_id_key))
            ticket = Ticket(
                **fields.model_dump(),
                id=ticket_id,
                created_at=created_at,
                position_in_line=position_in_line,
            )
            pipe = self._r.pipeline(transaction=True)
            self._queue_write(pipe, ticket)
            pipe.execute()
            return ticket_id

        return self._call("insert", _insert)

    def insert_next(self, fields: TicketFields, *, created_at: datetime) -> Ticket:
        def _insert_next() -> Ticket:
            # The id is taken once; only the position is re-read on a retry.
            ticket_id = int(self._r.incr(self._next_id_key))

            def assign(pipe) -> Ticket:
                ticket = Ticket(
                    **fields.model_dump(),
                    id=ticket_id,
                    created_at=created_at,
                    position_in_line=self._top_position(pipe) + 1,
                )
                pipe.multi()
                self._queue_write(pipe, ticket)
                return ticket

            return self._r.transaction(assign, self._positions_key, value_from_callable=True)

        return self._call("insert", _insert_next)

    def get(self, ticket_id: int) -> Optional[Ticket]:
        return self._call("get", self._load, self._r, ticket_id)

    def list_all(self) -> List[Ticket]:
        def _list() -> List[Ticket]:
            ids = self._r.zrange(self._ids_key, 0, -1)
            if not ids:
                return []
            raws = self._r.mget([self._ticket_key(int(i)) for i in ids])
            return [Ticket.model_validate_json(raw) for raw in raws if raw]

        return self._call("list", _list)

    def update(self, ticket_id: int, fields: Dict[str, Any]) -> int:
        def apply(pipe) -> int:
            current = self._load(pipe, ticket_id)
            if current is None:
                return 0
            pipe.multi()
            self._queue_write(pipe, current.model_copy(update=fields))
            return 1

        return self._call(
            "update",
            lambda: self._r.transaction(apply, self._ticket_key(ticket_id), value_from_callable=True),
        )

    def delete(self, ticket_id: int) -> int:
        def _delete() -> int:
            pipe = self._r.pipeline(transaction=True)
            pipe.delete(self._ticket_key(ticket_id))
            pipe.zrem(self._ids_key, str(ticket_id))
            pipe.zrem(self._positions_key, str(ticket_id))
            deleted, _, _ = pipe.execute()
            return int(deleted)

        return self._call("delete", _delete)

    def max_position_in_line(self) -> int:
        return self._call("max position", self._top_position, self._r)

    def ping(self) -> bool:
        return bool(self._call("ping", self._r.ping))

    def clear(self) -> None:
        """Delete every key under this store's prefix (e.g. for tests)."""
        def _clear() -> None:
            keys = list(self._r.scan_iter(match=f"{self._prefix}*"))
            if keys:
                self._r.delete(*keys)

        self._call("clear", _clear)


def create_store(backend: str = STORE_BACKEND) -> TicketStore:
    """Build the configured store backend."""
    if backend == "redis":
        return RedisTicketStore()
    if backend == "memory":
        return InMemoryTicketStore()
    raise ValueError(f"Unknown STORE_BACKEND: {backend!r}")
