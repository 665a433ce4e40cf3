"""REST API for the visitor queue: ticket CRUD, next-to-serve selection, live SSE updates."""

import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse
from starlette.background import BackgroundTask

from visitor_queue.broadcaster import Broadcaster
from visitor_queue.config import CORS_ORIGINS, LOG_LEVEL, SSE_PING_SECONDS, SUBSCRIBER_BUFFER_SIZE
from visitor_queue.errors import QueueError
from visitor_queue.models import EventKind, NextPosition, Ticket, TicketCreate, TicketUpdate
from visitor_queue.service import TicketService
from visitor_queue.store import TicketStore, create_store

logger = logging.getLogger(__name__)


def get_service(request: Request) -> TicketService:
    return request.app.state.service


def create_app(store: Optional[TicketStore] = None) -> FastAPI:
    """Build the app. The store, broadcaster and service live for the app's lifespan."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
        ticket_store = store if store is not None else create_store()
        broadcaster = Broadcaster(max_buffer_size=SUBSCRIBER_BUFFER_SIZE)
        app.state.service = TicketService(ticket_store, broadcaster)
        logger.info("Visitor queue started (store=%s)", ticket_store.name)
        try:
            yield
        finally:
            broadcaster.close()
            logger.info("Visitor queue stopped")

    app = FastAPI(
        title="Visitor Queue",
        description="Walk-in and appointment queue with live staff display updates.",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["Content-Type", "Authorization", "X-Session-Id"],
    )

    @app.exception_handler(QueueError)
    async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    # --- Tickets ---

    @app.post("/tickets", status_code=201, response_model=Ticket)
    def create_ticket(
        payload: TicketCreate,
        service: TicketService = Depends(get_service),
        x_session_id: Optional[str] = Header(None),
    ) -> Ticket:
        """Add a visitor to the back of the line (position assigned by the server)."""
        return service.create(payload, session_id=x_session_id)

    @app.get("/tickets", response_model=list[Ticket])
    def list_tickets(service: TicketService = Depends(get_service)) -> list[Ticket]:
        """All tickets, including done ones."""
        return service.list_all()

    @app.get("/tickets/{ticket_id}", response_model=Ticket)
    def get_ticket(ticket_id: int, service: TicketService = Depends(get_service)) -> Ticket:
        return service.get(ticket_id)

    @app.put("/tickets/{ticket_id}", response_model=Ticket)
    def update_ticket(
        ticket_id: int,
        payload: TicketUpdate,
        service: TicketService = Depends(get_service),
        x_session_id: Optional[str] = Header(None),
    ) -> Ticket:
        """Edit fields or mark done. Only fields present in the body change."""
        return service.update(ticket_id, payload, session_id=x_session_id)

    @app.delete("/tickets/{ticket_id}")
    def delete_ticket(
        ticket_id: int,
        service: TicketService = Depends(get_service),
        x_session_id: Optional[str] = Header(None),
    ) -> dict:
        service.delete(ticket_id, session_id=x_session_id)
        return {"message": "Ticket deleted successfully."}

    # --- Selection ---

    @app.get("/queue", response_model=list[Ticket])
    def waiting_line(service: TicketService = Depends(get_service)) -> list[Ticket]:
        """Active tickets from the last 12 hours in the order they will be called."""
        return service.waiting_line()

    @app.get("/queue/next", response_model=Ticket)
    def next_to_serve(service: TicketService = Depends(get_service)) -> Ticket:
        """Who to call next: near appointments first (closest), then walk-ins by position."""
        return service.next_to_serve()

    @app.get("/queue/schedule-candidate", response_model=Ticket)
    def schedule_candidate(service: TicketService = Depends(get_service)) -> Ticket:
        return service.schedule_candidate()

    @app.get("/queue/latest", response_model=Ticket)
    def latest_arrival(service: TicketService = Depends(get_service)) -> Ticket:
        """Most recently joined ticket (done or not)."""
        return service.latest_arrival()

    @app.get("/queue/next-position", response_model=NextPosition)
    def next_position(service: TicketService = Depends(get_service)) -> NextPosition:
        return NextPosition(position_in_line=service.next_position_in_line())

    @app.post("/queue/refresh", status_code=202)
    def refresh(
        service: TicketService = Depends(get_service),
        x_session_id: Optional[str] = Header(None),
    ) -> dict:
        """Ask every refresh listener to reload."""
        return {"delivered": service.ping(session_id=x_session_id)}

    # --- Live updates ---

    @app.get("/events")
    async def stream_events(
        kinds: list[EventKind] = Query(default=[EventKind.TICKET]),
        service: TicketService = Depends(get_service),
    ) -> EventSourceResponse:
        """
        Server-sent events. The first message is a `snapshot` of every ticket; after that
        one message per published event, named by its kind (`ticket` or `refresh`).
        """
        subscription, snapshot = await service.subscribe(kinds)

        async def event_generator():
            try:
                yield {
                    "event": "snapshot",
                    "data": json.dumps([t.model_dump(mode="json", by_alias=True) for t in snapshot]),
                }
                async for event in subscription:
                    yield {
                        "event": event.kind.value,
                        "id": str(event.seq),
                        "data": event.model_dump_json(by_alias=True),
                    }
            finally:
                # Client disconnect cancels the generator; release the channel either way.
                service.unsubscribe(subscription)

        # The background task also releases the channel when the generator never starts.
        return EventSourceResponse(
            event_generator(),
            ping=SSE_PING_SECONDS,
            background=BackgroundTask(service.unsubscribe, subscription),
        )

    @app.get("/health")
    def health(service: TicketService = Depends(get_service)) -> dict:
        return {
            "status": "ok",
            "store": service.store.name,
            "subscribers": service.broadcaster.subscriber_count,
        }

    return app


app = create_app()
