"""Error taxonomy for the visitor queue core. Mapped to HTTP statuses in main."""


class QueueError(Exception):
    """Base class for expected queue outcomes and faults."""

    status_code = 500
    default_detail = "Queue error"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class StoreUnavailable(QueueError):
    """Read or write against the record store failed. Never retried by the core."""

    status_code = 503
    default_detail = "Ticket store unavailable"


class TicketNotFound(QueueError):
    status_code = 404
    default_detail = "Ticket not found"


class NoEligibleTicket(QueueError):
    """A selection query found zero qualifying tickets."""

    status_code = 404
    default_detail = "No eligible ticket"


class InvalidTicket(QueueError):
    status_code = 422
    default_detail = "Invalid ticket"
