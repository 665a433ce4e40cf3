"""Data models for the visitor queue (tickets and live update events)."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Naive timestamps from clients are UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TicketFields(_CamelModel):
    """Fields a visitor or staff member may supply for a ticket."""

    first_name: str = Field(..., min_length=1, description="Visitor first name")
    last_name: str = Field(..., min_length=1, description="Visitor last name")
    schedule_appointment: bool = Field(default=False, description="Visitor has a booked time")
    first_time_visitor: bool = Field(default=False, description="Informational only")
    additional_notes: Optional[str] = Field(None, description="Free text")
    scheduled_appointment_time: Optional[datetime] = Field(
        None,
        description="Booked time (UTC); only set when schedule_appointment is true",
    )

    @field_validator("first_name", "last_name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("scheduled_appointment_time")
    @classmethod
    def appointment_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @model_validator(mode="after")
    def appointment_needs_flag(self):
        if self.scheduled_appointment_time is not None and not self.schedule_appointment:
            raise ValueError("scheduledAppointmentTime requires scheduleAppointment=true")
        return self


class TicketCreate(TicketFields):
    """Payload for POST /tickets. Position and creation time are assigned by the service."""


class TicketUpdate(_CamelModel):
    """Partial update: only fields present in the request are applied."""

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    schedule_appointment: Optional[bool] = None
    first_time_visitor: Optional[bool] = None
    additional_notes: Optional[str] = None
    scheduled_appointment_time: Optional[datetime] = None
    position_in_line: Optional[int] = Field(None, ge=0)
    done: Optional[bool] = None

    def changes(self) -> dict:
        """Field-name -> value for every field the client actually sent."""
        return self.model_dump(exclude_unset=True)


class Ticket(TicketFields):
    """A stored ticket: the unit of queue membership."""

    id: int = Field(..., description="Store-assigned identifier")
    created_at: datetime = Field(..., description="Insertion time (UTC), minute precision")
    position_in_line: int = Field(..., ge=0, description="Walk-in order; strictly increasing")
    done: bool = Field(default=False, description="True once served; kept but not selected")

    @field_validator("created_at")
    @classmethod
    def created_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @property
    def active(self) -> bool:
        return not self.done


class EventKind(str, Enum):
    """Independent streams a subscriber may listen to."""

    TICKET = "ticket"
    REFRESH = "refresh"


class TicketAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class QueueEvent(_CamelModel):
    """Normalized change record pushed to live subscribers."""

    seq: int = Field(default=0, description="Global publish order, assigned by the broadcaster")
    kind: EventKind
    action: Optional[TicketAction] = None
    ticket: Optional[Ticket] = Field(None, description="Full current field set of the mutated ticket")
    session_id: Optional[str] = Field(None, description="Originating session tag (echo suppression)")
    emitted_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def for_ticket(cls, action: TicketAction, ticket: Ticket, session_id: Optional[str] = None) -> "QueueEvent":
        return cls(kind=EventKind.TICKET, action=action, ticket=ticket, session_id=session_id)

    @classmethod
    def refresh(cls, session_id: Optional[str] = None) -> "QueueEvent":
        return cls(kind=EventKind.REFRESH, session_id=session_id)


class NextPosition(_CamelModel):
    position_in_line: int
