from datetime import date, datetime, time
from enum import Enum
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from app.models.user import _utc_naive_now


class SlotStatus(str, Enum):
    CREATED = "created"
    BOOKED = "booked"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Legal TimeSlot.status moves. Completed and Cancelled are terminal.
SLOT_TRANSITIONS: dict[SlotStatus, frozenset[SlotStatus]] = {
    SlotStatus.CREATED: frozenset({SlotStatus.BOOKED, SlotStatus.CANCELLED}),
    SlotStatus.BOOKED: frozenset({SlotStatus.COMPLETED, SlotStatus.CREATED}),
    SlotStatus.COMPLETED: frozenset(),
    SlotStatus.CANCELLED: frozenset(),
}

# listener_id value for slots owned by the unassigned listener pool
UNASSIGNED = None


class TimeSlot(SQLModel, table=True):
    __tablename__ = "time_slots"
    __table_args__ = (
        sa.Index("ix_time_slots_listener_date", "listener_id", "date"),
        sa.Index("ix_time_slots_status_date_start", "status", "date", "start_time"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    date: date
    start_time: time
    end_time: time
    duration_minutes: int
    status: SlotStatus = Field(
        default=SlotStatus.CREATED,
        sa_column=sa.Column(
            sa.Enum(SlotStatus, native_enum=False, length=16, values_callable=lambda e: [m.value for m in e]),
            nullable=False,
        ),
    )
    # NULL means the slot belongs to the unassigned pool
    listener_id: UUID | None = Field(default=UNASSIGNED, foreign_key="users.id")
    price: float = 0.0
    meeting_link: str | None = None
    meeting_id: str | None = None
    meeting_provider: str | None = None
    # set by the booking claim that moved the slot to booked
    claim_token: UUID | None = None
    created_at: datetime = Field(default_factory=_utc_naive_now, sa_type=sa.DateTime(timezone=False))
    updated_at: datetime = Field(default_factory=_utc_naive_now, sa_type=sa.DateTime(timezone=False))

    @property
    def is_unassigned(self) -> bool:
        return self.listener_id is UNASSIGNED
