from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from app.models.user import _utc_naive_now


class BookingStatus(str, Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class Booking(SQLModel, table=True):
    __tablename__ = "bookings"
    __table_args__ = (
        # at most one live booking per slot, enforced by the store as well
        sa.Index(
            "uq_bookings_active_slot",
            "slot_id",
            unique=True,
            postgresql_where=sa.text("status = 'confirmed'"),
            sqlite_where=sa.text("status = 'confirmed'"),
        ),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="users.id", index=True)
    slot_id: UUID = Field(foreign_key="time_slots.id", index=True)
    status: BookingStatus = Field(
        default=BookingStatus.CONFIRMED,
        sa_column=sa.Column(
            sa.Enum(BookingStatus, native_enum=False, length=16, values_callable=lambda e: [m.value for m in e]),
            nullable=False,
        ),
    )
    meeting_link: str | None = None
    meeting_id: str | None = None
    meeting_provider: str | None = None
    created_at: datetime = Field(default_factory=_utc_naive_now, sa_type=sa.DateTime(timezone=False))
    updated_at: datetime = Field(default_factory=_utc_naive_now, sa_type=sa.DateTime(timezone=False))
