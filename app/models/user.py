from datetime import UTC, datetime
from enum import Enum
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlmodel import Field, SQLModel


def _utc_naive_now() -> datetime:
    """Naive UTC for TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(UTC).replace(tzinfo=None)


class UserRole(str, Enum):
    USER = "user"
    LISTENER = "listener"
    ADMIN = "admin"


class User(SQLModel, table=True):
    __tablename__ = "users"
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    username: str = Field(unique=True, index=True)
    email: str | None = None
    role: UserRole = Field(
        default=UserRole.USER,
        sa_column=sa.Column(
            sa.Enum(UserRole, native_enum=False, length=16, values_callable=lambda e: [m.value for m in e]),
            nullable=False,
            index=True,
        ),
    )
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utc_naive_now, sa_type=sa.DateTime(timezone=False))

    @property
    def is_listener(self) -> bool:
        return self.role == UserRole.LISTENER and self.is_active
