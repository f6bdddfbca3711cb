import logging
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.models.booking import Booking, BookingStatus
from app.models.time_slot import SLOT_TRANSITIONS, UNASSIGNED, SlotStatus, TimeSlot
from app.models.user import User, _utc_naive_now
from app.services.query_runner import QueryRunner

logger = logging.getLogger(__name__)

SLOT_TAG = "slot"
BOOKING_TAG = "booking"

_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)(?::([0-5]\d))?$")
# Postgres exclusion_violation, raised by the no-overlap constraint
_EXCLUSION_VIOLATION = "23P01"


@dataclass(frozen=True)
class SlotDraft:
    """A validated, not yet persisted slot."""

    date: date
    start_time: time
    end_time: time
    duration_minutes: int
    listener_id: UUID | None
    price: float

    def overlaps(self, other: "SlotDraft") -> bool:
        return (
            self.listener_id == other.listener_id
            and self.date == other.date
            and self.start_time < other.end_time
            and self.end_time > other.start_time
        )


@dataclass(frozen=True)
class SlotPage:
    slots: list[TimeSlot]
    total: int
    page: int
    limit: int
    has_more: bool


def parse_slot_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            pass
    raise ValidationError(f"Date must be in ISO format (YYYY-MM-DD), got {value!r}", code="INVALID_DATE")


def parse_slot_time(value: Any, field: str = "time") -> time:
    if isinstance(value, time):
        return value.replace(microsecond=0, tzinfo=None)
    if isinstance(value, str):
        match = _TIME_RE.match(value.strip())
        if match:
            hour, minute, second = match.groups()
            return time(int(hour), int(minute), int(second or 0))
    raise ValidationError(f"{field} must be in HH:MM format, got {value!r}", code="INVALID_TIME")


def parse_uuid(value: Any, code: str = "INVALID_ID") -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid identifier {value!r}", code=code) from None


def duration_minutes(start: time, end: time) -> int:
    return (end.hour * 60 + end.minute) - (start.hour * 60 + start.minute)


def validate_slot(
    slot_date: Any,
    start_time: Any,
    end_time: Any,
    listener_id: Any = UNASSIGNED,
    price: Any = None,
    default_price: float = 50.0,
) -> SlotDraft:
    d = parse_slot_date(slot_date)
    start = parse_slot_time(start_time, "startTime")
    end = parse_slot_time(end_time, "endTime")
    if start >= end:
        raise ValidationError("End time must be after start time", code="INVALID_TIME_RANGE")
    minutes = duration_minutes(start, end)
    if minutes <= 0:
        # sub-minute windows such as 09:00:00-09:00:30
        raise ValidationError("Slot must last at least one minute", code="INVALID_TIME_RANGE")
    if price is None:
        price = default_price
    if isinstance(price, bool) or not isinstance(price, (int, float)) or not math.isfinite(price) or price < 0:
        raise ValidationError("Price must be a finite number, zero or greater", code="INVALID_PRICE")
    owner = UNASSIGNED if listener_id is None else parse_uuid(listener_id, code="INVALID_LISTENER_ID")
    return SlotDraft(
        date=d,
        start_time=start,
        end_time=end,
        duration_minutes=minutes,
        listener_id=owner,
        price=float(price),
    )


def check_transition(current: SlotStatus, new: SlotStatus) -> None:
    if new not in SLOT_TRANSITIONS[SlotStatus(current)]:
        raise ValidationError(
            f"Cannot move slot from {SlotStatus(current).value} to {new.value}",
            code="ILLEGAL_TRANSITION",
            details={"from": SlotStatus(current).value, "to": new.value},
        )


def coerce_status(value: Any) -> SlotStatus:
    try:
        return SlotStatus(value)
    except ValueError:
        valid = ", ".join(s.value for s in SlotStatus)
        raise ValidationError(f"Invalid status. Must be one of: {valid}", code="INVALID_STATUS") from None


# -- statements shared with the booking orchestrator --------------------------


def _owner_clause(listener_id: UUID | None):
    if listener_id is UNASSIGNED:
        return TimeSlot.listener_id.is_(None)
    return TimeSlot.listener_id == listener_id


async def lock_listener_day(session: AsyncSession, listener_id: UUID | None, d: date) -> None:
    """Serialize overlap-checked writes for one (listener, date) on PostgreSQL.

    The lock is transaction scoped and released on commit/rollback.
    """
    if session.get_bind().dialect.name != "postgresql":
        return
    key = f"slots:{listener_id or 'unassigned'}:{d.isoformat()}"
    await session.execute(text("SELECT pg_advisory_xact_lock(hashtext(:key))"), {"key": key})


async def find_overlapping_slots(
    session: AsyncSession,
    listener_id: UUID | None,
    d: date,
    start: time,
    end: time,
    exclude_id: UUID | None = None,
) -> list[TimeSlot]:
    q = select(TimeSlot).where(
        _owner_clause(listener_id),
        TimeSlot.date == d,
        TimeSlot.status != SlotStatus.CANCELLED,
        TimeSlot.start_time < end,
        TimeSlot.end_time > start,
    )
    if exclude_id is not None:
        q = q.where(TimeSlot.id != exclude_id)
    result = await session.execute(q)
    return list(result.scalars().all())


async def set_slot_status_if(
    session: AsyncSession,
    slot_id: UUID,
    expected: SlotStatus,
    new: SlotStatus,
    **values: Any,
) -> int:
    """Compare-and-swap on status. Returns affected row count (0 = lost the race)."""
    result = await session.execute(
        update(TimeSlot)
        .where(TimeSlot.id == slot_id, TimeSlot.status == expected)
        .values(status=new, updated_at=_utc_naive_now(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def cancel_active_booking(session: AsyncSession, slot_id: UUID) -> int:
    result = await session.execute(
        update(Booking)
        .where(Booking.slot_id == slot_id, Booking.status == BookingStatus.CONFIRMED)
        .values(status=BookingStatus.CANCELLED, updated_at=_utc_naive_now())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def load_slot(session: AsyncSession, slot_id: UUID) -> TimeSlot:
    slot = await session.get(TimeSlot, slot_id, populate_existing=True)
    if slot is None:
        raise NotFoundError("Slot not found", code="SLOT_NOT_FOUND", details={"slotId": str(slot_id)})
    return slot


def _is_exclusion_violation(exc: IntegrityError) -> bool:
    orig = exc.orig
    return _EXCLUSION_VIOLATION in (getattr(orig, "sqlstate", None), getattr(orig, "pgcode", None))


class SlotInventory:
    """Time-slot inventory: creation with overlap checks, listing, status moves."""

    def __init__(
        self,
        runner: QueryRunner,
        *,
        available_ttl: float = 300,
        default_price: float = 50.0,
        page_limit_default: int = 50,
        page_limit_max: int = 200,
    ):
        self.runner = runner
        self.available_ttl = available_ttl
        self.default_price = default_price
        self.page_limit_default = page_limit_default
        self.page_limit_max = page_limit_max

    # -- creation ----------------------------------------------------------

    async def create_slot(
        self,
        slot_date: Any,
        start_time: Any,
        end_time: Any,
        listener_id: Any = UNASSIGNED,
        price: Any = None,
    ) -> TimeSlot:
        draft = validate_slot(slot_date, start_time, end_time, listener_id, price, self.default_price)
        slots = await self.runner.write(
            "slots.create",
            lambda session: self._insert_drafts(session, [draft]),
            invalidates=(SLOT_TAG,),
        )
        slot = slots[0]
        logger.info(
            "Slot created: id=%s date=%s %s-%s listener=%s",
            slot.id, slot.date, slot.start_time, slot.end_time, slot.listener_id or "unassigned",
        )
        return slot

    async def bulk_create(self, items: Sequence[Mapping[str, Any]]) -> list[TimeSlot]:
        """All-or-nothing: one invalid or overlapping member rejects the batch."""
        if not items:
            raise ValidationError("Slots data must be a non-empty array", code="EMPTY_BATCH")
        drafts: list[SlotDraft] = []
        for index, item in enumerate(items):
            try:
                draft = validate_slot(
                    item.get("date"),
                    item.get("start_time"),
                    item.get("end_time"),
                    item.get("listener_id"),
                    item.get("price"),
                    self.default_price,
                )
            except ValidationError as e:
                raise ValidationError(
                    f"Slot #{index} is invalid: {e.message}",
                    code=e.code,
                    details={"index": index},
                ) from e
            for earlier_index, earlier in enumerate(drafts):
                if draft.overlaps(earlier):
                    raise ConflictError(
                        f"Slot #{index} overlaps slot #{earlier_index} in the same batch",
                        code="SLOT_OVERLAP",
                        details={"index": index, "conflictsWith": earlier_index},
                    )
            drafts.append(draft)

        slots = await self.runner.write(
            "slots.bulk_create",
            lambda session: self._insert_drafts(session, drafts),
            invalidates=(SLOT_TAG,),
        )
        logger.info("Created %d slots in bulk", len(slots))
        return slots

    async def _insert_drafts(self, session: AsyncSession, drafts: list[SlotDraft]) -> list[TimeSlot]:
        owners_days = sorted({(str(d.listener_id or ""), d.date) for d in drafts})
        for owner, d in owners_days:
            await lock_listener_day(session, UUID(owner) if owner else UNASSIGNED, d)

        for listener_id in {d.listener_id for d in drafts if d.listener_id is not UNASSIGNED}:
            listener = await session.get(User, listener_id)
            if listener is None or not listener.is_listener:
                raise NotFoundError(
                    "Listener not found",
                    code="LISTENER_NOT_FOUND",
                    details={"listenerId": str(listener_id)},
                )

        slots: list[TimeSlot] = []
        for index, draft in enumerate(drafts):
            existing = await find_overlapping_slots(
                session, draft.listener_id, draft.date, draft.start_time, draft.end_time
            )
            if existing:
                details: dict[str, Any] = {"conflictsWith": str(existing[0].id)}
                if len(drafts) > 1:
                    details["index"] = index
                raise ConflictError("Slot overlaps with existing slot", code="SLOT_OVERLAP", details=details)
            slots.append(
                TimeSlot(
                    date=draft.date,
                    start_time=draft.start_time,
                    end_time=draft.end_time,
                    duration_minutes=draft.duration_minutes,
                    listener_id=draft.listener_id,
                    price=draft.price,
                    status=SlotStatus.CREATED,
                )
            )
        session.add_all(slots)
        try:
            await session.flush()
        except IntegrityError as e:
            if _is_exclusion_violation(e):
                raise ConflictError("Slot overlaps with existing slot", code="SLOT_OVERLAP") from e
            raise
        return slots

    # -- reads -------------------------------------------------------------

    async def list_available(
        self,
        page: int = 1,
        limit: int | None = None,
        from_date: Any = None,
        to_date: Any = None,
        listener_id: Any = None,
    ) -> SlotPage:
        limit = self.page_limit_default if limit is None else limit
        if page < 1 or limit < 1 or limit > self.page_limit_max:
            raise ValidationError(
                f"page must be >= 1 and limit between 1 and {self.page_limit_max}",
                code="INVALID_PAGINATION",
            )
        start = date.today() if from_date is None else parse_slot_date(from_date)
        end = None if to_date is None else parse_slot_date(to_date)
        owner = None if listener_id is None else parse_uuid(listener_id, code="INVALID_LISTENER_ID")
        offset = (page - 1) * limit

        async def _query(session: AsyncSession) -> SlotPage:
            conditions = [TimeSlot.status == SlotStatus.CREATED, TimeSlot.date >= start]
            if end is not None:
                conditions.append(TimeSlot.date <= end)
            if owner is not None:
                conditions.append(TimeSlot.listener_id == owner)
            total = (
                await session.execute(select(func.count()).select_from(TimeSlot).where(*conditions))
            ).scalar_one()
            result = await session.execute(
                select(TimeSlot)
                .where(*conditions)
                .order_by(TimeSlot.date, TimeSlot.start_time)
                .offset(offset)
                .limit(limit)
            )
            return SlotPage(
                slots=list(result.scalars().all()),
                total=total,
                page=page,
                limit=limit,
                has_more=total > page * limit,
            )

        return await self.runner.read(
            "slots.available",
            _query,
            params={"page": page, "limit": limit, "from": start, "to": end, "listener": owner},
            cache=True,
            ttl=self.available_ttl,
        )

    async def list_slots(
        self,
        slot_date: Any = None,
        listener_id: Any = None,
        status: Any = None,
    ) -> list[TimeSlot]:
        """Admin listing across every status, optionally narrowed by date, listener and status."""
        d = None if slot_date is None else parse_slot_date(slot_date)
        owner = None if listener_id is None else parse_uuid(listener_id, code="INVALID_LISTENER_ID")
        wanted = None if status is None else coerce_status(status)

        async def _query(session: AsyncSession) -> list[TimeSlot]:
            q = select(TimeSlot)
            if d is not None:
                q = q.where(TimeSlot.date == d)
            if owner is not None:
                q = q.where(TimeSlot.listener_id == owner)
            if wanted is not None:
                q = q.where(TimeSlot.status == wanted)
            result = await session.execute(q.order_by(TimeSlot.date, TimeSlot.start_time))
            return list(result.scalars().all())

        return await self.runner.read(
            "slots.all",
            _query,
            params={"date": d, "listener": owner, "status": wanted.value if wanted else None},
            cache=True,
            ttl=self.available_ttl,
        )

    async def get_slot(self, slot_id: Any) -> TimeSlot:
        sid = parse_uuid(slot_id)
        return await self.runner.read("slots.get", lambda session: load_slot(session, sid))

    async def stats(self) -> dict[str, int]:
        async def _query(session: AsyncSession) -> dict[str, int]:
            counts = {s: 0 for s in SlotStatus}
            result = await session.execute(select(TimeSlot.status, func.count()).group_by(TimeSlot.status))
            for status, n in result.all():
                counts[SlotStatus(status)] = n
            total_users = (await session.execute(select(func.count()).select_from(User))).scalar_one()
            return {
                "total_slots": sum(counts.values()),
                "available_slots": counts[SlotStatus.CREATED],
                "booked_slots": counts[SlotStatus.BOOKED],
                "completed_slots": counts[SlotStatus.COMPLETED],
                "cancelled_slots": counts[SlotStatus.CANCELLED],
                "total_users": total_users,
            }

        return await self.runner.read("slots.stats", _query, cache=True, ttl=self.available_ttl)

    # -- mutations ---------------------------------------------------------

    async def transition_status(
        self, slot_id: Any, new_status: Any, *, expected: SlotStatus | None = None
    ) -> TimeSlot:
        sid = parse_uuid(slot_id)
        target = coerce_status(new_status)
        if target == SlotStatus.BOOKED:
            # only a booking claims a slot
            raise ValidationError(
                "Slots become booked by creating a booking, not by a status change",
                code="ILLEGAL_TRANSITION",
                details={"to": target.value},
            )

        async def _transition(session: AsyncSession) -> TimeSlot:
            slot = await load_slot(session, sid)
            current = SlotStatus(slot.status)
            if expected is not None and current != expected:
                raise ValidationError(
                    f"Slot must be {expected.value} to move to {target.value}, it is {current.value}",
                    code="ILLEGAL_TRANSITION",
                    details={"from": current.value, "to": target.value},
                )
            check_transition(current, target)
            values: dict[str, Any] = {}
            releasing = current == SlotStatus.BOOKED and target == SlotStatus.CREATED
            if releasing:
                values = {"meeting_link": None, "meeting_id": None, "meeting_provider": None, "claim_token": None}
            if await set_slot_status_if(session, sid, current, target, **values) == 0:
                raise ConflictError("Slot status changed concurrently", code="SLOT_STATUS_CHANGED")
            if releasing:
                await cancel_active_booking(session, sid)
            await session.refresh(slot)
            return slot

        slot = await self.runner.write(
            "slots.transition",
            _transition,
            invalidates=(SLOT_TAG, BOOKING_TAG),
        )
        logger.info("Slot %s moved to %s", sid, target.value)
        return slot

    async def attach_meeting(
        self, slot_id: Any, meeting_link: str, meeting_id: str | None = None, meeting_provider: str | None = None
    ) -> TimeSlot:
        """Operator path for a meeting link that could not be issued at booking time."""
        sid = parse_uuid(slot_id)
        if not meeting_link:
            raise ValidationError("Meeting link is required", code="INVALID_MEETING_LINK")
        fields = {"meeting_link": meeting_link, "meeting_id": meeting_id, "meeting_provider": meeting_provider}

        async def _attach(session: AsyncSession) -> TimeSlot:
            slot = await load_slot(session, sid)
            now = _utc_naive_now()
            await session.execute(
                update(TimeSlot)
                .where(TimeSlot.id == sid)
                .values(updated_at=now, **fields)
                .execution_options(synchronize_session=False)
            )
            await session.execute(
                update(Booking)
                .where(Booking.slot_id == sid, Booking.status == BookingStatus.CONFIRMED)
                .values(updated_at=now, **fields)
                .execution_options(synchronize_session=False)
            )
            await session.refresh(slot)
            return slot

        slot = await self.runner.write("slots.attach_meeting", _attach, invalidates=(SLOT_TAG, BOOKING_TAG))
        logger.info("Meeting link attached to slot %s", sid)
        return slot

    async def delete_slot(self, slot_id: Any) -> TimeSlot:
        sid = parse_uuid(slot_id)

        async def _delete(session: AsyncSession) -> TimeSlot:
            slot = await load_slot(session, sid)
            # bookings go with their slot
            await session.execute(delete(Booking).where(Booking.slot_id == sid))
            await session.delete(slot)
            await session.flush()
            return slot

        slot = await self.runner.write("slots.delete", _delete, invalidates=(SLOT_TAG, BOOKING_TAG))
        logger.info("Slot deleted: %s", sid)
        return slot

    async def delete_all(self) -> int:
        async def _delete_all(session: AsyncSession) -> int:
            await session.execute(delete(Booking))
            result = await session.execute(delete(TimeSlot))
            return result.rowcount or 0

        count = await self.runner.write("slots.delete_all", _delete_all, invalidates=(SLOT_TAG, BOOKING_TAG))
        logger.info("Deleted all slots (%d)", count)
        return count
