"""
Booking orchestrator.

CreateBooking runs as a sequence of short transactions so no store lock is
held while the meeting issuer is called:

1. authoritative (uncached) read of user and slot
2. compare-and-swap claim of the slot, created -> booked, stamped with a
   claim token so a retried claim recognizes its own committed attempt
3. meeting credential issuance, failures are logged and tolerated
4. booking insert + pool listener assignment

If anything after the claim fails, or the request is cancelled, the claim
is released (only if the token still matches) so the slot is listed again.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.models.booking import Booking, BookingStatus
from app.models.time_slot import SlotStatus, TimeSlot
from app.models.user import User, _utc_naive_now
from app.services.listener_pool import ListenerPool
from app.services.meeting_service import MeetingCredentialIssuer, MeetingDetails, TimeWindow
from app.services.query_runner import QueryRunner
from app.services.slot_service import (
    BOOKING_TAG,
    SLOT_TAG,
    SlotInventory,
    find_overlapping_slots,
    load_slot,
    lock_listener_day,
    parse_uuid,
    set_slot_status_if,
)

logger = logging.getLogger(__name__)

USER_BOOKINGS_PAGE_LIMIT = 20

_RELEASED_SLOT_FIELDS = {"meeting_link": None, "meeting_id": None, "meeting_provider": None, "claim_token": None}


@dataclass
class BookingResult:
    booking: Booking
    slot: TimeSlot
    user: User
    listener: User | None
    meeting_details: MeetingDetails | None


@dataclass(frozen=True)
class BookingView:
    booking: Booking
    slot: TimeSlot
    listener: User | None


@dataclass(frozen=True)
class BookingPage:
    bookings: list[BookingView]
    total: int
    page: int
    limit: int
    has_more: bool


def _slot_not_available(slot_id: UUID) -> ConflictError:
    return ConflictError(
        "Slot is not available for booking",
        code="SLOT_NOT_AVAILABLE",
        details={"slotId": str(slot_id)},
    )


async def load_booking(session: AsyncSession, booking_id: UUID) -> Booking:
    booking = await session.get(Booking, booking_id, populate_existing=True)
    if booking is None:
        raise NotFoundError("Booking not found", code="BOOKING_NOT_FOUND", details={"bookingId": str(booking_id)})
    return booking


async def set_booking_status_if(
    session: AsyncSession, booking_id: UUID, expected: BookingStatus, new: BookingStatus
) -> int:
    result = await session.execute(
        update(Booking)
        .where(Booking.id == booking_id, Booking.status == expected)
        .values(status=new, updated_at=_utc_naive_now())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def _meeting_from_slot(slot: TimeSlot) -> MeetingDetails | None:
    if not slot.meeting_link:
        return None
    return MeetingDetails(
        meeting_link=slot.meeting_link,
        meeting_id=slot.meeting_id or "",
        meeting_provider=slot.meeting_provider or "",
        start_time=slot.start_time,
        end_time=slot.end_time,
        duration_minutes=slot.duration_minutes,
    )


class BookingOrchestrator:
    def __init__(
        self,
        runner: QueryRunner,
        inventory: SlotInventory,
        issuer: MeetingCredentialIssuer,
        listener_pool: ListenerPool,
        *,
        meeting_timeout: float = 5.0,
        bookings_ttl: float = 300,
    ):
        self.runner = runner
        self.inventory = inventory
        self.issuer = issuer
        self.listener_pool = listener_pool
        self.meeting_timeout = meeting_timeout
        self.bookings_ttl = bookings_ttl

    async def create_booking(self, user_id: Any, slot_id: Any) -> BookingResult:
        uid = parse_uuid(user_id, code="INVALID_USER_ID")
        sid = parse_uuid(slot_id, code="INVALID_SLOT_ID")

        async def _load(session: AsyncSession) -> tuple[User, TimeSlot]:
            user = await session.get(User, uid)
            if user is None:
                raise NotFoundError("User not found", code="USER_NOT_FOUND", details={"userId": str(uid)})
            slot = await session.get(TimeSlot, sid)
            if slot is None:
                raise NotFoundError(
                    "Slot not found or not available", code="SLOT_NOT_FOUND", details={"slotId": str(sid)}
                )
            if slot.status != SlotStatus.CREATED:
                raise _slot_not_available(sid)
            return user, slot

        user, slot = await self.runner.read("bookings.load", _load)
        token = uuid4()

        async def _claim(session: AsyncSession) -> None:
            if await set_slot_status_if(session, sid, SlotStatus.CREATED, SlotStatus.BOOKED, claim_token=token):
                return
            # a retried claim whose first attempt did commit finds its own token
            current = await session.get(TimeSlot, sid, populate_existing=True)
            if current is None or current.status != SlotStatus.BOOKED or current.claim_token != token:
                raise _slot_not_available(sid)

        try:
            await self.runner.write("slots.claim", _claim, invalidates=(SLOT_TAG,))
            meeting = _meeting_from_slot(slot) or await self._issue_meeting(slot)
            candidates = await self.listener_pool.list_active() if slot.is_unassigned else []
            booking, slot, listener = await self.runner.write(
                "bookings.create",
                lambda session: self._persist_booking(session, uid, sid, meeting, candidates),
                invalidates=(SLOT_TAG, BOOKING_TAG),
            )
        except ConflictError:
            # lost the claim, or the slot moved on; nothing of ours to undo
            raise
        except BaseException:
            # also on cancellation: the release must outlive the cancelled request
            await asyncio.shield(self._release_claim(sid, token))
            raise

        logger.info(
            "Booking created: id=%s slot=%s user=%s listener=%s meeting=%s",
            booking.id, sid, uid, listener.id if listener else "unassigned",
            meeting.meeting_link if meeting else "pending",
        )
        return BookingResult(booking=booking, slot=slot, user=user, listener=listener, meeting_details=meeting)

    async def _issue_meeting(self, slot: TimeSlot) -> MeetingDetails | None:
        window = TimeWindow(
            date=slot.date,
            start_time=slot.start_time,
            end_time=slot.end_time,
            duration_minutes=slot.duration_minutes,
        )
        try:
            async with asyncio.timeout(self.meeting_timeout):
                return await self.issuer.issue(window)
        except Exception as e:
            # booking proceeds; an operator attaches the link later
            logger.warning("Meeting link generation failed for slot %s: %s", slot.id, e)
            return None

    async def _persist_booking(
        self,
        session: AsyncSession,
        user_id: UUID,
        slot_id: UUID,
        meeting: MeetingDetails | None,
        candidates: list[User],
    ) -> tuple[Booking, TimeSlot, User | None]:
        slot = await load_slot(session, slot_id)
        if slot.status != SlotStatus.BOOKED:
            raise _slot_not_available(slot_id)

        fields: dict[str, Any] = {}
        if meeting is not None:
            fields = {
                "meeting_link": meeting.meeting_link,
                "meeting_id": meeting.meeting_id,
                "meeting_provider": meeting.meeting_provider,
            }
        booking = Booking(user_id=user_id, slot_id=slot_id, status=BookingStatus.CONFIRMED, **fields)
        session.add(booking)
        try:
            await session.flush()
        except IntegrityError as e:
            raise _slot_not_available(slot_id) from e

        listener: User | None = None
        if slot.is_unassigned:
            listener = await self._pick_listener(session, slot, candidates)
        elif slot.listener_id is not None:
            listener = await session.get(User, slot.listener_id)

        now = _utc_naive_now()
        if slot.is_unassigned and listener is not None:
            result = await session.execute(
                update(TimeSlot)
                .where(TimeSlot.id == slot_id, TimeSlot.listener_id.is_(None))
                .values(listener_id=listener.id, updated_at=now, **fields)
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                # assigned by someone else meanwhile; keep their owner
                listener = None
        if fields and listener is None:
            await session.execute(
                update(TimeSlot)
                .where(TimeSlot.id == slot_id)
                .values(updated_at=now, **fields)
                .execution_options(synchronize_session=False)
            )
        await session.refresh(slot)
        if listener is None and slot.listener_id is not None:
            listener = await session.get(User, slot.listener_id)
        return booking, slot, listener

    async def _pick_listener(self, session: AsyncSession, slot: TimeSlot, candidates: list[User]) -> User | None:
        """First active listener (by username) with no overlapping slot that day."""
        for candidate in candidates:
            await lock_listener_day(session, candidate.id, slot.date)
            clashes = await find_overlapping_slots(
                session, candidate.id, slot.date, slot.start_time, slot.end_time, exclude_id=slot.id
            )
            if not clashes:
                return candidate
        if candidates:
            logger.info("No free listener for slot %s; keeping it in the unassigned pool", slot.id)
        return None

    async def _release_claim(self, slot_id: UUID, token: UUID) -> None:
        async def _release(session: AsyncSession) -> int:
            result = await session.execute(
                update(TimeSlot)
                .where(TimeSlot.id == slot_id, TimeSlot.status == SlotStatus.BOOKED, TimeSlot.claim_token == token)
                .values(status=SlotStatus.CREATED, updated_at=_utc_naive_now(), **_RELEASED_SLOT_FIELDS)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

        try:
            released = await self.runner.write("slots.release_claim", _release, invalidates=(SLOT_TAG,))
        except Exception:
            logger.exception("Could not release claimed slot %s", slot_id)
            return
        if released:
            logger.warning("Booking failed after claim; slot %s released", slot_id)

    async def cancel_booking(self, booking_id: Any) -> Booking:
        bid = parse_uuid(booking_id, code="INVALID_BOOKING_ID")

        async def _cancel(session: AsyncSession) -> Booking:
            booking = await load_booking(session, bid)
            if booking.status != BookingStatus.CONFIRMED:
                raise ValidationError(
                    f"Only confirmed bookings can be cancelled, this one is {BookingStatus(booking.status).value}",
                    code="ILLEGAL_TRANSITION",
                )
            slot = await load_slot(session, booking.slot_id)
            if slot.status != SlotStatus.BOOKED:
                raise ValidationError(
                    f"Slot is {SlotStatus(slot.status).value}; the session can no longer be cancelled",
                    code="ILLEGAL_TRANSITION",
                )
            if await set_booking_status_if(session, bid, BookingStatus.CONFIRMED, BookingStatus.CANCELLED) == 0:
                raise ConflictError("Booking status changed concurrently", code="BOOKING_STATUS_CHANGED")
            if await set_slot_status_if(
                session, slot.id, SlotStatus.BOOKED, SlotStatus.CREATED, **_RELEASED_SLOT_FIELDS
            ) == 0:
                raise ConflictError("Slot status changed concurrently", code="SLOT_STATUS_CHANGED")
            await session.refresh(booking)
            return booking

        booking = await self.runner.write("bookings.cancel", _cancel, invalidates=(SLOT_TAG, BOOKING_TAG))
        logger.info("Booking cancelled: id=%s slot=%s re-listed", bid, booking.slot_id)
        return booking

    async def complete_booking(self, booking_id: Any) -> Booking:
        bid = parse_uuid(booking_id, code="INVALID_BOOKING_ID")

        async def _complete(session: AsyncSession) -> Booking:
            booking = await load_booking(session, bid)
            if booking.status != BookingStatus.CONFIRMED:
                raise ValidationError(
                    f"Only confirmed bookings can be completed, this one is {BookingStatus(booking.status).value}",
                    code="ILLEGAL_TRANSITION",
                )
            if await set_booking_status_if(session, bid, BookingStatus.CONFIRMED, BookingStatus.COMPLETED) == 0:
                raise ConflictError("Booking status changed concurrently", code="BOOKING_STATUS_CHANGED")
            await session.refresh(booking)
            return booking

        booking = await self.runner.write("bookings.complete", _complete, invalidates=(BOOKING_TAG,))
        logger.info("Booking completed: id=%s", bid)
        return booking

    async def complete_slot(self, slot_id: Any) -> TimeSlot:
        """Booked -> Completed. The slot's booking keeps its own status."""
        return await self.inventory.transition_status(slot_id, SlotStatus.COMPLETED, expected=SlotStatus.BOOKED)

    async def get_booking(self, booking_id: Any) -> Booking:
        bid = parse_uuid(booking_id, code="INVALID_BOOKING_ID")
        return await self.runner.read("bookings.get", lambda session: load_booking(session, bid))

    async def list_user_bookings(self, user_id: Any, page: int = 1, limit: int | None = None) -> BookingPage:
        uid = parse_uuid(user_id, code="INVALID_USER_ID")
        limit = USER_BOOKINGS_PAGE_LIMIT if limit is None else limit
        if page < 1 or limit < 1 or limit > self.inventory.page_limit_max:
            raise ValidationError(
                f"page must be >= 1 and limit between 1 and {self.inventory.page_limit_max}",
                code="INVALID_PAGINATION",
            )

        async def _query(session: AsyncSession) -> BookingPage:
            total = (
                await session.execute(select(func.count()).select_from(Booking).where(Booking.user_id == uid))
            ).scalar_one()
            result = await session.execute(
                select(Booking, TimeSlot, User)
                .join(TimeSlot, TimeSlot.id == Booking.slot_id)
                .outerjoin(User, User.id == TimeSlot.listener_id)
                .where(Booking.user_id == uid)
                .order_by(Booking.created_at.desc(), Booking.id)
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return BookingPage(
                bookings=[BookingView(booking=b, slot=s, listener=u) for b, s, u in result.all()],
                total=total,
                page=page,
                limit=limit,
                has_more=total > page * limit,
            )

        return await self.runner.read(
            "bookings.user",
            _query,
            params={"user": uid, "page": page, "limit": limit},
            cache=True,
            ttl=self.bookings_ttl,
        )
