import asyncio
import math
from datetime import date, timedelta
from uuid import uuid4

import pytest

from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.models import SlotStatus, TimeSlot, UserRole
from app.services.slot_service import duration_minutes, parse_slot_time, validate_slot


def _half_hour_slots(day, count, start_hour=8, listener_id=None):
    items = []
    for i in range(count):
        minutes = start_hour * 60 + i * 30
        items.append(
            {
                "date": day.isoformat(),
                "start_time": f"{minutes // 60:02d}:{minutes % 60:02d}",
                "end_time": f"{(minutes + 30) // 60:02d}:{(minutes + 30) % 60:02d}",
                "listener_id": listener_id,
            }
        )
    return items


def test_duration_is_derived_from_times(tomorrow):
    draft = validate_slot(tomorrow.isoformat(), "09:00", "10:30")
    assert draft.duration_minutes == 90
    assert duration_minutes(parse_slot_time("23:00"), parse_slot_time("23:59")) == 59


@pytest.mark.parametrize(
    ("start", "end", "code"),
    [
        ("10:00", "09:00", "INVALID_TIME_RANGE"),
        ("09:00", "09:00", "INVALID_TIME_RANGE"),
        ("9am", "10:00", "INVALID_TIME"),
        ("24:00", "10:00", "INVALID_TIME"),
    ],
)
def test_invalid_windows_are_rejected(tomorrow, start, end, code):
    with pytest.raises(ValidationError) as exc_info:
        validate_slot(tomorrow.isoformat(), start, end)
    assert exc_info.value.code == code


def test_invalid_date_and_price(tomorrow):
    with pytest.raises(ValidationError) as exc_info:
        validate_slot("19/10/2026", "09:00", "10:00")
    assert exc_info.value.code == "INVALID_DATE"
    with pytest.raises(ValidationError) as exc_info:
        validate_slot(tomorrow, "09:00", "10:00", price=-5)
    assert exc_info.value.code == "INVALID_PRICE"


def test_default_price_applies(tomorrow):
    assert validate_slot(tomorrow, "09:00", "10:00", default_price=75.0).price == 75.0


@pytest.mark.asyncio
async def test_create_slot_starts_in_created(services, tomorrow):
    slot = await services.inventory.create_slot(tomorrow.isoformat(), "09:00", "10:30")
    assert slot.status == SlotStatus.CREATED
    assert slot.duration_minutes == 90
    assert slot.listener_id is None
    assert slot.price == 50.0


@pytest.mark.asyncio
async def test_overlapping_slot_is_rejected_but_adjacent_is_fine(services, tomorrow):
    await services.inventory.create_slot(tomorrow, "09:00", "10:00")

    with pytest.raises(ConflictError) as exc_info:
        await services.inventory.create_slot(tomorrow, "09:30", "10:30")
    assert exc_info.value.code == "SLOT_OVERLAP"

    adjacent = await services.inventory.create_slot(tomorrow, "10:00", "11:00")
    assert adjacent.start_time.hour == 10


@pytest.mark.asyncio
async def test_same_window_for_different_listeners(services, make_user, tomorrow):
    alice = await make_user("alice", UserRole.LISTENER)
    bob = await make_user("bob", UserRole.LISTENER)

    await services.inventory.create_slot(tomorrow, "09:00", "10:00", listener_id=alice.id)
    await services.inventory.create_slot(tomorrow, "09:00", "10:00", listener_id=bob.id)
    # the unassigned pool is its own owner
    await services.inventory.create_slot(tomorrow, "09:00", "10:00")

    with pytest.raises(ConflictError):
        await services.inventory.create_slot(tomorrow, "09:15", "09:45", listener_id=alice.id)


@pytest.mark.asyncio
async def test_unknown_listener_is_rejected(services, tomorrow):
    with pytest.raises(NotFoundError) as exc_info:
        await services.inventory.create_slot(tomorrow, "09:00", "10:00", listener_id=uuid4())
    assert exc_info.value.code == "LISTENER_NOT_FOUND"


@pytest.mark.asyncio
async def test_bulk_create_is_all_or_nothing(services, tomorrow):
    await services.inventory.create_slot(tomorrow, "12:00", "13:00")
    items = _half_hour_slots(tomorrow, 10)  # 08:00 .. 13:00, last two collide with 12:00-13:00

    with pytest.raises(ConflictError) as exc_info:
        await services.inventory.bulk_create(items)
    assert exc_info.value.code == "SLOT_OVERLAP"

    page = await services.inventory.list_available(from_date=tomorrow)
    assert page.total == 1


@pytest.mark.asyncio
async def test_bulk_create_rejects_invalid_member_with_index(services, tomorrow):
    items = _half_hour_slots(tomorrow, 3)
    items[2]["end_time"] = "07:00"

    with pytest.raises(ValidationError) as exc_info:
        await services.inventory.bulk_create(items)
    assert exc_info.value.details == {"index": 2}
    assert (await services.inventory.list_available(from_date=tomorrow)).total == 0


@pytest.mark.asyncio
async def test_bulk_create_rejects_overlap_inside_batch(services, tomorrow):
    items = _half_hour_slots(tomorrow, 2)
    items.append({"date": tomorrow.isoformat(), "start_time": "08:15", "end_time": "08:45"})

    with pytest.raises(ConflictError) as exc_info:
        await services.inventory.bulk_create(items)
    assert exc_info.value.details["index"] == 2


@pytest.mark.asyncio
async def test_bulk_create_empty_batch(services):
    with pytest.raises(ValidationError) as exc_info:
        await services.inventory.bulk_create([])
    assert exc_info.value.code == "EMPTY_BATCH"


@pytest.mark.asyncio
async def test_available_pagination(services, tomorrow):
    for offset in range(5):
        await services.inventory.bulk_create(_half_hour_slots(tomorrow + timedelta(days=offset), 24))

    first = await services.inventory.list_available(page=1, limit=50)
    second = await services.inventory.list_available(page=2, limit=50)
    third = await services.inventory.list_available(page=3, limit=50)

    assert first.total == 120
    assert len(first.slots) == 50 and first.has_more
    assert len(second.slots) == 50 and second.has_more
    assert len(third.slots) == 20 and not third.has_more

    ordered = first.slots + second.slots + third.slots
    keys = [(s.date, s.start_time) for s in ordered]
    assert keys == sorted(keys)
    assert len({s.id for s in ordered}) == 120


@pytest.mark.asyncio
async def test_available_rejects_bad_pagination(services):
    with pytest.raises(ValidationError) as exc_info:
        await services.inventory.list_available(page=0)
    assert exc_info.value.code == "INVALID_PAGINATION"
    with pytest.raises(ValidationError):
        await services.inventory.list_available(limit=1000)


@pytest.mark.asyncio
async def test_available_filters_by_date_range_and_listener(services, make_user, tomorrow):
    alice = await make_user("alice", UserRole.LISTENER)
    later = tomorrow + timedelta(days=3)
    await services.inventory.create_slot(tomorrow, "09:00", "10:00", listener_id=alice.id)
    await services.inventory.create_slot(later, "09:00", "10:00")

    only_tomorrow = await services.inventory.list_available(from_date=tomorrow, to_date=tomorrow)
    assert [s.date for s in only_tomorrow.slots] == [tomorrow]

    alices = await services.inventory.list_available(listener_id=alice.id)
    assert [s.listener_id for s in alices.slots] == [alice.id]


@pytest.mark.asyncio
async def test_past_slots_are_not_listed(services):
    await services.inventory.create_slot(date.today() - timedelta(days=1), "09:00", "10:00")
    assert (await services.inventory.list_available()).total == 0


@pytest.mark.asyncio
async def test_available_listing_is_cached_until_a_slot_changes(services, tomorrow, clock):
    slot = await services.inventory.create_slot(tomorrow, "09:00", "10:00")
    first = await services.inventory.list_available()
    assert first.total == 1
    misses = services.cache.stats()["misses"]

    await services.inventory.list_available()
    assert services.cache.stats()["misses"] == misses

    await services.inventory.transition_status(slot.id, SlotStatus.CANCELLED)
    assert (await services.inventory.list_available()).total == 0


@pytest.mark.asyncio
async def test_cached_listing_expires_with_ttl(services, session_maker, tomorrow, clock):
    await services.inventory.list_available()
    # a write the engine does not know about is picked up once the entry expires
    async with session_maker() as session:
        session.add(
            TimeSlot(
                date=tomorrow,
                start_time=parse_slot_time("09:00"),
                end_time=parse_slot_time("10:00"),
                duration_minutes=60,
                price=50.0,
            )
        )
        await session.commit()

    assert (await services.inventory.list_available()).total == 0
    clock.advance(301)
    assert (await services.inventory.list_available()).total == 1


@pytest.mark.asyncio
async def test_transition_rules(services, tomorrow):
    slot = await services.inventory.create_slot(tomorrow, "09:00", "10:00")

    with pytest.raises(ValidationError) as exc_info:
        await services.inventory.transition_status(slot.id, SlotStatus.COMPLETED)
    assert exc_info.value.code == "ILLEGAL_TRANSITION"

    cancelled = await services.inventory.transition_status(slot.id, "cancelled")
    assert cancelled.status == SlotStatus.CANCELLED

    with pytest.raises(ValidationError):
        await services.inventory.transition_status(slot.id, SlotStatus.CREATED)

    with pytest.raises(ValidationError) as exc_info:
        await services.inventory.transition_status(slot.id, "archived")
    assert exc_info.value.code == "INVALID_STATUS"


@pytest.mark.asyncio
async def test_cancelled_slot_frees_its_window(services, tomorrow):
    slot = await services.inventory.create_slot(tomorrow, "09:00", "10:00")
    await services.inventory.transition_status(slot.id, SlotStatus.CANCELLED)
    replacement = await services.inventory.create_slot(tomorrow, "09:00", "10:00")
    assert replacement.id != slot.id


@pytest.mark.asyncio
async def test_get_and_delete_slot(services, tomorrow):
    slot = await services.inventory.create_slot(tomorrow, "09:00", "10:00")
    assert (await services.inventory.get_slot(slot.id)).id == slot.id

    await services.inventory.delete_slot(slot.id)
    with pytest.raises(NotFoundError) as exc_info:
        await services.inventory.get_slot(slot.id)
    assert exc_info.value.code == "SLOT_NOT_FOUND"

    with pytest.raises(ValidationError):
        await services.inventory.get_slot("not-a-uuid")


@pytest.mark.asyncio
async def test_delete_all_and_stats(services, make_user, tomorrow):
    await make_user("someone")
    await services.inventory.bulk_create(_half_hour_slots(tomorrow, 4))
    stats = await services.inventory.stats()
    assert stats["total_slots"] == 4
    assert stats["available_slots"] == 4
    assert stats["total_users"] == 1

    assert await services.inventory.delete_all() == 4
    assert (await services.inventory.stats())["total_slots"] == 0


@pytest.mark.asyncio
async def test_attach_meeting(services, tomorrow):
    slot = await services.inventory.create_slot(tomorrow, "09:00", "10:00")
    updated = await services.inventory.attach_meeting(slot.id, "https://meet.example.test/x", "x", "custom")
    assert updated.meeting_link == "https://meet.example.test/x"

    with pytest.raises(ValidationError):
        await services.inventory.attach_meeting(slot.id, "")


@pytest.mark.asyncio
async def test_concurrent_overlapping_creates_admit_one(services, tomorrow):
    results = await asyncio.gather(
        *(services.inventory.create_slot(tomorrow, "09:00", "10:00") for _ in range(5)),
        return_exceptions=True,
    )

    created = [r for r in results if isinstance(r, TimeSlot)]
    rejected = [r for r in results if isinstance(r, ConflictError)]
    assert len(created) == 1
    assert len(rejected) == 4
    assert all(e.code == "SLOT_OVERLAP" for e in rejected)
    assert len(await services.inventory.list_slots(slot_date=tomorrow)) == 1


@pytest.mark.asyncio
async def test_booked_cannot_be_set_by_status_change(services, tomorrow):
    slot = await services.inventory.create_slot(tomorrow, "09:00", "10:00")

    with pytest.raises(ValidationError) as exc_info:
        await services.inventory.transition_status(slot.id, SlotStatus.BOOKED)

    assert exc_info.value.code == "ILLEGAL_TRANSITION"
    assert (await services.inventory.get_slot(slot.id)).status == SlotStatus.CREATED


@pytest.mark.asyncio
async def test_list_slots_spans_every_status(services, make_user, tomorrow):
    listener = await make_user("aaron", UserRole.LISTENER)
    later = tomorrow + timedelta(days=1)
    late = await services.inventory.create_slot(later, "08:00", "09:00")
    afternoon = await services.inventory.create_slot(tomorrow, "14:00", "15:00", listener_id=listener.id)
    morning = await services.inventory.create_slot(tomorrow, "09:00", "10:00")
    await services.inventory.transition_status(afternoon.id, SlotStatus.CANCELLED)

    everything = await services.inventory.list_slots()
    cancelled = await services.inventory.list_slots(status="cancelled")
    owned = await services.inventory.list_slots(listener_id=listener.id)
    on_day = await services.inventory.list_slots(slot_date=tomorrow.isoformat())

    assert [s.id for s in everything] == [morning.id, afternoon.id, late.id]
    assert [s.id for s in cancelled] == [afternoon.id]
    assert [s.id for s in owned] == [afternoon.id]
    assert [s.id for s in on_day] == [morning.id, afternoon.id]
    # the cancelled slot is not offered to users
    assert (await services.inventory.list_available()).total == 2


@pytest.mark.asyncio
async def test_available_listing_is_cached_until_ttl(services, tomorrow, clock, monkeypatch):
    await services.inventory.create_slot(tomorrow, "09:00", "10:00")
    execute = services.gateway.execute
    calls = []

    async def _counting(operation, work, *, timeout=None):
        calls.append(operation)
        return await execute(operation, work, timeout=timeout)

    monkeypatch.setattr(services.gateway, "execute", _counting)
    ttl = services.inventory.available_ttl

    await services.inventory.list_available()
    assert calls == ["slots.available"]

    clock.advance(ttl - 0.1)
    await services.inventory.list_available()
    assert calls == ["slots.available"]

    clock.advance(0.2)
    page = await services.inventory.list_available()
    assert calls == ["slots.available", "slots.available"]
    assert page.total == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("price", [math.nan, math.inf, -1])
async def test_non_finite_or_negative_price_rejected(services, tomorrow, price):
    with pytest.raises(ValidationError) as exc_info:
        await services.inventory.create_slot(tomorrow, "09:00", "10:00", price=price)
    assert exc_info.value.code == "INVALID_PRICE"


@pytest.mark.asyncio
async def test_free_slot_is_allowed(services, tomorrow):
    slot = await services.inventory.create_slot(tomorrow, "09:00", "10:00", price=0)
    assert slot.price == 0


@pytest.mark.asyncio
async def test_inactive_listener_cannot_own_slots(services, make_user, tomorrow):
    listener = await make_user("aaron", UserRole.LISTENER, is_active=False)

    with pytest.raises(NotFoundError) as exc_info:
        await services.inventory.create_slot(tomorrow, "09:00", "10:00", listener_id=listener.id)
    assert exc_info.value.code == "LISTENER_NOT_FOUND"
