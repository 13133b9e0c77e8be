"""Tests for the event catalog and users."""
import pytest

from eventhub.errors import ForbiddenError, NotFoundError, ValidationError
from eventhub.helpers import now_ts
from eventhub.model.events import active_promotions, create_event, get_event
from eventhub.model.users import create_user, get_user


async def test_get_event_loads_tickets_and_active_promotions(db, world):
    event = await get_event(db, world.event.id)
    assert [t.name for t in event.tickets] == ["Regular", "VIP"]
    assert [p.code for p in active_promotions(event)] == ["EARLY"]
    assert active_promotions(event, now=now_ts() + 7 * 24 * 3600) == []


async def test_get_event_missing(db, world):
    with pytest.raises(NotFoundError):
        await get_event(db, 9999)


async def test_create_event_rules(db, world):
    with pytest.raises(ForbiddenError):
        await create_event(
            db, world.as_buyer, "Mine", now_ts(),
            [{"name": "GA", "price": 1, "available_seats": 1}],
        )
    with pytest.raises(ValidationError):
        await create_event(db, world.as_organizer, "Empty", now_ts(), [])
    with pytest.raises(ValidationError):
        await create_event(
            db, world.as_organizer, "Bad", now_ts(),
            [{"name": "GA", "price": -1, "available_seats": 1}],
        )
    with pytest.raises(ValidationError):
        await create_event(
            db, world.as_organizer, "Bad", now_ts(),
            [{"name": "GA", "price": 1, "available_seats": 1}],
            promotions=[{"code": "X", "discount": 150, "is_percentage": True,
                         "start_date": 0, "end_date": 1}],
        )

    event = await create_event(
        db, world.as_admin, "Admin Gala", now_ts(),
        [{"name": "Seat", "price": 0, "available_seats": 0}],
    )
    assert event.organizer_id == world.admin.id


async def test_users(db, world):
    with pytest.raises(ValidationError):
        await create_user(db, "not-an-email", "X")
    with pytest.raises(ValidationError):
        await create_user(db, "x@example.com", "X", role="ROOT")
    user = await get_user(db, world.buyer.id)
    assert user.point_balance == 50_000
    with pytest.raises(NotFoundError):
        await get_user(db, 9999)
