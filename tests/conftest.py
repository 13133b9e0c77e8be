"""Pytest fixtures: a throwaway SQLite database per test, seeded users,
an event with two ticket types, coupons and a recording mailer."""

import os
import tempfile
from types import SimpleNamespace

import pytest

# the server module builds its engine at import time
os.environ.setdefault(
    "DATABASE_URL",
    "sqlite:///" + os.path.join(tempfile.gettempdir(), "eventhub-import.db"),
)

from eventhub.helpers import now_ts  # noqa: E402
from eventhub.infra.sql import make_async_engine, session_opener  # noqa: E402
from eventhub.mailer import Mailer  # noqa: E402
from eventhub.model.db import (  # noqa: E402
    ROLE_ADMIN, ROLE_ORGANIZER, Coupon, create_schema,
)
from eventhub.model.events import create_event  # noqa: E402
from eventhub.model.users import Actor, create_user  # noqa: E402

DAY = 24 * 3600


class RecordingMailer(Mailer):
    """Keeps every message in memory; raises when fail is set."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def send_email(self, to, subject, html, attachments=None):
        if self.fail:
            raise RuntimeError("mail relay unavailable")
        self.sent.append({
            "to": to,
            "subject": subject,
            "html": html,
            "attachments": list(attachments or []),
        })


@pytest.fixture
async def engine_bundle(tmp_path):
    engine, SessionAsync, gated = make_async_engine(
        f"sqlite:///{tmp_path / 'eventhub.db'}"
    )
    async with engine.begin() as conn:
        await create_schema(conn)
    yield engine, SessionAsync, gated
    await engine.dispose()


@pytest.fixture
def opener(engine_bundle):
    _, SessionAsync, gated = engine_bundle
    return session_opener(SessionAsync, gated)


@pytest.fixture
async def db(opener):
    async with opener() as db:
        yield db


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


async def add_coupon(db, **fields):
    coupon = Coupon(is_used=False, expiry_date=now_ts() + 30 * DAY, **fields)
    async with db.gated():
        async with db.session.begin():
            db.session.add(coupon)
    return coupon


@pytest.fixture
async def world(opener):
    # seeded in a session of its own: the objects come back detached with
    # their columns loaded, so a rollback in the test's session cannot
    # expire them
    async with opener() as seed:
        organizer = await create_user(
            seed, "olga@example.com", "Olga", "Organizer", role=ROLE_ORGANIZER
        )
        other_organizer = await create_user(
            seed, "oscar@example.com", "Oscar", role=ROLE_ORGANIZER
        )
        buyer = await create_user(
            seed, "budi@example.com", "Budi", "Santoso", point_balance=50_000
        )
        stranger = await create_user(seed, "sari@example.com", "Sari")
        admin = await create_user(
            seed, "admin@example.com", "Ada", role=ROLE_ADMIN
        )

        event = await create_event(
            seed, Actor(organizer.id, ROLE_ORGANIZER),
            name="Jazz Night",
            start_date=now_ts() + 10 * DAY,
            location="Jakarta",
            tickets=[
                {"name": "Regular", "price": 50_000, "available_seats": 10},
                {"name": "VIP", "price": 100_000, "available_seats": 2},
            ],
            promotions=[{
                "code": "EARLY",
                "discount": 5,
                "is_percentage": True,
                "start_date": now_ts() - DAY,
                "end_date": now_ts() + DAY,
            }],
        )
        other_event = await create_event(
            seed, Actor(other_organizer.id, ROLE_ORGANIZER),
            name="Rock Fest",
            start_date=now_ts() + 20 * DAY,
            tickets=[{"name": "GA", "price": 75_000, "available_seats": 5}],
        )
        regular, vip = event.tickets

        pct10 = await add_coupon(
            seed, code="PCT10", user_id=buyer.id, event_id=None,
            name="10% off", discount=10, is_percentage=True,
        )
        fixed = await add_coupon(
            seed, code="FIXED30K", user_id=buyer.id, event_id=event.id,
            name="30k off", discount=30_000, is_percentage=False,
        )
        rock_only = await add_coupon(
            seed, code="ROCK", user_id=buyer.id, event_id=other_event.id,
            discount=20_000, is_percentage=False,
        )

    return SimpleNamespace(
        organizer=organizer,
        other_organizer=other_organizer,
        buyer=buyer,
        stranger=stranger,
        admin=admin,
        event=event,
        other_event=other_event,
        regular=regular,
        vip=vip,
        pct10=pct10,
        fixed=fixed,
        rock_only=rock_only,
        as_buyer=Actor(buyer.id),
        as_stranger=Actor(stranger.id),
        as_organizer=Actor(organizer.id, ROLE_ORGANIZER),
        as_other_organizer=Actor(other_organizer.id, ROLE_ORGANIZER),
        as_admin=Actor(admin.id, ROLE_ADMIN),
    )
