#!/usr/bin/env python3
"""
EventHub worker.

    eventhub-worker deliver [--loop SECONDS]   drain the outbox
    eventhub-worker sweep   [--loop SECONDS]   expire overdue transactions
    eventhub-worker seed                       demo users, event and coupon

DATABASE_URL must be set, same as for the server.
"""
import argparse
import asyncio
import logging
import os
import sys
from datetime import timedelta

import httpx

from .helpers import now_ts
from .infra.sql import GatedAsyncSession, make_async_engine, session_opener
from .mailer import MAIL_API_URL, HttpMailer, LogMailer
from .model.db import Coupon, ROLE_ORGANIZER, create_schema
from .model.dispatch import deliver_pending
from .model.events import create_event
from .model.transactions import expire_overdue
from .model.users import Actor, create_user

logger = logging.getLogger("eventhub.worker")


async def _deliver(db: GatedAsyncSession, loop: float, limit: int) -> None:
    async with httpx.AsyncClient(timeout=10.0) as http:
        mailer = HttpMailer(http) if MAIL_API_URL else LogMailer()
        while True:
            stats = await deliver_pending(db, mailer, limit=limit)
            print(f"==> outbox: {stats}", flush=True)
            if loop <= 0:
                return
            await asyncio.sleep(loop)


async def _sweep(db: GatedAsyncSession, loop: float, limit: int) -> None:
    while True:
        expired = await expire_overdue(db, limit=limit)
        print(f"==> expired {len(expired)} transaction(s): {expired}",
              flush=True)
        if loop <= 0:
            return
        await asyncio.sleep(loop)


async def _seed(db: GatedAsyncSession) -> None:
    organizer = await create_user(
        db, "organizer@eventhub.local", "Olga", "Organizer",
        role=ROLE_ORGANIZER,
    )
    buyer = await create_user(
        db, "buyer@eventhub.local", "Budi", "Buyer", point_balance=50_000,
    )
    start = now_ts() + timedelta(days=30).total_seconds()
    event = await create_event(
        db, Actor(organizer.id, ROLE_ORGANIZER),
        name="EventHub Launch Night",
        start_date=start,
        location="Jakarta",
        address="Jl. Sudirman 1",
        tickets=[
            {"name": "Regular", "price": 100_000, "available_seats": 100},
            {"name": "VIP", "price": 250_000, "available_seats": 20},
        ],
    )
    async with db.gated():
        async with db.session.begin():
            db.session.add(Coupon(
                code="WELCOME10",
                user_id=buyer.id,
                event_id=None,
                name="Welcome 10%",
                discount=10,
                is_percentage=True,
                is_used=False,
                expiry_date=start,
            ))
    print("✅ seeded")
    print(f"   - organizer id={organizer.id} "
          f"(referral code {organizer.referral_code})")
    print(f"   - buyer     id={buyer.id} (50000 points, coupon WELCOME10)")
    print(f"   - event     id={event.id} tickets="
          f"{[(t.id, t.name) for t in event.tickets]}")


async def _run(args) -> None:
    engine, SessionAsync, gated = make_async_engine(args.database_url)
    try:
        async with engine.begin() as conn:
            await create_schema(conn)
        async with session_opener(SessionAsync, gated)() as db:
            if args.cmd == "deliver":
                await _deliver(db, args.loop, args.limit)
            elif args.cmd == "sweep":
                await _sweep(db, args.loop, args.limit)
            elif args.cmd == "seed":
                await _seed(db)
    finally:
        await engine.dispose()


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(prog="eventhub-worker")
    ap.add_argument("--database-url", default=os.environ.get("DATABASE_URL"))
    ap.add_argument("-v", "--verbose", action="store_true")
    sub = ap.add_subparsers(dest="cmd", required=True)

    for name, helptext in (
        ("deliver", "deliver pending outbox messages"),
        ("sweep", "cancel transactions past their payment deadline"),
    ):
        p = sub.add_parser(name, help=helptext)
        p.add_argument("--loop", type=float, default=0.0,
                       help="repeat every N seconds (0 = run once)")
        p.add_argument("--limit", type=int, default=100)

    sub.add_parser("seed", help="create demo users, an event and a coupon")

    args = ap.parse_args(argv)
    if not args.database_url:
        print("NEED DATABASE_URL! e.g. sqlite:///./eventhub.db")
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(_run(args))
    except KeyboardInterrupt:
        print("\n==> interrupted", flush=True)
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
