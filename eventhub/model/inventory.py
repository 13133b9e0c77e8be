# model/inventory.py
"""
Inventory ledger: per-ticket-type seat counters.

- reserve: atomic check-and-decrement (one conditional UPDATE, never a
  separate read then write)
- release: atomic increment, no upper bound check

The un-gated helpers run inside a caller's open transaction so the state
machine can reserve several lines all-or-nothing. The public functions open
their own gated transaction.
"""

from __future__ import annotations
import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    InsufficientInventoryError, NotFoundError, ValidationError
)
from ..infra.sql import GatedAsyncSession

logger = logging.getLogger(__name__)


def _check_qty(qty: int) -> None:
    if not isinstance(qty, int) or isinstance(qty, bool) or qty <= 0:
        raise ValidationError("quantity must be a positive integer")


# UN-GATED internal function
async def take_seats(session: AsyncSession, ticket_id: int, qty: int) -> int:
    """
    Decrement available_seats by qty iff enough seats remain.
    Returns the remaining seat count.
    """
    _check_qty(qty)
    row = (await session.execute(text("""
        UPDATE tickets
        SET available_seats = available_seats - :q
        WHERE id = :id AND available_seats >= :q
        RETURNING available_seats
    """), {"id": ticket_id, "q": qty})).first()
    if row is not None:
        return int(row[0])

    # Nothing updated: tell "missing" apart from "not enough".
    current = (await session.execute(
        text("SELECT available_seats FROM tickets WHERE id = :id"),
        {"id": ticket_id},
    )).first()
    if current is None:
        raise NotFoundError("Ticket", ticket_id)
    raise InsufficientInventoryError(ticket_id, qty, int(current[0]))


# UN-GATED internal function
async def return_seats(session: AsyncSession, ticket_id: int, qty: int) -> int:
    _check_qty(qty)
    row = (await session.execute(text("""
        UPDATE tickets
        SET available_seats = available_seats + :q
        WHERE id = :id
        RETURNING available_seats
    """), {"id": ticket_id, "q": qty})).first()
    if row is None:
        raise NotFoundError("Ticket", ticket_id)
    return int(row[0])


# Public API

async def reserve(db: GatedAsyncSession, ticket_id: int, qty: int) -> int:
    async with db.gated():
        async with db.session.begin():
            left = await take_seats(db.session, ticket_id, qty)
    logger.info("reserved ticket=%s qty=%s (available=%s)",
                ticket_id, qty, left)
    return left


async def release(db: GatedAsyncSession, ticket_id: int, qty: int) -> int:
    async with db.gated():
        async with db.session.begin():
            left = await return_seats(db.session, ticket_id, qty)
    logger.info("released ticket=%s qty=%s (available=%s)",
                ticket_id, qty, left)
    return left


async def available(db: GatedAsyncSession, ticket_id: int) -> int:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                text("SELECT available_seats FROM tickets WHERE id = :id"),
                {"id": ticket_id},
            )).first()
    if row is None:
        raise NotFoundError("Ticket", ticket_id)
    return int(row[0])
