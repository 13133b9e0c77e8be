# model/rewards.py
"""
Rewards ledger: point balances, the append-only point history and coupons.

Every balance change writes its PointHistory row in the same database
transaction as the balance update.
"""

from __future__ import annotations
import logging
from typing import Tuple, List, Optional

from sqlalchemy import or_, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    CouponEventMismatchError, CouponNotFoundError, NotFoundError,
    ValidationError,
)
from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from .db import Coupon, PointHistory

logger = logging.getLogger(__name__)


def coupon_discount(coupon: Coupon, amount: int) -> int:
    """Percentage coupons floor; fixed coupons never exceed amount."""
    if amount <= 0:
        return 0
    if coupon.is_percentage:
        return min(amount, (amount * coupon.discount) // 100)
    return min(coupon.discount, amount)


# UN-GATED internal function
async def find_coupon(
    session: AsyncSession, code: str, user_id: int, event_id: int,
    now: Optional[float] = None,
) -> Coupon:
    now = now_ts() if now is None else now
    usable = (
        Coupon.code == code,
        Coupon.user_id == user_id,
        Coupon.is_used.is_(False),
        Coupon.expiry_date >= now,
    )
    coupon = (await session.execute(
        select(Coupon).where(
            *usable,
            or_(Coupon.event_id.is_(None), Coupon.event_id == event_id),
        ).order_by(Coupon.id).limit(1)
    )).scalars().first()
    if coupon is not None:
        return coupon
    # only a mismatch when a live coupon with this code exists elsewhere
    elsewhere = (await session.execute(
        select(Coupon.id).where(*usable).limit(1)
    )).first()
    if elsewhere is not None:
        raise CouponEventMismatchError(code)
    raise CouponNotFoundError(code)


# UN-GATED internal function
async def mark_coupon_used(session: AsyncSession, coupon: Coupon) -> None:
    # guarded on is_used so two purchases can't both consume it
    row = (await session.execute(text("""
        UPDATE coupons SET is_used = :used
        WHERE id = :id AND is_used = :unused
        RETURNING id
    """), {"id": coupon.id, "used": True, "unused": False})).first()
    if row is None:
        raise CouponNotFoundError(coupon.code)


# UN-GATED internal function
async def unmark_coupon(session: AsyncSession, coupon_id: int) -> None:
    await session.execute(
        text("UPDATE coupons SET is_used = :unused WHERE id = :id"),
        {"id": coupon_id, "unused": False},
    )


# UN-GATED internal function
async def debit_points(
    session: AsyncSession, user_id: int, requested: int, ceiling: int,
    description: str,
) -> int:
    """
    Clamp to min(requested, balance, ceiling), debit and log history.
    Returns the points actually used.
    """
    if requested < 0:
        raise ValidationError("points must not be negative")
    row = (await session.execute(
        text("SELECT point_balance FROM users WHERE id = :id"),
        {"id": user_id},
    )).first()
    if row is None:
        raise NotFoundError("User", user_id)

    used = max(0, min(requested, int(row[0]), ceiling))
    if used == 0:
        return 0

    updated = (await session.execute(text("""
        UPDATE users SET point_balance = point_balance - :p
        WHERE id = :id AND point_balance >= :p
        RETURNING point_balance
    """), {"id": user_id, "p": used})).first()
    if updated is None:
        # balance moved under us; the clamp is redone on the fresh value
        return await debit_points(
            session, user_id, requested, ceiling, description
        )

    session.add(PointHistory(
        user_id=user_id,
        points=-used,
        description=description,
        created_at=now_ts(),
    ))
    return used


# UN-GATED internal function
async def credit_points(
    session: AsyncSession, user_id: int, points: int, description: str
) -> None:
    if points <= 0:
        return
    row = (await session.execute(text("""
        UPDATE users SET point_balance = point_balance + :p
        WHERE id = :id
        RETURNING point_balance
    """), {"id": user_id, "p": points})).first()
    if row is None:
        raise NotFoundError("User", user_id)
    session.add(PointHistory(
        user_id=user_id,
        points=points,
        description=description,
        created_at=now_ts(),
    ))


# Public API

async def apply_coupon(
    db: GatedAsyncSession, code: str, user_id: int, event_id: int,
    amount: int,
) -> Tuple[Coupon, int]:
    """
    Look up a usable coupon and compute its discount on amount.
    Read only: consumption happens inside the purchase transaction.
    """
    async with db.gated():
        async with db.session.begin():
            coupon = await find_coupon(db.session, code, user_id, event_id)
    return coupon, coupon_discount(coupon, amount)


async def consume_points(
    db: GatedAsyncSession, user_id: int, requested: int, ceiling: int,
    description: str = "Points used",
) -> int:
    async with db.gated():
        async with db.session.begin():
            used = await debit_points(
                db.session, user_id, requested, ceiling, description
            )
    logger.info("user=%s points debited=%s (requested=%s)",
                user_id, used, requested)
    return used


async def refund(
    db: GatedAsyncSession, user_id: int, points: int, reason: str
) -> None:
    async with db.gated():
        async with db.session.begin():
            await credit_points(db.session, user_id, points, reason)
    logger.info("user=%s points refunded=%s", user_id, points)


async def award_points(
    db: GatedAsyncSession, user_id: int, points: int, description: str
) -> None:
    if points <= 0:
        raise ValidationError("points must be positive")
    async with db.gated():
        async with db.session.begin():
            await credit_points(db.session, user_id, points, description)
    logger.info("user=%s points awarded=%s", user_id, points)


async def release_coupon(db: GatedAsyncSession, coupon_id: int) -> None:
    async with db.gated():
        async with db.session.begin():
            await unmark_coupon(db.session, coupon_id)


async def list_coupons(
    db: GatedAsyncSession, user_id: int, now: Optional[float] = None,
) -> List[Coupon]:
    """Usable coupons; same expiry boundary as find_coupon."""
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(
                select(Coupon).where(
                    Coupon.user_id == user_id,
                    Coupon.is_used.is_(False),
                    Coupon.expiry_date >= now,
                ).order_by(Coupon.expiry_date)
            )).scalars().all()
    return list(rows)


async def point_history(
    db: GatedAsyncSession, user_id: int, limit: int = 100
) -> Tuple[int, List[PointHistory]]:
    """Returns (current balance, newest-first history rows)."""
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                text("SELECT point_balance FROM users WHERE id = :id"),
                {"id": user_id},
            )).first()
            if row is None:
                raise NotFoundError("User", user_id)
            rows = (await db.session.execute(
                select(PointHistory)
                .where(PointHistory.user_id == user_id)
                .order_by(PointHistory.id.desc())
                .limit(max(1, min(limit, 500)))
            )).scalars().all()
    return int(row[0]), list(rows)
