# model/referrals.py
"""
Referral rewards.

Redeeming a referral code is one database transaction: the new user is
linked to the referrer, the referrer is credited REFERRAL_POINTS (with its
PointHistory row), the new user gets a percentage welcome coupon and the
referrer's in-app notification goes to the outbox. A user can redeem a code
only once.
"""

from __future__ import annotations
import logging
import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import func, select, text

from ..errors import InvalidStateError, NotFoundError, ValidationError
from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from . import rewards
from .db import COUPON_REFERRAL, Coupon, PointHistory, User
from .notifications import enqueue_notification

logger = logging.getLogger(__name__)

REFERRAL_POINTS = 10_000
REFERRAL_DISCOUNT_PERCENT = 10
REFERRAL_COUPON_VALID_SECONDS = timedelta(days=90).total_seconds()
REFERRAL_REWARD_PREFIX = "Referral reward"


@dataclass(frozen=True)
class ReferralReward:
    referrer_id: int
    referrer_name: str
    points_earned: int
    coupon_code: str
    coupon_discount: int


@dataclass
class ReferralStats:
    referral_code: Optional[str]
    total_referrals: int
    total_points_earned: int
    referred: List[User] = field(default_factory=list)


def welcome_coupon_code(now: float) -> str:
    stamp = int(now * 1000) % 1_000_000
    return f"WELCOME{stamp:06d}{secrets.token_hex(2).upper()}"


async def process_referral_reward(
    db: GatedAsyncSession, new_user_id: int, referral_code: str,
    now: Optional[float] = None,
) -> ReferralReward:
    code = (referral_code or "").strip().upper()
    if not code:
        raise ValidationError("referral_code is required")
    now = now_ts() if now is None else now

    async with timeit("referrals.process_reward"):
        async with db.gated():
            async with db.session.begin():
                s = db.session
                referrer = (await s.execute(
                    select(User).where(User.referral_code == code)
                )).scalars().first()
                if referrer is None:
                    raise NotFoundError("Referral code", code)
                if referrer.id == new_user_id:
                    raise ValidationError("Cannot use your own referral code")

                # guarded so a user is rewarded for at most one code
                row = (await s.execute(text("""
                    UPDATE users SET referred_by = :ref
                    WHERE id = :id AND referred_by IS NULL
                    RETURNING id
                """), {"id": new_user_id, "ref": referrer.id})).first()
                if row is None:
                    exists = (await s.execute(
                        text("SELECT 1 FROM users WHERE id = :id"),
                        {"id": new_user_id},
                    )).first()
                    if exists is None:
                        raise NotFoundError("User", new_user_id)
                    raise InvalidStateError("A referral code was already used")

                await rewards.credit_points(
                    s, referrer.id, REFERRAL_POINTS,
                    f"{REFERRAL_REWARD_PREFIX} for inviting user #{new_user_id}",
                )
                coupon_code = welcome_coupon_code(now)
                s.add(Coupon(
                    code=coupon_code,
                    user_id=new_user_id,
                    event_id=None,
                    name="Welcome Referral Discount",
                    type=COUPON_REFERRAL,
                    discount=REFERRAL_DISCOUNT_PERCENT,
                    is_percentage=True,
                    is_used=False,
                    expiry_date=now + REFERRAL_COUPON_VALID_SECONDS,
                ))
                enqueue_notification(
                    s, referrer.id, "REFERRAL_REWARD",
                    "Referral Reward Earned!",
                    f"You earned {REFERRAL_POINTS} points for referring "
                    f"a new user!",
                )
                referrer_name = (
                    f"{referrer.first_name} {referrer.last_name}".strip()
                )
                referrer_id = referrer.id

    logger.info("user=%s redeemed referral code of user=%s",
                new_user_id, referrer_id)
    return ReferralReward(
        referrer_id=referrer_id,
        referrer_name=referrer_name,
        points_earned=REFERRAL_POINTS,
        coupon_code=coupon_code,
        coupon_discount=REFERRAL_DISCOUNT_PERCENT,
    )


async def get_referral_stats(
    db: GatedAsyncSession, user_id: int
) -> ReferralStats:
    async with db.gated():
        async with db.session.begin():
            s = db.session
            referral_code = (await s.execute(
                select(User.referral_code).where(User.id == user_id)
            )).first()
            if referral_code is None:
                raise NotFoundError("User", user_id)
            referred = (await s.execute(
                select(User).where(User.referred_by == user_id)
                .order_by(User.id)
            )).scalars().all()
            earned = (await s.execute(
                select(func.coalesce(func.sum(PointHistory.points), 0))
                .where(
                    PointHistory.user_id == user_id,
                    PointHistory.description.like(
                        f"{REFERRAL_REWARD_PREFIX}%"
                    ),
                )
            )).scalar()
    return ReferralStats(
        referral_code=referral_code[0],
        total_referrals=len(referred),
        total_points_earned=int(earned),
        referred=list(referred),
    )
