# model/users.py
from __future__ import annotations
import secrets
from dataclasses import dataclass

from sqlalchemy import select

from ..errors import NotFoundError, ValidationError
from ..helpers import is_valid_email, now_ts
from ..infra.sql import GatedAsyncSession
from .db import ROLES, ROLE_ADMIN, ROLE_ORGANIZER, ROLE_USER, User


@dataclass(frozen=True)
class Actor:
    """Request-scoped identity passed into every core operation."""

    user_id: int
    role: str = ROLE_USER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def can_organize(self) -> bool:
        return self.role in (ROLE_ORGANIZER, ROLE_ADMIN)


def generate_referral_code() -> str:
    return "EVTHUB" + secrets.token_hex(3).upper()


async def create_user(
    db: GatedAsyncSession, email: str, first_name: str,
    last_name: str = "", role: str = ROLE_USER, point_balance: int = 0,
) -> User:
    if not is_valid_email(email):
        raise ValidationError("email must be a valid email address")
    if role not in ROLES:
        raise ValidationError(f"role must be one of {', '.join(ROLES)}")
    if point_balance < 0:
        raise ValidationError("point_balance must not be negative")
    user = User(
        email=email.strip().lower(),
        first_name=first_name,
        last_name=last_name,
        role=role,
        point_balance=point_balance,
        referral_code=generate_referral_code(),
        created_at=now_ts(),
    )
    async with db.gated():
        async with db.session.begin():
            db.session.add(user)
    return user


async def get_user(db: GatedAsyncSession, user_id: int) -> User:
    async with db.gated():
        async with db.session.begin():
            user = (await db.session.execute(
                select(User).where(User.id == user_id)
                .execution_options(populate_existing=True)
            )).scalars().first()
    if user is None:
        raise NotFoundError("User", user_id)
    return user
