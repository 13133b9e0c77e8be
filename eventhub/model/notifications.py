# model/notifications.py
"""
In-app notifications and the outbox that carries every post-commit side
effect (notification rows, emails).
"""

from __future__ import annotations
import json
from typing import Any, Dict, List

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ForbiddenError, NotFoundError
from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from .db import NOTIFICATION_TYPES, Notification, OutboxMessage
from .users import Actor

# outbox kinds
K_NOTIFICATION = "notification"
K_TICKET_EMAIL = "ticket_email"
K_PAYMENT_CONFIRMED_EMAIL = "payment_confirmed_email"
K_REJECTION_EMAIL = "rejection_email"
K_CANCELLATION_EMAIL = "cancellation_email"

OUTBOX_KINDS = (
    K_NOTIFICATION,
    K_TICKET_EMAIL,
    K_PAYMENT_CONFIRMED_EMAIL,
    K_REJECTION_EMAIL,
    K_CANCELLATION_EMAIL,
)


# UN-GATED internal function
def enqueue(session: AsyncSession, kind: str, payload: Dict[str, Any]) -> None:
    """Add an outbox message to the caller's open transaction."""
    if kind not in OUTBOX_KINDS:
        raise ValueError(f"unknown outbox kind: {kind}")
    session.add(OutboxMessage(
        kind=kind,
        payload=json.dumps(payload, separators=(",", ":")),
        created_at=now_ts(),
        attempts=0,
    ))


# UN-GATED internal function
def enqueue_notification(
    session: AsyncSession, user_id: int, type_: str, title: str,
    message: str,
) -> None:
    if type_ not in NOTIFICATION_TYPES:
        raise ValueError(f"unknown notification type: {type_}")
    enqueue(session, K_NOTIFICATION, {
        "user_id": user_id,
        "type": type_,
        "title": title,
        "message": message,
    })


# UN-GATED internal function
def add_notification(session: AsyncSession, payload: Dict[str, Any]) -> None:
    session.add(Notification(
        user_id=payload["user_id"],
        type=payload["type"],
        title=payload["title"],
        message=payload["message"],
        is_read=False,
        created_at=now_ts(),
    ))


async def list_notifications(
    db: GatedAsyncSession, actor: Actor, unread_only: bool = False,
    limit: int = 50,
) -> List[Notification]:
    q = select(Notification).where(Notification.user_id == actor.user_id)
    if unread_only:
        q = q.where(Notification.is_read.is_(False))
    q = q.order_by(Notification.id.desc()).limit(max(1, min(limit, 200)))
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(
                q.execution_options(populate_existing=True)
            )).scalars().all()
    return list(rows)


async def mark_read(
    db: GatedAsyncSession, actor: Actor, notification_id: int
) -> None:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                text("SELECT user_id FROM notifications WHERE id = :id"),
                {"id": notification_id},
            )).first()
            if row is None:
                raise NotFoundError("Notification", notification_id)
            if int(row[0]) != actor.user_id:
                raise ForbiddenError("Unauthorized access to notification")
            await db.session.execute(
                text("UPDATE notifications SET is_read = :r WHERE id = :id"),
                {"id": notification_id, "r": True},
            )
