# model/events.py
from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from ..errors import ForbiddenError, NotFoundError, ValidationError
from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from .db import Event, Promotion, Ticket
from .users import Actor

logger = logging.getLogger(__name__)


def _non_negative_int(value: Any, field: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ValidationError(f"{field} must be a non-negative integer")
    return value


def _check_ticket(fields: Dict[str, Any]) -> Ticket:
    name = (fields.get("name") or "").strip()
    if not name:
        raise ValidationError("ticket name is required")
    return Ticket(
        name=name,
        price=_non_negative_int(fields.get("price"), "price"),
        available_seats=_non_negative_int(
            fields.get("available_seats"), "available_seats"
        ),
    )


def _check_promotion(fields: Dict[str, Any]) -> Promotion:
    code = (fields.get("code") or "").strip()
    if not code:
        raise ValidationError("promotion code is required")
    start, end = fields.get("start_date"), fields.get("end_date")
    if start is None or end is None or end < start:
        raise ValidationError("promotion needs start_date <= end_date")
    discount = _non_negative_int(fields.get("discount"), "discount")
    is_percentage = bool(fields.get("is_percentage", False))
    if is_percentage and discount > 100:
        raise ValidationError("percentage discount must be at most 100")
    return Promotion(
        code=code,
        name=fields.get("name") or code,
        discount=discount,
        is_percentage=is_percentage,
        is_active=bool(fields.get("is_active", True)),
        start_date=float(start),
        end_date=float(end),
    )


async def create_event(
    db: GatedAsyncSession,
    actor: Actor,
    name: str,
    start_date: float,
    tickets: Sequence[Dict[str, Any]],
    location: str = "",
    address: str = "",
    promotions: Optional[Sequence[Dict[str, Any]]] = None,
) -> Event:
    if not actor.can_organize:
        raise ForbiddenError("Only organizers can create events")
    if not name or not name.strip():
        raise ValidationError("name is required")
    if not tickets:
        raise ValidationError("At least one ticket type is required")

    ticket_rows = [_check_ticket(t) for t in tickets]
    promo_rows = [_check_promotion(p) for p in (promotions or [])]

    event = Event(
        organizer_id=actor.user_id,
        name=name.strip(),
        location=location,
        address=address,
        start_date=float(start_date),
        created_at=now_ts(),
        tickets=ticket_rows,
        promotions=promo_rows,
    )
    async with db.gated():
        async with db.session.begin():
            db.session.add(event)

    logger.info("event=%s created by organizer=%s with %d ticket types",
                event.id, actor.user_id, len(ticket_rows))
    return event


def active_promotions(event: Event, now: Optional[float] = None
                      ) -> List[Promotion]:
    now = now_ts() if now is None else now
    return [
        p for p in event.promotions
        if p.is_active and p.start_date <= now <= p.end_date
    ]


async def get_event(db: GatedAsyncSession, event_id: int) -> Event:
    """Event with tickets and promotions loaded (tickets fresh)."""
    async with db.gated():
        async with db.session.begin():
            event = (await db.session.execute(
                select(Event)
                .where(Event.id == event_id)
                .options(
                    selectinload(Event.tickets),
                    selectinload(Event.promotions),
                )
                .execution_options(populate_existing=True)
            )).scalars().first()
    if event is None:
        raise NotFoundError("Event", event_id)
    return event
