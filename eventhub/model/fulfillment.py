# model/fulfillment.py
"""
Fulfillment on DONE: attendee records (inside the confirming transaction)
and the ticket artifact (after commit, best effort).
"""

from __future__ import annotations
import logging
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from ..ticketart import (
    TicketData, generate_ticket_artifact, generate_verification_payload,
)
from .db import Attendee, Transaction

logger = logging.getLogger(__name__)


# UN-GATED internal function
def add_attendees(session: AsyncSession, tx: Transaction) -> List[Attendee]:
    """One attendee row per line. tx.lines must be loaded with tickets."""
    ts = now_ts()
    attendees = [
        Attendee(
            user_id=tx.user_id,
            event_id=tx.event_id,
            transaction_id=tx.id,
            ticket_type=line.ticket.name,
            quantity=line.quantity,
            total_paid=line.price * line.quantity,
            created_at=ts,
        )
        for line in tx.lines
    ]
    session.add_all(attendees)
    return attendees


def ticket_data(tx: Transaction) -> TicketData:
    """tx must be loaded with user, event and lines->ticket."""
    user = tx.user
    first = tx.lines[0].ticket.name if tx.lines else "General"
    return {
        "transaction_id": tx.id,
        "event_name": tx.event.name,
        "event_date": tx.event.start_date,
        "event_location": tx.event.location,
        "ticket_type": first,
        "attendee_name": f"{user.first_name} {user.last_name}".strip(),
        "attendee_email": user.email,
        "quantity": sum(line.quantity for line in tx.lines),
        "qr_payload": generate_verification_payload(tx.id, user.email),
    }


def build_artifact(tx: Transaction) -> Optional[bytes]:
    """Ticket image bytes, or None when generation fails."""
    try:
        return generate_ticket_artifact(ticket_data(tx))
    except Exception:
        logger.exception("ticket artifact failed for transaction=%s", tx.id)
        return None
