# model/transactions.py
"""
Transaction state machine.

    WAITING_FOR_PAYMENT -> WAITING_FOR_ADMIN_CONFIRMATION -> DONE | REJECTED
    WAITING_FOR_PAYMENT -> CANCELED   (buyer cancel or deadline sweep)

Every operation is one database transaction. Status changes are conditional
updates guarded on the expected current status, so a racing second caller
observes the new state and fails with InvalidStateError. Side effects
(emails, notifications) are written to the outbox in the same transaction
and delivered after commit.
"""

from __future__ import annotations
import logging
import os
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..errors import (
    ForbiddenError, InsufficientInventoryError, InvalidStateError,
    NotFoundError, TicketNotFoundError, ValidationError,
)
from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from . import inventory, rewards
from .db import (
    CANCELED, DONE, REJECTED, TERMINAL_STATUSES, TRANSACTION_STATUSES,
    WAITING_FOR_ADMIN_CONFIRMATION, WAITING_FOR_PAYMENT, Event, Transaction,
    TransactionTicket,
)
from .fulfillment import add_attendees
from .notifications import (
    K_CANCELLATION_EMAIL, K_PAYMENT_CONFIRMED_EMAIL, K_REJECTION_EMAIL,
    K_TICKET_EMAIL, enqueue, enqueue_notification,
)
from .users import Actor

PAYMENT_WINDOW_SECONDS = int(os.getenv("PAYMENT_WINDOW_SECONDS", 24 * 3600))

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TicketLine:
    ticket_id: int
    quantity: int


def _validate_lines(lines: Iterable[TicketLine]) -> List[TicketLine]:
    lines = list(lines or [])
    if not lines:
        raise ValidationError("At least one ticket line is required")
    seen = set()
    for line in lines:
        qty = line.quantity
        if not isinstance(qty, int) or isinstance(qty, bool) or qty <= 0:
            raise ValidationError("quantity must be a positive integer")
        if line.ticket_id in seen:
            raise ValidationError(
                f"Ticket {line.ticket_id} appears more than once"
            )
        seen.add(line.ticket_id)
    return lines


def _load_options():
    return (
        selectinload(Transaction.lines).selectinload(TransactionTicket.ticket),
        selectinload(Transaction.event),
        selectinload(Transaction.user),
        selectinload(Transaction.coupon),
        selectinload(Transaction.attendees),
    )


# UN-GATED internal function
async def load_transaction(
    session: AsyncSession, transaction_id: int
) -> Optional[Transaction]:
    return (await session.execute(
        select(Transaction)
        .where(Transaction.id == transaction_id)
        .options(*_load_options())
        .execution_options(populate_existing=True)
    )).scalars().first()


def _state_error(status: Optional[str], message: str) -> InvalidStateError:
    if status in TERMINAL_STATUSES:
        return InvalidStateError(f"Transaction is already {status.lower()}")
    return InvalidStateError(message)


# UN-GATED internal function
async def _flip_status(
    session: AsyncSession, transaction_id: int, expected: str, to: str,
    now: float, message: str, **fields,
) -> None:
    sets = ", ".join(f"{k} = :{k}" for k in fields)
    sql = (
        "UPDATE transactions SET status = :to, updated_at = :now"
        + (f", {sets}" if sets else "")
        + " WHERE id = :id AND status = :expected RETURNING id"
    )
    row = (await session.execute(text(sql), {
        "id": transaction_id, "expected": expected, "to": to, "now": now,
        **fields,
    })).first()
    if row is None:
        current = (await session.execute(
            text("SELECT status FROM transactions WHERE id = :id"),
            {"id": transaction_id},
        )).scalar()
        raise _state_error(current, message)


# UN-GATED internal function
async def _compensate(session: AsyncSession, tx: Transaction,
                      reason: str) -> None:
    """Undo what create() took: points, coupon, seats."""
    await rewards.credit_points(session, tx.user_id, tx.points_used, reason)
    if tx.coupon_id is not None:
        await rewards.unmark_coupon(session, tx.coupon_id)
    for line in tx.lines:
        await inventory.return_seats(session, line.ticket_id, line.quantity)


def _buyer_name(tx: Transaction) -> str:
    return tx.user.first_name


# ----------------------------
# create
# ----------------------------
async def create(
    db: GatedAsyncSession,
    actor: Actor,
    event_id: int,
    lines: Iterable[TicketLine],
    coupon_code: Optional[str] = None,
    points_requested: Optional[int] = None,
    now: Optional[float] = None,
) -> Transaction:
    lines = _validate_lines(lines)
    points_requested = points_requested or 0
    if points_requested < 0:
        raise ValidationError("pointsUsed must not be negative")
    now = now_ts() if now is None else now

    async with timeit("transactions.create"):
        async with db.gated():
            async with db.session.begin():
                s = db.session
                event = (await s.execute(
                    select(Event)
                    .where(Event.id == event_id)
                    .options(selectinload(Event.tickets))
                    .execution_options(populate_existing=True)
                )).scalars().first()
                if event is None:
                    raise NotFoundError("Event", event_id)

                user = (await s.execute(
                    text("SELECT id FROM users WHERE id = :id"),
                    {"id": actor.user_id},
                )).first()
                if user is None:
                    raise NotFoundError("User", actor.user_id)

                tickets = {t.id: t for t in event.tickets}
                total = 0
                priced = []
                for line in lines:
                    ticket = tickets.get(line.ticket_id)
                    if ticket is None:
                        raise TicketNotFoundError(line.ticket_id)
                    if ticket.available_seats < line.quantity:
                        raise InsufficientInventoryError(
                            ticket.id, line.quantity, ticket.available_seats
                        )
                    total += ticket.price * line.quantity
                    priced.append((ticket.id, line.quantity, ticket.price))

                coupon = None
                discount = 0
                if coupon_code:
                    coupon = await rewards.find_coupon(
                        s, coupon_code, actor.user_id, event.id, now
                    )
                    discount = rewards.coupon_discount(coupon, total)
                    await rewards.mark_coupon_used(s, coupon)

                tx = Transaction(
                    user_id=actor.user_id,
                    event_id=event.id,
                    coupon_id=coupon.id if coupon is not None else None,
                    total_amount=total,
                    discount_amount=discount,
                    points_used=0,
                    final_amount=max(0, total - discount),
                    status=WAITING_FOR_PAYMENT,
                    payment_deadline=now + PAYMENT_WINDOW_SECONDS,
                    created_at=now,
                    updated_at=now,
                )
                s.add(tx)
                await s.flush()

                used = await rewards.debit_points(
                    s, actor.user_id, points_requested, total - discount,
                    f"Used points for transaction #{tx.id}",
                )
                tx.points_used = used
                tx.final_amount = max(0, total - discount - used)

                for ticket_id, qty, price in priced:
                    s.add(TransactionTicket(
                        transaction_id=tx.id,
                        ticket_id=ticket_id,
                        quantity=qty,
                        price=price,
                    ))
                    # conditional decrement; raising here rolls back the
                    # whole purchase, including earlier lines and points
                    await inventory.take_seats(s, ticket_id, qty)

                await s.flush()
                tx = await load_transaction(s, tx.id)

    logger.info(
        "transaction=%s created user=%s event=%s total=%s discount=%s "
        "points=%s final=%s",
        tx.id, tx.user_id, tx.event_id, tx.total_amount,
        tx.discount_amount, tx.points_used, tx.final_amount,
    )
    return tx


# ----------------------------
# upload_proof
# ----------------------------
async def upload_proof(
    db: GatedAsyncSession,
    actor: Actor,
    transaction_id: int,
    proof_ref: str,
    now: Optional[float] = None,
) -> Transaction:
    if not proof_ref or not proof_ref.strip():
        raise ValidationError("Payment proof is required")
    now = now_ts() if now is None else now

    async with timeit("transactions.upload_proof"):
        async with db.gated():
            async with db.session.begin():
                s = db.session
                row = (await s.execute(text("""
                    SELECT user_id, status, payment_deadline
                    FROM transactions WHERE id = :id
                """), {"id": transaction_id})).mappings().first()
                if row is None:
                    raise NotFoundError("Transaction", transaction_id)
                if row["user_id"] != actor.user_id:
                    raise ForbiddenError("Unauthorized access to transaction")
                if row["status"] != WAITING_FOR_PAYMENT:
                    raise _state_error(
                        row["status"],
                        "Payment proof can only be uploaded for pending "
                        "transactions",
                    )
                if now > row["payment_deadline"]:
                    raise InvalidStateError("Payment deadline has passed")

                await _flip_status(
                    s, transaction_id, WAITING_FOR_PAYMENT,
                    WAITING_FOR_ADMIN_CONFIRMATION, now,
                    "Payment proof can only be uploaded for pending "
                    "transactions",
                    payment_proof=proof_ref.strip(),
                )
                tx = await load_transaction(s, transaction_id)

    logger.info("transaction=%s payment proof uploaded", transaction_id)
    return tx


# ----------------------------
# confirm
# ----------------------------
async def confirm(
    db: GatedAsyncSession,
    actor: Actor,
    transaction_id: int,
    decision: str,
    now: Optional[float] = None,
) -> Transaction:
    if decision not in (DONE, REJECTED):
        raise ValidationError("Invalid status")
    now = now_ts() if now is None else now

    async with timeit("transactions.confirm"):
        async with db.gated():
            async with db.session.begin():
                s = db.session
                tx = await load_transaction(s, transaction_id)
                if tx is None:
                    raise NotFoundError("Transaction", transaction_id)
                if tx.event.organizer_id != actor.user_id:
                    raise ForbiddenError(
                        "Only event organizer can confirm payments"
                    )
                if tx.status != WAITING_FOR_ADMIN_CONFIRMATION:
                    raise _state_error(
                        tx.status, "Transaction is not awaiting confirmation"
                    )

                await _flip_status(
                    s, tx.id, WAITING_FOR_ADMIN_CONFIRMATION, decision, now,
                    "Transaction is not awaiting confirmation",
                )
                event_name = tx.event.name

                if decision == DONE:
                    add_attendees(s, tx)
                    enqueue(s, K_TICKET_EMAIL, {"transaction_id": tx.id})
                    enqueue(s, K_PAYMENT_CONFIRMED_EMAIL,
                            {"transaction_id": tx.id})
                    enqueue_notification(
                        s, tx.user_id, "TRANSACTION_ACCEPTED",
                        "Payment Confirmed!",
                        f"Your payment for {event_name} has been confirmed. "
                        "Check your email for tickets.",
                    )
                else:
                    await _compensate(
                        s, tx, f"Refund for rejected transaction #{tx.id}"
                    )
                    enqueue(s, K_REJECTION_EMAIL, {
                        "transaction_id": tx.id,
                        "points_refunded": tx.points_used,
                    })
                    enqueue_notification(
                        s, tx.user_id, "TRANSACTION_REJECTED",
                        "Payment Rejected",
                        f"Your payment for {event_name} was rejected. "
                        "Please contact support.",
                    )

                await s.flush()
                tx = await load_transaction(s, transaction_id)

    logger.info("transaction=%s confirmed as %s by organizer=%s",
                transaction_id, decision, actor.user_id)
    return tx


# ----------------------------
# cancel / expire
# ----------------------------
# UN-GATED internal function
async def _cancel_pending(
    session: AsyncSession, tx: Transaction, now: float, expired: bool
) -> None:
    await _flip_status(
        session, tx.id, WAITING_FOR_PAYMENT, CANCELED, now,
        "Only transactions waiting for payment can be canceled",
    )
    await _compensate(
        session, tx, f"Refund for canceled transaction #{tx.id}"
    )
    enqueue(session, K_CANCELLATION_EMAIL, {
        "transaction_id": tx.id,
        "points_refunded": tx.points_used,
        "expired": expired,
    })
    reason = "the payment deadline passed" if expired else "you canceled it"
    enqueue_notification(
        session, tx.user_id, "TRANSACTION_CANCELED", "Transaction Canceled",
        f"Your transaction for {tx.event.name} was canceled because "
        f"{reason}.",
    )


async def cancel(
    db: GatedAsyncSession,
    actor: Actor,
    transaction_id: int,
    now: Optional[float] = None,
) -> Transaction:
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            s = db.session
            tx = await load_transaction(s, transaction_id)
            if tx is None:
                raise NotFoundError("Transaction", transaction_id)
            if tx.user_id != actor.user_id:
                raise ForbiddenError("Unauthorized access to transaction")
            if tx.status != WAITING_FOR_PAYMENT:
                raise _state_error(
                    tx.status,
                    "Only transactions waiting for payment can be canceled",
                )
            await _cancel_pending(s, tx, now, expired=False)
            await s.flush()
            tx = await load_transaction(s, transaction_id)

    logger.info("transaction=%s canceled by user=%s",
                transaction_id, actor.user_id)
    return tx


async def expire_overdue(
    db: GatedAsyncSession,
    now: Optional[float] = None,
    limit: int = 100,
) -> List[int]:
    """
    Cancel transactions still WAITING_FOR_PAYMENT past their deadline, with
    the same compensation as a rejection. One database transaction each.
    """
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            ids = (await db.session.execute(
                select(Transaction.id)
                .where(
                    Transaction.status == WAITING_FOR_PAYMENT,
                    Transaction.payment_deadline < now,
                )
                .order_by(Transaction.payment_deadline)
                .limit(max(1, limit))
            )).scalars().all()

    expired: List[int] = []
    for transaction_id in ids:
        try:
            async with db.gated():
                async with db.session.begin():
                    tx = await load_transaction(db.session, transaction_id)
                    if tx is None or tx.status != WAITING_FOR_PAYMENT:
                        continue
                    await _cancel_pending(db.session, tx, now, expired=True)
        except InvalidStateError:
            # moved on (proof uploaded or canceled) since we listed it
            logger.info("transaction=%s no longer pending, skipped",
                        transaction_id)
            continue
        expired.append(transaction_id)
        logger.info("transaction=%s expired", transaction_id)
    return expired


# ----------------------------
# reads
# ----------------------------
async def get(
    db: GatedAsyncSession, actor: Actor, transaction_id: int
) -> Transaction:
    async with db.gated():
        async with db.session.begin():
            tx = await load_transaction(db.session, transaction_id)
    if tx is None:
        raise NotFoundError("Transaction", transaction_id)
    if actor.user_id not in (tx.user_id, tx.event.organizer_id):
        raise ForbiddenError("Unauthorized access to transaction")
    return tx


async def list_for_user(
    db: GatedAsyncSession, actor: Actor, limit: int = 100
) -> List[Transaction]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(
                select(Transaction)
                .where(Transaction.user_id == actor.user_id)
                .options(*_load_options())
                .order_by(Transaction.created_at.desc(), Transaction.id.desc())
                .limit(max(1, min(limit, 500)))
                .execution_options(populate_existing=True)
            )).scalars().all()
    return list(rows)


async def list_for_organizer(
    db: GatedAsyncSession, actor: Actor, status: Optional[str] = None,
    limit: int = 200,
) -> List[Transaction]:
    if not actor.can_organize:
        raise ForbiddenError("Only organizers can list event transactions")
    if status is not None and status not in TRANSACTION_STATUSES:
        raise ValidationError("Invalid status filter")
    q = (
        select(Transaction)
        .join(Event, Event.id == Transaction.event_id)
        .where(Event.organizer_id == actor.user_id)
    )
    if status is not None:
        q = q.where(Transaction.status == status)
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(
                q.options(*_load_options())
                .order_by(Transaction.created_at.desc(), Transaction.id.desc())
                .limit(max(1, min(limit, 500)))
                .execution_options(populate_existing=True)
            )).scalars().all()
    return list(rows)
