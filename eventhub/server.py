from __future__ import annotations
import sys

import httpx
import logging
import os
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException
from fastapi import Request
from fastapi.responses import ORJSONResponse

from .errors import DomainError, ErrorCode, ForbiddenError, ValidationError
from .helpers import from_iso, to_iso
from .infra.sql import GatedAsyncSession, make_async_engine, session_opener
from .infra.timings import snapshot, timeit
from .mailer import MAIL_API_URL, HttpMailer, LogMailer, Mailer
from .model import events, notifications, referrals, rewards, transactions
from .model.db import DONE, ROLES, ROLE_USER, create_schema
from .model.dispatch import deliver_pending
from .model.transactions import TicketLine
from .model.users import Actor
from .ticketart import verify_payload

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    print("NEED DATABASE_URL! e.g. sqlite:///./eventhub.db")
    sys.exit(1)

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.TICKET_NOT_FOUND: 404,
    ErrorCode.COUPON_NOT_FOUND: 404,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.INVALID_STATE: 409,
    ErrorCode.INSUFFICIENT_INVENTORY: 409,
    ErrorCode.COUPON_EVENT_MISMATCH: 400,
    ErrorCode.VALIDATION_ERROR: 400,
}

engine, SessionAsync, gated = make_async_engine(DATABASE_URL)


open_db = session_opener(SessionAsync, gated)


def get_db_opener():
    return open_db


async def get_db(opener=Depends(get_db_opener)) -> GatedAsyncSession:
    async with opener() as db:
        yield db


app = FastAPI(
    title="EventHub",
    default_response_class=ORJSONResponse,
)


def get_mailer() -> Mailer:
    mailer = getattr(app.state, "mailer", None)
    if mailer is None:
        raise RuntimeError("Mailer not initialized")
    return mailer


def get_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Actor:
    if not x_user_id or not x_user_id.strip().isdigit():
        raise HTTPException(401, detail="missing or invalid X-User-Id")
    role = (x_user_role or ROLE_USER).strip().upper()
    if role not in ROLES:
        raise HTTPException(401, detail="invalid X-User-Role")
    return Actor(user_id=int(x_user_id), role=role)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    print('\n' * 3)
    print('=' * 50)
    print('EventHub is starting up...')
    print(f'   - Database: {engine.url.get_backend_name()}')
    print(f'   - Mail relay: {MAIL_API_URL or "disabled (logging only)"}')
    print('=' * 50)
    print('\n' * 3)


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await create_schema(conn)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(max_connections=64, max_keepalive_connections=16),
    )
    if MAIL_API_URL:
        app.state.mailer = HttpMailer(app.state.http)
    else:
        app.state.mailer = LogMailer()


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.exception_handler(DomainError)
async def _domain_error(request: Request, exc: DomainError):
    return ORJSONResponse(
        status_code=STATUS_BY_CODE.get(exc.code, 400),
        content={"code": exc.code.value, "detail": exc.message},
    )


# ----------------------------
# Helpers
# ----------------------------
def transaction_to_dict(tx) -> Dict[str, Any]:
    return {
        "id": tx.id,
        "user_id": tx.user_id,
        "event_id": tx.event_id,
        "event_name": tx.event.name,
        "status": tx.status,
        "total_amount": tx.total_amount,
        "discount_amount": tx.discount_amount,
        "points_used": tx.points_used,
        "final_amount": tx.final_amount,
        "coupon_code": tx.coupon.code if tx.coupon is not None else None,
        "payment_proof": tx.payment_proof,
        "payment_deadline": to_iso(tx.payment_deadline),
        "created_at": to_iso(tx.created_at),
        "updated_at": to_iso(tx.updated_at),
        "tickets": [
            {
                "ticket_id": line.ticket_id,
                "name": line.ticket.name,
                "quantity": line.quantity,
                "price": line.price,
            }
            for line in tx.lines
        ],
        "attendees": [
            {
                "ticket_type": a.ticket_type,
                "quantity": a.quantity,
                "total_paid": a.total_paid,
            }
            for a in tx.attendees
        ],
    }


def event_to_dict(event) -> Dict[str, Any]:
    return {
        "id": event.id,
        "organizer_id": event.organizer_id,
        "name": event.name,
        "location": event.location,
        "address": event.address,
        "start_date": to_iso(event.start_date),
        "tickets": [
            {
                "id": t.id,
                "name": t.name,
                "price": t.price,
                "available_seats": t.available_seats,
            }
            for t in event.tickets
        ],
        "promotions": [
            {
                "code": p.code,
                "name": p.name,
                "discount": p.discount,
                "is_percentage": p.is_percentage,
                "start_date": to_iso(p.start_date),
                "end_date": to_iso(p.end_date),
            }
            for p in events.active_promotions(event)
        ],
    }


def _int_field(payload: dict, key: str, required: bool = True) -> Optional[int]:
    value = payload.get(key)
    if value is None and not required:
        return None
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")
    return value


def _ts_field(payload: dict, key: str) -> float:
    value = payload.get(key)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        try:
            return from_iso(value)
        except ValueError:
            pass
    raise ValidationError(f"{key} must be an ISO-8601 date or epoch seconds")


def _parse_lines(payload: dict) -> List[TicketLine]:
    raw = payload.get("tickets")
    if not isinstance(raw, list):
        raise ValidationError("tickets must be a list")
    lines = []
    for item in raw:
        if not isinstance(item, dict):
            raise ValidationError("each ticket line must be an object")
        lines.append(TicketLine(
            ticket_id=_int_field(item, "ticket_id"),
            quantity=_int_field(item, "quantity"),
        ))
    return lines


async def _deliver_outbox(opener, mailer: Mailer) -> None:
    async with opener() as db:
        await deliver_pending(db, mailer)


# ----------------------------
# API: Transactions
# ----------------------------
@app.post("/api/transactions", status_code=201)
async def create_transaction(
    payload: dict,
    actor: Actor = Depends(get_actor),
    db: GatedAsyncSession = Depends(get_db),
):
    coupon_code = payload.get("coupon_code")
    if coupon_code is not None and not isinstance(coupon_code, str):
        raise ValidationError("coupon_code must be a string")
    tx = await transactions.create(
        db, actor,
        event_id=_int_field(payload, "event_id"),
        lines=_parse_lines(payload),
        coupon_code=(coupon_code or "").strip() or None,
        points_requested=_int_field(payload, "points_used", required=False),
    )
    return transaction_to_dict(tx)


@app.post("/api/transactions/{transaction_id}/payment-proof")
async def upload_payment_proof(
    transaction_id: int,
    payload: dict,
    actor: Actor = Depends(get_actor),
    db: GatedAsyncSession = Depends(get_db),
):
    proof = payload.get("payment_proof")
    if not isinstance(proof, str):
        raise ValidationError("Payment proof is required")
    tx = await transactions.upload_proof(db, actor, transaction_id, proof)
    return transaction_to_dict(tx)


@app.patch("/api/transactions/{transaction_id}/confirm")
async def confirm_transaction(
    transaction_id: int,
    payload: dict,
    background: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    db: GatedAsyncSession = Depends(get_db),
    opener=Depends(get_db_opener),
    mailer: Mailer = Depends(get_mailer),
):
    tx = await transactions.confirm(
        db, actor, transaction_id, payload.get("status")
    )
    background.add_task(_deliver_outbox, opener, mailer)
    return transaction_to_dict(tx)


@app.post("/api/transactions/{transaction_id}/cancel")
async def cancel_transaction(
    transaction_id: int,
    background: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    db: GatedAsyncSession = Depends(get_db),
    opener=Depends(get_db_opener),
    mailer: Mailer = Depends(get_mailer),
):
    tx = await transactions.cancel(db, actor, transaction_id)
    background.add_task(_deliver_outbox, opener, mailer)
    return transaction_to_dict(tx)


@app.get("/api/transactions")
async def list_my_transactions(
    limit: int = 100,
    actor: Actor = Depends(get_actor),
    db: GatedAsyncSession = Depends(get_db),
):
    items = await transactions.list_for_user(db, actor, limit=limit)
    return {"items": [transaction_to_dict(tx) for tx in items]}


@app.get("/api/transactions/{transaction_id}")
async def get_transaction(
    transaction_id: int,
    actor: Actor = Depends(get_actor),
    db: GatedAsyncSession = Depends(get_db),
):
    tx = await transactions.get(db, actor, transaction_id)
    return transaction_to_dict(tx)


@app.get("/api/organizer/transactions")
async def list_organizer_transactions(
    status: Optional[str] = None,
    limit: int = 200,
    actor: Actor = Depends(get_actor),
    db: GatedAsyncSession = Depends(get_db),
):
    items = await transactions.list_for_organizer(
        db, actor, status=status, limit=limit
    )
    return {"items": [transaction_to_dict(tx) for tx in items]}


# ----------------------------
# API: Events
# ----------------------------
@app.post("/api/events", status_code=201)
async def create_event(
    payload: dict,
    actor: Actor = Depends(get_actor),
    db: GatedAsyncSession = Depends(get_db),
):
    tickets = payload.get("tickets")
    promotions = payload.get("promotions") or []
    if not isinstance(tickets, list) or not isinstance(promotions, list):
        raise ValidationError("tickets and promotions must be lists")
    promos = []
    for p in promotions:
        if not isinstance(p, dict):
            raise ValidationError("each promotion must be an object")
        promos.append({
            **p,
            "start_date": _ts_field(p, "start_date"),
            "end_date": _ts_field(p, "end_date"),
        })
    event = await events.create_event(
        db, actor,
        name=payload.get("name") or "",
        start_date=_ts_field(payload, "start_date"),
        tickets=[t if isinstance(t, dict) else {} for t in tickets],
        location=payload.get("location") or "",
        address=payload.get("address") or "",
        promotions=promos,
    )
    return event_to_dict(event)


@app.get("/api/events/{event_id}")
async def get_event(
    event_id: int,
    db: GatedAsyncSession = Depends(get_db),
):
    event = await events.get_event(db, event_id)
    return event_to_dict(event)


# ----------------------------
# API: Rewards
# ----------------------------
@app.get("/api/me/coupons")
async def my_coupons(
    actor: Actor = Depends(get_actor),
    db: GatedAsyncSession = Depends(get_db),
):
    coupons = await rewards.list_coupons(db, actor.user_id)
    return {"items": [
        {
            "id": c.id,
            "code": c.code,
            "name": c.name,
            "event_id": c.event_id,
            "discount": c.discount,
            "is_percentage": c.is_percentage,
            "type": c.type,
            "expiry_date": to_iso(c.expiry_date),
        }
        for c in coupons
    ]}


@app.get("/api/me/points")
async def my_points(
    limit: int = 100,
    actor: Actor = Depends(get_actor),
    db: GatedAsyncSession = Depends(get_db),
):
    balance, history = await rewards.point_history(
        db, actor.user_id, limit=limit
    )
    return {
        "balance": balance,
        "history": [
            {
                "points": h.points,
                "description": h.description,
                "created_at": to_iso(h.created_at),
            }
            for h in history
        ],
    }


# ----------------------------
# API: Referrals
# ----------------------------
@app.get("/api/me/referrals")
async def my_referrals(
    actor: Actor = Depends(get_actor),
    db: GatedAsyncSession = Depends(get_db),
):
    stats = await referrals.get_referral_stats(db, actor.user_id)
    return {
        "referral_code": stats.referral_code,
        "total_referrals": stats.total_referrals,
        "total_points_earned": stats.total_points_earned,
        "referral_history": [
            {
                "referred_user": f"{u.first_name} {u.last_name}".strip(),
                "email": u.email,
                "date_referred": to_iso(u.created_at),
                "points_earned": referrals.REFERRAL_POINTS,
            }
            for u in stats.referred
        ],
    }


@app.post("/api/referrals/redeem", status_code=201)
async def redeem_referral(
    payload: dict,
    background: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    db: GatedAsyncSession = Depends(get_db),
    opener=Depends(get_db_opener),
    mailer: Mailer = Depends(get_mailer),
):
    code = payload.get("referral_code")
    if not isinstance(code, str):
        raise ValidationError("referral_code must be a string")
    reward = await referrals.process_referral_reward(db, actor.user_id, code)
    background.add_task(_deliver_outbox, opener, mailer)
    return {
        "referrer": {
            "id": reward.referrer_id,
            "name": reward.referrer_name,
            "points_earned": reward.points_earned,
        },
        "new_user_coupon": {
            "code": reward.coupon_code,
            "discount": reward.coupon_discount,
        },
    }


@app.post("/api/admin/users/{user_id}/points")
async def admin_award_points(
    user_id: int,
    payload: dict,
    actor: Actor = Depends(get_actor),
    db: GatedAsyncSession = Depends(get_db),
):
    if not actor.is_admin:
        raise ForbiddenError("Only admins can award points")
    description = payload.get("description") or "Awarded by admin"
    if not isinstance(description, str):
        raise ValidationError("description must be a string")
    await rewards.award_points(
        db, user_id, _int_field(payload, "points"), description
    )
    balance, _ = await rewards.point_history(db, user_id, limit=1)
    return {"balance": balance}


# ----------------------------
# API: Notifications
# ----------------------------
@app.get("/api/notifications")
async def list_notifications(
    unread_only: bool = False,
    limit: int = 50,
    actor: Actor = Depends(get_actor),
    db: GatedAsyncSession = Depends(get_db),
):
    rows = await notifications.list_notifications(
        db, actor, unread_only=unread_only, limit=limit
    )
    return {"items": [
        {
            "id": n.id,
            "type": n.type,
            "title": n.title,
            "message": n.message,
            "is_read": n.is_read,
            "created_at": to_iso(n.created_at),
        }
        for n in rows
    ]}


@app.patch("/api/notifications/{notification_id}/read")
async def mark_notification_read(
    notification_id: int,
    actor: Actor = Depends(get_actor),
    db: GatedAsyncSession = Depends(get_db),
):
    await notifications.mark_read(db, actor, notification_id)
    return {"ok": True}


# ----------------------------
# API: Check-in
# ----------------------------
@app.post("/api/tickets/verify")
async def verify_ticket(
    payload: dict,
    actor: Actor = Depends(get_actor),
    db: GatedAsyncSession = Depends(get_db),
):
    async with timeit("tickets.verify"):
        claims = verify_payload(payload.get("token") or "")
        tx = await transactions.get(db, actor, claims["tid"])
    valid = tx.status == DONE and tx.user.email == claims["email"]
    return {
        "valid": valid,
        "transaction_id": tx.id,
        "status": tx.status,
        "event_name": tx.event.name,
        "attendee_email": claims["email"],
        "quantity": sum(line.quantity for line in tx.lines),
    }


# ----------------------------
# API: Admin
# ----------------------------
@app.get("/api/admin/timings")
async def api_admin_timings(actor: Actor = Depends(get_actor)):
    if not actor.is_admin:
        raise ForbiddenError("Only admins can read timings")
    return {"timings": snapshot()}
