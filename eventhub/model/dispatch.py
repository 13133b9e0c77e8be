# model/dispatch.py
"""
Outbox delivery.

Messages are claimed one at a time with a conditional update on `attempts`,
so concurrent workers never deliver the same message twice. Emails are sent
with no database transaction held. Failures are logged and recorded on the
message; deliver_pending() never raises.
"""

from __future__ import annotations
import json
import logging
import os
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import text

from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from ..mailer import Mailer
from .fulfillment import build_artifact
from .notifications import (
    K_CANCELLATION_EMAIL, K_NOTIFICATION, K_PAYMENT_CONFIRMED_EMAIL,
    K_REJECTION_EMAIL, K_TICKET_EMAIL, add_notification,
)
from .transactions import load_transaction

OUTBOX_MAX_ATTEMPTS = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "5"))

logger = logging.getLogger(__name__)


async def _claim(
    db: GatedAsyncSession, message_id: int, seen_attempts: int
) -> Optional[Tuple[str, Dict[str, Any]]]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                UPDATE outbox_messages
                SET attempts = attempts + 1
                WHERE id = :id AND delivered_at IS NULL AND attempts = :seen
                RETURNING kind, payload
            """), {"id": message_id, "seen": seen_attempts})).first()
    if row is None:
        return None
    return row[0], json.loads(row[1])


async def _mark_delivered(db: GatedAsyncSession, message_id: int) -> None:
    async with db.gated():
        async with db.session.begin():
            await db.session.execute(text("""
                UPDATE outbox_messages
                SET delivered_at = :now, last_error = NULL
                WHERE id = :id
            """), {"id": message_id, "now": now_ts()})


async def _record_failure(
    db: GatedAsyncSession, message_id: int, error: Exception
) -> None:
    async with db.gated():
        async with db.session.begin():
            await db.session.execute(
                text("UPDATE outbox_messages SET last_error = :e "
                     "WHERE id = :id"),
                {"id": message_id, "e": f"{type(error).__name__}: {error}"},
            )


async def _send_email(
    db: GatedAsyncSession, mailer: Mailer, kind: str, payload: Dict[str, Any]
) -> None:
    transaction_id = payload["transaction_id"]
    async with db.gated():
        async with db.session.begin():
            tx = await load_transaction(db.session, transaction_id)
    if tx is None:
        raise LookupError(f"transaction {transaction_id} is gone")

    to = tx.user.email
    buyer = tx.user.first_name
    if kind == K_TICKET_EMAIL:
        artifact = build_artifact(tx)
        if artifact is None:
            raise RuntimeError("ticket artifact generation failed")
        await mailer.send_ticket_email(to, buyer, tx, tx.event, artifact)
    elif kind == K_PAYMENT_CONFIRMED_EMAIL:
        await mailer.send_payment_confirmation_email(
            to, buyer, tx.id, tx.event.name
        )
    elif kind == K_REJECTION_EMAIL:
        await mailer.send_rejection_email(
            to, buyer, tx.id, tx.event.name,
            points_refunded=payload.get("points_refunded", 0),
        )
    elif kind == K_CANCELLATION_EMAIL:
        await mailer.send_cancellation_email(
            to, buyer, tx.id, tx.event.name,
            points_refunded=payload.get("points_refunded", 0),
            expired=bool(payload.get("expired", False)),
        )
    else:
        raise ValueError(f"unknown outbox kind: {kind}")


async def deliver_one(
    db: GatedAsyncSession, mailer: Mailer, message_id: int,
    seen_attempts: int,
) -> bool:
    """Deliver a single message. False if another worker claimed it."""
    claimed = await _claim(db, message_id, seen_attempts)
    if claimed is None:
        return False
    kind, payload = claimed

    if kind == K_NOTIFICATION:
        # the row and the delivery mark commit together
        async with db.gated():
            async with db.session.begin():
                add_notification(db.session, payload)
                await db.session.execute(text("""
                    UPDATE outbox_messages SET delivered_at = :now
                    WHERE id = :id
                """), {"id": message_id, "now": now_ts()})
        return True

    await _send_email(db, mailer, kind, payload)
    await _mark_delivered(db, message_id)
    return True


async def deliver_pending(
    db: GatedAsyncSession, mailer: Mailer, limit: int = 100,
    max_attempts: int = OUTBOX_MAX_ATTEMPTS,
) -> Dict[str, int]:
    stats = {"delivered": 0, "failed": 0, "skipped": 0}
    try:
        async with db.gated():
            async with db.session.begin():
                rows = (await db.session.execute(text("""
                    SELECT id, attempts FROM outbox_messages
                    WHERE delivered_at IS NULL AND attempts < :max
                    ORDER BY id
                    LIMIT :limit
                """), {"max": max_attempts, "limit": max(1, limit)})).all()
    except Exception:
        logger.exception("outbox scan failed")
        return stats

    for message_id, attempts in rows:
        try:
            async with timeit("outbox.deliver"):
                ok = await deliver_one(db, mailer, message_id, attempts)
        except Exception as e:
            logger.exception("outbox message=%s failed (attempt %d/%d)",
                             message_id, attempts + 1, max_attempts)
            stats["failed"] += 1
            try:
                await _record_failure(db, message_id, e)
            except Exception:
                logger.exception("could not record failure for message=%s",
                                 message_id)
            continue
        stats["delivered" if ok else "skipped"] += 1

    if rows:
        logger.info("outbox delivered=%(delivered)d failed=%(failed)d "
                    "skipped=%(skipped)d", stats)
    return stats
