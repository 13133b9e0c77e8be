from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    ForeignKey,
    CheckConstraint,
    Index,
)
from sqlalchemy.ext.asyncio import AsyncConnection


Base = declarative_base()


# ----------------------------
# Status / kinds
# ----------------------------
WAITING_FOR_PAYMENT = "WAITING_FOR_PAYMENT"
WAITING_FOR_ADMIN_CONFIRMATION = "WAITING_FOR_ADMIN_CONFIRMATION"
DONE = "DONE"
REJECTED = "REJECTED"
CANCELED = "CANCELED"

TRANSACTION_STATUSES = (
    WAITING_FOR_PAYMENT,
    WAITING_FOR_ADMIN_CONFIRMATION,
    DONE,
    REJECTED,
    CANCELED,
)
TERMINAL_STATUSES = (DONE, REJECTED, CANCELED)

ROLE_USER = "USER"
ROLE_ORGANIZER = "ORGANIZER"
ROLE_ADMIN = "ADMIN"
ROLES = (ROLE_USER, ROLE_ORGANIZER, ROLE_ADMIN)

COUPON_GENERAL = "GENERAL"
COUPON_REFERRAL = "REFERRAL"

NOTIFICATION_TYPES = (
    "TRANSACTION_ACCEPTED",
    "TRANSACTION_REJECTED",
    "TRANSACTION_CANCELED",
    "PAYMENT_REMINDER",
    "EVENT_REMINDER",
    "REFERRAL_REWARD",
)


# ----------------------------
# ORM models
# ----------------------------
class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    email = Column(String, nullable=False, unique=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False, default="")
    role = Column(String, nullable=False, default=ROLE_USER)
    point_balance = Column(Integer, nullable=False, default=0)
    # own code to hand out; referred_by is set once, when a code is redeemed
    referral_code = Column(String, nullable=True, unique=True)
    referred_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        CheckConstraint("point_balance >= 0", name="ck_users_points"),
        Index("users_referred_by_idx", "referred_by"),
    )


class Event(Base):
    __tablename__ = "events"
    id = Column(Integer, primary_key=True)
    organizer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    name = Column(String, nullable=False)
    location = Column(String, nullable=False, default="")
    address = Column(String, nullable=False, default="")
    start_date = Column(Float, nullable=False)
    created_at = Column(Float, nullable=False)

    tickets = relationship(
        "Ticket", back_populates="event", order_by="Ticket.id"
    )
    promotions = relationship(
        "Promotion", back_populates="event", order_by="Promotion.id"
    )


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(Integer, primary_key=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)  # minor units
    available_seats = Column(Integer, nullable=False)

    event = relationship("Event", back_populates="tickets")

    __table_args__ = (
        CheckConstraint("available_seats >= 0", name="ck_tickets_seats"),
        CheckConstraint("price >= 0", name="ck_tickets_price"),
        Index("tickets_event_idx", "event_id"),
    )


class Promotion(Base):
    __tablename__ = "promotions"
    id = Column(Integer, primary_key=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False)
    code = Column(String, nullable=False)
    name = Column(String, nullable=False, default="")
    discount = Column(Integer, nullable=False)
    is_percentage = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    start_date = Column(Float, nullable=False)
    end_date = Column(Float, nullable=False)

    event = relationship("Event", back_populates="promotions")


class Coupon(Base):
    __tablename__ = "coupons"
    id = Column(Integer, primary_key=True)
    code = Column(String, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    # NULL = valid for any event
    event_id = Column(Integer, ForeignKey("events.id"), nullable=True)
    name = Column(String, nullable=False, default="")
    discount = Column(Integer, nullable=False)
    type = Column(String, nullable=False, default=COUPON_GENERAL)
    is_percentage = Column(Boolean, nullable=False, default=False)
    is_used = Column(Boolean, nullable=False, default=False)
    expiry_date = Column(Float, nullable=False)

    __table_args__ = (
        Index("coupons_owner_code_idx", "user_id", "code"),
    )


class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False)
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=True)

    total_amount = Column(Integer, nullable=False)
    discount_amount = Column(Integer, nullable=False, default=0)
    points_used = Column(Integer, nullable=False, default=0)
    final_amount = Column(Integer, nullable=False)

    # WAITING_FOR_PAYMENT | WAITING_FOR_ADMIN_CONFIRMATION | DONE |
    # REJECTED | CANCELED
    status = Column(String, nullable=False, default=WAITING_FOR_PAYMENT)
    payment_deadline = Column(Float, nullable=False)
    payment_proof = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    lines = relationship(
        "TransactionTicket",
        order_by="TransactionTicket.id",
        back_populates="transaction",
    )
    event = relationship("Event")
    user = relationship("User")
    coupon = relationship("Coupon")
    attendees = relationship("Attendee", order_by="Attendee.id")

    __table_args__ = (
        Index("transactions_user_idx", "user_id", "created_at"),
        Index("transactions_status_deadline_idx",
              "status", "payment_deadline"),
    )


class TransactionTicket(Base):
    __tablename__ = "transaction_tickets"
    id = Column(Integer, primary_key=True)
    transaction_id = Column(
        Integer, ForeignKey("transactions.id"), nullable=False
    )
    ticket_id = Column(Integer, ForeignKey("tickets.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Integer, nullable=False)  # snapshot at purchase

    transaction = relationship("Transaction", back_populates="lines")
    ticket = relationship("Ticket")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_lines_qty"),
    )


class PointHistory(Base):
    __tablename__ = "point_history"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    points = Column(Integer, nullable=False)  # signed delta
    description = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)


class Attendee(Base):
    __tablename__ = "attendees"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False)
    transaction_id = Column(
        Integer, ForeignKey("transactions.id"), nullable=False
    )
    ticket_type = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    total_paid = Column(Integer, nullable=False)
    created_at = Column(Float, nullable=False)


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    type = Column(String, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)


class OutboxMessage(Base):
    __tablename__ = "outbox_messages"
    id = Column(Integer, primary_key=True)
    kind = Column(String, nullable=False)
    payload = Column(Text, nullable=False)  # JSON
    created_at = Column(Float, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    delivered_at = Column(Float, nullable=True)
    last_error = Column(Text, nullable=True)

    __table_args__ = (
        Index("outbox_pending_idx", "delivered_at", "id"),
    )


async def create_schema(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all)
