from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Boolean,
    Column,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)


Base = declarative_base()

ORDER_PENDING = "pending"
ORDER_PAID = "paid"
ORDER_SALES_CLOSED = "sales_closed"
ORDER_OVERBOOKED = "overbooked"

TICKET_ACTIVE = "active"
TICKET_USED = "used"


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    # draft | published | canceled
    status = Column(String, nullable=False, default="draft")
    starts_at = Column(Float, nullable=False)
    ends_at = Column(Float, nullable=True)


class EventDay(Base):
    __tablename__ = "event_days"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    day_date = Column(String, nullable=False)  # YYYY-MM-DD


class TicketType(Base):
    __tablename__ = "ticket_types"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    name = Column(String, nullable=False)
    price_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="INR")
    capacity = Column(Integer, nullable=False, default=0)  # 0 = unlimited
    is_active = Column(Boolean, nullable=False, default=True)
    sales_start_at = Column(Float, nullable=True)
    sales_end_at = Column(Float, nullable=True)


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    event_day_id = Column(String, ForeignKey("event_days.id"), nullable=True)

    buyer_id = Column(String, nullable=True)  # None for guest checkout
    buyer_name = Column(String, nullable=True)
    buyer_email = Column(String, nullable=True)
    buyer_phone = Column(String, nullable=True)

    # pending | paid | sales_closed | overbooked
    status = Column(String, nullable=False, default=ORDER_PENDING, index=True)
    amount_total_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="INR")

    payment_provider = Column(String, nullable=False, default="stripe")
    provider_session_id = Column(String, nullable=True, unique=True)
    provider_payment_id = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)
    tickets_issued_at = Column(Float, nullable=True)


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (
        UniqueConstraint("order_id", "ticket_type_id",
                         name="uq_order_items_order_type"),
    )
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"),
                            nullable=False)
    unit_price_cents = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)
    position = Column(Integer, nullable=False, default=0)


class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (
        UniqueConstraint("order_item_id", "seq",
                         name="uq_tickets_item_seq"),
    )
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    event_day_id = Column(String, ForeignKey("event_days.id"),
                          nullable=False)
    valid_for_date = Column(String, nullable=False)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    order_item_id = Column(String, ForeignKey("order_items.id"),
                           nullable=False)
    seq = Column(Integer, nullable=False)
    attendee_id = Column(String, nullable=True)
    attendee_name = Column(String, nullable=True)
    attendee_email = Column(String, nullable=True)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"),
                            nullable=False, index=True)
    ticket_code = Column(String, nullable=False, unique=True)
    qr_payload = Column(String, nullable=False)
    # active | used | void
    status = Column(String, nullable=False, default=TICKET_ACTIVE)
    created_at = Column(Float, nullable=False)


class TicketCheckin(Base):
    __tablename__ = "ticket_checkins"
    id = Column(String, primary_key=True)
    ticket_id = Column(String, ForeignKey("tickets.id"), nullable=False,
                       unique=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    checked_in_at = Column(Float, nullable=False)
    checked_in_by = Column(String, nullable=True)
    device_info = Column(String, nullable=True)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    event_id = Column(String, primary_key=True)  # e.g. "evt_1Abc..."
    event_type = Column(String, nullable=False)
    outcome = Column(String, nullable=False)
    processed_at = Column(Float, nullable=False)
