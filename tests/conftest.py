import json
import uuid
from typing import Iterable, List, Optional

import pytest
from sqlalchemy import create_engine, func, select, text
from sqlalchemy.orm import Session

from ticketflow.codes import mint_ticket_codes
from ticketflow.config import Settings
from ticketflow.helpers import now_ts
from ticketflow.infra.sql import make_database
from ticketflow.infra.timings import Timings
from ticketflow.model.eventlog import SqlEventLog
from ticketflow.model.orm import (
    Base, Event, EventDay, Order, OrderItem, Ticket, TicketType,
)
from ticketflow.model.store import OrderStore
from ticketflow.payments import CHECKOUT_COMPLETED, PaymentEvent

QR_SECRET = "qr-test-secret"
WEBHOOK_SECRET = "whsec_test_secret"
STAFF_TOKEN = "staff-token"
STAFF_ID = "gate-staff"

FUTURE = now_ts() + 30 * 24 * 3600


# ----------------------------
# Row builders
# ----------------------------
def catalog(event_id="E1", day_id="D1", day_date="2099-01-01",
            ticket_types=({"id": "T1", "capacity": 10},),
            status="published") -> list:
    rows = [
        Event(id=event_id, title="Summer Fest", status=status,
              starts_at=FUTURE, ends_at=FUTURE + 3600),
        EventDay(id=day_id, event_id=event_id, day_date=day_date),
    ]
    for tt in ticket_types:
        fields = {
            "event_id": event_id,
            "name": f"Pass {tt['id']}",
            "price_cents": 5000,
            "currency": "INR",
            "capacity": 0,
            "is_active": True,
        }
        fields.update(tt)
        rows.append(TicketType(**fields))
    return rows


def order(order_id="O1", event_id="E1", day_id="D1", status="pending",
          **kw) -> Order:
    fields = dict(
        id=order_id,
        event_id=event_id,
        event_day_id=day_id,
        buyer_id="U1",
        buyer_name="Asha Rao",
        buyer_email="asha@example.com",
        status=status,
        amount_total_cents=10000,
        currency="INR",
        created_at=now_ts(),
    )
    fields.update(kw)
    return Order(**fields)


def sold(ticket_type_id: str, n: int, event_id="E1", day_id="D1",
         order_id: Optional[str] = None) -> list:
    """A settled order from someone else holding n tickets of a type."""
    oid = order_id or f"sold-{uuid.uuid4().hex[:8]}"
    item_id = uuid.uuid4().hex
    rows = [
        order(oid, event_id, day_id, status="paid", paid_at=now_ts(),
              tickets_issued_at=now_ts()),
        OrderItem(id=item_id, order_id=oid, ticket_type_id=ticket_type_id,
                  unit_price_cents=5000, quantity=n, position=0),
    ]
    for seq, (code, payload) in enumerate(mint_ticket_codes(n, QR_SECRET)):
        rows.append(Ticket(
            id=uuid.uuid4().hex, event_id=event_id, event_day_id=day_id,
            valid_for_date="2099-01-01", order_id=oid, order_item_id=item_id,
            seq=seq, ticket_type_id=ticket_type_id, ticket_code=code,
            qr_payload=payload, status="active", created_at=now_ts(),
        ))
    return rows


def event_payload(order_id="O1", event_id="E1", items=None,
                  evt="evt_1", kind=CHECKOUT_COMPLETED,
                  payment_id="pi_1", metadata=None) -> dict:
    if items is None:
        items = [{"ticket_type_id": "T1", "quantity": 2}]
    if metadata is None:
        metadata = {
            "order_id": order_id,
            "event_id": event_id,
            "event_day_id": "D1",
            "items": json.dumps(items),
        }
    return {
        "id": evt,
        "object": "event",
        "type": kind,
        "data": {"object": {
            "id": "cs_test_1",
            "object": "checkout.session",
            "payment_intent": payment_id,
            "amount_total": 10000,
            "currency": "inr",
            "metadata": metadata,
        }},
    }


def completion(**kw) -> PaymentEvent:
    return PaymentEvent.from_payload(event_payload(**kw))


# ----------------------------
# Fixtures
# ----------------------------
@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'ticketflow.db'}",
        payment_provider="mock",
        mock_secret=WEBHOOK_SECRET,
        mock_webhook_url="/payments/webhook",
        qr_signing_secret=QR_SECRET,
        staff_api_tokens=f"{STAFF_ID}:{STAFF_TOKEN}",
    )


@pytest.fixture
async def database(settings):
    db = make_database(settings)
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db
    await db.dispose()


@pytest.fixture
async def sessions(database):
    opened = []

    def open_session():
        s = database.sessions()
        opened.append(s)
        return s

    yield open_session
    for s in opened:
        await s.close()


@pytest.fixture
def timings():
    return Timings()


@pytest.fixture
def make_store(database, sessions, timings):
    def make() -> OrderStore:
        return OrderStore(db=sessions(), gated=database.gated,
                          timings=timings)
    return make


@pytest.fixture
def store(make_store):
    return make_store()


@pytest.fixture
def events(database, sessions, timings):
    return SqlEventLog(db=sessions(), gated=database.gated, timings=timings)


@pytest.fixture
def seed(sessions):
    async def _seed(rows: Iterable) -> None:
        s = sessions()
        async with s.begin():
            # one flush per row keeps inserts in FK order
            for r in rows:
                s.add(r)
                await s.flush()
    return _seed


@pytest.fixture
def count_tickets(sessions):
    async def _count(order_id: Optional[str] = None) -> int:
        s = sessions()
        stmt = select(func.count()).select_from(Ticket)
        if order_id is not None:
            stmt = stmt.where(Ticket.order_id == order_id)
        async with s.begin():
            return (await s.execute(stmt)).scalar_one()
    return _count


@pytest.fixture
def break_table(database):
    """Drop a table so the next statement touching it fails in the driver."""
    async def _break(name: str) -> None:
        async with database.engine.begin() as conn:
            await conn.execute(text(f"DROP TABLE {name}"))
    return _break


@pytest.fixture
def restore_schema(database):
    async def _restore() -> None:
        async with database.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    return _restore


# ----------------------------
# Sync access for TestClient based tests
# ----------------------------
def seed_sync(settings: Settings, rows: List) -> None:
    engine = create_engine(settings.database_url)
    try:
        with Session(engine) as s, s.begin():
            for r in rows:
                s.add(r)
                s.flush()
    finally:
        engine.dispose()


def scalar_sync(settings: Settings, stmt):
    engine = create_engine(settings.database_url)
    try:
        with Session(engine) as s:
            return s.execute(stmt).scalar()
    finally:
        engine.dispose()


def exec_sync(settings: Settings, sql: str) -> None:
    engine = create_engine(settings.database_url)
    try:
        with engine.begin() as conn:
            conn.execute(text(sql))
    finally:
        engine.dispose()


def restore_schema_sync(settings: Settings) -> None:
    engine = create_engine(settings.database_url)
    try:
        Base.metadata.create_all(engine)
    finally:
        engine.dispose()
