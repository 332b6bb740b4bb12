from __future__ import annotations
import enum
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import bindparam, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import StorageFailure
from ..helpers import now_ts
from ..infra.sql import Gated, gated_tx
from ..infra.timings import Timings
from .orm import (
    ORDER_PAID, ORDER_PENDING, TICKET_ACTIVE, TICKET_USED,
    Order, OrderItem, Ticket, TicketCheckin,
)


class ClaimOutcome(enum.Enum):
    CLAIMED = "claimed"
    ALREADY_HANDLED = "already_handled"


@dataclass(frozen=True)
class Availability:
    ticket_type_id: str
    capacity: int             # 0 = unlimited
    remaining: Optional[int]  # None when unlimited
    is_on_sale: bool


@dataclass(frozen=True)
class IssueLine:
    ticket_type_id: str
    codes: Sequence[Tuple[str, str]]  # (ticket_code, qr_payload)


class _AlreadyIssued(Exception):
    pass


class OrderStore:
    """Order, ticket and check-in SQL. One instance per request/session.

    Every method is its own short transaction; nothing is held open between
    calls.
    """

    def __init__(self, *, db: AsyncSession, gated: Gated,
                 timings: Timings) -> None:
        self.db = db
        self.gated = gated
        self.timings = timings

    def _tx(self, kind: str):
        return gated_tx(self.db, self.gated, self.timings, kind)

    # ---
    # reads
    # ---
    async def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        async with self._tx("db.get_order"):
            row = (await self.db.execute(text("""
                SELECT id, event_id, event_day_id, buyer_id, buyer_name,
                       buyer_email, buyer_phone, status, amount_total_cents,
                       currency, provider_session_id, provider_payment_id,
                       created_at, paid_at, tickets_issued_at
                FROM orders WHERE id = :id
            """), {"id": order_id})).mappings().first()
        return dict(row) if row else None

    async def get_event(self, event_id: str) -> Optional[Dict[str, Any]]:
        async with self._tx("db.get_event"):
            row = (await self.db.execute(text("""
                SELECT id, title, status, starts_at, ends_at
                FROM events WHERE id = :id
            """), {"id": event_id})).mappings().first()
        return dict(row) if row else None

    async def get_event_day(self, day_id: str) -> Optional[Dict[str, Any]]:
        async with self._tx("db.get_event_day"):
            row = (await self.db.execute(text("""
                SELECT id, event_id, day_date FROM event_days WHERE id = :id
            """), {"id": day_id})).mappings().first()
        return dict(row) if row else None

    async def get_ticket_types(
            self, ids: Sequence[str]
    ) -> Dict[str, Dict[str, Any]]:
        if not ids:
            return {}
        stmt = text("""
            SELECT id, event_id, name, price_cents, currency, is_active
            FROM ticket_types WHERE id IN :ids
        """).bindparams(bindparam("ids", expanding=True))
        async with self._tx("db.get_ticket_types"):
            rows = (await self.db.execute(
                stmt, {"ids": list(ids)}
            )).mappings().all()
        return {r["id"]: dict(r) for r in rows}

    async def availability(
            self, ticket_type_id: str, now: Optional[float] = None
    ) -> Optional[Availability]:
        now = now_ts() if now is None else now
        async with self._tx("db.availability"):
            row = (await self.db.execute(text("""
                SELECT tt.id, tt.capacity, tt.is_active,
                       tt.sales_start_at, tt.sales_end_at,
                       (SELECT COUNT(*) FROM tickets t
                         WHERE t.ticket_type_id = tt.id
                           AND t.status IN (:active, :used)) AS sold
                FROM ticket_types tt WHERE tt.id = :id
            """), {
                "id": ticket_type_id,
                "active": TICKET_ACTIVE,
                "used": TICKET_USED,
            })).mappings().first()
        if not row:
            return None

        capacity = int(row["capacity"] or 0)
        remaining = None
        if capacity:
            remaining = max(0, capacity - int(row["sold"]))
        on_sale = bool(row["is_active"])
        if row["sales_start_at"] is not None and now < row["sales_start_at"]:
            on_sale = False
        if row["sales_end_at"] is not None and now > row["sales_end_at"]:
            on_sale = False
        return Availability(
            ticket_type_id=row["id"],
            capacity=capacity,
            remaining=remaining,
            is_on_sale=on_sale,
        )

    async def list_order_tickets(self, order_id: str) -> List[Dict[str, Any]]:
        async with self._tx("db.list_order_tickets"):
            rows = (await self.db.execute(text("""
                SELECT t.id, t.ticket_code, t.qr_payload, t.status,
                       t.valid_for_date, t.ticket_type_id,
                       tt.name AS ticket_type_name, t.order_item_id, t.seq
                FROM tickets t
                JOIN order_items oi ON oi.id = t.order_item_id
                JOIN ticket_types tt ON tt.id = t.ticket_type_id
                WHERE t.order_id = :id
                ORDER BY oi.position, t.seq
            """), {"id": order_id})).mappings().all()
        return [dict(r) for r in rows]

    # ---
    # order status transitions (all conditional, single statement)
    # ---
    async def claim_order(
            self, order_id: str, provider_payment_id: Optional[str],
            paid_at: Optional[float] = None,
    ) -> ClaimOutcome:
        async with self._tx("db.claim_order"):
            res = await self.db.execute(text("""
                UPDATE orders
                   SET status = :paid,
                       paid_at = :paid_at,
                       provider_payment_id =
                           COALESCE(:pid, provider_payment_id)
                 WHERE id = :id AND status = :pending
            """), {
                "paid": ORDER_PAID,
                "pending": ORDER_PENDING,
                "paid_at": paid_at if paid_at is not None else now_ts(),
                "pid": provider_payment_id,
                "id": order_id,
            })
        if res.rowcount == 1:
            return ClaimOutcome.CLAIMED
        return ClaimOutcome.ALREADY_HANDLED

    async def reject_order(self, order_id: str, reason: str) -> bool:
        # only the invocation holding the claim gets here, and only while
        # no tickets exist for the order
        async with self._tx("db.reject_order"):
            res = await self.db.execute(text("""
                UPDATE orders SET status = :reason
                 WHERE id = :id AND status = :paid
                   AND tickets_issued_at IS NULL
            """), {"reason": reason, "id": order_id, "paid": ORDER_PAID})
        return res.rowcount == 1

    # ---
    # minting
    # ---
    async def issue_tickets(
            self, order: Dict[str, Any], valid_for_date: str,
            lines: Sequence[IssueLine],
    ) -> Optional[int]:
        """Insert order items and tickets for all lines in one transaction.

        Returns the number of tickets written, or None if another invocation
        already issued this order's tickets.
        """
        types = await self.get_ticket_types(
            [ln.ticket_type_id for ln in lines]
        )
        ts = now_ts()
        count = 0
        try:
            async with self._tx("db.issue_tickets"):
                for pos, line in enumerate(lines):
                    tt = types.get(line.ticket_type_id)
                    if tt is None:
                        raise StorageFailure(
                            f"ticket type {line.ticket_type_id} vanished"
                        )
                    item = OrderItem(
                        id=uuid.uuid4().hex,
                        order_id=order["id"],
                        ticket_type_id=line.ticket_type_id,
                        unit_price_cents=int(tt["price_cents"]),
                        quantity=len(line.codes),
                        position=pos,
                    )
                    self.db.add(item)
                    # tickets reference the item; make sure it exists first
                    await self.db.flush()
                    for seq, (code, payload) in enumerate(line.codes):
                        self.db.add(Ticket(
                            id=uuid.uuid4().hex,
                            event_id=order["event_id"],
                            event_day_id=order["event_day_id"],
                            valid_for_date=valid_for_date,
                            order_id=order["id"],
                            order_item_id=item.id,
                            seq=seq,
                            attendee_id=order.get("buyer_id"),
                            attendee_name=order.get("buyer_name"),
                            attendee_email=order.get("buyer_email"),
                            ticket_type_id=line.ticket_type_id,
                            ticket_code=code,
                            qr_payload=payload,
                            status=TICKET_ACTIVE,
                            created_at=ts,
                        ))
                        count += 1
                    await self.db.flush()

                res = await self.db.execute(text("""
                    UPDATE orders SET tickets_issued_at = :ts
                     WHERE id = :id AND status = :paid
                       AND tickets_issued_at IS NULL
                """), {"ts": ts, "id": order["id"], "paid": ORDER_PAID})
                if res.rowcount != 1:
                    raise _AlreadyIssued()
        except (IntegrityError, _AlreadyIssued):
            # a concurrent invocation got there first; ours rolled back
            return None
        return count

    # ---
    # checkout
    # ---
    async def create_order(self, **fields: Any) -> str:
        order_id = fields.pop("id", None) or uuid.uuid4().hex
        async with self._tx("db.create_order"):
            self.db.add(Order(
                id=order_id,
                status=ORDER_PENDING,
                created_at=now_ts(),
                **fields,
            ))
        return order_id

    async def set_provider_session(self, order_id: str,
                                   session_id: str) -> None:
        async with self._tx("db.set_provider_session"):
            await self.db.execute(text("""
                UPDATE orders SET provider_session_id = :sid WHERE id = :id
            """), {"sid": session_id, "id": order_id})

    # ---
    # check-in
    # ---
    async def get_ticket_by_code(self, code: str) -> Optional[Dict[str, Any]]:
        async with self._tx("db.get_ticket_by_code"):
            row = (await self.db.execute(text("""
                SELECT t.id, t.event_id, t.status, t.ticket_code,
                       t.valid_for_date, t.attendee_name,
                       tt.name AS ticket_type_name
                FROM tickets t
                JOIN ticket_types tt ON tt.id = t.ticket_type_id
                WHERE t.ticket_code = :code
            """), {"code": code})).mappings().first()
        return dict(row) if row else None

    async def get_checkin(self, ticket_id: str) -> Optional[Dict[str, Any]]:
        async with self._tx("db.get_checkin"):
            row = (await self.db.execute(text("""
                SELECT checked_in_at, checked_in_by FROM ticket_checkins
                WHERE ticket_id = :id
            """), {"id": ticket_id})).mappings().first()
        return dict(row) if row else None

    async def record_checkin(
            self, ticket: Dict[str, Any], checked_in_by: Optional[str],
            device_info: Optional[str],
    ) -> bool:
        """False when the ticket was already checked in (possibly by a
        concurrent scan)."""
        try:
            async with self._tx("db.record_checkin"):
                self.db.add(TicketCheckin(
                    id=uuid.uuid4().hex,
                    ticket_id=ticket["id"],
                    event_id=ticket["event_id"],
                    checked_in_at=now_ts(),
                    checked_in_by=checked_in_by,
                    device_info=device_info,
                ))
                await self.db.flush()
                await self.db.execute(text("""
                    UPDATE tickets SET status = :used WHERE id = :id
                """), {"used": TICKET_USED, "id": ticket["id"]})
        except IntegrityError:
            return False
        return True

    async def checkin_stats(self, event_id: str) -> Dict[str, int]:
        async with self._tx("db.checkin_stats"):
            row = (await self.db.execute(text("""
                SELECT COUNT(*) AS total,
                       SUM(CASE WHEN status = :used THEN 1 ELSE 0 END)
                           AS checked_in
                FROM tickets WHERE event_id = :id
            """), {"id": event_id, "used": TICKET_USED})).mappings().first()
        return {
            "total": int(row["total"] or 0),
            "checked_in": int(row["checked_in"] or 0),
        }
