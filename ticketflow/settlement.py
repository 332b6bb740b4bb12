# settlement.py
"""
Payment completion -> tickets.

    received -> verified -> claimed -> inventory fold -> minted -> finalized
                               |              |
                               |              +-> rejected (sales_closed |
                               |                            overbooked)
                               +-> no-op (already handled)
                               +-> retry later (claimed, no tickets yet)

Verification happens before we get here (PaymentAdapter.verify_webhook).
The only concurrency control is the conditional pending -> paid update on the
order row (OrderStore.claim_order). Everything that happens after a claim is
done by exactly one invocation. A redelivery that finds the order paid but
without tickets raises SettlementInProgress (non-2xx, so the provider keeps
retrying) until the claim is older than `resume_after`; then it takes over.
"""
from __future__ import annotations
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .codes import mint_ticket_codes
from .errors import MalformedNotification, SettlementInProgress, UnknownOrder
from .helpers import now_ts, parse_quantity
from .inventory import Line, Reject, fold_lines
from .model.eventlog import EventLog
from .model.orm import ORDER_PAID
from .model.store import ClaimOutcome, IssueLine, OrderStore
from .payments import CHECKOUT_COMPLETED, PaymentEvent

logger = logging.getLogger(__name__)

# outcomes
IGNORED = "ignored"
ALREADY_HANDLED = "already_handled"
DROPPED = "dropped"
PAID = "paid"


@dataclass(frozen=True)
class SettlementResult:
    outcome: str
    order_id: Optional[str] = None
    order_status: Optional[str] = None
    tickets: int = 0
    reason: Optional[str] = None

    def as_ack(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": True, "outcome": self.outcome}
        if self.order_id:
            out["order_id"] = self.order_id
        if self.order_status:
            out["order_status"] = self.order_status
        if self.outcome == PAID:
            out["tickets"] = self.tickets
        if self.reason:
            out["reason"] = self.reason
        return out


def parse_lines(raw: Optional[str]) -> List[Line]:
    """Decode the `items` metadata; duplicate ticket types are merged,
    keeping the position of their first appearance."""
    if not raw:
        raise MalformedNotification("items missing")
    try:
        items = json.loads(raw)
    except (TypeError, ValueError):
        raise MalformedNotification("items is not valid JSON")
    if not isinstance(items, list) or not items:
        raise MalformedNotification("items must be a non-empty list")

    merged: "OrderedDict[str, int]" = OrderedDict()
    for it in items:
        if not isinstance(it, dict):
            raise MalformedNotification("item is not an object")
        tt = it.get("ticket_type_id")
        qty = parse_quantity(it.get("quantity"))
        if qty is None:
            raise MalformedNotification("item quantity is not an integer")
        if not tt or qty <= 0:
            raise MalformedNotification(
                "item needs ticket_type_id and quantity > 0"
            )
        merged[str(tt)] = merged.get(str(tt), 0) + qty
    return [Line(tt, qty) for tt, qty in merged.items()]


class Settlement:
    def __init__(self, *, store: OrderStore, events: EventLog,
                 qr_secret: str, resume_after: float = 120.0) -> None:
        self.store = store
        self.events = events
        self.qr_secret = qr_secret
        # a claim this old without tickets belongs to a dead invocation
        self.resume_after = resume_after

    async def settle(self, event: PaymentEvent) -> SettlementResult:
        if event.type != CHECKOUT_COMPLETED:
            return SettlementResult(IGNORED)

        if await self.events.seen(event.id):
            logger.info("event %s already processed", event.id)
            return SettlementResult(ALREADY_HANDLED)

        try:
            order, valid_for_date, lines = await self._resolve(event)
        except (MalformedNotification, UnknownOrder) as e:
            logger.warning("dropping event %s: %s", event.id, e)
            return await self._finish(event, SettlementResult(
                DROPPED, order_id=event.metadata.get("order_id"),
                reason=str(e),
            ))
        order_id = order["id"]

        claim = await self.store.claim_order(order_id, event.payment_id)
        if claim is ClaimOutcome.ALREADY_HANDLED:
            current = await self.store.get_order(order_id)
            if not self._awaiting_tickets(current):
                logger.info("order %s already settled (%s)", order_id,
                            current and current["status"])
                return SettlementResult(
                    ALREADY_HANDLED, order_id=order_id,
                    order_status=current and current["status"],
                )
            if not self._lease_expired(current):
                # a live invocation is minting, or one failed inside its
                # lease; either way the provider has to come back
                logger.info("order %s claimed without tickets, retry later",
                            order_id)
                raise SettlementInProgress(order_id)
            # paid long ago but never got its tickets: the claiming
            # invocation died. Redo everything it would have done.
            logger.warning("resuming settlement of order %s", order_id)
            order = current

        verdict = await fold_lines(lines, self.store.availability)
        if isinstance(verdict, Reject):
            await self.store.reject_order(order_id, verdict.reason)
            logger.info("order %s rejected: %s (ticket type %s)",
                        order_id, verdict.reason, verdict.ticket_type_id)
            return await self._finish(event, SettlementResult(
                verdict.reason, order_id=order_id,
                order_status=verdict.reason,
                reason=verdict.ticket_type_id,
            ))

        # sign everything before the first insert
        issue = [
            IssueLine(ln.ticket_type_id,
                      mint_ticket_codes(ln.quantity, self.qr_secret))
            for ln in lines
        ]
        count = await self.store.issue_tickets(order, valid_for_date, issue)
        if count is None:
            logger.info("tickets for order %s issued concurrently", order_id)
            return SettlementResult(
                ALREADY_HANDLED, order_id=order_id, order_status=ORDER_PAID,
            )

        logger.info("order %s paid, %d tickets issued", order_id, count)
        return await self._finish(event, SettlementResult(
            PAID, order_id=order_id, order_status=ORDER_PAID, tickets=count,
        ))

    async def _resolve(self, event: PaymentEvent):
        meta = event.metadata
        order_id, event_id = meta.get("order_id"), meta.get("event_id")
        if not order_id or not event_id:
            raise MalformedNotification("order_id or event_id missing")
        lines = parse_lines(meta.get("items"))

        order = await self.store.get_order(order_id)
        if order is None:
            raise UnknownOrder(order_id)
        if order["event_id"] != event_id:
            raise MalformedNotification(
                f"event_id {event_id} does not match order {order_id}"
            )
        if not order["event_day_id"]:
            raise MalformedNotification(f"order {order_id} has no event day")
        day = await self.store.get_event_day(order["event_day_id"])
        if not day or not day["day_date"]:
            raise MalformedNotification(
                f"event day {order['event_day_id']} not found"
            )
        return order, day["day_date"], lines

    async def _finish(self, event: PaymentEvent,
                      result: SettlementResult) -> SettlementResult:
        # only outcomes this invocation produced
        await self.events.mark(event.id, event.type, result.outcome)
        return result

    def _awaiting_tickets(self, order: Optional[Dict[str, Any]]) -> bool:
        return (order is not None and order["status"] == ORDER_PAID
                and order["tickets_issued_at"] is None)

    def _lease_expired(self, order: Dict[str, Any]) -> bool:
        paid_at = order["paid_at"] or 0.0
        return now_ts() - paid_at >= self.resume_after

