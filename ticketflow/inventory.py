# inventory.py
"""
Settlement-time inventory check.

Availability is read again when the payment is confirmed; sales may have
closed or sold out since checkout. Nothing is reserved or decremented here.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional, Union

from .model.orm import ORDER_OVERBOOKED, ORDER_SALES_CLOSED
from .model.store import Availability


@dataclass(frozen=True)
class Line:
    ticket_type_id: str
    quantity: int


@dataclass(frozen=True)
class Continue:
    pass


@dataclass(frozen=True)
class Reject:
    reason: str  # the terminal order status to record
    ticket_type_id: str


Verdict = Union[Continue, Reject]
Lookup = Callable[[str], Awaitable[Optional[Availability]]]

CONTINUE = Continue()


def check_line(availability: Optional[Availability], line: Line) -> Verdict:
    if availability is None or not availability.is_on_sale:
        return Reject(ORDER_SALES_CLOSED, line.ticket_type_id)
    if (availability.capacity != 0
            and (availability.remaining or 0) < line.quantity):
        return Reject(ORDER_OVERBOOKED, line.ticket_type_id)
    return CONTINUE


async def fold_lines(lines: Iterable[Line], lookup: Lookup) -> Verdict:
    """Checks lines in the order given; the first rejection wins and the
    remaining lines are not looked at."""
    for line in lines:
        verdict = check_line(await lookup(line.ticket_type_id), line)
        if isinstance(verdict, Reject):
            return verdict
    return CONTINUE
