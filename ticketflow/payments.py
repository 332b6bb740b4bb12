from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, TypedDict
import hashlib
import hmac
import json
import time
import uuid

import stripe

from .errors import (
    InvalidSignature, MalformedNotification, PaymentProviderError,
)

SIGNATURE_HEADER = "stripe-signature"
CHECKOUT_COMPLETED = "checkout.session.completed"


# ----------------------------
# Inbound notification
# ----------------------------
@dataclass(frozen=True)
class PaymentEvent:
    id: str
    type: str
    session_id: Optional[str] = None
    payment_id: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, raw: Mapping[str, Any]) -> "PaymentEvent":
        if not isinstance(raw, Mapping):
            raise MalformedNotification("event is not an object")
        event_id, kind = raw.get("id"), raw.get("type")
        if not event_id or not kind:
            raise MalformedNotification("event id or type missing")
        obj = (raw.get("data") or {}).get("object") or {}
        if not isinstance(obj, Mapping):
            raise MalformedNotification("data.object is not an object")
        metadata = obj.get("metadata") or {}
        if not isinstance(metadata, Mapping):
            metadata = {}
        payment_id = obj.get("payment_intent")
        if isinstance(payment_id, Mapping):
            # expanded PaymentIntent
            payment_id = payment_id.get("id")
        return cls(
            id=str(event_id),
            type=str(kind),
            session_id=obj.get("id"),
            payment_id=str(payment_id) if payment_id else None,
            amount_total=obj.get("amount_total"),
            currency=obj.get("currency"),
            metadata={str(k): str(v) for k, v in metadata.items()},
        )


def sign_payload(payload: bytes, secret: str,
                 timestamp: Optional[int] = None) -> str:
    """Stripe-style signature header: t=<unix>,v1=<hex hmac-sha256>."""
    ts = int(time.time()) if timestamp is None else int(timestamp)
    signed = f"{ts}.".encode() + payload
    mac = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CheckoutLine(TypedDict):
    name: str
    unit_amount: int
    currency: str
    quantity: int


class CreateSessionResult(TypedDict):
    session_id: str
    url: str


class PaymentAdapter(ABC):
    name: str = ""

    def __init__(self, webhook_secret: str, tolerance: int = 300) -> None:
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    @abstractmethod
    async def create_checkout_session(
        self, *, order_id: str, lines: List[CheckoutLine],
        metadata: Dict[str, str], customer_email: str,
        success_url: str, cancel_url: str,
    ) -> CreateSessionResult: ...

    def verify_webhook(self, payload: bytes,
                       headers: Mapping[str, str]) -> PaymentEvent:
        # header names arrive lower-cased from starlette
        sig = headers.get(SIGNATURE_HEADER)
        if not sig:
            raise InvalidSignature(f"missing {SIGNATURE_HEADER} header")
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise InvalidSignature("payload is not utf-8")
        try:
            stripe.WebhookSignature.verify_header(
                body, sig, self.webhook_secret, self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature(str(e)) from e
        try:
            raw = json.loads(body)
        except json.JSONDecodeError:
            raise MalformedNotification("invalid JSON")
        return PaymentEvent.from_payload(raw)


# ----------------------------
# Stripe
# ----------------------------
class StripePay(PaymentAdapter):
    name = "stripe"

    def __init__(self, api_key: str, webhook_secret: str,
                 tolerance: int = 300) -> None:
        super().__init__(webhook_secret, tolerance)
        self.api_key = api_key

    async def create_checkout_session(
        self, *, order_id: str, lines: List[CheckoutLine],
        metadata: Dict[str, str], customer_email: str,
        success_url: str, cancel_url: str,
    ) -> CreateSessionResult:
        from starlette.concurrency import run_in_threadpool

        # stripe-python is blocking
        try:
            session = await run_in_threadpool(
                stripe.checkout.Session.create,
                api_key=self.api_key,
                mode="payment",
                success_url=success_url,
                cancel_url=cancel_url,
                customer_email=customer_email,
                client_reference_id=order_id,
                metadata=metadata,
                line_items=[
                    {
                        "quantity": ln["quantity"],
                        "price_data": {
                            "currency": ln["currency"].lower(),
                            "unit_amount": ln["unit_amount"],
                            "product_data": {"name": ln["name"]},
                        },
                    }
                    for ln in lines
                ],
            )
        except stripe.StripeError as e:
            raise PaymentProviderError(str(e)) from e
        return {"session_id": session.id, "url": session.url}


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """Local stand-in for Stripe: same signature scheme, no network.

    Sessions live in process memory; /mockpay/{session_id}/emit turns one
    into a signed checkout.session.completed notification.
    """
    name = "mock"

    def __init__(self, webhook_secret: str, tolerance: int = 300) -> None:
        super().__init__(webhook_secret, tolerance)
        self.sessions: Dict[str, Dict[str, Any]] = {}

    async def create_checkout_session(
        self, *, order_id: str, lines: List[CheckoutLine],
        metadata: Dict[str, str], customer_email: str,
        success_url: str, cancel_url: str,
    ) -> CreateSessionResult:
        sid = f"cs_mock_{uuid.uuid4().hex}"
        self.sessions[sid] = {
            "order_id": order_id,
            "metadata": dict(metadata),
            "amount_total": sum(
                ln["unit_amount"] * ln["quantity"] for ln in lines
            ),
            "currency": lines[0]["currency"].lower() if lines else "inr",
            "customer_email": customer_email,
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        return {"session_id": sid, "url": f"/mockpay/{sid}"}

    def completion_event(self, session_id: str) -> Tuple[bytes, str]:
        """Body and signature header for a completed checkout."""
        s = self.sessions[session_id]
        event = {
            "id": f"evt_mock_{uuid.uuid4().hex}",
            "type": CHECKOUT_COMPLETED,
            "created": int(time.time()),
            "data": {"object": {
                "id": session_id,
                "object": "checkout.session",
                "payment_intent": f"pi_mock_{uuid.uuid4().hex[:24]}",
                "payment_status": "paid",
                "amount_total": s["amount_total"],
                "currency": s["currency"],
                "metadata": s["metadata"],
            }},
        }
        payload = json.dumps(event).encode()
        return payload, sign_payload(payload, self.webhook_secret)
