# Run with: uvicorn --factory ticketflow.server:create_app
from __future__ import annotations
import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from .codes import verify_qr_payload
from .config import Settings
from .errors import (
    AuthenticationFailure, InvalidQrPayload, MalformedNotification,
    PaymentProviderError, SettlementInProgress, StorageFailure,
)
from .helpers import (
    ct_equal, is_valid_email, now_ts, parse_quantity, to_iso, today_iso,
)
from .infra.sql import Database, make_database
from .infra.timings import Timings, flush_on_shutdown
from .model.eventlog import BACKENDS, EventLog, new_event_log
from .model.orm import Base
from .model.store import OrderStore
from .payments import MockPay, PaymentAdapter, StripePay
from .settlement import Settlement

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "INR"
# host used for in-process webhook delivery (MOCK_WEBHOOK_URL="/...")
LOCAL_BASE_URL = "http://ticketflow.local"
# seconds a provider should wait before redelivering a claimed order
RETRY_AFTER_SECONDS = 30


def make_adapter(settings: Settings) -> PaymentAdapter:
    tolerance = settings.webhook_tolerance_seconds
    if settings.payment_provider == "stripe":
        if not settings.stripe_secret_key:
            raise RuntimeError("STRIPE_SECRET_KEY is required")
        return StripePay(settings.stripe_secret_key,
                         settings.webhook_secret(), tolerance)
    if settings.payment_provider == "mock":
        return MockPay(settings.webhook_secret(), tolerance)
    raise RuntimeError(
        f"unknown payment provider: {settings.payment_provider!r}"
    )


def create_app(settings: Optional[Settings] = None,
               adapter: Optional[PaymentAdapter] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    if not settings.qr_signing_secret:
        raise RuntimeError("QR_SIGNING_SECRET is required")
    if settings.eventlog_backend not in BACKENDS:
        raise RuntimeError(
            f"unknown event log backend: {settings.eventlog_backend!r}"
        )
    adapter = adapter or make_adapter(settings)
    staff_credentials = settings.staff_credentials()

    # ---
    # startup / shutdown
    # ---
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        db = make_database(settings)
        async with db.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        app.state.db = db

        app.state.redis = None
        if settings.eventlog_backend == "redis":
            app.state.redis = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                max_connections=settings.redis_max_connections,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )

        if settings.mock_webhook_url.startswith("/"):
            transport = httpx.ASGITransport(app=app)
            app.state.http = httpx.AsyncClient(
                transport=transport, base_url=LOCAL_BASE_URL, timeout=5.0,
            )
        else:
            app.state.http = httpx.AsyncClient(
                timeout=5.0,
                limits=httpx.Limits(
                    max_connections=512, max_keepalive_connections=512
                ),
            )

        logger.info(
            "ticketflow starting: payments=%s eventlog=%s",
            adapter.name, settings.eventlog_backend,
        )
        try:
            yield
        finally:
            await flush_on_shutdown(app.state.timings, settings.bench_url,
                                    settings.bench_run_id)
            await app.state.http.aclose()
            if app.state.redis is not None:
                await app.state.redis.aclose()
            await db.dispose()

    app = FastAPI(title="ticketflow", lifespan=lifespan)
    app.state.settings = settings
    app.state.adapter = adapter
    app.state.timings = Timings()
    app.state.staff_credentials = staff_credentials

    @app.exception_handler(AuthenticationFailure)
    async def _auth_failure(request: Request, exc: AuthenticationFailure):
        logger.warning("rejected notification: %s", exc)
        return JSONResponse({"detail": "Invalid signature"}, status_code=400)

    @app.exception_handler(MalformedNotification)
    async def _malformed(request: Request, exc: MalformedNotification):
        return JSONResponse({"detail": str(exc)}, status_code=400)

    @app.exception_handler(PaymentProviderError)
    async def _provider_error(request: Request, exc: PaymentProviderError):
        logger.error("payment provider error: %s", exc)
        return JSONResponse({"detail": "payment provider error"},
                            status_code=502)

    @app.exception_handler(StorageFailure)
    async def _storage_failure(request: Request, exc: StorageFailure):
        logger.error("storage failure on %s: %s", request.url.path, exc)
        return JSONResponse({"detail": "storage failure"}, status_code=500)

    @app.exception_handler(SettlementInProgress)
    async def _in_progress(request: Request, exc: SettlementInProgress):
        logger.info("%s, asking for redelivery", exc)
        return JSONResponse(
            {"detail": "settlement in progress", "order_id": exc.order_id},
            status_code=503,
            headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
        )

    register_routes(app)
    return app


# ----------------------------
# Dependencies
# ----------------------------
async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    async with request.app.state.db.sessions() as session:
        yield session


def order_store(request: Request,
                db: AsyncSession = Depends(get_db)) -> OrderStore:
    state = request.app.state
    return OrderStore(db=db, gated=state.db.gated, timings=state.timings)


def event_log(request: Request,
              db: AsyncSession = Depends(get_db)) -> EventLog:
    state = request.app.state
    database: Database = state.db
    return new_event_log(
        state.settings.eventlog_backend,
        db=db, gated=database.gated, r=state.redis, timings=state.timings,
    )


def settlement(request: Request,
               store: OrderStore = Depends(order_store),
               events: EventLog = Depends(event_log)) -> Settlement:
    return Settlement(
        store=store, events=events,
        qr_secret=request.app.state.settings.qr_signing_secret,
        resume_after=request.app.state.settings.resume_after_seconds,
    )


def require_staff(request: Request) -> str:
    """Staff id the bearer token belongs to."""
    creds = request.app.state.staff_credentials
    if not creds:
        raise HTTPException(500, detail="Server configuration error")
    auth = request.headers.get("authorization", "")
    if not auth.startswith("Bearer "):
        raise HTTPException(401, detail="Authorization header missing")
    presented = auth[len("Bearer "):].strip()
    staff_id = None
    # no early exit: constant time over all configured tokens
    for token, owner in creds.items():
        if ct_equal(presented, token):
            staff_id = owner
    if staff_id is None:
        raise HTTPException(401, detail="Invalid staff token")
    return staff_id


def register_routes(app: FastAPI) -> None:

    # ----------------------------
    # Webhook endpoint (Stripe / MockPay)
    # ----------------------------
    @app.post("/payments/webhook")
    async def payments_webhook(request: Request):
        payload = await request.body()
        adapter: PaymentAdapter = request.app.state.adapter
        # raises before any session is opened
        event = adapter.verify_webhook(payload, request.headers)

        async with request.app.state.db.sessions() as db:
            s = settlement(request, order_store(request, db),
                           event_log(request, db))
            result = await s.settle(event)
        return result.as_ack()

    # ----------------------------
    # Checkout: pending order + provider session
    # ----------------------------
    @app.post("/api/checkout")
    async def create_checkout(
        payload: dict,
        request: Request,
        store: OrderStore = Depends(order_store),
    ):
        event_id = payload.get("event_id")
        event_day_id = payload.get("event_day_id")
        items = payload.get("items")
        buyer_name = (payload.get("buyer_name") or "").strip()
        buyer_email = (payload.get("buyer_email") or "").strip()
        success_url = payload.get("success_url")
        cancel_url = payload.get("cancel_url")

        if not event_day_id:
            raise HTTPException(400, detail="event_day_id is required")
        if not event_id or not isinstance(items, list) or not items:
            raise HTTPException(400, detail="Invalid payload")
        if not buyer_name or not success_url or not cancel_url:
            raise HTTPException(
                400,
                detail="buyer_name, buyer_email, success_url, cancel_url "
                       "required",
            )
        if not is_valid_email(buyer_email):
            raise HTTPException(400, detail="buyer_email must be a valid "
                                            "email address")

        event = await store.get_event(event_id)
        if event is None:
            raise HTTPException(404, detail="Event not found")
        if event["status"] != "published":
            raise HTTPException(400, detail="Event not published")
        ends_at = event["ends_at"] or event["starts_at"]
        if now_ts() > ends_at:
            raise HTTPException(400, detail="Event has already ended")

        day = await store.get_event_day(event_day_id)
        if day is None or day["event_id"] != event_id:
            raise HTTPException(400, detail="Invalid event day")

        requested = []
        for it in items:
            if not isinstance(it, dict):
                raise HTTPException(400, detail="Invalid payload")
            qty = parse_quantity(it.get("quantity"))
            if qty is None or qty <= 0:
                raise HTTPException(400, detail="Invalid quantity")
            requested.append((it.get("ticket_type_id"), qty))

        types = await store.get_ticket_types(
            [tt for tt, _ in requested if tt]
        )
        total = 0
        currency = DEFAULT_CURRENCY
        lines = []
        for tt_id, qty in requested:
            tt = types.get(tt_id)
            if tt is None:
                raise HTTPException(400, detail="Invalid ticket type")
            if tt["event_id"] != event_id:
                raise HTTPException(400, detail="Ticket type mismatch")
            if not tt["is_active"]:
                raise HTTPException(400, detail="Ticket type inactive")
            total += int(tt["price_cents"]) * qty
            currency = tt["currency"] or currency
            lines.append({
                "name": f"{event['title']} - {tt['name']}",
                "unit_amount": int(tt["price_cents"]),
                "currency": tt["currency"] or currency,
                "quantity": qty,
            })
        if total <= 0:
            raise HTTPException(400, detail="Total must be > 0")

        adapter: PaymentAdapter = request.app.state.adapter
        buyer_id = payload.get("buyer_id") or None
        order_id = await store.create_order(
            event_id=event_id,
            event_day_id=event_day_id,
            buyer_id=buyer_id,
            buyer_name=buyer_name,
            buyer_email=buyer_email,
            buyer_phone=payload.get("buyer_phone") or None,
            amount_total_cents=total,
            currency=currency,
            payment_provider=adapter.name,
        )

        session = await adapter.create_checkout_session(
            order_id=order_id,
            lines=lines,
            metadata={
                "order_id": order_id,
                "event_id": event_id,
                "event_day_id": event_day_id,
                "items": json.dumps([
                    {"ticket_type_id": tt, "quantity": qty}
                    for tt, qty in requested
                ]),
            },
            customer_email=buyer_email,
            success_url=success_url,
            cancel_url=cancel_url,
        )
        await store.set_provider_session(order_id, session["session_id"])

        return {
            "checkout_url": session["url"],
            "order_id": order_id,
            "buyer_id": buyer_id,
            "amount": total,
            "currency": currency,
        }

    # ----------------------------
    # API: Order status (polled by success page)
    # ----------------------------
    @app.get("/api/orders/{order_id}")
    async def get_order(order_id: str,
                        store: OrderStore = Depends(order_store)):
        order = await store.get_order(order_id)
        if not order:
            raise HTTPException(404, detail="order not found")
        tickets = await store.list_order_tickets(order_id)
        return {
            "order_id": order["id"],
            "status": order["status"],
            "event_id": order["event_id"],
            "event_day_id": order["event_day_id"],
            "amount": order["amount_total_cents"],
            "currency": order["currency"],
            "paid_at": to_iso(order["paid_at"]),
            "tickets": [
                {
                    "ticket_code": t["ticket_code"],
                    "qr_payload": t["qr_payload"],
                    "ticket_type_id": t["ticket_type_id"],
                    "ticket_type": t["ticket_type_name"],
                    "valid_for_date": t["valid_for_date"],
                    "status": t["status"],
                }
                for t in tickets
            ],
        }

    # ----------------------------
    # Ticket check-in (scanner)
    # ----------------------------
    @app.post("/api/tickets/verify")
    async def verify_ticket(
        payload: dict,
        request: Request,
        staff_id: str = Depends(require_staff),
        store: OrderStore = Depends(order_store),
    ):
        qr_payload = payload.get("qr_payload")
        event_id = payload.get("event_id")
        device_info = payload.get("device_info")
        if not qr_payload or not isinstance(qr_payload, str):
            raise HTTPException(400, detail="qr_payload required")
        if not event_id or not isinstance(event_id, str):
            raise HTTPException(400, detail="event_id required")

        secret = request.app.state.settings.qr_signing_secret
        try:
            code = verify_qr_payload(qr_payload, secret)
        except InvalidQrPayload as e:
            raise HTTPException(400, detail=str(e))

        ticket = await store.get_ticket_by_code(code)
        if not ticket:
            raise HTTPException(404, detail="Ticket not found")
        if ticket["event_id"] != event_id:
            raise HTTPException(
                400, detail="Ticket belongs to a different event"
            )

        info = {
            "attendee_name": ticket["attendee_name"] or "Guest",
            "ticket_tier": ticket["ticket_type_name"] or "Standard",
        }
        today = today_iso()
        if today < ticket["valid_for_date"]:
            return {"ok": False, "status": "not_valid_yet",
                    "valid_for_date": ticket["valid_for_date"], **info}
        if today > ticket["valid_for_date"]:
            return {"ok": False, "status": "expired",
                    "valid_for_date": ticket["valid_for_date"], **info}

        device = device_info if isinstance(device_info, str) and \
            device_info else None
        if not await store.record_checkin(ticket, staff_id, device):
            checkin = await store.get_checkin(ticket["id"]) or {}
            return {
                "ok": False,
                "status": "already_checked_in",
                "checked_in_at": to_iso(checkin.get("checked_in_at")),
                "checked_in_by": checkin.get("checked_in_by"),
                "stats": await store.checkin_stats(ticket["event_id"]),
                **info,
            }
        return {
            "ok": True,
            "status": "checked_in",
            "ticket_id": ticket["id"],
            "checked_in_by": staff_id,
            "stats": await store.checkin_stats(ticket["event_id"]),
            **info,
        }

    @app.get("/api/timings")
    async def api_timings(request: Request):
        return {"items": request.app.state.timings.aggregates()}

    # ----------------------------
    # MockPay (development only)
    # ----------------------------
    @app.get("/mockpay/{session_id}")
    async def mockpay_session(session_id: str, request: Request):
        s = _mock_session(request, session_id)
        return {"session_id": session_id, **s}

    @app.post("/mockpay/{session_id}/emit")
    async def mockpay_emit(session_id: str, request: Request):
        s = _mock_session(request, session_id)
        adapter: MockPay = request.app.state.adapter
        payload, sig = adapter.completion_event(session_id)

        client_http: httpx.AsyncClient = request.app.state.http
        try:
            await client_http.post(
                request.app.state.settings.mock_webhook_url,
                content=payload,
                headers={
                    "stripe-signature": sig,
                    "content-type": "application/json",
                },
            )
        except httpx.HTTPError as e:
            # the buyer can retry from the mock page
            logger.warning("webhook delivery failed: %s", e)

        return RedirectResponse(url=s["success_url"], status_code=303)


def _mock_session(request: Request, session_id: str) -> dict:
    adapter = request.app.state.adapter
    if not isinstance(adapter, MockPay):
        raise HTTPException(404, detail="mock payments disabled")
    s = adapter.sessions.get(session_id)
    if s is None:
        raise HTTPException(404, detail="payment session not found")
    return s
