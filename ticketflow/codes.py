# codes.py
"""
Ticket codes and signed QR payloads.

    payload = "v1.<code>.<sig>"
    code    = 24 chars from a 32 symbol alphabet (no I, O, 0, 1)
    sig     = first 16 hex chars of HMAC-SHA256(secret, code)

The secret never leaves the server. A scanner only forwards the payload and
the server recomputes the signature.
"""
from __future__ import annotations
import hashlib
import hmac
import secrets
from typing import List, Tuple

from .errors import InvalidQrPayload, TicketSigningError

ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 24
SIG_LENGTH = 16
VERSION = "v1"


def random_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def sign_code(code: str, secret: str) -> str:
    if not secret:
        raise TicketSigningError("QR signing secret is not configured")
    mac = hmac.new(secret.encode(), code.encode(), hashlib.sha256)
    return mac.hexdigest()[:SIG_LENGTH]


def make_qr_payload(code: str, secret: str) -> str:
    return f"{VERSION}.{code}.{sign_code(code, secret)}"


def mint_ticket_codes(n: int, secret: str) -> List[Tuple[str, str]]:
    """Returns n distinct (code, qr_payload) pairs.

    Signs every code before returning anything, so a signing failure never
    leaves the caller with a partial batch.
    """
    if not secret:
        raise TicketSigningError("QR signing secret is not configured")
    seen = set()
    out: List[Tuple[str, str]] = []
    while len(out) < n:
        code = random_code()
        if code in seen:
            continue
        seen.add(code)
        out.append((code, make_qr_payload(code, secret)))
    return out


def verify_qr_payload(payload: str, secret: str) -> str:
    """Checks a scanned payload and returns the embedded ticket code."""
    parts = (payload or "").strip().split(".")
    if len(parts) != 3 or parts[0] != VERSION:
        raise InvalidQrPayload("invalid QR code format")
    code, provided = parts[1], parts[2]
    if len(code) != CODE_LENGTH or any(c not in ALPHABET for c in code):
        raise InvalidQrPayload("invalid QR code format")
    expected = sign_code(code, secret)
    if not hmac.compare_digest(expected.encode(), provided.encode()):
        raise InvalidQrPayload("invalid QR signature")
    return code
