from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Dict, Optional


STAFF_DEFAULT_ID = "staff"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


# ----------------------------
# Config
# ----------------------------
@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, built once at startup and handed to
    create_app(). Nothing below reads the environment after that."""

    database_url: str = "sqlite:///./ticketflow.db"

    # 'stripe' | 'mock'
    payment_provider: str = "mock"
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    webhook_tolerance_seconds: int = 300

    mock_secret: str = "whsec_mock_supersecret"
    mock_webhook_url: str = "http://localhost:8000/payments/webhook"

    qr_signing_secret: str = ""

    # 'sql' | 'redis'
    eventlog_backend: str = "sql"
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_connections: int = 512

    # single scanner token, recorded as STAFF_DEFAULT_ID
    staff_api_token: Optional[str] = None
    # "staff_id:token,staff_id:token"
    staff_api_tokens: Optional[str] = None
    # a paid order without tickets older than this is considered abandoned
    resume_after_seconds: int = 120

    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: Optional[int] = None

    bench_url: str = ""
    bench_run_id: str = ""

    @classmethod
    def from_env(cls) -> "Settings":
        gate = os.getenv("DB_GATE_LIMIT")
        return cls(
            database_url=os.getenv(
                "DATABASE_URL", "sqlite:///./ticketflow.db"
            ),
            payment_provider=os.getenv("PAYMENT_PROVIDER", "mock").lower(),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
            webhook_tolerance_seconds=_env_int(
                "WEBHOOK_TOLERANCE_SECONDS", 300
            ),
            mock_secret=os.getenv("MOCK_SECRET", "whsec_mock_supersecret"),
            mock_webhook_url=os.getenv(
                "MOCK_WEBHOOK_URL",
                "http://localhost:8000/payments/webhook"
            ),
            qr_signing_secret=os.getenv("QR_SIGNING_SECRET", ""),
            eventlog_backend=os.getenv("EVENTLOG_BACKEND", "sql").lower(),
            redis_url=os.getenv("REDIS_URL", "redis://127.0.0.1:6379"),
            redis_max_connections=_env_int("REDIS_MAX_CONN", 512),
            staff_api_token=os.getenv("STAFF_API_TOKEN") or None,
            staff_api_tokens=os.getenv("STAFF_API_TOKENS") or None,
            resume_after_seconds=_env_int("RESUME_AFTER_SECONDS", 120),
            db_pool_size=_env_int("DB_POOL_SIZE", 10),
            db_max_overflow=_env_int("DB_MAX_OVERFLOW", 10),
            db_pool_timeout=_env_int("DB_POOL_TIMEOUT", 30),
            db_gate_limit=int(gate) if gate else None,
            bench_url=os.getenv("BENCH_URL", ""),
            bench_run_id=os.getenv("BENCH_RUN_ID", ""),
        )

    def webhook_secret(self) -> str:
        if self.payment_provider == "stripe":
            if not self.stripe_webhook_secret:
                raise RuntimeError("STRIPE_WEBHOOK_SECRET is required")
            return self.stripe_webhook_secret
        return self.mock_secret

    def staff_credentials(self) -> Dict[str, str]:
        """token -> staff id, the identity a check-in is recorded under."""
        creds: Dict[str, str] = {}
        if self.staff_api_token:
            creds[self.staff_api_token] = STAFF_DEFAULT_ID
        for entry in (self.staff_api_tokens or "").split(","):
            if not entry.strip():
                continue
            staff_id, sep, token = entry.partition(":")
            if not sep or not staff_id.strip() or not token.strip():
                raise RuntimeError(
                    "STAFF_API_TOKENS entries must look like staff_id:token"
                )
            creds[token.strip()] = staff_id.strip()
        return creds
