# backend/settlement/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/settlement.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///settlement.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Inventory holds
    RESERVATION_TTL_MINUTES = _int_env("RESERVATION_TTL_MINUTES", 15)
    ORDER_ABANDON_GRACE_MINUTES = _int_env("ORDER_ABANDON_GRACE_MINUTES", 15)

    # Payout method verification
    VERIFICATION_CODE_TTL_MINUTES = _int_env("VERIFICATION_CODE_TTL_MINUTES", 10)
    VERIFICATION_RESEND_COOLDOWN_SECONDS = _int_env("VERIFICATION_RESEND_COOLDOWN_SECONDS", 120)
    VERIFICATION_MAX_ATTEMPTS = _int_env("VERIFICATION_MAX_ATTEMPTS", 3)
    VERIFICATION_BCRYPT_ROUNDS = _int_env("VERIFICATION_BCRYPT_ROUNDS", 10)

    # Returns
    RETURN_WINDOW_DAYS = _int_env("RETURN_WINDOW_DAYS", 30)

    # Background jobs
    SWEEPER_INTERVAL_SECONDS = _int_env("SWEEPER_INTERVAL_SECONDS", 120)
    RECONCILE_INTERVAL_SECONDS = _int_env("RECONCILE_INTERVAL_SECONDS", 60)
    RECONCILE_STALE_AFTER_MINUTES = _int_env("RECONCILE_STALE_AFTER_MINUTES", 5)

    # Payment provider ("sandbox" never leaves the process; "http" talks to the provider API)
    PAYMENT_PROVIDER = os.environ.get("PAYMENT_PROVIDER", "sandbox")
    PAYMENT_PROVIDER_BASE_URL = os.environ.get("PAYMENT_PROVIDER_BASE_URL", "https://sandbox.payments.local/v1")
    PAYMENT_PROVIDER_SECRET_KEY = os.environ.get("PAYMENT_PROVIDER_SECRET_KEY", "")
    PAYMENT_PROVIDER_TIMEOUT_SECONDS = float(os.environ.get("PAYMENT_PROVIDER_TIMEOUT_SECONDS", "30"))
    PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET", "dev-webhook-secret-change-me")
    CHECKOUT_RETURN_URL = os.environ.get("CHECKOUT_RETURN_URL", "http://localhost:3000/buyer/checkout/success")

    # Browser origins allowed to call the API (buyer/seller dashboards)
    CORS_ALLOWED_ORIGINS = tuple(
        origin.strip()
        for origin in os.environ.get(
            "CORS_ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000"
        ).split(",")
        if origin.strip()
    )
