"""keyshop configuration.

Everything is read from environment variables once, at import time. Defaults
are meant for local development against a Redis on localhost.
"""
from __future__ import annotations

import logging
import os
from typing import Tuple

# --- Redis (Durable Key Store) ----------------------------------------------
REDIS_URL: str = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN: int = int(os.getenv("REDIS_MAX_CONN", "64"))

# --- Inventory ----------------------------------------------------------------
# Authoritative key source, one `KEY|PRODUCT_ID` per line.
KEYS_FILE: str = os.getenv("KEYS_FILE", os.path.join("data", "keys.txt"))

# 0 means: once synced, trust the fingerprint for the process lifetime.
KEYS_RECHECK_SECONDS: float = float(os.getenv("KEYS_RECHECK_SECONDS", "0"))


def _product_ids(raw: str) -> Tuple[str, ...]:
    return tuple(p.strip() for p in raw.split(",") if p.strip())


PRODUCT_IDS: Tuple[str, ...] = _product_ids(os.getenv(
    "PRODUCT_IDS", "shadow-weekly,shadow-monthly,shadow-lifetime"
))

# --- Orders -------------------------------------------------------------------
PENDING_ORDER_TTL_SECONDS: int = int(
    os.getenv("PENDING_ORDER_TTL_SECONDS", str(60 * 60 * 24 * 7))
)
CONFIRMED_ORDER_TTL_SECONDS: int = int(
    os.getenv("CONFIRMED_ORDER_TTL_SECONDS", str(60 * 60 * 24 * 30))
)

# Confirmation links in customer emails point here.
PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")

# --- Notifications ------------------------------------------------------------
NOTIFY_BACKEND: str = os.getenv("NOTIFY_BACKEND", "mock").lower()  # mock|resend
RESEND_API_URL: str = os.getenv(
    "RESEND_API_URL", "https://api.resend.com/emails"
)
RESEND_API_KEY: str = os.getenv("RESEND_API_KEY", "")
MAIL_FROM: str = os.getenv("MAIL_FROM", "Shadow.CC <orders@localhost>")
OPERATOR_EMAIL: str = os.getenv("OPERATOR_EMAIL", "operator@localhost")

# --- Admin --------------------------------------------------------------------
SESSION_SECRET: str = os.getenv("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME: str = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD: str = os.getenv("ADMIN_PASSWORD", "supasecret")

# --- Logging ------------------------------------------------------------------
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
