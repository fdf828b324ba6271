import time
import re
import secrets
from datetime import datetime, timezone
import hmac
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
# opaque ids: anything URL-safe and reasonably short
ORDER_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def new_order_id() -> str:
    # 128 random bits, hex: unguessable and safe inside a URL
    return secrets.token_hex(16)


def is_valid_order_id(order_id: Optional[str]) -> bool:
    if not order_id:
        return False
    return ORDER_ID_RE.fullmatch(order_id) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())
