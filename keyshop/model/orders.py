# model/orders.py
from __future__ import annotations
import logging
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import orjson
import redis.asyncio as redis
from redis.exceptions import WatchError

from ..errors import InvalidInput, KeyshopError, StoreUnavailable
from ..helpers import is_valid_email, is_valid_order_id, new_order_id, now_ts
from ..notify import Notifier
from .keystore import guarded, k_order

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"

MAX_FIELD_LEN = 4000

# WATCH retries before giving up on a contended confirm
CONFIRM_ATTEMPTS = 5


class ConfirmStatus(str, Enum):
    # user visible; rendered as-is by the confirm page
    CONFIRMED = "confirmed"
    ALREADY = "already"
    EXPIRED = "expired"
    INVALID = "invalid"
    ERROR = "error"


@dataclass
class Order:
    id: str
    name: str
    email: str
    details: str
    service_name: str
    tier_name: str
    tier_price: str
    discord: str = ""
    status: str = STATUS_PENDING
    created_at: float = field(default_factory=now_ts)
    confirmed_at: Optional[float] = None

    @property
    def is_confirmed(self) -> bool:
        return self.status == STATUS_CONFIRMED

    def to_json(self) -> bytes:
        return orjson.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Order":
        data = orjson.loads(raw)
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})


# wire name -> Order attribute
REQUIRED_FIELDS = {
    "name": "name",
    "email": "email",
    "details": "details",
    "serviceName": "service_name",
    "tierName": "tier_name",
    "tierPrice": "tier_price",
}


def order_from_payload(payload: Dict[str, Any]) -> Order:
    """Build a fresh pending order from a storefront submission."""
    values: Dict[str, str] = {}
    missing = []
    for wire, attr in REQUIRED_FIELDS.items():
        v = payload.get(wire)
        v = "" if v is None else str(v).strip()
        if not v:
            missing.append(wire)
        values[attr] = v
    if missing:
        raise InvalidInput(f"missing required fields: {', '.join(missing)}")

    values["discord"] = str(payload.get("discord") or "").strip()
    too_long = [k for k, v in values.items() if len(v) > MAX_FIELD_LEN]
    if too_long:
        raise InvalidInput(f"fields too long: {', '.join(too_long)}")
    if not is_valid_email(values["email"]):
        raise InvalidInput("email must be a valid email address")

    return Order(id=new_order_id(), **values)


class OrderStore:
    """Order records as JSON documents under order:<id>, always with a TTL."""

    def __init__(self, r: redis.Redis, pending_ttl: int,
                 confirmed_ttl: int) -> None:
        self.r = r
        self.pending_ttl = pending_ttl
        self.confirmed_ttl = confirmed_ttl

    async def create(self, order: Order) -> None:
        async with guarded("orders.create"):
            await self.r.set(k_order(order.id), order.to_json(),
                             ex=self.pending_ttl)

    async def get(self, order_id: str) -> Optional[Order]:
        async with guarded("orders.get"):
            raw = await self.r.get(k_order(order_id))
        return Order.from_json(raw) if raw else None

    async def confirm(
        self, order_id: str, now: float
    ) -> Tuple[ConfirmStatus, Optional[Order]]:
        """
        pending -> confirmed as a compare-and-set: the record is WATCHed,
        checked and rewritten in one MULTI/EXEC. If two callers race, the
        loser's EXEC aborts and its re-read sees `confirmed`.

        Returns (CONFIRMED, order) only for the caller that made the
        transition; otherwise (EXPIRED, None) or (ALREADY, order).
        """
        key = k_order(order_id)
        async with guarded("orders.confirm"):
            async with self.r.pipeline(transaction=True) as pipe:
                for _ in range(CONFIRM_ATTEMPTS):
                    try:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        if not raw:
                            return ConfirmStatus.EXPIRED, None
                        order = Order.from_json(raw)
                        if order.is_confirmed:
                            return ConfirmStatus.ALREADY, order

                        order.status = STATUS_CONFIRMED
                        order.confirmed_at = now
                        pipe.multi()
                        # fresh TTL: confirmed orders outlive the pending window
                        pipe.set(key, order.to_json(), ex=self.confirmed_ttl)
                        await pipe.execute()
                        return ConfirmStatus.CONFIRMED, order
                    except WatchError:
                        logger.info("order %s changed during confirm; retry",
                                    order_id)
                        continue
        raise StoreUnavailable(f"could not confirm {order_id}: too much "
                               "contention")


@dataclass
class SubmitResult:
    order: Order
    notified: bool


class OrderService:
    def __init__(self, store: OrderStore, notifier: Notifier,
                 base_url: str) -> None:
        self.store = store
        self.notifier = notifier
        self.base_url = base_url.rstrip("/")

    def confirm_url(self, order_id: str) -> str:
        return f"{self.base_url}/api/confirm-order?id={order_id}"

    async def submit_order(self, payload: Dict[str, Any]) -> SubmitResult:
        """
        Store a pending order and ask the customer to confirm it. The
        operator hears nothing until the customer clicks the link.
        Raises InvalidInput / StoreUnavailable.
        """
        order = order_from_payload(payload)
        await self.store.create(order)
        logger.info("order %s stored as pending (%s / %s)",
                    order.id, order.service_name, order.tier_name)

        notified = await self.notifier.send_customer_confirmation(
            order, self.confirm_url(order.id)
        )
        if not notified:
            logger.warning("order %s: customer confirmation not sent",
                           order.id)
        return SubmitResult(order=order, notified=notified)

    async def confirm_order(self, order_id: Optional[str]) -> ConfirmStatus:
        """
        Never raises for store trouble: that is ConfirmStatus.ERROR, and
        calling again is always safe.
        """
        order_id = (order_id or "").strip()
        if not is_valid_order_id(order_id):
            return ConfirmStatus.INVALID

        try:
            status, order = await self.store.confirm(order_id, now_ts())
        except KeyshopError as e:
            logger.error("confirm %s failed: %s", order_id, e)
            return ConfirmStatus.ERROR

        if status is not ConfirmStatus.CONFIRMED:
            logger.info("confirm %s: %s", order_id, status.value)
            return status

        # only after the confirmed record is durable: a crash here means a
        # missed alert, never a duplicate one
        try:
            sent = await self.notifier.send_operator_alert(order)
        except Exception:
            logger.exception("order %s: operator alert raised", order_id)
            sent = False
        if not sent:
            logger.warning("order %s confirmed but operator alert not sent",
                           order_id)
        logger.info("order %s confirmed", order_id)
        return ConfirmStatus.CONFIRMED
