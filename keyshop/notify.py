from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

import httpx
from jinja2 import Environment, PackageLoader, StrictUndefined

from .helpers import to_iso

if TYPE_CHECKING:
    from .model.orders import Order

logger = logging.getLogger(__name__)

KIND_CUSTOMER_CONFIRMATION = "customer_confirmation"
KIND_OPERATOR_ALERT = "operator_alert"

_env = Environment(
    loader=PackageLoader("keyshop", "templates"),
    undefined=StrictUndefined,
    keep_trailing_newline=True,
)
_env.filters["iso"] = to_iso


@dataclass
class Message:
    kind: str
    to: str
    subject: str
    text: str


def render_customer_confirmation(order: "Order", confirm_url: str,
                                 to: Optional[str] = None) -> Message:
    text = _env.get_template("email/customer_confirmation.txt").render(
        order=order, confirm_url=confirm_url,
    )
    return Message(
        kind=KIND_CUSTOMER_CONFIRMATION,
        to=to or order.email,
        subject=f"Confirm your {order.service_name} order",
        text=text,
    )


def render_operator_alert(order: "Order", to: str) -> Message:
    text = _env.get_template("email/operator_alert.txt").render(order=order)
    return Message(
        kind=KIND_OPERATOR_ALERT,
        to=to,
        subject=f"New order: {order.service_name} ({order.tier_name})",
        text=text,
    )


# ----------------------------
# Notifier Interface
# ----------------------------
class Notifier(ABC):
    """
    Sends the two messages of the order flow. Each call returns whether the
    provider accepted the message; nothing here retries.
    """

    @abstractmethod
    async def send_customer_confirmation(
            self, order: "Order", confirm_url: str) -> bool: ...

    @abstractmethod
    async def send_operator_alert(self, order: "Order") -> bool: ...

    async def aclose(self) -> None:
        return None


# ----------------------------
# Mock implementation
# ----------------------------
class MockNotifier(Notifier):
    # keeps every message in memory; for development and tests
    def __init__(self, operator_email: str = "operator@localhost",
                 fail: bool = False) -> None:
        self.operator_email = operator_email
        self.fail = fail
        self.sent: List[Message] = []

    def sent_of_kind(self, kind: str) -> List[Message]:
        return [m for m in self.sent if m.kind == kind]

    async def _deliver(self, msg: Message) -> bool:
        if self.fail:
            logger.warning("mock notifier: dropping %s to %s",
                           msg.kind, msg.to)
            return False
        self.sent.append(msg)
        logger.info("mock notifier: %s to %s: %s",
                    msg.kind, msg.to, msg.subject)
        return True

    async def send_customer_confirmation(
            self, order: "Order", confirm_url: str) -> bool:
        return await self._deliver(
            render_customer_confirmation(order, confirm_url))

    async def send_operator_alert(self, order: "Order") -> bool:
        return await self._deliver(
            render_operator_alert(order, self.operator_email))


# ----------------------------
# Resend (HTTP email API) implementation
# ----------------------------
class ResendNotifier(Notifier):
    def __init__(self, api_url: str, api_key: str, mail_from: str,
                 operator_email: str,
                 client: Optional[httpx.AsyncClient] = None) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.mail_from = mail_from
        self.operator_email = operator_email
        self._own_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=10.0,
            limits=httpx.Limits(max_connections=32),
        )

    async def _deliver(self, msg: Message) -> bool:
        try:
            r = await self.client.post(
                self.api_url,
                headers={"authorization": f"Bearer {self.api_key}"},
                json={
                    "from": self.mail_from,
                    "to": [msg.to],
                    "subject": msg.subject,
                    "text": msg.text,
                },
            )
            r.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("sending %s to %s failed: %s", msg.kind, msg.to, e)
            return False
        return True

    async def send_customer_confirmation(
            self, order: "Order", confirm_url: str) -> bool:
        return await self._deliver(
            render_customer_confirmation(order, confirm_url))

    async def send_operator_alert(self, order: "Order") -> bool:
        return await self._deliver(
            render_operator_alert(order, self.operator_email))

    async def aclose(self) -> None:
        if self._own_client:
            await self.client.aclose()


def new_notifier(backend: str, *, api_url: str = "", api_key: str = "",
                 mail_from: str = "", operator_email: str = "") -> Notifier:
    if backend == "resend":
        if not api_key:
            raise RuntimeError("ResendNotifier requires RESEND_API_KEY")
        return ResendNotifier(api_url=api_url, api_key=api_key,
                              mail_from=mail_from,
                              operator_email=operator_email)
    return MockNotifier(operator_email=operator_email)
