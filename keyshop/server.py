"""keyshop HTTP server.

Run it with uvicorn:

    uvicorn keyshop.server:app --host 0.0.0.0 --port 8000

Every worker process keeps its own "key queues synced" flag; the queues
themselves live in Redis and are shared.
"""
from __future__ import annotations
import logging
import os
from typing import Optional

from . import config
from .errors import InvalidInput, SourceUnavailable, StoreUnavailable
from .helpers import ct_equal, to_iso
from .infra import timings
from .infra.timings import install_shutdown_flush
from .model.inventory import InventoryService, Reconciler
from .model.keysource import KeyEntry, parse_lines
from .model.keystore import connect
from .model.orders import ConfirmStatus, OrderService, OrderStore
from .notify import Notifier, new_notifier

from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, ORJSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

import redis.asyncio as redis

logger = logging.getLogger(__name__)

templates = Jinja2Templates(
    directory=os.path.join(os.path.dirname(__file__), "templates")
)

SITE_NAME = "Shadow.CC"

# what the confirm page says for each outcome
CONFIRM_PAGE_TEXT = {
    ConfirmStatus.CONFIRMED: (
        "Order confirmed",
        "Thanks! Your order is confirmed and we have been notified.",
    ),
    ConfirmStatus.ALREADY: (
        "Already confirmed",
        "This order was confirmed before. Nothing else to do.",
    ),
    ConfirmStatus.EXPIRED: (
        "Order expired",
        "We could not find this order. It may have expired; "
        "please place it again.",
    ),
    ConfirmStatus.INVALID: (
        "Invalid link",
        "This confirmation link is incomplete or malformed.",
    ),
    ConfirmStatus.ERROR: (
        "Something went wrong",
        "We could not confirm your order right now. Please try the link "
        "again in a minute.",
    ),
}

app = FastAPI(
    title="keyshop",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=config.SESSION_SECRET)

# timing aggregates are logged (and optionally pushed) on shutdown
install_shutdown_flush(app)


# ---
# dependencies
# ---
def keystore() -> redis.Redis:
    r = getattr(app.state, "redis", None)
    if r is None:
        raise RuntimeError("Redis client not initialized")
    return r


def inventory(r: redis.Redis = Depends(keystore)) -> InventoryService:
    return InventoryService(r, app.state.reconciler)


def orders(r: redis.Redis = Depends(keystore)) -> OrderService:
    store = OrderStore(
        r,
        pending_ttl=config.PENDING_ORDER_TTL_SECONDS,
        confirmed_ttl=config.CONFIRMED_ORDER_TTL_SECONDS,
    )
    notifier: Notifier = app.state.notifier
    return OrderService(store, notifier, base_url=config.PUBLIC_BASE_URL)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    config.configure_logging()
    logger.info("=" * 50)
    logger.info("keyshop is starting up...")
    logger.info("   - Key source:   %s", config.KEYS_FILE)
    logger.info("   - Products:     %s", ", ".join(config.PRODUCT_IDS))
    logger.info("   - Notifier:     %s", config.NOTIFY_BACKEND)
    logger.info("=" * 50)


@app.on_event("startup")
async def _redis_start():
    app.state.redis = connect(config.REDIS_URL, config.REDIS_MAX_CONN)
    app.state.reconciler = Reconciler(
        app.state.redis,
        source_path=config.KEYS_FILE,
        product_ids=config.PRODUCT_IDS,
        recheck_seconds=config.KEYS_RECHECK_SECONDS,
    )


@app.on_event("startup")
async def _notifier_start():
    app.state.notifier = new_notifier(
        config.NOTIFY_BACKEND,
        api_url=config.RESEND_API_URL,
        api_key=config.RESEND_API_KEY,
        mail_from=config.MAIL_FROM,
        operator_email=config.OPERATOR_EMAIL,
    )


@app.on_event("startup")
async def _initial_sync():
    # a failed cold-start sync is retried by the first request touching stock
    try:
        await app.state.reconciler.ensure_synced()
    except (SourceUnavailable, StoreUnavailable) as e:
        logger.error("initial key sync failed: %s", e)


@app.on_event("shutdown")
async def _notifier_stop():
    notifier = getattr(app.state, "notifier", None)
    if notifier is not None:
        await notifier.aclose()
        app.state.notifier = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


# ----------------------------
# Error mapping: never leak store details
# ----------------------------
@app.exception_handler(StoreUnavailable)
@app.exception_handler(SourceUnavailable)
async def _unavailable(request: Request, exc: Exception):
    logger.error("%s %s: %s", request.method, request.url.path, exc)
    return ORJSONResponse(
        {"error": "Service temporarily unavailable. Please try again."},
        status_code=503,
    )


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="admin login required")


def entries_from_payload(payload: dict) -> list[KeyEntry]:
    if isinstance(payload.get("lines"), str):
        return parse_lines(payload["lines"].splitlines())
    items = payload.get("keys")
    if not isinstance(items, list):
        raise HTTPException(400, detail="expected 'keys' list or 'lines'")
    entries = []
    for item in items:
        if not isinstance(item, dict):
            raise HTTPException(400, detail="each key must be an object")
        entries.append(KeyEntry(
            key=str(item.get("key") or "").strip(),
            product_id=str(item.get("productId") or "").strip(),
        ))
    return entries


# ----------------------------
# API: inventory (polled by the storefront)
# ----------------------------
@app.get("/api/inventory")
async def get_inventory(inv: InventoryService = Depends(inventory)):
    return await inv.get_all_stock()


@app.get("/api/inventory/{product_id}")
async def get_product_stock(product_id: str,
                            inv: InventoryService = Depends(inventory)):
    return {"productId": product_id, "stock": await inv.get_stock(product_id)}


# ----------------------------
# API: orders
# ----------------------------
@app.post("/api/submit-order")
async def submit_order(payload: dict, svc: OrderService = Depends(orders)):
    try:
        result = await svc.submit_order(payload)
    except InvalidInput as e:
        raise HTTPException(400, detail=str(e))

    if not result.notified:
        return ORJSONResponse(
            {"error": "Failed to send confirmation email. Please try again "
                      "or contact support."},
            status_code=500,
        )
    return {
        "success": True,
        "message": "Order submitted. Check your email to confirm.",
    }


async def _confirm(svc: OrderService, order_id: Optional[str]) -> ConfirmStatus:
    try:
        return await svc.confirm_order(order_id)
    except Exception:
        # the caller only ever sees the fixed vocabulary
        logger.exception("confirm %s crashed", order_id)
        return ConfirmStatus.ERROR


# the link in the customer email lands here
@app.get("/api/confirm-order")
async def confirm_order_link(id: Optional[str] = None,
                             svc: OrderService = Depends(orders)):
    status = await _confirm(svc, id)
    return RedirectResponse(
        url=f"/confirm-order?status={status.value}",
        status_code=HTTP_303_SEE_OTHER,
    )


@app.post("/api/orders/{order_id}/confirm")
async def confirm_order_api(order_id: str,
                            svc: OrderService = Depends(orders)):
    status = await _confirm(svc, order_id)
    return {"status": status.value}


@app.get("/confirm-order", response_class=HTMLResponse)
async def confirm_order_page(request: Request, status: str = "invalid"):
    try:
        st = ConfirmStatus(status)
    except ValueError:
        st = ConfirmStatus.INVALID
    title, message = CONFIRM_PAGE_TEXT[st]
    return templates.TemplateResponse(
        request,
        "confirm_order.html",
        {"site_name": SITE_NAME, "status": st.value,
         "title": title, "message": message},
    )


# ----------------------------
# Admin
# ----------------------------
@app.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form("/api/inventory"),
):
    ok_user = ct_equal(username.strip(), config.ADMIN_USERNAME)
    ok_pass = ct_equal(password, config.ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        # only local redirects
        dest = next if next.startswith("/") and not next.startswith("//") \
            else "/api/inventory"
        return RedirectResponse(url=dest, status_code=HTTP_303_SEE_OTHER)
    logger.warning("failed admin login for %r", username.strip())
    return ORJSONResponse({"error": "Invalid credentials."}, status_code=401)


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/api/inventory",
                            status_code=HTTP_303_SEE_OTHER)


@app.post("/api/admin/keys", dependencies=[Depends(require_admin)])
async def admin_add_keys(payload: dict,
                         inv: InventoryService = Depends(inventory)):
    entries = entries_from_payload(payload)
    if not await inv.add_keys(entries):
        raise HTTPException(400, detail="keys rejected")
    return {"ok": True, "added": len(entries),
            "stock": await inv.get_all_stock()}


@app.post("/api/admin/claim/{product_id}",
          dependencies=[Depends(require_admin)])
async def admin_claim(product_id: str,
                      inv: InventoryService = Depends(inventory)):
    # manual fulfillment by the operator
    return {"productId": product_id, "key": await inv.claim_key(product_id)}


@app.post("/api/admin/resync", dependencies=[Depends(require_admin)])
async def admin_resync(inv: InventoryService = Depends(inventory)):
    inv.reconciler.invalidate()
    reseeded = await inv.reconciler.ensure_synced()
    return {"reseeded": reseeded, "stock": await inv.get_all_stock()}


@app.get("/api/admin/orders/{order_id}",
         dependencies=[Depends(require_admin)])
async def admin_get_order(order_id: str, svc: OrderService = Depends(orders)):
    order = await svc.store.get(order_id)
    if order is None:
        raise HTTPException(404, detail="order not found")
    return {
        "id": order.id,
        "status": order.status,
        "name": order.name,
        "email": order.email,
        "discord": order.discord,
        "details": order.details,
        "serviceName": order.service_name,
        "tierName": order.tier_name,
        "tierPrice": order.tier_price,
        "createdAt": to_iso(order.created_at),
        "confirmedAt": to_iso(order.confirmed_at),
    }


@app.get("/api/admin/timings", dependencies=[Depends(require_admin)])
async def admin_timings():
    return {"items": timings.snapshot()}
