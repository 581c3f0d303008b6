from __future__ import annotations

import base64
import hashlib
import hmac
import json
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import normalize_shop_domain, skip_webhook_hmac, webhook_secret_for_shop
from .db import get_session, get_session_factory
from .errors import MalformedEvent, OrderNotFound, PersistenceFailure
from .events import order_created_from_shopify, order_fulfilled_from_shopify
from .ingestion import ingest_order
from .logs import log_event
from .serials import OrderLocks, SerialAssigner

router = APIRouter()

TOPIC_ORDERS_CREATE = "orders/create"
TOPIC_ORDERS_FULFILLED = "orders/fulfilled"

# Shared by every request in this process so duplicate deliveries queue behind each other
ORDER_LOCKS = OrderLocks()


def get_assigner(session_factory: async_sessionmaker = Depends(get_session_factory)) -> SerialAssigner:
    return SerialAssigner(session_factory, locks=ORDER_LOCKS)


def verify_shopify_hmac(raw_body: bytes, recv_hmac: str, secret: str) -> bool:
    if not secret:
        return True
    calc = base64.b64encode(hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()).decode()
    return hmac.compare_digest((recv_hmac or "").strip(), calc)


async def _read_verified_json(request: Request, shop: str, recv_hmac: Optional[str]) -> Any:
    raw = await request.body()
    if not skip_webhook_hmac():
        if not verify_shopify_hmac(raw, recv_hmac or "", webhook_secret_for_shop(shop)):
            log_event("webhook", {"shop": shop, "status": "rejected", "reason": "bad_hmac"})
            raise HTTPException(status_code=401, detail="bad hmac")
    try:
        return json.loads(raw or b"null")
    except ValueError:
        return None


def _ignored(topic: Optional[str], expected: str) -> Optional[dict]:
    t = (topic or "").strip().lower()
    if t and t != expected:
        log_event("webhook", {"topic": t, "expected": expected, "status": "ignored"})
        return {"ok": True, "status": "ignored"}
    return None


def _malformed(exc: MalformedEvent, shop: str) -> JSONResponse:
    log_event("webhook", {"topic": exc.topic, "shop": shop, "status": "rejected", "reason": "malformed", "fields": exc.fields})
    return JSONResponse({"ok": False, "error": "malformed_event", "detail": str(exc), "fields": exc.fields}, status_code=400)


def _retry_later(exc: PersistenceFailure, topic: str, shop: str) -> JSONResponse:
    log_event("webhook", {"topic": topic, "shop": shop, "status": "failed", "reason": str(exc)})
    return JSONResponse({"ok": False, "error": "persistence_failure", "retryable": True}, status_code=503)


@router.post("/api/shopify/webhooks/orders/create")
async def orders_create_webhook(
    request: Request,
    x_shopify_hmac_sha256: Optional[str] = Header(default=None),
    x_shopify_shop_domain: Optional[str] = Header(default=None),
    x_shopify_topic: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_session),
):
    shop = normalize_shop_domain(x_shopify_shop_domain or "")
    data = await _read_verified_json(request, shop, x_shopify_hmac_sha256)
    ignored = _ignored(x_shopify_topic, TOPIC_ORDERS_CREATE)
    if ignored:
        return ignored

    try:
        event = order_created_from_shopify(shop, data)
        result = await ingest_order(db, event)
    except MalformedEvent as exc:
        return _malformed(exc, shop)
    except PersistenceFailure as exc:
        return _retry_later(exc, TOPIC_ORDERS_CREATE, shop)

    return {
        "ok": True,
        "status": "created" if result.created else "already_ingested",
        "order_id": result.order_id,
    }


@router.post("/api/shopify/webhooks/orders/fulfilled")
async def orders_fulfilled_webhook(
    request: Request,
    x_shopify_hmac_sha256: Optional[str] = Header(default=None),
    x_shopify_shop_domain: Optional[str] = Header(default=None),
    x_shopify_topic: Optional[str] = Header(default=None),
    assigner: SerialAssigner = Depends(get_assigner),
):
    shop = normalize_shop_domain(x_shopify_shop_domain or "")
    data = await _read_verified_json(request, shop, x_shopify_hmac_sha256)
    ignored = _ignored(x_shopify_topic, TOPIC_ORDERS_FULFILLED)
    if ignored:
        return ignored

    try:
        event = order_fulfilled_from_shopify(shop, data)
        result = await assigner.assign(event)
    except MalformedEvent as exc:
        return _malformed(exc, shop)
    except OrderNotFound:
        # Retrying cannot fix an order we never ingested; acknowledge it
        return {"ok": True, "status": "order_not_found"}
    except PersistenceFailure as exc:
        return _retry_later(exc, TOPIC_ORDERS_FULFILLED, shop)

    return {
        "ok": True,
        "status": result.status,
        "order_id": result.order_id,
        "serials": result.serials,
    }
