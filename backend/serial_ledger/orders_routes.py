from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .auth_routes import get_current_user, require_admin
from .config import default_shop_domain, normalize_shop_domain, saddle_order_tag
from .db import get_session, get_session_factory
from .errors import OrderNotFound, SerialConflict, SerialNotFound
from .ledger import (
    EXPORT_FILENAME,
    NOT_ASSIGNED,
    correct_serial,
    export_serials_csv,
    get_order,
    line_item_serials,
    list_order_serials,
    list_orders,
)
from .logs import log_event
from .models import Order, User
from .shopify import fetch_saddle_orders

router = APIRouter()

SHOPIFY_PAGE_SIZE = 10


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def order_to_dict(order: Order) -> Dict[str, Any]:
    saddles = [line_item_serials(li) for li in order.saddle_line_items]
    return {
        "id": order.id,
        "externalOrderId": order.external_order_id,
        "orderNumber": order.order_name,
        "shopDomain": order.shop_domain,
        "createdAt": _iso(order.created_at),
        "fulfillmentStatus": order.fulfillment_status,
        "fulfilledAt": _iso(order.fulfilled_at),
        "hasSaddles": bool(saddles),
        "lineItems": saddles,
    }


@router.get("/api/orders")
async def orders_index(
    q: Optional[str] = Query(None, description="Search by order name, e.g. #1001"),
    shop: Optional[str] = Query(None, description="Limit to one shop domain"),
    page: int = Query(1, ge=1),
    per_page: int = Query(10, ge=1, le=250),
    db: AsyncSession = Depends(get_session),
    _: User = Depends(get_current_user),
):
    shop_norm = normalize_shop_domain(shop or "") or None
    orders, total = await list_orders(db, shop=shop_norm, q=q, page=page, per_page=per_page)
    return {
        "orders": [order_to_dict(o) for o in orders],
        "page": page,
        "perPage": per_page,
        "total": total,
        "totalPages": (total + per_page - 1) // per_page,
    }


@router.get("/api/orders/{order_id}")
async def order_detail(
    order_id: int,
    db: AsyncSession = Depends(get_session),
    _: User = Depends(get_current_user),
):
    order = await get_order(db, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="order not found")
    return order_to_dict(order)


@router.get("/api/orders/{order_id}/serials")
async def order_serials(
    order_id: int,
    db: AsyncSession = Depends(get_session),
    _: User = Depends(get_current_user),
):
    try:
        items = await list_order_serials(db, order_id)
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="order not found")
    for item in items:
        item["display"] = ", ".join(item["serials"]) if item["serials"] else NOT_ASSIGNED
    return {"orderId": order_id, "lineItems": items}


@router.get("/api/serials/export.csv")
async def export_serials(
    shop: Optional[str] = Query(None),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    _: User = Depends(get_current_user),
):
    shop_norm = normalize_shop_domain(shop or "") or None
    chunks = export_serials_csv(session_factory, shop=shop_norm)
    # Pull the header (and with it the first query) before any status goes out
    try:
        header = await chunks.__anext__()
    except SQLAlchemyError as exc:
        log_event("ledger", {"action": "export", "shop": shop_norm, "status": "failed", "error": str(exc)})
        raise HTTPException(status_code=503, detail="serial ledger unavailable, try again")

    async def _body():
        yield header
        async for chunk in chunks:
            yield chunk

    return StreamingResponse(
        _body(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{EXPORT_FILENAME}"'},
    )


class SerialCorrectionBody(BaseModel):
    serial: str


@router.patch("/api/serials/{serial_id}")
async def update_serial(
    serial_id: int,
    body: SerialCorrectionBody,
    db: AsyncSession = Depends(get_session),
    _: User = Depends(require_admin),
):
    try:
        sn = await correct_serial(db, serial_id, body.serial)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except SerialNotFound:
        raise HTTPException(status_code=404, detail="serial not found")
    except SerialConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"ok": True, "id": sn.id, "serial": sn.serial, "orderId": sn.order_id, "lineItemId": sn.line_item_id}


async def get_shopify_client():
    async with httpx.AsyncClient(timeout=30) as client:
        yield client


@router.get("/api/shopify/saddle-orders")
async def shopify_saddle_orders(
    shop: Optional[str] = Query(None, description="Shop domain; defaults to SHOPIFY_SHOP_DOMAIN"),
    page: int = Query(1, ge=1),
    client: httpx.AsyncClient = Depends(get_shopify_client),
    _: User = Depends(get_current_user),
):
    shop_norm = normalize_shop_domain(shop or "") or default_shop_domain()
    if not shop_norm:
        raise HTTPException(status_code=400, detail="shop not specified")
    data = await fetch_saddle_orders(shop_norm, tag=saddle_order_tag(), client=client)
    saddle_orders = data["orders"]
    total = len(saddle_orders)
    start = (page - 1) * SHOPIFY_PAGE_SIZE
    return {
        "orders": saddle_orders[start:start + SHOPIFY_PAGE_SIZE],
        "currentPage": page,
        "totalPages": (total + SHOPIFY_PAGE_SIZE - 1) // SHOPIFY_PAGE_SIZE,
        "totalOrders": total,
        "totalFetched": data["totalFetched"],
    }
