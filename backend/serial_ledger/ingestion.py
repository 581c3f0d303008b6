from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import PersistenceFailure
from .events import OrderCreated
from .logs import log_event
from .models import FulfillmentStatus, LineItem, Order, utcnow


@dataclass(frozen=True)
class IngestResult:
    order_id: int
    created: bool
    line_items: int = 0
    saddle_units: int = 0


async def find_order(session: AsyncSession, shop_domain: str, external_order_id: str) -> Optional[Order]:
    return await session.scalar(
        select(Order).where(
            Order.shop_domain == shop_domain,
            Order.external_order_id == external_order_id,
        )
    )


def _build_order(event: OrderCreated) -> Order:
    order = Order(
        shop_domain=event.shop_domain,
        external_order_id=event.external_order_id,
        order_name=event.order_name,
        created_at=event.created_at or utcnow(),
        fulfillment_status=FulfillmentStatus.UNFULFILLED.value,
    )
    order.line_items = [
        LineItem(
            shop_domain=event.shop_domain,
            external_line_item_id=li.external_line_item_id,
            title=li.title,
            sku=li.sku,
            quantity=li.quantity,
            product_type=li.product_type,
            tags=list(li.tags),
            is_saddle=li.is_saddle,
        )
        for li in event.line_items
    ]
    return order


async def ingest_order(session: AsyncSession, event: OrderCreated) -> IngestResult:
    """
    Record an order and its line items the first time it is seen.

    Redelivery of the same order is a no-op. The order and all of its line items
    are committed together.
    """
    try:
        existing = await find_order(session, event.shop_domain, event.external_order_id)
        if existing is not None:
            # Rollback expires loaded rows; keep the id before ending the read
            order_id = existing.id
            await session.rollback()
            log_event("ingestion", {
                "shop": event.shop_domain,
                "order_id": event.external_order_id,
                "status": "skipped",
                "reason": "already_ingested",
            })
            return IngestResult(order_id=order_id, created=False)

        order = _build_order(event)
        session.add(order)
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        # A concurrent delivery of the same webhook won the insert race
        existing = await find_order(session, event.shop_domain, event.external_order_id)
        order_id = existing.id if existing is not None else None
        await session.rollback()
        if order_id is not None:
            log_event("ingestion", {
                "shop": event.shop_domain,
                "order_id": event.external_order_id,
                "status": "skipped",
                "reason": "concurrent_insert",
            })
            return IngestResult(order_id=order_id, created=False)
        raise PersistenceFailure(f"order {event.external_order_id} could not be stored: {exc.orig}") from exc
    except SQLAlchemyError as exc:
        await session.rollback()
        raise PersistenceFailure(f"order {event.external_order_id} could not be stored: {exc}") from exc

    log_event("ingestion", {
        "shop": event.shop_domain,
        "order_id": event.external_order_id,
        "order_name": event.order_name,
        "status": "created",
        "line_items": len(event.line_items),
        "saddle_units": event.saddle_units,
    })
    return IngestResult(
        order_id=order.id,
        created=True,
        line_items=len(event.line_items),
        saddle_units=event.saddle_units,
    )
