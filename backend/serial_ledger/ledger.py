from __future__ import annotations

import csv
import io
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, NamedTuple, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from .errors import OrderNotFound, SerialConflict, SerialNotFound
from .logs import log_event
from .models import LineItem, Order, SerialNumber
from .serials import is_valid_serial

EXPORT_FILENAME = "saddle-serial-numbers.csv"
EXPORT_HEADER = ["Order Number", "Order Date", "Product", "SKU", "Serial Number", "Line Item ID"]
NOT_ASSIGNED = "Not assigned yet"


class SerialRow(NamedTuple):
    order_number: str
    order_date: str
    product_title: str
    sku: str
    serial_value: str
    line_item_id: str


def _fmt_date(dt: Optional[datetime]) -> str:
    if dt is None:
        return ""
    return dt.strftime("%Y-%m-%d")


def _order_query():
    return select(Order).options(
        selectinload(Order.line_items).selectinload(LineItem.serial_numbers)
    )


async def list_orders(
    session: AsyncSession,
    *,
    shop: Optional[str] = None,
    q: Optional[str] = None,
    page: int = 1,
    per_page: int = 10,
) -> Tuple[List[Order], int]:
    """Orders newest first, optionally filtered by shop and by order name."""
    page = max(1, page)
    per_page = max(1, min(per_page, 250))
    conds = []
    if shop:
        conds.append(Order.shop_domain == shop)
    term = (q or "").strip().lstrip("#").strip()
    if term:
        like = f"%{term.lower()}%"
        conds.append(or_(func.lower(Order.order_name).like(like), Order.external_order_id == term))

    total = await session.scalar(select(func.count(Order.id)).where(*conds))
    rows = await session.scalars(
        _order_query()
        .where(*conds)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return list(rows), int(total or 0)


async def get_order(session: AsyncSession, order_id: int) -> Optional[Order]:
    return await session.scalar(_order_query().where(Order.id == order_id))


def line_item_serials(item: LineItem) -> Dict[str, Any]:
    return {
        "lineItemId": item.id,
        "externalLineItemId": item.external_line_item_id,
        "title": item.title,
        "sku": item.sku,
        "quantity": item.quantity,
        "serials": [sn.serial for sn in item.serial_numbers],
    }


async def list_order_serials(session: AsyncSession, order_id: int) -> List[Dict[str, Any]]:
    """Assigned serials per saddle line item; an empty list means not assigned yet."""
    order = await get_order(session, order_id)
    if order is None:
        raise OrderNotFound(str(order_id))
    return [line_item_serials(li) for li in order.saddle_line_items]


def _export_query(shop: Optional[str] = None):
    stmt = (
        select(
            Order.order_name,
            Order.created_at,
            LineItem.title,
            LineItem.sku,
            SerialNumber.serial,
            LineItem.external_line_item_id,
        )
        .join(LineItem, SerialNumber.line_item_id == LineItem.id)
        .join(Order, SerialNumber.order_id == Order.id)
        .order_by(Order.created_at.desc(), Order.id.desc(), LineItem.id, SerialNumber.id)
    )
    if shop:
        stmt = stmt.where(SerialNumber.shop_domain == shop)
    return stmt


async def iter_serial_rows(session: AsyncSession, *, shop: Optional[str] = None) -> AsyncIterator[SerialRow]:
    """One row per serial, newest order first. Each call runs a fresh query."""
    result = await session.stream(_export_query(shop))
    async for name, created_at, title, sku, serial, line_item_id in result:
        yield SerialRow(
            order_number=name,
            order_date=_fmt_date(created_at),
            product_title=title or "",
            sku=sku or "",
            serial_value=serial,
            line_item_id=line_item_id,
        )


def render_csv(rows: Iterable[Iterable[Any]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf)
    for row in rows:
        writer.writerow(row)
    return buf.getvalue()


async def export_serials_csv(
    session_factory: async_sessionmaker,
    *,
    shop: Optional[str] = None,
    batch_size: int = 500,
) -> AsyncIterator[str]:
    """
    Yield the serial ledger as CSV text, header first, in batches of rows.

    The query runs before the header is produced, so a storage error surfaces
    on the first chunk instead of cutting a download short.
    """
    async with session_factory() as session:
        rows = iter_serial_rows(session, shop=shop)
        try:
            first: Optional[SerialRow] = await rows.__anext__()
        except StopAsyncIteration:
            first = None
        yield render_csv([EXPORT_HEADER])
        if first is None:
            return
        batch: List[SerialRow] = [first]
        async for row in rows:
            batch.append(row)
            if len(batch) >= batch_size:
                yield render_csv(batch)
                batch = []
        if batch:
            yield render_csv(batch)


async def correct_serial(session: AsyncSession, serial_id: int, value: str) -> SerialNumber:
    """Replace a serial's value by hand. The new value must be well formed and unused in the shop."""
    new_value = (value or "").strip().upper()
    if not is_valid_serial(new_value):
        raise ValueError(f"invalid serial format: {value!r} (expected LL-NNNNN)")

    sn = await session.get(SerialNumber, serial_id)
    if sn is None:
        raise SerialNotFound(f"serial not found: {serial_id}")
    if sn.serial == new_value:
        return sn

    taken = await session.scalar(
        select(SerialNumber.id).where(
            SerialNumber.shop_domain == sn.shop_domain,
            SerialNumber.serial == new_value,
        )
    )
    if taken is not None:
        raise SerialConflict(f"serial already in use: {new_value}")

    old_value = sn.serial
    sn.serial = new_value
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise SerialConflict(f"serial already in use: {new_value}") from exc

    log_event("ledger", {
        "action": "correct_serial",
        "serial_id": serial_id,
        "shop": sn.shop_domain,
        "old": old_value,
        "new": new_value,
    })
    return sn
