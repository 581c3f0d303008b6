"""Shared fixtures: a throwaway SQLite ledger per test and an API client wired to it."""

from datetime import datetime, timezone
from itertools import count
from types import SimpleNamespace

import httpx
import pytest
from sqlalchemy import func, select

from serial_ledger.auth_routes import get_current_user
from serial_ledger.db import build_engine, build_session_factory, get_session, get_session_factory, init_db
from serial_ledger.events import OrderCreated, OrderFulfilled
from serial_ledger.main import app
from serial_ledger.models import SerialNumber
from serial_ledger.serials import OrderLocks, SerialAssigner

SHOP = "saddlery.myshopify.com"

_ids = count(100000)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "SHOPIFY_WEBHOOK_SECRET",
        "SHOPIFY_WEBHOOK_SECRETS",
        "SHOPIFY_WEBHOOK_SKIP_HMAC",
        "SHOPIFY_ACCESS_TOKEN",
        "SHOPIFY_ACCESS_TOKENS",
        "SHOPIFY_SHOP_DOMAIN",
        "SERIAL_MAX_ATTEMPTS",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
async def engine(tmp_path):
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def assigner(session_factory):
    return SerialAssigner(session_factory, locks=OrderLocks())


@pytest.fixture
def staff_user():
    return SimpleNamespace(id="staff-1", email="staff@saddlery.co", name="Staff", role="staff", is_active=True)


@pytest.fixture
async def client(session_factory, staff_user):
    async def _session():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_current_user] = lambda: staff_user
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


def make_line_item(title="Western Trail Saddle", quantity=1, product_type="Saddle", tags=None, sku=None, item_id=None):
    return {
        "external_line_item_id": str(item_id or next(_ids)),
        "title": title,
        "sku": sku,
        "quantity": quantity,
        "product_type": product_type,
        "tags": tags or [],
    }


def make_order_created(*line_items, order_id=None, name=None, created_at=None, shop=SHOP) -> OrderCreated:
    oid = str(order_id or next(_ids))
    return OrderCreated(
        external_order_id=oid,
        shop_domain=shop,
        order_name=name or f"#{oid}",
        created_at=created_at or datetime.now(timezone.utc),
        line_items=list(line_items),
    )


def fulfilled(event: OrderCreated) -> OrderFulfilled:
    return OrderFulfilled(external_order_id=event.external_order_id, shop_domain=event.shop_domain)


def shopify_order_payload(order_id, *, name=None, line_items=None, created_at="2024-03-01T10:00:00-05:00"):
    """Shape of a Shopify orders/create webhook body, trimmed to what ingestion reads."""
    return {
        "id": order_id,
        "name": name or f"#{order_id}",
        "order_number": order_id,
        "created_at": created_at,
        "line_items": line_items if line_items is not None else [
            {"id": order_id * 10 + 1, "title": "Dressage Saddle", "sku": "DR-17", "quantity": 2, "product_type": "Saddles"},
            {"id": order_id * 10 + 2, "title": "Saddle Pad", "sku": "PAD-1", "quantity": 1, "product_type": "Accessories", "tags": "pads, felt"},
        ],
    }


async def serial_count(session_factory, **filters) -> int:
    stmt = select(func.count(SerialNumber.id))
    for name, value in filters.items():
        stmt = stmt.where(getattr(SerialNumber, name) == value)
    async with session_factory() as s:
        return await s.scalar(stmt)
