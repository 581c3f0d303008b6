"""
Webhook event types.

Shopify delivers order lifecycle webhooks as loosely shaped JSON. Everything the
ingestion and assignment code touches is validated here first, so downstream
code never sees a missing id or a zero quantity.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .config import normalize_shop_domain
from .errors import MalformedEvent

SADDLE_TOKEN = "saddle"


def parse_tags(val: Any) -> List[str]:
    if isinstance(val, list):
        return [str(x).strip() for x in val if str(x).strip()]
    if isinstance(val, str):
        # Shopify webhooks often send tags as comma-separated string
        parts = [p.strip() for p in val.split(",")]
        return [p for p in parts if p]
    return []


def _require_id(v: Any) -> str:
    if v is None or isinstance(v, bool):
        raise ValueError("identifier required")
    s = str(v).strip()
    if not s:
        raise ValueError("identifier required")
    return s


class _EventModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class LineItemIn(_EventModel):
    external_line_item_id: str
    title: str = ""
    sku: Optional[str] = None
    quantity: int = Field(gt=0)
    product_type: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    @field_validator("external_line_item_id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> str:
        return _require_id(v)

    @field_validator("title", mode="before")
    @classmethod
    def _coerce_title(cls, v: Any) -> str:
        return "" if v is None else str(v).strip()

    @field_validator("sku", "product_type", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        s = str(v).strip()
        return s or None

    @field_validator("tags", mode="before")
    @classmethod
    def _coerce_tags(cls, v: Any) -> List[str]:
        return parse_tags(v)

    @property
    def is_saddle(self) -> bool:
        if SADDLE_TOKEN in (self.product_type or "").lower():
            return True
        return any(SADDLE_TOKEN in t.lower() for t in self.tags)


class _OrderEvent(_EventModel):
    external_order_id: str
    shop_domain: str

    @field_validator("external_order_id", mode="before")
    @classmethod
    def _coerce_order_id(cls, v: Any) -> str:
        return _require_id(v)

    @field_validator("shop_domain", mode="before")
    @classmethod
    def _coerce_shop(cls, v: Any) -> str:
        shop = normalize_shop_domain(str(v or ""))
        if not shop:
            raise ValueError("shop domain required")
        return shop


class OrderCreated(_OrderEvent):
    topic: Literal["orders/create"] = "orders/create"
    # Shopify calls the display name (e.g. "#1001") the order number
    order_name: str = Field(validation_alias=AliasChoices("order_name", "orderNumber", "orderName"))
    created_at: Optional[datetime] = None
    line_items: List[LineItemIn]

    @field_validator("order_name", mode="before")
    @classmethod
    def _coerce_name(cls, v: Any) -> str:
        return _require_id(v)

    @field_validator("line_items")
    @classmethod
    def _unique_line_items(cls, v: List[LineItemIn]) -> List[LineItemIn]:
        seen = set()
        for li in v:
            if li.external_line_item_id in seen:
                raise ValueError(f"duplicate line item id {li.external_line_item_id}")
            seen.add(li.external_line_item_id)
        return v

    @field_validator("created_at")
    @classmethod
    def _to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is None:
            return None
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @property
    def saddle_units(self) -> int:
        return sum(li.quantity for li in self.line_items if li.is_saddle)


class OrderFulfilled(_OrderEvent):
    topic: Literal["orders/fulfilled"] = "orders/fulfilled"


def _error_fields(exc: ValidationError) -> List[str]:
    fields = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc") or ())
        if loc and loc not in fields:
            fields.append(loc)
    return fields


def _validate(model, topic: str, data: Dict[str, Any]):
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise MalformedEvent(topic, _error_fields(exc)) from exc


def order_created_from_shopify(shop_domain: str, payload: Any) -> OrderCreated:
    """Build an OrderCreated from a raw Shopify orders/create webhook body."""
    if not isinstance(payload, dict):
        raise MalformedEvent("orders/create", message="payload must be a JSON object")
    name = (payload.get("name") or "").strip() if isinstance(payload.get("name"), str) else ""
    if not name and payload.get("order_number") is not None:
        name = f"#{payload.get('order_number')}"
    raw_items = payload.get("line_items")
    items = []
    if isinstance(raw_items, list):
        for item in raw_items:
            item = item if isinstance(item, dict) else {}
            items.append({
                "external_line_item_id": item.get("id"),
                "title": item.get("title") or item.get("name"),
                "sku": item.get("sku"),
                "quantity": item.get("quantity"),
                "product_type": item.get("product_type"),
                "tags": item.get("tags") or item.get("product_tags"),
            })
    data = {
        "external_order_id": payload.get("id"),
        "shop_domain": shop_domain,
        "order_name": name or None,
        "created_at": payload.get("created_at") or None,
        "line_items": items if isinstance(raw_items, list) else None,
    }
    return _validate(OrderCreated, "orders/create", data)


def order_fulfilled_from_shopify(shop_domain: str, payload: Any) -> OrderFulfilled:
    """Build an OrderFulfilled from a raw Shopify orders/fulfilled webhook body."""
    if not isinstance(payload, dict):
        raise MalformedEvent("orders/fulfilled", message="payload must be a JSON object")
    data = {"external_order_id": payload.get("id"), "shop_domain": shop_domain}
    return _validate(OrderFulfilled, "orders/fulfilled", data)


def parse_order_created(data: Dict[str, Any]) -> OrderCreated:
    """Validate an already-normalized order.created event (snake_case or camelCase keys)."""
    return _validate(OrderCreated, "orders/create", data)


def parse_order_fulfilled(data: Dict[str, Any]) -> OrderFulfilled:
    return _validate(OrderFulfilled, "orders/fulfilled", data)
