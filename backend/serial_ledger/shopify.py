from __future__ import annotations

import asyncio
import random
from typing import Any, Dict, List, Optional

import httpx
from fastapi import HTTPException

from .config import access_token_for_shop, shopify_api_version
from .logs import log_event

SADDLE_ORDERS_QUERY = """
query SaddleOrders($first: Int!, $after: String, $query: String) {
  orders(first: $first, after: $after, query: $query, reverse: true) {
    edges {
      node {
        id
        name
        createdAt
        displayFulfillmentStatus
        customer { firstName lastName email }
        lineItems(first: 50) {
          edges {
            node {
              id
              title
              quantity
              sku
              variant { selectedOptions { name value } }
              product { id productType tags }
            }
          }
        }
      }
    }
    pageInfo { hasNextPage endCursor }
  }
}
"""


def _shopify_graphql_url(shop: str) -> str:
    return f"https://{shop}/admin/api/{shopify_api_version()}/graphql.json"


async def shopify_graphql(
    query: str,
    variables: Dict[str, Any] | None,
    *,
    shop: str,
    client: Optional[httpx.AsyncClient] = None,
    max_retries: int = 5,
    base_delay: float = 0.35,
) -> Dict[str, Any]:
    token = access_token_for_shop(shop)
    if not shop or not token:
        raise HTTPException(status_code=400, detail="Shopify credentials not configured for selected shop")
    headers = {
        "Content-Type": "application/json",
        "Accept": "application/json",
        "X-Shopify-Access-Token": token,
    }

    last_exc: Optional[Exception] = None
    url = _shopify_graphql_url(shop)
    own_client = client is None
    http = client or httpx.AsyncClient(timeout=30)
    try:
        for attempt in range(max_retries):
            try:
                r = await http.post(url, headers=headers, json={"query": query, "variables": variables or {}})
                # Handle HTTP throttling
                if r.status_code in (429, 430, 503):
                    ra = r.headers.get("Retry-After")
                    if attempt < max_retries - 1:
                        try:
                            wait = float(ra) if ra else (base_delay * (2 ** attempt) + random.uniform(0, 0.15))
                        except ValueError:
                            wait = base_delay * (2 ** attempt) + random.uniform(0, 0.15)
                        await asyncio.sleep(wait)
                        continue
                    raise HTTPException(status_code=429, detail="Shopify API is throttling requests. Please try again shortly.")

                r.raise_for_status()
                data = r.json()
                if "errors" in data:
                    errs = data.get("errors") or []
                    is_throttled = any(((e.get("extensions") or {}).get("code") or "").upper() == "THROTTLED" for e in errs)
                    if is_throttled and attempt < max_retries - 1:
                        await asyncio.sleep(base_delay * (2 ** attempt) + random.uniform(0, 0.15))
                        continue
                    raise HTTPException(status_code=502, detail=f"Shopify GraphQL errors: {errs}")
                return data["data"]
            except HTTPException as he:
                last_exc = he
                break
            except (httpx.HTTPError, ValueError, KeyError) as e:
                last_exc = e
                # Retry transient network failures with backoff
                if attempt < max_retries - 1:
                    await asyncio.sleep(base_delay * (2 ** attempt) + random.uniform(0, 0.15))
                    continue
                break
    finally:
        if own_client:
            await http.aclose()

    log_event("shopify", {"shop": shop, "status": "failed", "error": str(last_exc)})
    if isinstance(last_exc, HTTPException):
        raise last_exc
    raise HTTPException(status_code=502, detail=f"Shopify request failed: {last_exc}")


def _customer_name(customer: Optional[Dict[str, Any]]) -> str:
    if not customer:
        return "Guest"
    name = f"{customer.get('firstName') or ''} {customer.get('lastName') or ''}".strip()
    return name or "Guest"


def map_order_node(node: Dict[str, Any], tag: str) -> Dict[str, Any]:
    tag_l = tag.lower()
    items = []
    for edge in ((node.get("lineItems") or {}).get("edges") or []):
        item = edge.get("node") or {}
        product = item.get("product") or {}
        tags = product.get("tags") or []
        options = {
            o.get("name"): o.get("value")
            for o in ((item.get("variant") or {}).get("selectedOptions") or [])
            if o.get("name")
        }
        items.append({
            "id": item.get("id"),
            "title": item.get("title"),
            "quantity": item.get("quantity"),
            "sku": item.get("sku"),
            "productId": product.get("id"),
            "productType": product.get("productType"),
            "tags": tags,
            "options": options,
            "hasSaddleTag": any((t or "").lower() == tag_l for t in tags),
        })
    customer = node.get("customer")
    return {
        "id": node.get("id"),
        "name": node.get("name"),
        "createdAt": node.get("createdAt"),
        "fulfillmentStatus": node.get("displayFulfillmentStatus"),
        "customer": {"name": _customer_name(customer), "email": (customer or {}).get("email") or ""},
        "lineItems": items,
    }


async def fetch_saddle_orders(
    shop: str,
    *,
    tag: str,
    client: Optional[httpx.AsyncClient] = None,
    batch_size: int = 250,
) -> Dict[str, Any]:
    """Page through every order tagged `tag` and keep those with a tagged saddle product."""
    orders: List[Dict[str, Any]] = []
    cursor: Optional[str] = None
    batches = 0
    while True:
        batches += 1
        data = await shopify_graphql(
            SADDLE_ORDERS_QUERY,
            {"first": batch_size, "after": cursor, "query": f"tag:{tag}"},
            shop=shop,
            client=client,
        )
        conn = (data or {}).get("orders") or {}
        orders.extend(map_order_node(e.get("node") or {}, tag) for e in (conn.get("edges") or []))
        page_info = conn.get("pageInfo") or {}
        cursor = page_info.get("endCursor")
        if not page_info.get("hasNextPage") or not cursor:
            break

    saddle_orders = [o for o in orders if any(li["hasSaddleTag"] for li in o["lineItems"])]
    log_event("shopify", {
        "shop": shop,
        "action": "fetch_saddle_orders",
        "batches": batches,
        "fetched": len(orders),
        "saddle_orders": len(saddle_orders),
    })
    return {"orders": saddle_orders, "totalFetched": len(orders)}
