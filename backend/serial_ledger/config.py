from __future__ import annotations

import os
import re
import urllib.parse
from typing import Dict, List


def _env(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _bool_env(name: str, default: bool = False) -> bool:
    v = _env(name).lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


def _int_env(name: str, default: int) -> int:
    try:
        return int(_env(name) or default)
    except ValueError:
        return default


_SHOP_RE = re.compile(r"([a-z0-9][a-z0-9-]*\.myshopify\.com)")


def normalize_shop_domain(raw: str) -> str:
    """
    Normalize a shop domain to its bare '*.myshopify.com' host.

    Accepts pasted URLs ('https://foo.myshopify.com/admin'). Hosts that are not
    myshopify domains are returned lower-cased and stripped of any path.
    """
    s = (raw or "").strip().lower()
    if not s:
        return ""
    host = s
    if "://" in s:
        u = urllib.parse.urlparse(s)
        host = (u.netloc or u.path or "").strip().lower()
    host = host.split("/")[0].split("?")[0].split("#")[0].strip()
    m = _SHOP_RE.search(host)
    return m.group(1) if m else host


def _parse_shop_map(raw: str) -> Dict[str, str]:
    """Parse 'shop=value,shop2=value2' into a dict keyed by normalized shop domain."""
    out: Dict[str, str] = {}
    for part in (raw or "").split(","):
        if "=" not in part:
            continue
        shop, _, value = part.partition("=")
        shop = normalize_shop_domain(shop)
        value = value.strip()
        if shop and value:
            out[shop] = value
    return out


def webhook_secret_for_shop(shop_domain: str) -> str:
    sd = normalize_shop_domain(shop_domain)
    per_shop = _parse_shop_map(_env("SHOPIFY_WEBHOOK_SECRETS"))
    if sd and sd in per_shop:
        return per_shop[sd]
    return _env("SHOPIFY_WEBHOOK_SECRET")


def default_shop_domain() -> str:
    return normalize_shop_domain(_env("SHOPIFY_SHOP_DOMAIN"))


def access_token_for_shop(shop_domain: str) -> str:
    sd = normalize_shop_domain(shop_domain)
    per_shop = _parse_shop_map(_env("SHOPIFY_ACCESS_TOKENS"))
    if sd and sd in per_shop:
        return per_shop[sd]
    if sd and sd == default_shop_domain():
        return _env("SHOPIFY_ACCESS_TOKEN")
    return ""


def shopify_api_version() -> str:
    return _env("SHOPIFY_API_VERSION", "2025-01")


def saddle_order_tag() -> str:
    return _env("SADDLE_ORDER_TAG", "saddles")


def serial_max_attempts() -> int:
    return max(1, _int_env("SERIAL_MAX_ATTEMPTS", 20))


def allowed_origins() -> List[str]:
    raw = _env("ALLOWED_ORIGINS")
    if not raw:
        return ["*"]
    return [o.strip() for o in raw.split(",") if o.strip()]


def skip_webhook_hmac() -> bool:
    return _bool_env("SHOPIFY_WEBHOOK_SKIP_HMAC", default=False)
