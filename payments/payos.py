"""
payments/payos.py -- PayOS payment-link client and HMAC signatures.

Two signatures are involved:

  Create-link signature (we sign, PayOS verifies):
      HMAC-SHA256(checksum_key,
          "amount={a}&cancelUrl={c}&description={d}&orderCode={o}&returnUrl={r}")

  Webhook signature (PayOS signs, we verify):
      HMAC-SHA256(checksum_key, "&".join(f"{k}={v}" for k in sorted(data)))
      with the value normalisation implemented in signature_value().

Both digests are lowercase hex.

Credentials are resolved DB-first: an active PaymentGateway row named "PayOS"
wins field by field over the PAYOS_* settings.

All outbound HTTP goes through one module-level requests.Session. Network and
protocol failures are raised as PayOSError so callers handle a single type.
"""

import hashlib
import hmac
import json
import logging
import random
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

import requests

from core.config import get_settings

logger = logging.getLogger("ktk.payments")

PROVIDER = "PayOS"
DESCRIPTION_MAX_LENGTH = 25
_TIMEOUT = 15

_session = requests.Session()
_session.max_redirects = 3


class PayOSError(Exception):
    """PayOS is misconfigured, unreachable, or answered with a non-"00" code."""


@dataclass(frozen=True)
class PayOSConfig:
    client_id: str
    api_key: str
    checksum_key: str
    endpoint: str

    @property
    def complete(self) -> bool:
        return all((self.client_id, self.api_key, self.checksum_key, self.endpoint))


@dataclass(frozen=True)
class PaymentLink:
    checkout_url: str
    payment_link_id: str


def resolve_payos_config(store=None) -> PayOSConfig:
    """Return PayOS credentials: active DB gateway first, settings as fallback.

    store is a ShopStore (or None to use settings only).
    """
    settings = get_settings()
    gateway = store.get_gateway(PROVIDER) if store is not None else None

    def pick(db_value: Optional[str], fallback: str) -> str:
        value = (db_value or "").strip()
        return value or (fallback or "").strip()

    return PayOSConfig(
        client_id=pick(gateway.client_id if gateway else None, settings.payos_client_id),
        api_key=pick(gateway.api_key if gateway else None, settings.payos_api_key),
        checksum_key=pick(gateway.checksum_key if gateway else None, settings.payos_checksum_key),
        endpoint=pick(gateway.endpoint if gateway else None, settings.payos_endpoint),
    )


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------


def hmac_sha256_hex(data: str, key: str) -> str:
    return hmac.new(key.encode("utf-8"), data.encode("utf-8"), hashlib.sha256).hexdigest()


def payment_request_signature(
    amount: int,
    cancel_url: str,
    description: str,
    order_code: int,
    return_url: str,
    checksum_key: str,
) -> str:
    raw = (
        f"amount={amount}&cancelUrl={cancel_url}&description={description}"
        f"&orderCode={order_code}&returnUrl={return_url}"
    )
    return hmac_sha256_hex(raw, checksum_key)


def _is_blank_marker(value: str) -> bool:
    return value == "" or value.lower() in ("null", "undefined")


def _normalize_nested(value: Any) -> Any:
    """Prepare a nested list/dict for stable JSON: sorted keys, blank markers as ""."""
    if isinstance(value, dict):
        return {k: _normalize_nested(value[k]) for k in sorted(value)}
    if isinstance(value, list):
        return [_normalize_nested(v) for v in value]
    if value is None:
        return ""
    if isinstance(value, str):
        return "" if _is_blank_marker(value) else value
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    return value


def signature_value(value: Any) -> str:
    """Render one webhook data value the way PayOS does when it signs.

    None, "", "null" and "undefined" -> "".
    Booleans -> "true"/"false". Numbers -> their literal text.
    Lists and dicts -> compact JSON, keys sorted recursively, non-ASCII kept.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return "" if _is_blank_marker(value) else value
    if isinstance(value, (int, Decimal)):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, (list, dict)):
        return json.dumps(_normalize_nested(value), separators=(",", ":"), ensure_ascii=False, sort_keys=True)
    return str(value)


def webhook_data_string(data: dict) -> str:
    # sorted() on str keys is ordinal (code point) order.
    return "&".join(f"{key}={signature_value(data[key])}" for key in sorted(data))


def verify_webhook_signature(data: Any, signature: Optional[str], checksum_key: str) -> bool:
    """Constant-time check of a webhook signature. Non-dict data or a blank or non-string signature is invalid."""
    if not isinstance(data, dict) or not isinstance(signature, str) or not signature.strip() or not checksum_key:
        return False
    computed = hmac_sha256_hex(webhook_data_string(data), checksum_key)
    return hmac.compare_digest(computed.lower(), signature.strip().lower())


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def generate_order_code() -> int:
    """Numeric orderCode for PayOS; fits comfortably in a 32-bit int."""
    return abs((int(time.time()) % 2_000_000) * 1000 + random.randint(100, 999))


def truncate_description(text: str) -> str:
    return (text or "")[:DESCRIPTION_MAX_LENGTH]


def _headers(config: PayOSConfig) -> dict[str, str]:
    return {"x-client-id": config.client_id, "x-api-key": config.api_key}


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


def create_payment_link(
    config: PayOSConfig,
    order_code: int,
    amount: int,
    description: str,
    return_url: str,
    cancel_url: str,
    buyer_name: str = "",
    buyer_email: str = "",
    buyer_phone: str = "",
) -> PaymentLink:
    """Create a PayOS payment link. Raises PayOSError on any failure."""
    if not config.complete:
        raise PayOSError("PayOS is not configured (client id, api key, checksum key, endpoint).")

    description = truncate_description(description)
    body = {
        "orderCode": order_code,
        "amount": amount,
        "description": description,
        "returnUrl": return_url,
        "cancelUrl": cancel_url,
        "buyerName": buyer_name,
        "buyerEmail": buyer_email,
        "buyerPhone": buyer_phone,
        "signature": payment_request_signature(
            amount, cancel_url, description, order_code, return_url, config.checksum_key
        ),
    }
    try:
        resp = _session.post(config.endpoint, json=body, headers=_headers(config), timeout=_TIMEOUT)
        resp.raise_for_status()
        payload = resp.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning("PayOS create-link failed for orderCode %s: %s", order_code, e)
        raise PayOSError(f"PayOS request failed: {e}") from e

    if not isinstance(payload, dict) or payload.get("code") != "00":
        desc = payload.get("desc") if isinstance(payload, dict) else None
        logger.warning("PayOS rejected orderCode %s: %s", order_code, desc)
        raise PayOSError(f"PayOS rejected the payment request: {desc or 'unknown error'}")

    data = payload.get("data") or {}
    checkout_url = data.get("checkoutUrl")
    if not checkout_url:
        raise PayOSError("PayOS response has no checkoutUrl.")
    logger.info("PayOS link created for orderCode %s", order_code)
    return PaymentLink(checkout_url=checkout_url, payment_link_id=data.get("paymentLinkId") or "")


def cancel_payment_link(config: PayOSConfig, payment_link_id: str, reason: Optional[str] = None) -> bool:
    """Cancel a payment link. Returns True when PayOS confirms with code "00"."""
    if not payment_link_id or not (config.client_id and config.api_key and config.endpoint):
        return False
    url = f"{config.endpoint.rstrip('/')}/{payment_link_id}/cancel"
    body = {"cancellationReason": (reason or "").strip() or "Cancelled by system"}
    try:
        resp = _session.post(url, json=body, headers=_headers(config), timeout=_TIMEOUT)
    except requests.RequestException as e:
        logger.warning("PayOS cancel failed for link %s: %s", payment_link_id, e)
        return False
    try:
        return resp.json().get("code") == "00"
    except ValueError:
        return resp.ok


def get_checkout_url(config: PayOSConfig, payment_link_id: str) -> Optional[str]:
    if not payment_link_id or not (config.client_id and config.api_key and config.endpoint):
        return None
    url = f"{config.endpoint.rstrip('/')}/{payment_link_id}"
    try:
        resp = _session.get(url, headers=_headers(config), timeout=_TIMEOUT)
        payload = resp.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning("PayOS lookup failed for link %s: %s", payment_link_id, e)
        return None
    if not isinstance(payload, dict) or payload.get("code") != "00":
        return None
    return (payload.get("data") or {}).get("checkoutUrl")
