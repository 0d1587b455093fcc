from __future__ import annotations
import binascii
import json
import time
from typing import Mapping, Optional
from flask import current_app
from standardwebhooks.webhooks import Webhook, WebhookVerificationError
from errors import InvalidSignature, MalformedPayload, ReplayedTimestamp
from plans.catalog import WALLET_PLAN_IDS

PRODUCT_CONFIG_KEYS = {
    "pro": "DODO_PRODUCT_PRO_MONTHLY",
    "growth": "DODO_PRODUCT_GROWTH_MONTHLY",
    "scale": "DODO_PRODUCT_SCALE_MONTHLY",
}

STATUS_MAP = {
    "active": "active",
    "trialing": "trialing",
    "cancelled": "cancelled",
    "canceled": "cancelled",
    "expired": "expired",
    "past_due": "past_due",
    "unpaid": "past_due",
    "on_hold": "past_due",
}


def _header(headers: Mapping[str, str], name: str) -> str:
    return (headers.get(name) or headers.get(f"x-{name}") or "").strip()


def _verifier(secret: str) -> Webhook:
    try:
        return Webhook(secret)
    except (binascii.Error, ValueError):
        raise InvalidSignature("Webhook secret is not valid base64")


def unsigned_allowed() -> bool:
    if (current_app.config.get("APP_ENV") or "development") == "production":
        return False
    return bool(current_app.config.get("WEBHOOK_ALLOW_UNSIGNED"))


def verify_webhook(headers: Mapping[str, str], body: bytes, now: Optional[float] = None) -> str:
    """
    Check a delivery's timestamp and signature (Standard Webhooks scheme).
    Returns the webhook-id header. Raises ReplayedTimestamp / InvalidSignature,
    or MalformedPayload when a correctly signed body is not JSON.
    """
    webhook_id = _header(headers, "webhook-id")
    timestamp = _header(headers, "webhook-timestamp")
    signature = _header(headers, "webhook-signature")

    if not signature:
        if unsigned_allowed():
            current_app.logger.warning("billing_webhook: accepting unsigned delivery %s (dev only)", webhook_id or "-")
            return webhook_id
        raise InvalidSignature("Missing webhook signature")

    if not timestamp:
        raise ReplayedTimestamp("Missing webhook timestamp")
    try:
        ts = int(timestamp)
    except ValueError:
        raise ReplayedTimestamp("Invalid webhook timestamp")
    tolerance = int(current_app.config.get("WEBHOOK_TOLERANCE_SECONDS", 300))
    now = time.time() if now is None else now
    if abs(now - ts) > tolerance:
        raise ReplayedTimestamp("Webhook timestamp outside tolerance", details={"tolerance": tolerance})

    secret = current_app.config.get("DODO_WEBHOOK_SECRET")
    if not secret:
        raise InvalidSignature("Webhook secret not configured")

    normalized = {
        "webhook-id": webhook_id,
        "webhook-timestamp": timestamp,
        "webhook-signature": signature,
    }
    try:
        _verifier(secret).verify(body, normalized)
    except WebhookVerificationError as e:
        raise InvalidSignature(f"Webhook signature mismatch ({e})")
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise MalformedPayload("Invalid JSON payload")
    except ValueError:
        # unparseable v1 entries
        raise InvalidSignature("Malformed webhook signature header")
    return webhook_id


def plan_for_product(product_id: Optional[str]) -> Optional[str]:
    if not product_id:
        return None
    for plan_id, key in PRODUCT_CONFIG_KEYS.items():
        if current_app.config.get(key) == product_id:
            return plan_id
    return None


def product_for_plan(plan_id: str) -> Optional[str]:
    if plan_id not in WALLET_PLAN_IDS:
        return None
    return current_app.config.get(PRODUCT_CONFIG_KEYS[plan_id])


def map_subscription_status(status: Optional[str]) -> str:
    return STATUS_MAP.get((status or "").lower(), "active")
