"""
Mock Payment Gateway

Produces signed webhook deliveries the way Stripe and PayPal send them, so
the intake path can be exercised end to end without a real provider.

Each helper returns ``(raw_body, headers)`` ready to POST to
``/api/webhooks/{provider}``.
"""
import json
import uuid
import zlib
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from ..services.signature_service import compute_signature
from ..services.webhook_intake import ZERO_DECIMAL_CURRENCIES

Delivery = Tuple[bytes, Dict[str, str]]


# Test tokens that trigger specific behaviors
DECLINE_TOKENS = {
    "tok_decline": "insufficient_funds",
    "tok_decline_fraud": "fraud_suspected",
    "tok_decline_expired": "card_expired",
}


def _encode(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


# ============================================================================
# Stripe
# ============================================================================

def sign_stripe(raw_body: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a ``Stripe-Signature`` header value for ``raw_body``."""
    timestamp = int(timestamp if timestamp is not None else datetime.now(timezone.utc).timestamp())
    signature = compute_signature(secret, f"{timestamp}.".encode("utf-8") + raw_body)
    return f"t={timestamp},v1={signature}"


def stripe_event(
    event_type: str,
    session_id: str,
    amount_cents: int,
    currency: str = "usd",
    event_id: Optional[str] = None,
) -> Dict[str, Any]:
    obj: Dict[str, Any] = {
        "currency": currency.lower(),
        "metadata": {"checkout_session_id": session_id},
    }
    if event_type.startswith("checkout.session."):
        obj.update({"object": "checkout.session", "client_reference_id": session_id, "amount_total": amount_cents})
    elif event_type == "charge.refunded":
        obj.update({"object": "charge", "amount": amount_cents, "amount_refunded": amount_cents})
    else:
        obj.update({"object": "payment_intent", "amount": amount_cents, "amount_received": amount_cents})

    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
        "object": "event",
        "type": event_type,
        "created": int(datetime.now(timezone.utc).timestamp()),
        "data": {"object": obj},
    }


def stripe_delivery(
    event_type: str,
    session_id: str,
    amount_cents: int,
    secret: str,
    currency: str = "usd",
    event_id: Optional[str] = None,
    timestamp: Optional[int] = None,
) -> Delivery:
    body = _encode(stripe_event(event_type, session_id, amount_cents, currency, event_id))
    return body, {
        "Content-Type": "application/json",
        "Stripe-Signature": sign_stripe(body, secret, timestamp),
    }


# ============================================================================
# PayPal
# ============================================================================

def _paypal_amount(amount_cents: int, currency: str) -> Dict[str, str]:
    currency = currency.upper()
    if currency in ZERO_DECIMAL_CURRENCIES:
        value = str(amount_cents)
    else:
        value = str((Decimal(amount_cents) / 100).quantize(Decimal("0.01")))
    return {"currency_code": currency, "value": value}


def paypal_event(
    event_type: str,
    session_id: str,
    amount_cents: int,
    currency: str = "USD",
    event_id: Optional[str] = None,
) -> Dict[str, Any]:
    amount = _paypal_amount(amount_cents, currency)
    if event_type.startswith("CHECKOUT."):
        resource = {
            "id": f"PP-{uuid.uuid4().hex[:17].upper()}",
            "purchase_units": [{"custom_id": session_id, "amount": amount}],
        }
    else:
        resource = {
            "id": uuid.uuid4().hex[:17].upper(),
            "custom_id": session_id,
            "amount": amount,
        }

    return {
        "id": event_id or f"WH-{uuid.uuid4().hex[:20].upper()}",
        "event_type": event_type,
        "create_time": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "resource": resource,
    }


def paypal_delivery(
    event_type: str,
    session_id: str,
    amount_cents: int,
    secret: str,
    webhook_id: str,
    currency: str = "USD",
    event_id: Optional[str] = None,
    sent_at: Optional[datetime] = None,
) -> Delivery:
    body = _encode(paypal_event(event_type, session_id, amount_cents, currency, event_id))
    transmission_id = str(uuid.uuid4())
    transmission_time = (sent_at or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H:%M:%SZ")
    message = f"{transmission_id}|{transmission_time}|{webhook_id}|{zlib.crc32(body)}"
    return body, {
        "Content-Type": "application/json",
        "PayPal-Transmission-Id": transmission_id,
        "PayPal-Transmission-Time": transmission_time,
        "PayPal-Transmission-Sig": compute_signature(secret, message),
    }


# ============================================================================
# Payment simulation
# ============================================================================

def simulate_stripe_payment(
    session_id: str,
    amount_cents: int,
    secret: str,
    payment_token: str = "tok_visa",
    currency: str = "usd",
) -> List[Delivery]:
    """
    Deliveries a customer paying with ``payment_token`` would trigger.

    Tokens in DECLINE_TOKENS produce a single payment_failed event; anything
    else completes the session and then captures the payment.
    """
    if payment_token in DECLINE_TOKENS:
        return [stripe_delivery("payment_intent.payment_failed", session_id, amount_cents, secret, currency)]
    return [
        stripe_delivery("checkout.session.completed", session_id, amount_cents, secret, currency),
        stripe_delivery("payment_intent.succeeded", session_id, amount_cents, secret, currency),
    ]
