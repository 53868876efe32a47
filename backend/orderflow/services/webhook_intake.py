"""
Webhook Intake Gateway

Verifies inbound payment-gateway callbacks and normalizes each provider's
payload into a single NormalizedEvent shape.

Verification always happens before the body is parsed. A delivery that
fails verification is discarded: it is logged for audit and never reaches
reconciliation. Event kinds a provider sends that have nothing to do with
order state normalize to ``PaymentEventType.UNKNOWN`` rather than failing.
"""
import json
import logging
import zlib
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from ..config import Settings
from ..exceptions import SignatureInvalidError
from ..models.events import NormalizedEvent, PaymentEventType
from .signature_service import sha256_digest, verify_signature

logger = logging.getLogger(__name__)

# Currencies whose minor unit is the major unit
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "VND", "CLP", "ISK"})


def to_minor_units(value: Any, currency: str) -> int:
    """Convert a decimal amount string such as ``"42.00"`` to minor units."""
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {value!r}")
    exponent = 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2
    return int((amount * (10 ** exponent)).to_integral_value())


def _lower_keys(headers: Mapping[str, str]) -> Dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}


class PaymentNormalizer(ABC):
    """One variant per payment provider."""

    provider: str = ""

    @abstractmethod
    def verify(self, raw_payload: bytes, headers: Mapping[str, str], now: datetime) -> None:
        """Raise SignatureInvalidError unless the delivery is authentic."""

    @abstractmethod
    def normalize(
        self,
        payload: Dict[str, Any],
        payload_digest: str,
        received_at: datetime,
    ) -> NormalizedEvent:
        """Map provider field names and enums onto NormalizedEvent."""


# ============================================================================
# Stripe
# ============================================================================

class StripeNormalizer(PaymentNormalizer):
    """
    Stripe-style deliveries.

    ``Stripe-Signature: t=<unix>,v1=<hex>[,v1=<hex>]`` where each ``v1`` is
    HMAC-SHA256 of ``"<t>.<raw body>"`` under the endpoint secret.
    """

    provider = "stripe"
    signature_header = "stripe-signature"

    EVENT_TYPES = {
        "checkout.session.completed": PaymentEventType.SESSION_COMPLETED,
        "payment_intent.succeeded": PaymentEventType.PAYMENT_SUCCEEDED,
        "payment_intent.payment_failed": PaymentEventType.PAYMENT_FAILED,
        "charge.refunded": PaymentEventType.PAYMENT_REFUNDED,
        "checkout.session.expired": PaymentEventType.PAYMENT_CANCELED,
        "payment_intent.canceled": PaymentEventType.PAYMENT_CANCELED,
    }

    def __init__(self, secret: str, tolerance_seconds: int = 300):
        self._secret = secret
        self._tolerance = tolerance_seconds

    @staticmethod
    def parse_header(header: str) -> Tuple[Optional[int], list]:
        timestamp = None
        signatures = []
        for part in header.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                try:
                    timestamp = int(value)
                except ValueError:
                    return None, []
            elif key == "v1" and value:
                signatures.append(value)
        return timestamp, signatures

    def verify(self, raw_payload: bytes, headers: Mapping[str, str], now: datetime) -> None:
        header = _lower_keys(headers).get(self.signature_header)
        if not header:
            raise SignatureInvalidError("Missing Stripe-Signature header", {"provider": self.provider})

        timestamp, signatures = self.parse_header(header)
        if timestamp is None or not signatures:
            raise SignatureInvalidError("Malformed Stripe-Signature header", {"provider": self.provider})

        if abs(now.timestamp() - timestamp) > self._tolerance:
            raise SignatureInvalidError(
                "Signature timestamp outside tolerance",
                {"provider": self.provider, "timestamp": timestamp},
            )

        signed_payload = f"{timestamp}.".encode("utf-8") + raw_payload
        if not any(verify_signature(self._secret, signed_payload, sig) for sig in signatures):
            raise SignatureInvalidError("No matching v1 signature", {"provider": self.provider})

    def normalize(
        self,
        payload: Dict[str, Any],
        payload_digest: str,
        received_at: datetime,
    ) -> NormalizedEvent:
        event_id = payload.get("id")
        raw_type = payload.get("type")
        if not event_id or not raw_type:
            raise ValueError("Stripe event missing id or type")

        event_type = self.EVENT_TYPES.get(raw_type, PaymentEventType.UNKNOWN)
        obj = (payload.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}

        session_id = metadata.get("checkout_session_id") or obj.get("client_reference_id")
        if raw_type == "charge.refunded":
            amount = obj.get("amount_refunded")
        elif raw_type.startswith("checkout.session."):
            amount = obj.get("amount_total")
        else:
            amount = obj.get("amount_received", obj.get("amount"))
        currency = obj.get("currency")

        return NormalizedEvent(
            provider=self.provider,
            event_id=event_id,
            event_type=event_type,
            raw_type=raw_type,
            session_id=session_id,
            amount_cents=int(amount) if amount is not None else None,
            currency=currency.upper() if currency else None,
            payload_digest=payload_digest,
            received_at=received_at,
        )


# ============================================================================
# PayPal
# ============================================================================

class PayPalNormalizer(PaymentNormalizer):
    """
    PayPal-style deliveries.

    The signed string is ``"<transmission id>|<transmission time>|<webhook
    id>|<crc32 of body>"``, carried in the ``PayPal-Transmission-*``
    headers. It is verified with a shared HMAC secret in place of PayPal's
    certificate chain.
    """

    provider = "paypal"

    EVENT_TYPES = {
        "CHECKOUT.ORDER.APPROVED": PaymentEventType.SESSION_COMPLETED,
        "PAYMENT.CAPTURE.COMPLETED": PaymentEventType.PAYMENT_SUCCEEDED,
        "PAYMENT.CAPTURE.DENIED": PaymentEventType.PAYMENT_FAILED,
        "PAYMENT.CAPTURE.DECLINED": PaymentEventType.PAYMENT_FAILED,
        "PAYMENT.CAPTURE.REFUNDED": PaymentEventType.PAYMENT_REFUNDED,
        "CHECKOUT.ORDER.VOIDED": PaymentEventType.PAYMENT_CANCELED,
    }

    def __init__(self, secret: str, webhook_id: str, tolerance_seconds: int = 300):
        self._secret = secret
        self._webhook_id = webhook_id
        self._tolerance = tolerance_seconds

    @staticmethod
    def signed_string(transmission_id: str, transmission_time: str, webhook_id: str, raw_payload: bytes) -> str:
        return f"{transmission_id}|{transmission_time}|{webhook_id}|{zlib.crc32(raw_payload)}"

    def verify(self, raw_payload: bytes, headers: Mapping[str, str], now: datetime) -> None:
        lowered = _lower_keys(headers)
        transmission_id = lowered.get("paypal-transmission-id")
        transmission_time = lowered.get("paypal-transmission-time")
        signature = lowered.get("paypal-transmission-sig")
        if not (transmission_id and transmission_time and signature):
            raise SignatureInvalidError("Missing PayPal transmission headers", {"provider": self.provider})

        try:
            sent_at = datetime.fromisoformat(transmission_time.replace("Z", "+00:00"))
        except ValueError:
            raise SignatureInvalidError("Malformed PayPal-Transmission-Time", {"provider": self.provider})
        if sent_at.tzinfo is None:
            sent_at = sent_at.replace(tzinfo=timezone.utc)
        if abs(now.timestamp() - sent_at.timestamp()) > self._tolerance:
            raise SignatureInvalidError(
                "Transmission time outside tolerance",
                {"provider": self.provider, "transmission_time": transmission_time},
            )

        message = self.signed_string(transmission_id, transmission_time, self._webhook_id, raw_payload)
        if not verify_signature(self._secret, message, signature):
            raise SignatureInvalidError("PayPal transmission signature mismatch", {"provider": self.provider})

    def normalize(
        self,
        payload: Dict[str, Any],
        payload_digest: str,
        received_at: datetime,
    ) -> NormalizedEvent:
        event_id = payload.get("id")
        raw_type = payload.get("event_type")
        if not event_id or not raw_type:
            raise ValueError("PayPal event missing id or event_type")

        event_type = self.EVENT_TYPES.get(raw_type, PaymentEventType.UNKNOWN)
        resource = payload.get("resource") or {}

        if raw_type.startswith("CHECKOUT."):
            units = resource.get("purchase_units") or [{}]
            session_id = units[0].get("custom_id")
            amount = units[0].get("amount") or {}
        else:
            session_id = resource.get("custom_id")
            amount = resource.get("amount") or {}

        currency = amount.get("currency_code")
        value = amount.get("value")

        return NormalizedEvent(
            provider=self.provider,
            event_id=event_id,
            event_type=event_type,
            raw_type=raw_type,
            session_id=session_id,
            amount_cents=to_minor_units(value, currency) if value is not None and currency else None,
            currency=currency.upper() if currency else None,
            payload_digest=payload_digest,
            received_at=received_at,
        )


# ============================================================================
# Gateway
# ============================================================================

class WebhookIntakeGateway:
    """Routes raw deliveries to the matching provider normalizer."""

    def __init__(self, normalizers: Iterable[PaymentNormalizer]):
        self._normalizers = {normalizer.provider: normalizer for normalizer in normalizers}

    @property
    def providers(self) -> list:
        return sorted(self._normalizers)

    def ingest(
        self,
        provider: str,
        raw_payload: bytes,
        headers: Mapping[str, str],
        now: Optional[datetime] = None,
    ) -> NormalizedEvent:
        """
        Verify then normalize one delivery.

        Raises:
            SignatureInvalidError: unknown provider or failed verification
            ValueError: authentic but malformed body
        """
        now = now or datetime.now(timezone.utc)
        digest = sha256_digest(raw_payload)

        normalizer = self._normalizers.get(provider)
        if normalizer is None:
            logger.warning(f"Webhook for unsupported provider {provider!r} discarded (digest={digest})")
            raise SignatureInvalidError(
                f"No verifier configured for provider: {provider}",
                {"provider": provider},
            )

        try:
            normalizer.verify(raw_payload, headers, now)
        except SignatureInvalidError as e:
            logger.warning(f"Discarding {provider} webhook: {e.message} (digest={digest})")
            raise

        payload = json.loads(raw_payload)
        if not isinstance(payload, dict):
            raise ValueError("Webhook body must be a JSON object")

        event = normalizer.normalize(payload, digest, now.replace(tzinfo=None))
        logger.info(
            f"Ingested {provider} event {event.event_id}: {event.raw_type} -> {event.event_type.value} "
            f"(session={event.session_id})"
        )
        return event


def build_intake_gateway(settings: Settings) -> WebhookIntakeGateway:
    return WebhookIntakeGateway([
        StripeNormalizer(settings.stripe_webhook_secret, settings.webhook_tolerance_seconds),
        PayPalNormalizer(
            settings.paypal_webhook_secret,
            settings.paypal_webhook_id,
            settings.webhook_tolerance_seconds,
        ),
    ])
