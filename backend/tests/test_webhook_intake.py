"""
Tests for webhook verification and normalization.
"""
import json
from datetime import datetime, timedelta, timezone

import pytest

from orderflow.exceptions import SignatureInvalidError
from orderflow.mocks.payment_gateway import paypal_delivery, sign_stripe, stripe_delivery
from orderflow.models.events import PaymentEventType
from orderflow.services.webhook_intake import build_intake_gateway, to_minor_units


@pytest.fixture
def intake(settings):
    return build_intake_gateway(settings)


def test_stripe_payment_succeeded(settings, intake):
    body, headers = stripe_delivery(
        "payment_intent.succeeded", "cs_abc", 4200, settings.stripe_webhook_secret, event_id="evt_1"
    )

    event = intake.ingest("stripe", body, headers)

    assert event.provider == "stripe"
    assert event.event_id == "evt_1"
    assert event.event_type == PaymentEventType.PAYMENT_SUCCEEDED
    assert event.session_id == "cs_abc"
    assert event.amount_cents == 4200
    assert event.currency == "USD"
    assert len(event.payload_digest) == 64


def test_stripe_refund_uses_refunded_amount(settings, intake):
    body, headers = stripe_delivery("charge.refunded", "cs_abc", 1500, settings.stripe_webhook_secret)
    event = intake.ingest("stripe", body, headers)
    assert event.event_type == PaymentEventType.PAYMENT_REFUNDED
    assert event.amount_cents == 1500


def test_stripe_tampered_body_is_rejected(settings, intake):
    body, headers = stripe_delivery("payment_intent.succeeded", "cs_abc", 4200, settings.stripe_webhook_secret)
    tampered = body.replace(b"4200", b"1")

    with pytest.raises(SignatureInvalidError):
        intake.ingest("stripe", tampered, headers)


def test_stripe_wrong_secret_is_rejected(intake):
    body, headers = stripe_delivery("payment_intent.succeeded", "cs_abc", 4200, "whsec_someone_else")
    with pytest.raises(SignatureInvalidError):
        intake.ingest("stripe", body, headers)


def test_stripe_stale_timestamp_is_rejected(settings, intake):
    stale = int((datetime.now(timezone.utc) - timedelta(minutes=10)).timestamp())
    body, headers = stripe_delivery(
        "payment_intent.succeeded", "cs_abc", 4200, settings.stripe_webhook_secret, timestamp=stale
    )
    with pytest.raises(SignatureInvalidError):
        intake.ingest("stripe", body, headers)


def test_missing_signature_header_is_rejected(intake):
    with pytest.raises(SignatureInvalidError):
        intake.ingest("stripe", b'{"id": "evt_1", "type": "charge.refunded"}', {})


def test_any_matching_v1_signature_is_accepted(settings, intake):
    body = json.dumps({"id": "evt_2", "type": "payment_intent.succeeded", "data": {"object": {}}}).encode()
    valid = sign_stripe(body, settings.stripe_webhook_secret)
    timestamp = valid.split(",")[0]
    headers = {"Stripe-Signature": f"{timestamp},v1=deadbeef,{valid.split(',')[1]}"}

    assert intake.ingest("stripe", body, headers).event_id == "evt_2"


def test_unrecognized_stripe_type_normalizes_to_unknown(settings, intake):
    body, headers = stripe_delivery("customer.created", "cs_abc", 4200, settings.stripe_webhook_secret)
    event = intake.ingest("stripe", body, headers)
    assert event.event_type == PaymentEventType.UNKNOWN
    assert event.raw_type == "customer.created"


def test_unsupported_provider_is_rejected(intake):
    with pytest.raises(SignatureInvalidError):
        intake.ingest("adyen", b"{}", {})


def test_authentic_but_malformed_body_raises_value_error(settings, intake):
    body = b"[1, 2, 3]"
    headers = {"Stripe-Signature": sign_stripe(body, settings.stripe_webhook_secret)}
    with pytest.raises(ValueError):
        intake.ingest("stripe", body, headers)


def test_paypal_capture_completed(settings, intake):
    body, headers = paypal_delivery(
        "PAYMENT.CAPTURE.COMPLETED", "cs_abc", 4200,
        settings.paypal_webhook_secret, settings.paypal_webhook_id, event_id="WH-1",
    )

    event = intake.ingest("paypal", body, headers)

    assert event.provider == "paypal"
    assert event.event_type == PaymentEventType.PAYMENT_SUCCEEDED
    assert event.session_id == "cs_abc"
    assert event.amount_cents == 4200
    assert event.currency == "USD"


def test_paypal_checkout_approved_reads_purchase_unit(settings, intake):
    body, headers = paypal_delivery(
        "CHECKOUT.ORDER.APPROVED", "cs_abc", 4200,
        settings.paypal_webhook_secret, settings.paypal_webhook_id,
    )
    event = intake.ingest("paypal", body, headers)
    assert event.event_type == PaymentEventType.SESSION_COMPLETED
    assert event.session_id == "cs_abc"


def test_paypal_wrong_webhook_id_is_rejected(settings, intake):
    body, headers = paypal_delivery(
        "PAYMENT.CAPTURE.COMPLETED", "cs_abc", 4200, settings.paypal_webhook_secret, "WH-OTHER",
    )
    with pytest.raises(SignatureInvalidError):
        intake.ingest("paypal", body, headers)


def test_paypal_stale_transmission_is_rejected(settings, intake):
    body, headers = paypal_delivery(
        "PAYMENT.CAPTURE.COMPLETED", "cs_abc", 4200,
        settings.paypal_webhook_secret, settings.paypal_webhook_id,
        sent_at=datetime.now(timezone.utc) - timedelta(hours=1),
    )
    with pytest.raises(SignatureInvalidError):
        intake.ingest("paypal", body, headers)


@pytest.mark.parametrize("value,currency,expected", [
    ("42.00", "USD", 4200),
    ("0.99", "EUR", 99),
    ("4200", "JPY", 4200),
])
def test_to_minor_units(value, currency, expected):
    assert to_minor_units(value, currency) == expected
