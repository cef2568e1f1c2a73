from __future__ import annotations

import pytest
import stripe

from storescorer.core.config import Settings
from storescorer.core.errors import PaymentConfigError, PaymentProviderError, WebhookSignatureError
from storescorer.providers.payments.base import session_from_payload
from storescorer.providers.payments.stripe_provider import StripePaymentProvider
from storescorer.tests.utils.stripe_events import checkout_event, sign_payload


SECRET = "whsec_unit_secret"


def _provider(**overrides) -> StripePaymentProvider:
    values = {
        "stripe_secret_key": "sk_test_unit",
        "stripe_audit_price_id": "price_unit",
        "ext_retry_backoff_ms": 1,
    }
    values.update(overrides)
    return StripePaymentProvider(Settings(**values))


def test_verify_webhook_signature_parses_checkout_session() -> None:
    payload = checkout_event(session_id="cs_unit_1", audit_id="audit-1", email="Buyer@Example.com")
    event = _provider().verify_webhook_signature(payload, sign_payload(payload, SECRET), SECRET)

    assert event.type == "checkout.session.completed"
    assert event.id == "evt_cs_unit_1"
    assert event.session is not None
    assert event.session.session_id == "cs_unit_1"
    assert event.session.audit_id == "audit-1"
    assert event.session.payment_status == "paid"
    assert event.session.amount_total == 2999
    assert event.session.payment_intent_id == "pi_test_webhook"
    assert event.session.customer_email == "Buyer@Example.com"


def test_verify_webhook_signature_rejects_tampered_body() -> None:
    payload = checkout_event(session_id="cs_unit_2", audit_id="audit-2")
    header = sign_payload(payload, SECRET)
    tampered = payload.replace(b"audit-2", b"audit-3")

    with pytest.raises(WebhookSignatureError):
        _provider().verify_webhook_signature(tampered, header, SECRET)


def test_verify_webhook_signature_rejects_wrong_secret() -> None:
    payload = checkout_event(session_id="cs_unit_3", audit_id="audit-3")

    with pytest.raises(WebhookSignatureError):
        _provider().verify_webhook_signature(payload, sign_payload(payload, "whsec_other"), SECRET)


def test_non_checkout_events_carry_no_session() -> None:
    payload = b'{"id": "evt_1", "type": "invoice.paid", "data": {"object": {"id": "in_1"}}}'
    event = _provider().verify_webhook_signature(payload, sign_payload(payload, SECRET), SECRET)

    assert event.type == "invoice.paid"
    assert event.session is None


def test_session_from_payload_falls_back_to_client_reference_id() -> None:
    session = session_from_payload(
        {
            "id": "cs_ref",
            "payment_status": "paid",
            "client_reference_id": "audit-ref",
            "customer_email": "fallback@example.com",
            "payment_intent": {"id": "pi_expanded"},
            "metadata": {},
        }
    )

    assert session.audit_id == "audit-ref"
    assert session.customer_email == "fallback@example.com"
    assert session.payment_intent_id == "pi_expanded"
    assert session.amount_total is None


async def test_retrieve_session_requires_secret_key() -> None:
    provider = StripePaymentProvider(Settings(stripe_secret_key=None))

    with pytest.raises(PaymentConfigError):
        await provider.retrieve_session("cs_missing_key")


async def test_retrieve_session_retries_connection_errors(monkeypatch) -> None:
    calls: list[tuple[str, str]] = []

    def fake_retrieve(session_id, api_key=None):
        calls.append((session_id, api_key))
        if len(calls) == 1:
            raise stripe.APIConnectionError("connection reset")
        return {"id": session_id, "payment_status": "paid", "metadata": {"auditId": "audit-9"}}

    monkeypatch.setattr(stripe.checkout.Session, "retrieve", fake_retrieve)

    session = await _provider().retrieve_session("cs_retry")

    assert len(calls) == 2
    assert calls[0] == ("cs_retry", "sk_test_unit")
    assert session.audit_id == "audit-9"
    assert session.payment_status == "paid"


async def test_retrieve_session_maps_stripe_errors(monkeypatch) -> None:
    def fake_retrieve(session_id, api_key=None):
        raise stripe.InvalidRequestError("No such checkout.session", "id")

    monkeypatch.setattr(stripe.checkout.Session, "retrieve", fake_retrieve)

    with pytest.raises(PaymentProviderError):
        await _provider().retrieve_session("cs_unknown")


async def test_create_checkout_session_maps_missing_price(monkeypatch) -> None:
    def fake_create(**kwargs):
        raise stripe.InvalidRequestError("No such price: 'price_unit'", "line_items")

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)

    with pytest.raises(PaymentConfigError):
        await _provider().create_checkout_session(
            audit_id="audit-1",
            domain="shop.example.com",
            customer_email="buyer@example.com",
            success_url="https://app.test/audit/audit-1",
            cancel_url="https://app.test?canceled=true",
        )


async def test_create_checkout_session_sends_audit_metadata(monkeypatch) -> None:
    captured: dict = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return {"id": "cs_new", "url": "https://checkout.stripe.test/cs_new"}

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)

    session = await _provider().create_checkout_session(
        audit_id="audit-1",
        domain="shop.example.com",
        customer_email="buyer@example.com",
        success_url="https://app.test/audit/audit-1",
        cancel_url="https://app.test?canceled=true",
    )

    assert session.id == "cs_new"
    assert session.url == "https://checkout.stripe.test/cs_new"
    assert captured["mode"] == "payment"
    assert captured["client_reference_id"] == "audit-1"
    assert captured["metadata"] == {"auditId": "audit-1", "domain": "shop.example.com"}
    assert captured["line_items"] == [{"price": "price_unit", "quantity": 1}]
